"""
Extension runtime container.

Constructs and wires the extension services for one browser session.
"""

import logging
from typing import Optional

from prism_engine.engine.base import ScriptContext, WebEngine
from prism_engine.extensions.background import BackgroundRuntime
from prism_engine.extensions.injector import ContentScriptInjector
from prism_engine.extensions.manager import ExtensionManager
from prism_engine.extensions.models import RunAt
from prism_engine.extensions.popup import ExtensionPopupHost
from prism_engine.privacy.content_blocker import ContentBlockingManager
from prism_engine.utils.config import Config
from prism_engine.utils.dispatch import InlineDispatcher
from prism_engine.utils.logging import LOG_LEVELS, ROOT_LOGGER_NAME, add_file_handler, get_default_log_file

logger = logging.getLogger(__name__)


class ExtensionRuntime:
    """The extension services of a browser session."""

    def __init__(self, config: Optional[Config] = None, engine: Optional[WebEngine] = None,
                 dispatcher=None):
        """
        Initialize the runtime.

        Args:
            config: Configuration object
            engine: Engine to drive; defaults to a DukpyEngine using the configured rule store
            dispatcher: Owner-context dispatcher; defaults to inline dispatching
        """
        self.config = config or Config()
        self.dispatcher = dispatcher or InlineDispatcher()

        root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        level = self.config.get("logging.level", "INFO")
        root_logger.setLevel(LOG_LEVELS.get(str(level).upper(), logging.INFO))
        if self.config.get("logging.log_to_file", False):
            add_file_handler(root_logger, self.config.get("logging.file") or get_default_log_file())

        if engine is None:
            from prism_engine.engine.dukpy_engine import DukpyEngine
            engine = DukpyEngine(self.config.get("content_blocking.rule_store_directory"))
        self.engine = engine

        self.background = BackgroundRuntime(self.engine, self.dispatcher, self.config)
        self.content_blocker = ContentBlockingManager(self.engine, self.dispatcher, self.config)
        self.extension_manager = ExtensionManager(
            self.config,
            background_runtime=self.background,
            content_blocker=self.content_blocker,
            dispatcher=self.dispatcher)
        self.injector = ContentScriptInjector(self.extension_manager)
        self.popup_host = ExtensionPopupHost(self.engine, self.background)

        self._started = False
        self._stopped = False

    def start(self) -> None:
        """Load the installed extensions and compile their rules."""
        if self._started:
            return

        self.extension_manager.load_extensions()
        compiled = self.content_blocker.reload_all_rules(self.extension_manager.get_enabled_extensions())
        self._started = True

        logger.info(f"Extension runtime started ({len(self.extension_manager.get_extensions())} extensions, "
                    f"{compiled} with content rules)")

    def prepare_page(self, context: ScriptContext) -> int:
        """Attach the active content rules to a new page context."""
        return self.content_blocker.apply_to(context, self.extension_manager.get_extensions())

    def on_navigation(self, context: ScriptContext, url: str, run_at: Optional[RunAt] = None) -> int:
        """Inject the content scripts matching url into a page context."""
        return self.injector.inject(url, context, self.engine, run_at)

    def shutdown(self) -> None:
        """Stop every background context and the dispatcher."""
        if self._stopped:
            return
        self._stopped = True

        self.background.stop_all()
        self.dispatcher.shutdown()
        self._started = False

        logger.info("Extension runtime stopped")

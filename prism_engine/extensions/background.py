"""
Background execution host.

Runs at most one long-lived background context per extension. Each context
gets the chrome.* API shim, then the extension's background script. Messages
the script posts to the host are parsed into typed messages and handled on
the owner context.
"""

import itertools
import logging
import pathlib
from typing import Any, Callable, Dict, List, Optional

from prism_engine.engine.base import ScriptContext, WebEngine
from prism_engine.errors import MessageDeliveryDropped, ScriptError
from prism_engine.extensions.api_shim import API_SHIM, wrap_script
from prism_engine.extensions.messages import (BackgroundMessage, ConsoleMessage, StorageGet,
                                              StorageSet, UnknownMessage, UpdateDynamicRules,
                                              parse_message)
from prism_engine.extensions.models import Extension
from prism_engine.extensions.storage import ExtensionStorage, storage_for
from prism_engine.utils.config import Config
from prism_engine.utils.dispatch import InlineDispatcher, on_owner
from prism_engine.utils.logging import extension_logger

logger = logging.getLogger(__name__)

# Listener signature: callback(extension_id, message)
MessageListener = Callable[[str, BackgroundMessage], None]

CONSOLE_LEVELS = {
    "debug": logging.DEBUG,
    "log": logging.INFO,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def extension_base_url(extension: Extension) -> str:
    """URL of an extension directory, as used by runtime.getURL."""
    return pathlib.Path(extension.directory).resolve().as_uri() + "/"


class BackgroundContext:
    """A running background context and what it is bound to."""

    def __init__(self, extension: Extension, context: ScriptContext,
                 storage: ExtensionStorage, generation: int):
        self.extension = extension
        self.context = context
        self.storage = storage
        self.generation = generation
        self.loaded = False

    def __repr__(self) -> str:
        return f"BackgroundContext({self.extension.id!r}, generation={self.generation}, loaded={self.loaded})"


class BackgroundRuntime:
    """Host for extension background scripts."""

    MESSAGE_CHANNEL = "backgroundMessage"

    def __init__(self, engine: WebEngine, dispatcher=None, config: Optional[Config] = None):
        """
        Initialize the background runtime.

        Args:
            engine: Engine that creates and evaluates the contexts
            dispatcher: Owner-context dispatcher; defaults to inline dispatching
            config: Configuration object
        """
        self.engine = engine
        self.dispatcher = dispatcher or InlineDispatcher()
        self.config = config

        self.enabled = True
        self.max_timer_rounds = 100
        if config is not None:
            self.enabled = config.get("extensions.background.enabled", True)
            self.max_timer_rounds = config.get("extensions.background.max_timer_rounds", 100)

        self._contexts: Dict[str, BackgroundContext] = {}
        self._storages: Dict[str, ExtensionStorage] = {}
        self._listeners: List[MessageListener] = []
        self._generations = itertools.count(1)

        logger.debug("Background runtime initialized")

    @on_owner
    def start_background_script(self, extension: Extension):
        """
        Start the background context of an extension.

        Does nothing if the extension has no background script or one is
        already running.

        Returns:
            Future resolved with True once the script has loaded, or None if
            nothing was started
        """
        if not extension.background_script:
            logger.debug(f"Extension {extension.id} has no background script")
            return None

        if not self.enabled:
            logger.debug(f"Background scripts are disabled, not starting {extension.id}")
            return None

        if extension.id in self._contexts:
            logger.debug(f"Background script for {extension.id} is already running")
            return None

        script_path = extension.resolve_path(extension.background_script)
        if script_path is None:
            logger.warning(f"Background script {extension.background_script} of {extension.id} "
                           f"is outside the extension directory")
            return None

        context = self.engine.create_context(f"background:{extension.id}", "background")
        record = BackgroundContext(extension, context, self.get_storage(extension),
                                   next(self._generations))
        self._contexts[extension.id] = record

        extension_id = extension.id
        self.engine.register_message_handler(
            context, self.MESSAGE_CHANNEL,
            lambda payload: self._on_script_message(extension_id, payload))

        def load():
            with open(script_path, 'r', encoding='utf-8') as f:
                source = f.read()

            self.engine.evaluate_script(
                API_SHIM, context,
                channel=self.MESSAGE_CHANNEL,
                extensionId=extension_id,
                storage=record.storage.load(),
                baseURL=extension_base_url(extension))
            self.engine.evaluate_script(wrap_script(source), context)
            self._drain_timers(context)

        def complete(result, error):
            if self._contexts.get(extension_id) is not record:
                # Stopped or restarted while loading
                logger.debug(f"Discarding stale background load for {extension_id} "
                             f"(generation {record.generation})")
                if not context.destroyed:
                    self.engine.destroy_context(context)
                return False

            if error is not None:
                logger.error(f"Failed to load background script for {extension.name}: {error}")
                del self._contexts[extension_id]
                self.engine.destroy_context(context)
                return False

            record.loaded = True
            logger.info(f"Started background script for {extension.name}")
            return True

        return self.dispatcher.run_async(load, complete)

    @on_owner
    def stop_background_script(self, extension_id: str) -> bool:
        """
        Stop the background context of an extension.

        The storage blob is kept.

        Returns:
            bool: True if a context was running
        """
        record = self._contexts.pop(extension_id, None)
        if record is None:
            return False

        self.engine.destroy_context(record.context)
        logger.info(f"Stopped background script for {record.extension.name}")
        return True

    @on_owner
    def stop_all(self) -> None:
        for extension_id in list(self._contexts):
            self.stop_background_script(extension_id)

    def is_running(self, extension_id: str) -> bool:
        return extension_id in self._contexts

    def running_extensions(self) -> List[str]:
        return list(self._contexts)

    def get_context(self, extension_id: str) -> Optional[ScriptContext]:
        record = self._contexts.get(extension_id)
        return record.context if record else None

    def get_storage(self, extension: Extension) -> ExtensionStorage:
        """Return the storage.local blob of an extension."""
        return storage_for(extension, self._storages)

    def _running_record(self, extension_id: str) -> BackgroundContext:
        record = self._contexts.get(extension_id)
        if record is None:
            raise MessageDeliveryDropped(extension_id)
        if not record.loaded:
            raise MessageDeliveryDropped(f"{extension_id} is still loading")
        return record

    @on_owner
    def send_message(self, extension_id: str, message: Any,
                     sender: Optional[Dict[str, Any]] = None) -> Any:
        """
        Deliver a message to the runtime.onMessage listeners of an extension.

        Args:
            extension_id: Target extension
            message: JSON-compatible message
            sender: Sender description passed to the listeners

        Returns:
            The listener response, or None if there was none or the
            background context is not running
        """
        try:
            record = self._running_record(extension_id)
        except MessageDeliveryDropped as e:
            logger.debug(f"Dropping message: {e}")
            return None

        try:
            return self.engine.evaluate_script(
                "__prismDispatch(dukpy.message, dukpy.sender, dukpy.maxRounds)",
                record.context,
                message=message,
                sender=sender or {"id": extension_id},
                maxRounds=self.max_timer_rounds)
        except ScriptError as e:
            logger.error(f"Error delivering message to {extension_id}: {e}")
            return None

    @on_owner
    def notify_storage_changed(self, extension_id: str, items: Dict[str, Any]) -> None:
        """Apply a storage write made outside the background context to its cache."""
        record = self._contexts.get(extension_id)
        if record is None or not record.loaded:
            return

        try:
            self.engine.evaluate_script("__prismStorageChanged(dukpy.items)", record.context, items=items)
            self._drain_timers(record.context)
        except ScriptError as e:
            logger.error(f"Error notifying {extension_id} of storage changes: {e}")

    def _drain_timers(self, context: ScriptContext) -> None:
        pending = self.engine.evaluate_script(
            "__prismDrainTimers(dukpy.maxRounds)", context, maxRounds=self.max_timer_rounds)
        if pending:
            logger.warning(f"{pending} timers still pending in {context.name} "
                           f"after {self.max_timer_rounds} rounds")

    def add_message_listener(self, listener: MessageListener) -> None:
        """Register a host callback for messages posted by background scripts."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _on_script_message(self, extension_id: str, payload: Any) -> None:
        message = parse_message(payload)
        # The channel identifies the sender, whatever the payload claims
        message.extension_id = extension_id
        self.dispatcher.post(self._handle_message, extension_id, message)
        return None

    def _handle_message(self, extension_id: str, message: BackgroundMessage) -> None:
        if isinstance(message, ConsoleMessage):
            extension_logger(extension_id).log(CONSOLE_LEVELS.get(message.level, logging.INFO), message.text)
            return

        if isinstance(message, StorageGet):
            logger.debug(f"storage.local.get from {extension_id}: {message.keys!r}")
            return

        if isinstance(message, StorageSet):
            storage = self._storages.get(extension_id)
            if storage is None:
                logger.warning(f"No storage for {extension_id}, dropping storage.local.set")
                return
            try:
                storage.merge(message.items)
            except OSError as e:
                logger.error(f"Failed to write storage for {extension_id}: {e}")
                return
        elif isinstance(message, UpdateDynamicRules):
            logger.info(f"updateDynamicRules called by {extension_id}; dynamic rules are not applied")
        elif isinstance(message, UnknownMessage):
            logger.debug(f"Unknown message from {extension_id}: {message.body!r}")
            return

        for listener in list(self._listeners):
            try:
                listener(extension_id, message)
            except Exception as e:
                logger.error(f"Error in background message listener: {e}")

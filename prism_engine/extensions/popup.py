"""
Popup and options page host.

Builds the page contexts the UI shows for an extension's browser action
popup and options page. They get the same chrome.* shim as background
contexts, but runtime.sendMessage is answered synchronously by the
extension's background context.
"""

import logging
from typing import Any

from prism_engine.engine.base import ScriptContext, WebEngine
from prism_engine.errors import ExtensionError, ScriptError
from prism_engine.extensions.api_shim import API_SHIM
from prism_engine.extensions.background import CONSOLE_LEVELS, BackgroundRuntime, extension_base_url
from prism_engine.extensions.messages import (ConsoleMessage, SendMessage, StorageGet, StorageSet,
                                              UpdateDynamicRules, parse_message)
from prism_engine.extensions.models import Extension
from prism_engine.utils.logging import extension_logger

logger = logging.getLogger(__name__)


class PopupRequest:
    """An extension page loaded and ready for the UI to show."""

    def __init__(self, extension_id: str, file_path: str, context: ScriptContext):
        self.extension_id = extension_id
        self.file_path = file_path
        self.context = context

    def __repr__(self) -> str:
        return f"PopupRequest({self.extension_id!r}, {self.file_path!r})"


class ExtensionPopupHost:
    """Opens extension popups and options pages."""

    MESSAGE_CHANNEL = "extensionMessage"

    def __init__(self, engine: WebEngine, background_runtime: BackgroundRuntime):
        self.engine = engine
        self.background = background_runtime

    def open_popup(self, extension: Extension) -> PopupRequest:
        """
        Load the browser action popup of an extension.

        Raises:
            ExtensionError: If the extension has no usable popup
        """
        if not extension.popup_path:
            raise ExtensionError(f"{extension.name} has no popup")
        return self._open(extension, extension.popup_path, "popup")

    def open_options_page(self, extension: Extension) -> PopupRequest:
        """
        Load the options page of an extension.

        Raises:
            ExtensionError: If the extension has no usable options page
        """
        if not extension.options_page:
            raise ExtensionError(f"{extension.name} has no options page")
        return self._open(extension, extension.options_page, "options")

    def close(self, request: PopupRequest) -> None:
        self.engine.destroy_context(request.context)

    def _open(self, extension: Extension, relative_path: str, role: str) -> PopupRequest:
        file_path = extension.resolve_path(relative_path)
        if file_path is None:
            raise ExtensionError(f"{relative_path} is outside the directory of {extension.name}")

        context = self.engine.create_context(f"{role}:{extension.id}", "popup")
        self.engine.register_message_handler(
            context, self.MESSAGE_CHANNEL,
            lambda payload: self._on_page_message(extension, context, payload))

        try:
            self.engine.evaluate_script(
                API_SHIM, context,
                channel=self.MESSAGE_CHANNEL,
                extensionId=extension.id,
                storage=self.background.get_storage(extension).load(),
                baseURL=extension_base_url(extension))
            self.engine.load_local_file(file_path, extension.directory, context)
            self.engine.evaluate_script(
                "__prismDrainTimers(dukpy.maxRounds)", context,
                maxRounds=self.background.max_timer_rounds)
        except ScriptError:
            self.engine.destroy_context(context)
            raise

        logger.info(f"Opened {role} page {relative_path} of {extension.name}")
        return PopupRequest(extension.id, file_path, context)

    def _on_page_message(self, extension: Extension, context: ScriptContext, payload: Any) -> Any:
        message = parse_message(payload)

        if isinstance(message, SendMessage):
            sender = {"id": extension.id, "url": context.url}
            return self.background.send_message(extension.id, message.message, sender)

        if isinstance(message, StorageGet):
            return self.background.get_storage(extension).get(message.keys)

        if isinstance(message, StorageSet):
            self.background.dispatcher.post(self._store, extension, message.items)
            return None

        if isinstance(message, ConsoleMessage):
            extension_logger(extension.id).log(CONSOLE_LEVELS.get(message.level, logging.INFO), message.text)
        elif isinstance(message, UpdateDynamicRules):
            logger.info(f"updateDynamicRules called by {extension.id}; dynamic rules are not applied")
        else:
            logger.debug(f"Unknown message from {extension.id} page: {payload!r}")
        return None

    def _store(self, extension: Extension, items: dict) -> None:
        try:
            self.background.get_storage(extension).merge(items)
        except OSError as e:
            logger.error(f"Failed to write storage for {extension.id}: {e}")
            return
        self.background.notify_storage_changed(extension.id, items)

"""
Messages posted by extension scripts to the host.

Scripts post loosely shaped JSON objects; they are parsed here into one class
per known message type, with UnknownMessage for everything else.
"""

from typing import Any, Dict, List, Optional, Type, Union


class BackgroundMessage:
    """Base class of host-bound script messages."""

    type = None

    def __init__(self, extension_id: Optional[str] = None):
        self.extension_id = extension_id

    def __eq__(self, other: Any) -> bool:
        return type(self) is type(other) and self.__dict__ == other.__dict__

    def __repr__(self) -> str:
        fields = ", ".join(f"{key}={value!r}" for key, value in self.__dict__.items())
        return f"{type(self).__name__}({fields})"


class SendMessage(BackgroundMessage):
    """runtime.sendMessage from a background script."""

    type = "sendMessage"

    def __init__(self, message: Any = None, extension_id: Optional[str] = None):
        super().__init__(extension_id)
        self.message = message


class StorageGet(BackgroundMessage):
    type = "storageGet"

    def __init__(self, keys: Union[None, str, List[str], Dict[str, Any]] = None,
                 extension_id: Optional[str] = None):
        super().__init__(extension_id)
        self.keys = keys


class StorageSet(BackgroundMessage):
    type = "storageSet"

    def __init__(self, items: Optional[Dict[str, Any]] = None,
                 extension_id: Optional[str] = None):
        super().__init__(extension_id)
        self.items = items or {}


class UpdateDynamicRules(BackgroundMessage):
    """declarativeNetRequest.updateDynamicRules; the host does not apply it."""

    type = "updateDynamicRules"

    def __init__(self, options: Any = None, extension_id: Optional[str] = None):
        super().__init__(extension_id)
        self.options = options


class ConsoleMessage(BackgroundMessage):
    type = "console"

    def __init__(self, level: str = "log", text: str = "",
                 extension_id: Optional[str] = None):
        super().__init__(extension_id)
        self.level = level
        self.text = text


class UnknownMessage(BackgroundMessage):
    type = "unknown"

    def __init__(self, body: Any = None, extension_id: Optional[str] = None):
        super().__init__(extension_id)
        self.body = body


MESSAGE_TYPES: Dict[str, Type[BackgroundMessage]] = {
    cls.type: cls for cls in (SendMessage, StorageGet, StorageSet, UpdateDynamicRules, ConsoleMessage)
}


def parse_message(body: Any) -> BackgroundMessage:
    """
    Parse a script message body.

    Args:
        body: Decoded JSON posted by a script, shaped like
            {"type": ..., "extensionId": ..., <type specific fields>}

    Returns:
        BackgroundMessage: The typed message; UnknownMessage for anything unrecognized
    """
    if not isinstance(body, dict):
        return UnknownMessage(body)

    extension_id = body.get("extensionId")
    if not isinstance(extension_id, str):
        extension_id = None

    message_type = body.get("type")
    if message_type == SendMessage.type:
        return SendMessage(body.get("message"), extension_id)

    if message_type == StorageGet.type:
        keys = body.get("keys")
        if keys is not None and not isinstance(keys, (str, list, dict)):
            return UnknownMessage(body, extension_id)
        return StorageGet(keys, extension_id)

    if message_type == StorageSet.type:
        items = body.get("items")
        if not isinstance(items, dict):
            return UnknownMessage(body, extension_id)
        return StorageSet(items, extension_id)

    if message_type == UpdateDynamicRules.type:
        return UpdateDynamicRules(body.get("options"), extension_id)

    if message_type == ConsoleMessage.type:
        level = body.get("level")
        if level not in ("log", "info", "warn", "error", "debug"):
            level = "log"
        return ConsoleMessage(level, str(body.get("text", "")), extension_id)

    return UnknownMessage(body, extension_id)

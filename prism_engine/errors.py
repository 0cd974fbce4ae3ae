"""
Errors raised by the extension runtime.
"""

from typing import Optional


class ExtensionError(Exception):
    """Base class for extension runtime errors."""

    description = "Extension error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        message = self.description if not detail else f"{self.description}: {detail}"
        super().__init__(message)


class InstallError(ExtensionError):
    description = "Failed to install extension"


class InvalidPath(InstallError):
    description = "Invalid extension path"


class InvalidFormat(InstallError):
    description = "Extension must be a directory or zip file"


class MissingManifest(InstallError):
    description = "manifest.json not found"


class InvalidManifest(InstallError):
    description = "Invalid manifest.json format"


class FailedToLoad(InstallError):
    description = "Failed to load extension"


class FailedToExtract(InstallError):
    description = "Failed to extract zip file"


class UninstallError(ExtensionError):
    description = "Failed to uninstall extension"


class CompileError(ExtensionError):
    description = "Failed to compile content rules"


class MessageDeliveryDropped(ExtensionError):
    description = "Background context is not running"


class ScriptError(ExtensionError):
    description = "Script evaluation failed"

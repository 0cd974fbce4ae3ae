"""
In-memory model of installed extensions and their content scripts.
"""

import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

STORAGE_DIRECTORY = "_storage"
STORAGE_FILE = "local.json"


class RunAt(Enum):
    """When a content script runs relative to document loading."""
    DOCUMENT_START = "document_start"
    DOCUMENT_END = "document_end"
    DOCUMENT_IDLE = "document_idle"

    @classmethod
    def parse(cls, value: Any) -> 'RunAt':
        """Parse a run_at value, defaulting to document_idle."""
        try:
            return cls(value)
        except ValueError:
            return cls.DOCUMENT_IDLE


class ContentScript:
    """A content script declaration from a manifest."""

    def __init__(self,
                 matches: Optional[List[str]] = None,
                 js: Optional[List[str]] = None,
                 css: Optional[List[str]] = None,
                 run_at: RunAt = RunAt.DOCUMENT_IDLE,
                 all_frames: bool = False):
        self.matches = list(matches or [])
        self.js = list(js or [])
        self.css = list(css or [])
        self.run_at = run_at
        self.all_frames = all_frames

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matches": list(self.matches),
            "js": list(self.js),
            "css": list(self.css),
            "run_at": self.run_at.value,
            "all_frames": self.all_frames,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContentScript':
        return cls(
            matches=data.get("matches") or [],
            js=data.get("js") or [],
            css=data.get("css") or [],
            run_at=RunAt.parse(data.get("run_at")),
            all_frames=bool(data.get("all_frames", False)),
        )

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, ContentScript):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"ContentScript(matches={self.matches!r}, js={self.js!r}, css={self.css!r}, run_at={self.run_at.value!r})"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_date(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return _now()


class Extension:
    """
    An installed extension.

    `directory` is the sandbox root: every relative path declared by the
    manifest (scripts, popup, options page, rule files) resolves against it.
    """

    def __init__(self,
                 id: str,
                 name: str,
                 version: str,
                 directory: str,
                 manifest_path: Optional[str] = None,
                 description: Optional[str] = None,
                 author: Optional[str] = None,
                 manifest_version: int = 2,
                 is_enabled: bool = True,
                 install_date: Optional[datetime] = None,
                 update_date: Optional[datetime] = None,
                 content_scripts: Optional[List[ContentScript]] = None,
                 permissions: Optional[List[str]] = None,
                 host_permissions: Optional[List[str]] = None,
                 background_script: Optional[str] = None,
                 popup_path: Optional[str] = None,
                 options_page: Optional[str] = None,
                 rule_resources: Optional[List[str]] = None):
        self.id = id
        self.name = name
        self.version = version
        self.description = description
        self.author = author
        self.manifest_version = manifest_version
        self.is_enabled = is_enabled
        self.install_date = install_date or _now()
        self.update_date = update_date or self.install_date
        self.content_scripts = list(content_scripts or [])
        self.permissions = list(permissions or [])
        self.host_permissions = list(host_permissions or [])
        self.background_script = background_script
        self.popup_path = popup_path
        self.options_page = options_page
        self.rule_resources = list(rule_resources or [])
        self.directory = directory
        self.manifest_path = manifest_path or os.path.join(directory, "manifest.json")

    @property
    def storage_path(self) -> str:
        """Path of the extension's storage.local blob."""
        return os.path.join(self.directory, STORAGE_DIRECTORY, STORAGE_FILE)

    def resolve_path(self, relative_path: str) -> Optional[str]:
        """
        Resolve a manifest-relative path inside the extension directory.

        Returns:
            Absolute path, or None if the path escapes the directory
        """
        if not relative_path:
            return None
        root = os.path.realpath(self.directory)
        candidate = os.path.realpath(os.path.join(root, relative_path.lstrip("/\\")))
        if candidate != root and not candidate.startswith(root + os.sep):
            return None
        return candidate

    def apply_manifest(self, manifest) -> None:
        """Copy the manifest-derived fields from a parsed manifest."""
        self.name = manifest.name
        self.version = manifest.version
        self.description = manifest.description
        self.author = manifest.author
        self.manifest_version = manifest.manifest_version
        self.content_scripts = list(manifest.content_scripts)
        self.permissions = list(manifest.permissions)
        self.host_permissions = list(manifest.host_permissions)
        self.background_script = manifest.background_script
        self.popup_path = manifest.popup_path
        self.options_page = manifest.options_page
        self.rule_resources = list(manifest.rule_resources)

    @classmethod
    def from_manifest(cls, extension_id: str, manifest, directory: str,
                      manifest_path: Optional[str] = None) -> 'Extension':
        ext = cls(id=extension_id, name=manifest.name, version=manifest.version,
                  directory=directory, manifest_path=manifest_path)
        ext.apply_manifest(manifest)
        return ext

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a catalog record."""
        data = {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "manifestVersion": self.manifest_version,
            "isEnabled": self.is_enabled,
            "installDate": self.install_date.isoformat(),
            "updateDate": self.update_date.isoformat(),
            "contentScripts": [cs.to_dict() for cs in self.content_scripts],
            "permissions": list(self.permissions),
            "hostPermissions": list(self.host_permissions),
            "ruleResources": list(self.rule_resources),
            "directoryURL": self.directory,
            "manifestURL": self.manifest_path,
        }
        # Optional fields are omitted when absent
        for key, value in (("description", self.description),
                           ("author", self.author),
                           ("backgroundScript", self.background_script),
                           ("popupPath", self.popup_path),
                           ("optionsPage", self.options_page)):
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Extension':
        """
        Deserialize a catalog record.

        Raises:
            KeyError, TypeError, ValueError: If a required field is missing or malformed
        """
        install_date = _parse_date(data.get("installDate"))
        return cls(
            id=data["id"],
            name=data["name"],
            version=data["version"],
            directory=data["directoryURL"],
            manifest_path=data.get("manifestURL"),
            description=data.get("description"),
            author=data.get("author"),
            manifest_version=int(data.get("manifestVersion", 2)),
            is_enabled=bool(data.get("isEnabled", True)),
            install_date=install_date,
            update_date=_parse_date(data.get("updateDate", data.get("installDate"))),
            content_scripts=[ContentScript.from_dict(cs) for cs in data.get("contentScripts", [])],
            permissions=data.get("permissions", []),
            host_permissions=data.get("hostPermissions", []),
            background_script=data.get("backgroundScript"),
            popup_path=data.get("popupPath"),
            options_page=data.get("optionsPage"),
            rule_resources=data.get("ruleResources", []),
        )

    def __repr__(self) -> str:
        return f"Extension(id={self.id!r}, name={self.name!r}, version={self.version!r}, enabled={self.is_enabled})"

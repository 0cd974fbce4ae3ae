"""
Manifest parser.

Reads an extension's manifest.json into a normalized descriptor, handling
both Manifest V2 and V3 field layouts. Only declarative JSON is interpreted;
no extension code is executed here.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Union

from prism_engine.errors import InvalidManifest
from prism_engine.extensions.models import ContentScript, RunAt

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"


class ExtensionManifest:
    """Normalized view of a manifest.json document."""

    def __init__(self,
                 manifest_version: int,
                 name: str,
                 version: str,
                 description: Optional[str] = None,
                 author: Optional[str] = None,
                 content_scripts: Optional[List[ContentScript]] = None,
                 permissions: Optional[List[str]] = None,
                 host_permissions: Optional[List[str]] = None,
                 background_script: Optional[str] = None,
                 popup_path: Optional[str] = None,
                 options_page: Optional[str] = None,
                 rule_resources: Optional[List[str]] = None):
        self.manifest_version = manifest_version
        self.name = name
        self.version = version
        self.description = description
        self.author = author
        self.content_scripts = content_scripts or []
        self.permissions = permissions or []
        self.host_permissions = host_permissions or []
        self.background_script = background_script
        self.popup_path = popup_path
        self.options_page = options_page
        self.rule_resources = rule_resources or []

    def __repr__(self) -> str:
        return f"ExtensionManifest(name={self.name!r}, version={self.version!r}, manifest_version={self.manifest_version})"


def parse_manifest(data: Union[bytes, str]) -> ExtensionManifest:
    """
    Parse manifest.json content.

    Args:
        data: Raw manifest bytes or text

    Returns:
        ExtensionManifest: The normalized manifest

    Raises:
        InvalidManifest: If the JSON is malformed or a required field is missing
    """
    try:
        if isinstance(data, bytes):
            # utf-8-sig tolerates the BOM some packers emit
            data = data.decode('utf-8-sig')
        document = json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidManifest(f"malformed JSON ({e})")

    if not isinstance(document, dict):
        raise InvalidManifest("top level must be an object")

    manifest_version = document.get("manifest_version")
    # bool is an int subclass; true is not a manifest version
    if not isinstance(manifest_version, int) or isinstance(manifest_version, bool):
        raise InvalidManifest("manifest_version must be an integer")

    name = document.get("name")
    if not isinstance(name, str):
        raise InvalidManifest("name must be a string")

    version = document.get("version")
    if not isinstance(version, str):
        raise InvalidManifest("version must be a string")

    return ExtensionManifest(
        manifest_version=manifest_version,
        name=name,
        version=version,
        description=_optional_string(document, "description"),
        author=_parse_author(document.get("author")),
        content_scripts=_parse_content_scripts(document.get("content_scripts")),
        permissions=_string_list(document.get("permissions"), "permissions"),
        host_permissions=_string_list(document.get("host_permissions"), "host_permissions"),
        background_script=_background_script(document.get("background")),
        popup_path=_popup_path(document),
        options_page=_optional_string(document, "options_page"),
        rule_resources=_rule_resources(document.get("declarative_net_request")),
    )


def _optional_string(document: Dict[str, Any], key: str) -> Optional[str]:
    value = document.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        logger.debug(f"Ignoring non-string manifest field {key}")
        return None
    return value


def _parse_author(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    # Chrome also accepts {"email": "..."}
    if isinstance(value, dict) and isinstance(value.get("email"), str):
        return value["email"]
    return None


def _string_list(value: Any, field: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        logger.debug(f"Ignoring non-list manifest field {field}")
        return []
    result = []
    for item in value:
        if isinstance(item, str) and item not in result:
            result.append(item)
    return result


def _required_string_list(entry: Dict[str, Any], key: str, index: int) -> List[str]:
    value = entry.get(key)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise InvalidManifest(f"content_scripts[{index}].{key} must be a list of strings")
    return list(value)


def _parse_content_scripts(value: Any) -> List[ContentScript]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidManifest("content_scripts must be a list")

    scripts = []
    for index, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise InvalidManifest(f"content_scripts[{index}] must be an object")

        css = entry.get("css")
        if css is None:
            css = []
        elif not isinstance(css, list) or not all(isinstance(item, str) for item in css):
            raise InvalidManifest(f"content_scripts[{index}].css must be a list of strings")

        scripts.append(ContentScript(
            matches=_required_string_list(entry, "matches", index),
            js=_required_string_list(entry, "js", index),
            css=list(css),
            run_at=RunAt.parse(entry.get("run_at")),
            all_frames=entry.get("all_frames") is True,
        ))
    return scripts


def _background_script(background: Any) -> Optional[str]:
    """V3 service_worker wins over the first V2 background script."""
    if not isinstance(background, dict):
        return None
    service_worker = background.get("service_worker")
    if isinstance(service_worker, str) and service_worker:
        return service_worker
    scripts = background.get("scripts")
    if isinstance(scripts, list) and scripts and isinstance(scripts[0], str):
        return scripts[0]
    return None


def _popup_path(document: Dict[str, Any]) -> Optional[str]:
    """V3 action.default_popup, else V2 browser_action.default_popup."""
    for key in ("action", "browser_action"):
        action = document.get(key)
        if isinstance(action, dict):
            popup = action.get("default_popup")
            if isinstance(popup, str) and popup:
                return popup
    return None


def _rule_resources(value: Any) -> List[str]:
    if not isinstance(value, dict):
        return []
    resources = value.get("rule_resources")
    if not isinstance(resources, list):
        return []
    paths = []
    for resource in resources:
        if not isinstance(resource, dict):
            continue
        path = resource.get("path")
        if isinstance(path, str) and path and resource.get("enabled", True) is not False:
            paths.append(path)
    return paths

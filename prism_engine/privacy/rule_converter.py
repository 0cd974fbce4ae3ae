"""
Conversion of declarativeNetRequest rules to native content-blocking rules.

Extensions ship Chrome-style rule lists (``rules.json``); the engine's rule
compiler only understands the native trigger/action dialect. Conversion is
best-effort: anything that cannot be read yields an empty rule list so that
content blocking degrades instead of failing the extension.
"""

import json
import logging
import re
from typing import Any, Dict, List, Union

logger = logging.getLogger(__name__)

# Hard ceiling on converted rules to bound compile time and memory
MAX_RULES = 50000

BLOCKED_RESOURCE_TYPES = [
    "document", "image", "style-sheet", "script", "font",
    "raw", "media", "popup", "ping",
]

DOMAIN_ANCHOR = "||"
SUBDOMAIN_PREFIX = r"https?://([a-z0-9.-]+\.)?"

# Characters that end the host part of a ||domain filter
_HOST_TERMINATORS = re.compile(r"[\^/*|$?]")


def _domain_anchor_regex(url_filter: str) -> str:
    """
    Rewrite ``||domain^/path`` to a regex over http/https and any subdomain.
    """
    rest = url_filter[len(DOMAIN_ANCHOR):]
    end = _HOST_TERMINATORS.search(rest)
    host = rest if end is None else rest[:end.start()]
    tail = "" if end is None else rest[end.start():]

    pattern = SUBDOMAIN_PREFIX + re.escape(host)

    tail = tail.rstrip("|").rstrip("^")
    if tail.startswith("^"):
        tail = tail[1:]
        pattern += "[/:?&=]"
    if tail:
        pattern += re.escape(tail).replace(r"\*", ".*").replace(r"\^", "[/:?&=]")

    return pattern


def convert_rule(rule: Any) -> Union[Dict[str, Any], None]:
    """
    Convert one declarativeNetRequest rule.

    Returns:
        The native rule, or None if the rule has no usable urlFilter
    """
    if not isinstance(rule, dict):
        return None
    condition = rule.get("condition")
    if not isinstance(condition, dict):
        return None
    url_filter = condition.get("urlFilter")
    if not isinstance(url_filter, str) or not url_filter:
        return None

    if url_filter.startswith(DOMAIN_ANCHOR):
        pattern = _domain_anchor_regex(url_filter)
    else:
        pattern = url_filter

    return {
        "action": {
            "type": "block"
        },
        "trigger": {
            "url-filter": pattern,
            "resource-type": list(BLOCKED_RESOURCE_TYPES)
        }
    }


def convert_rule_list(source: Any) -> List[Dict[str, Any]]:
    """
    Convert a declarativeNetRequest rule list to native rules.

    Args:
        source: Raw JSON (bytes or str) or an already decoded list

    Returns:
        List of native rules in source order; empty if the source is unreadable
    """
    rules = source
    if isinstance(source, (bytes, bytearray)):
        try:
            source = bytes(source).decode('utf-8-sig')
        except UnicodeDecodeError as e:
            logger.error(f"Failed to decode declarativeNetRequest rules: {e}")
            return []
    if isinstance(source, str):
        try:
            rules = json.loads(source)
        except ValueError as e:
            logger.error(f"Failed to parse declarativeNetRequest rules: {e}")
            return []

    if not isinstance(rules, list):
        logger.error("declarativeNetRequest rules must be a JSON array")
        return []

    if len(rules) > MAX_RULES:
        logger.warning(f"Limiting to {MAX_RULES} rules out of {len(rules)}")

    native_rules = []
    skipped = 0
    for rule in rules[:MAX_RULES]:
        converted = convert_rule(rule)
        if converted is None:
            skipped += 1
            continue
        native_rules.append(converted)

    if skipped:
        logger.debug(f"Skipped {skipped} rules without condition.urlFilter")

    return native_rules


def convert_rules(source: Any) -> str:
    """
    Convert a declarativeNetRequest rule list to a native rule list document.

    Never raises; unreadable input converts to ``"[]"``.

    Args:
        source: Raw JSON (bytes or str) or an already decoded list

    Returns:
        str: JSON text of the native rule list
    """
    try:
        native_rules = convert_rule_list(source)
    except Exception as e:
        logger.error(f"Unexpected error converting rules: {e}")
        return "[]"

    if not native_rules:
        return "[]"

    logger.info(f"Converted {len(native_rules)} declarativeNetRequest rules to native format")
    return json.dumps(native_rules, indent=2)

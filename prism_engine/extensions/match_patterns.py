"""
Match-pattern matching for content script scoping.

Patterns are recognized in order of strictness:

1. ``<all_urls>``
2. Match patterns with a scheme separator and a wildcard (``*://*.example.com/*``)
3. Plain ``http://`` / ``https://`` prefixes
4. Scheme-less wildcard patterns, matched as an unanchored regex
5. Anything else, matched as a substring

The permissive tail keeps malformed third-party manifests working.
"""

import logging
import re
import urllib.parse
from typing import Iterable, Optional, Pattern

logger = logging.getLogger(__name__)

ALL_URLS = "<all_urls>"
MATCHABLE_SCHEMES = ("http", "https")


def _wildcard_regex(text: str) -> str:
    """Escape text for a regex, turning * into .*"""
    return re.escape(text).replace(r"\*", ".*")


def _compile(pattern: str, flags: int = 0) -> Optional[Pattern]:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        logger.debug(f"Unusable match pattern regex {pattern!r}: {e}")
        return None


def _match_scheme_pattern(pattern: str, scheme: str, host: str, path: str) -> bool:
    scheme_pattern, _, host_path = pattern.partition("://")

    if scheme_pattern not in ("*", scheme):
        return False

    slash = host_path.find("/")
    if slash >= 0:
        host_pattern, path_pattern = host_path[:slash], host_path[slash:]
    else:
        host_pattern, path_pattern = host_path, "/*"

    # *.example.com needs at least one label before example.com
    host_re = _compile(_wildcard_regex(host_pattern), re.IGNORECASE)
    if host_re is None or not host_re.fullmatch(host):
        return False

    path_re = _compile(_wildcard_regex(path_pattern))
    return path_re is not None and path_re.fullmatch(path) is not None


def match_pattern(url: str, pattern: str) -> bool:
    """
    Check a single pattern against a URL.

    Args:
        url: Navigation target
        pattern: Declared match pattern

    Returns:
        bool: True if the pattern matches
    """
    return matches_url(url, [pattern])


def matches_url(url: str, patterns: Iterable[str]) -> bool:
    """
    Check whether any pattern matches a URL.

    Only http and https URLs can match, whatever the patterns say.

    Args:
        url: Navigation target
        patterns: Declared match patterns

    Returns:
        bool: True on the first matching pattern
    """
    try:
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return False

    scheme = parsed.scheme.lower()
    if scheme not in MATCHABLE_SCHEMES:
        return False

    host = parsed.hostname or ""
    path = parsed.path or "/"

    for pattern in patterns:
        if not isinstance(pattern, str) or not pattern:
            continue

        if pattern == ALL_URLS:
            return True

        if "://" in pattern and "*" in pattern:
            if _match_scheme_pattern(pattern, scheme, host, path):
                return True
        elif pattern.startswith(("http://", "https://")):
            if url.startswith(pattern):
                return True
        elif "*" in pattern:
            regex = _compile(_wildcard_regex(pattern))
            if regex is not None and regex.search(url):
                return True
        elif pattern in url:
            return True

    return False

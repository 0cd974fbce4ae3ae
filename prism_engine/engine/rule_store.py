"""
Content rule store.

Compiles native content-blocking rule lists (trigger/action JSON) into
matchers and keeps them by identifier. With a store directory, the source of
every successful compile is written to disk so that a later session can
fall back to it when a recompile fails.
"""

import json
import logging
import os
import re
import threading
import urllib.parse
from typing import Any, Dict, List, Optional, Pattern

from prism_engine.errors import CompileError

logger = logging.getLogger(__name__)

ACTION_TYPES = {"block", "block-cookies", "css-display-none", "ignore-previous-rules", "make-https"}

RESOURCE_TYPES = {
    "document", "image", "style-sheet", "script", "font", "raw", "svg-document",
    "media", "popup", "ping", "fetch", "websocket", "other",
}


def _domain_matches(host: str, domains: List[str]) -> bool:
    for domain in domains:
        domain = domain.lower()
        if domain.startswith("*"):
            base = domain[1:].lstrip(".")
            if host == base or host.endswith("." + base):
                return True
        elif host == domain:
            return True
    return False


class NativeRule:
    """One compiled trigger/action pair."""

    def __init__(self, action_type: str, url_filter: Pattern,
                 resource_types: Optional[List[str]] = None,
                 if_domain: Optional[List[str]] = None,
                 unless_domain: Optional[List[str]] = None,
                 selector: Optional[str] = None):
        self.action_type = action_type
        self.url_filter = url_filter
        self.resource_types = set(resource_types) if resource_types else None
        self.if_domain = if_domain
        self.unless_domain = unless_domain
        self.selector = selector

    def matches(self, url: str, resource_type: str, document_host: str) -> bool:
        if self.resource_types is not None and resource_type not in self.resource_types:
            return False
        if self.if_domain is not None and not _domain_matches(document_host, self.if_domain):
            return False
        if self.unless_domain is not None and _domain_matches(document_host, self.unless_domain):
            return False
        return self.url_filter.search(url) is not None


def _string_list(trigger: Dict[str, Any], key: str, index: int) -> Optional[List[str]]:
    value = trigger.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise CompileError(f"rule {index}: trigger.{key} must be a list of strings")
    return value


def compile_rule(rule: Any, index: int) -> NativeRule:
    """
    Compile one native rule.

    Raises:
        CompileError: If the rule is malformed
    """
    if not isinstance(rule, dict):
        raise CompileError(f"rule {index} is not an object")

    action = rule.get("action")
    trigger = rule.get("trigger")
    if not isinstance(action, dict) or not isinstance(trigger, dict):
        raise CompileError(f"rule {index} needs an action and a trigger")

    action_type = action.get("type")
    if action_type not in ACTION_TYPES:
        raise CompileError(f"rule {index}: unknown action type {action_type!r}")

    selector = action.get("selector")
    if action_type == "css-display-none" and not isinstance(selector, str):
        raise CompileError(f"rule {index}: css-display-none needs a selector")

    url_filter = trigger.get("url-filter")
    if not isinstance(url_filter, str) or not url_filter:
        raise CompileError(f"rule {index}: trigger.url-filter is required")

    flags = 0 if trigger.get("url-filter-is-case-sensitive") is True else re.IGNORECASE
    try:
        pattern = re.compile(url_filter, flags)
    except re.error as e:
        raise CompileError(f"rule {index}: invalid url-filter {url_filter!r} ({e})")

    resource_types = _string_list(trigger, "resource-type", index)
    if resource_types:
        unknown = set(resource_types) - RESOURCE_TYPES
        if unknown:
            raise CompileError(f"rule {index}: unknown resource types {sorted(unknown)}")

    return NativeRule(
        action_type=action_type,
        url_filter=pattern,
        resource_types=resource_types,
        if_domain=_string_list(trigger, "if-domain", index),
        unless_domain=_string_list(trigger, "unless-domain", index),
        selector=selector,
    )


class ContentRuleList:
    """A compiled rule list; the handle attached to page contexts."""

    def __init__(self, identifier: str, rules: List[NativeRule], source: str):
        self.identifier = identifier
        self.rules = rules
        self.source = source

    @property
    def rule_count(self) -> int:
        return len(self.rules)

    def action_for(self, url: str, resource_type: str = "document",
                   document_url: Optional[str] = None) -> Optional[str]:
        """
        Evaluate the rules in order; the last matching rule decides.

        Returns:
            The winning action type, or None
        """
        document_host = ""
        if document_url:
            document_host = (urllib.parse.urlsplit(document_url).hostname or "").lower()

        action = None
        for rule in self.rules:
            if rule.matches(url, resource_type, document_host):
                action = None if rule.action_type == "ignore-previous-rules" else rule.action_type
        return action

    def should_block(self, url: str, resource_type: str = "document",
                     document_url: Optional[str] = None) -> bool:
        return self.action_for(url, resource_type, document_url) == "block"

    def __repr__(self) -> str:
        return f"ContentRuleList({self.identifier!r}, rules={self.rule_count})"


def compile_rule_list(identifier: str, rules_json: str) -> ContentRuleList:
    """
    Compile a native rule list document.

    Raises:
        CompileError: If the document or any rule is malformed
    """
    try:
        rules = json.loads(rules_json)
    except (TypeError, ValueError) as e:
        raise CompileError(f"{identifier}: malformed rule list ({e})")

    if not isinstance(rules, list):
        raise CompileError(f"{identifier}: rule list must be a JSON array")

    compiled = [compile_rule(rule, index) for index, rule in enumerate(rules)]
    return ContentRuleList(identifier, compiled, rules_json)


class RuleStore:
    """Compiled rule lists by identifier, optionally persisted to a directory."""

    def __init__(self, store_dir: Optional[str] = None):
        self.store_dir = store_dir
        self._rule_lists: Dict[str, ContentRuleList] = {}
        self._lock = threading.Lock()

        if store_dir:
            os.makedirs(store_dir, exist_ok=True)

    def _source_path(self, identifier: str) -> Optional[str]:
        if not self.store_dir:
            return None
        filename = re.sub(r'[^\w\-.]', '_', identifier) + '.json'
        return os.path.join(self.store_dir, filename)

    def compile(self, identifier: str, rules_json: str) -> ContentRuleList:
        rule_list = compile_rule_list(identifier, rules_json)

        with self._lock:
            self._rule_lists[identifier] = rule_list

        path = self._source_path(identifier)
        if path:
            try:
                with open(path, 'w', encoding='utf-8') as f:
                    f.write(rules_json)
            except OSError as e:
                logger.warning(f"Could not persist rule list {identifier}: {e}")

        return rule_list

    def lookup(self, identifier: str) -> Optional[ContentRuleList]:
        with self._lock:
            rule_list = self._rule_lists.get(identifier)
        if rule_list is not None:
            return rule_list

        path = self._source_path(identifier)
        if not path or not os.path.exists(path):
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                rule_list = compile_rule_list(identifier, f.read())
        except (OSError, CompileError) as e:
            logger.warning(f"Stored rule list {identifier} is unusable: {e}")
            return None

        with self._lock:
            self._rule_lists[identifier] = rule_list
        return rule_list

    def remove(self, identifier: str) -> bool:
        with self._lock:
            removed = self._rule_lists.pop(identifier, None) is not None

        path = self._source_path(identifier)
        if path and os.path.exists(path):
            os.remove(path)
            removed = True
        return removed

    def identifiers(self) -> List[str]:
        with self._lock:
            return list(self._rule_lists.keys())

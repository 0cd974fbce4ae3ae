"""
Content blocking for extensions.
This module compiles the network rules shipped by extensions and attaches
them to page contexts.
"""

import concurrent.futures
import json
import logging
import os
import threading
from typing import Any, Dict, Iterable, Optional, Tuple

from prism_engine.engine.base import ScriptContext, WebEngine
from prism_engine.engine.rule_store import ContentRuleList
from prism_engine.errors import CompileError
from prism_engine.privacy.rule_converter import MAX_RULES, convert_rule_list
from prism_engine.utils.config import Config
from prism_engine.utils.dispatch import InlineDispatcher, on_owner
from prism_engine.utils.logging import PerformanceLogger

logger = logging.getLogger(__name__)


class CompiledRuleSet:
    """The compiled rules of one extension."""

    NATIVE = "native"
    CONVERTED = "converted"
    FALLBACK = "fallback"

    def __init__(self, handle: ContentRuleList, rule_count: int, origin: str):
        self.handle = handle
        self.rule_count = rule_count
        self.origin = origin

    def __repr__(self) -> str:
        return f"CompiledRuleSet({self.handle.identifier!r}, rules={self.rule_count}, origin={self.origin!r})"


class ContentBlockingManager:
    """Compiles extension rule lists through the engine's rule store."""

    NATIVE_RULES_FILE = "webkit-rules.json"
    CHROME_RULES_FILE = "rules.json"

    def __init__(self, engine: WebEngine, dispatcher=None, config: Optional[Config] = None):
        """
        Initialize the content blocking manager.

        Args:
            engine: Engine owning the rule store
            dispatcher: Owner-context dispatcher; defaults to inline dispatching
            config: Configuration object
        """
        self.engine = engine
        self.dispatcher = dispatcher or InlineDispatcher()
        self.enabled = config.get("content_blocking.enabled", True) if config is not None else True

        self._rule_sets: Dict[str, CompiledRuleSet] = {}
        self._is_compiling = False
        self._lock = threading.Lock()
        self._perf = PerformanceLogger(logger, "Content blocking")

        logger.debug(f"Content blocking manager initialized (enabled: {self.enabled})")

    @staticmethod
    def identifier_for(extension_id: str) -> str:
        """Rule store identifier of an extension's rule list."""
        return f"extension-{extension_id}"

    def _begin_compile(self) -> bool:
        with self._lock:
            if self._is_compiling:
                logger.warning("Already compiling rules, skipping")
                return False
            self._is_compiling = True
            return True

    def _end_compile(self) -> None:
        with self._lock:
            self._is_compiling = False

    @on_owner
    def load_rules_for_extension(self, extension) -> Optional[CompiledRuleSet]:
        """
        Compile the rules of an extension.

        Only one compilation runs at a time; a request made while another
        is in flight is dropped. If compilation fails, a rule list compiled
        earlier under the same identifier is used instead.

        Returns:
            Optional[CompiledRuleSet]: The active rule set, or None
        """
        if not self.enabled:
            return None
        if not self._begin_compile():
            return None

        try:
            rule_set = self._build_rule_set(extension)
        finally:
            self._end_compile()

        return self._store_rule_set(extension.id, rule_set)

    def load_rules_for_extension_async(self, extension) -> concurrent.futures.Future:
        """
        Compile the rules of an extension on a worker.

        Returns:
            Future resolved with the active rule set, or None
        """
        if not self.enabled or not self._begin_compile():
            future = concurrent.futures.Future()
            future.set_result(None)
            return future

        def complete(rule_set, error):
            self._end_compile()
            if error is not None:
                logger.error(f"Error compiling rules for {extension.name}: {error}")
                return None
            return self._store_rule_set(extension.id, rule_set)

        return self.dispatcher.run_async(lambda: self._build_rule_set(extension), complete)

    def _store_rule_set(self, extension_id: str, rule_set: Optional[CompiledRuleSet]) -> Optional[CompiledRuleSet]:
        if rule_set is None:
            self._rule_sets.pop(extension_id, None)
        else:
            self._rule_sets[extension_id] = rule_set
        return rule_set

    def _build_rule_set(self, extension) -> Optional[CompiledRuleSet]:
        located = self._locate_rules(extension)
        if located is None:
            logger.debug(f"Extension {extension.id} has no content blocking rules")
            return None

        rules_json, origin = located
        identifier = self.identifier_for(extension.id)

        self._perf.start(identifier)
        try:
            handle = self.engine.compile_rule_list(identifier, rules_json)
            logger.info(f"Compiled {handle.rule_count} content blocking rules for {extension.name}")
            return CompiledRuleSet(handle, handle.rule_count, origin)
        except CompileError as e:
            logger.error(f"Failed to compile content blocking rules for {extension.name}: {e}")
        finally:
            self._perf.end(identifier)

        handle = self.engine.lookup_rule_list(identifier)
        if handle is None:
            return None
        logger.info(f"Using previously compiled rules for {extension.name}")
        return CompiledRuleSet(handle, handle.rule_count, CompiledRuleSet.FALLBACK)

    def _locate_rules(self, extension) -> Optional[Tuple[str, str]]:
        native_path = extension.resolve_path(self.NATIVE_RULES_FILE)
        if native_path and os.path.isfile(native_path):
            try:
                with open(native_path, 'r', encoding='utf-8') as f:
                    return f.read(), CompiledRuleSet.NATIVE
            except (OSError, UnicodeDecodeError) as e:
                logger.error(f"Cannot read {self.NATIVE_RULES_FILE} of {extension.id}: {e}")

        found = False
        rules = []
        for relative_path in extension.rule_resources or [self.CHROME_RULES_FILE]:
            path = extension.resolve_path(relative_path)
            if not path or not os.path.isfile(path):
                continue
            try:
                with open(path, 'rb') as f:
                    data = f.read()
            except OSError as e:
                logger.error(f"Cannot read {relative_path} of {extension.id}: {e}")
                continue
            found = True
            rules.extend(convert_rule_list(data))

        if not found:
            return None

        if len(rules) > MAX_RULES:
            logger.warning(f"Limiting {extension.id} to {MAX_RULES} rules out of {len(rules)}")
            rules = rules[:MAX_RULES]
        return json.dumps(rules), CompiledRuleSet.CONVERTED

    def apply_to(self, context: ScriptContext, extensions: Iterable) -> int:
        """
        Attach the compiled rules of every enabled extension to a page context.

        Contexts created before a rule set compiled only receive it when
        this is called again.

        Returns:
            int: Number of rule sets attached
        """
        if not self.enabled:
            return 0

        applied = 0
        for extension in extensions:
            if not extension.is_enabled:
                continue
            rule_set = self._rule_sets.get(extension.id)
            if rule_set is None:
                continue
            self.engine.attach_rule_list(rule_set.handle, context)
            applied += 1

        if applied:
            logger.debug(f"Applied {applied} rule sets to {context.name}")
        return applied

    @on_owner
    def remove_rules_for_extension(self, extension_id: str) -> bool:
        """
        Forget the rules of an extension and remove them from the rule store.

        Returns:
            bool: True if anything was removed
        """
        removed = self._rule_sets.pop(extension_id, None) is not None
        try:
            removed = self.engine.remove_rule_list(self.identifier_for(extension_id)) or removed
        except CompileError as e:
            logger.warning(f"Could not remove rules of {extension_id}: {e}")
        return removed

    def get_rule_set(self, extension_id: str) -> Optional[CompiledRuleSet]:
        return self._rule_sets.get(extension_id)

    @on_owner
    def reload_all_rules(self, extensions: Iterable) -> int:
        """
        Compile the rules of every enabled extension, one after another.

        Returns:
            int: Number of extensions with active rules
        """
        loaded = 0
        for extension in extensions:
            if extension.is_enabled and self.load_rules_for_extension(extension) is not None:
                loaded += 1
        return loaded

    def get_stats(self) -> Dict[str, Any]:
        origins: Dict[str, int] = {}
        for rule_set in self._rule_sets.values():
            origins[rule_set.origin] = origins.get(rule_set.origin, 0) + 1
        return {
            "enabled": self.enabled,
            "rule_sets": len(self._rule_sets),
            "total_rules": sum(rule_set.rule_count for rule_set in self._rule_sets.values()),
            "origins": origins,
        }

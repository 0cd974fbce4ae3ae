"""
Interface to the page engine.

The extension runtime never renders or fetches anything itself. It drives an
engine through this interface: script contexts, script evaluation, sandboxed
local file loading, message channels and the content rule store.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from prism_engine.engine.rule_store import ContentRuleList

MessageHandler = Callable[[Any], Any]

_context_ids = itertools.count(1)


class ScriptContext:
    """A script execution environment (page, popup or background)."""

    def __init__(self, name: str, kind: str = "page"):
        self.id = next(_context_ids)
        self.name = name
        self.kind = kind
        self.url: Optional[str] = None
        self.sandbox_root: Optional[str] = None
        self.attached_rule_lists: Dict[str, ContentRuleList] = {}
        self.message_handlers: Dict[str, MessageHandler] = {}
        self.destroyed = False
        self.lock = threading.RLock()

    def __repr__(self) -> str:
        return f"ScriptContext({self.id}, {self.name!r}, kind={self.kind!r})"


class WebEngine(ABC):
    """Capabilities the extension runtime consumes from the engine."""

    @abstractmethod
    def create_context(self, name: str, kind: str = "page") -> ScriptContext:
        """Create a new isolated script context."""

    @abstractmethod
    def destroy_context(self, context: ScriptContext) -> None:
        """Release the engine resources held by a context."""

    @abstractmethod
    def evaluate_script(self, source: str, context: ScriptContext, **variables) -> Any:
        """
        Evaluate source in a context.

        Raises:
            ScriptError: If evaluation fails
        """

    @abstractmethod
    def load_local_file(self, path: str, sandbox_root: str, context: ScriptContext) -> None:
        """
        Load a local file into a context, allowing reads only under sandbox_root.

        Raises:
            ScriptError: If the file is missing or outside the sandbox
        """

    @abstractmethod
    def register_message_handler(self, context: ScriptContext, channel: str,
                                 handler: MessageHandler) -> None:
        """Deliver (channel, payload) messages posted by scripts in context to handler."""

    @abstractmethod
    def compile_rule_list(self, identifier: str, rules_json: str) -> ContentRuleList:
        """
        Compile a native rule list.

        Raises:
            CompileError: If the rule list is rejected
        """

    @abstractmethod
    def lookup_rule_list(self, identifier: str) -> Optional[ContentRuleList]:
        """Return a previously compiled rule list still in the rule store."""

    @abstractmethod
    def remove_rule_list(self, identifier: str) -> bool:
        """Remove a compiled rule list from the rule store."""

    def attach_rule_list(self, handle: ContentRuleList, context: ScriptContext) -> None:
        """Attach a compiled rule list to a context. Reattaching is harmless."""
        with context.lock:
            context.attached_rule_lists[handle.identifier] = handle

    def should_block_request(self, context: ScriptContext, url: str,
                             resource_type: str = "document") -> bool:
        """Check a request from context against its attached rule lists."""
        with context.lock:
            rule_lists = list(context.attached_rule_lists.values())
        return any(rule_list.should_block(url, resource_type, context.url)
                   for rule_list in rule_lists)

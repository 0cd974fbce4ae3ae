"""
Engine implementation backed by dukpy.

Each script context owns its own Duktape interpreter, so extension globals
never leak between contexts. Scripts post messages to the host through
dukpy's ``call_python(channel, payload)``.
"""

import logging
import os
import pathlib
import time
from typing import Any, Optional

import dukpy
from bs4 import BeautifulSoup

from prism_engine.engine.base import MessageHandler, ScriptContext, WebEngine
from prism_engine.engine.rule_store import ContentRuleList, RuleStore
from prism_engine.errors import CompileError, ScriptError

logger = logging.getLogger(__name__)

# Minimal window/document environment for page and popup contexts. Injected
# stylesheets are recorded on document.__appended so callers can inspect them.
PAGE_ENVIRONMENT = """
var window = (function () { return this; })();
var self = window;

function __prismElement(tagName) {
    return {
        tagName: String(tagName || "div").toUpperCase(),
        textContent: "",
        innerHTML: "",
        style: {},
        children: [],
        attributes: {},
        appendChild: function (child) { this.children.push(child); return child; },
        setAttribute: function (name, value) { this.attributes[name] = String(value); },
        getAttribute: function (name) { return this.attributes.hasOwnProperty(name) ? this.attributes[name] : null; },
        addEventListener: function () {}
    };
}

var document = {
    __appended: [],
    readyState: "loading",
    createElement: function (tagName) { return __prismElement(tagName); },
    getElementById: function () { return null; },
    getElementsByTagName: function () { return []; },
    getElementsByClassName: function () { return []; },
    querySelector: function () { return null; },
    querySelectorAll: function () { return []; },
    addEventListener: function () {}
};
document.head = __prismElement("head");
document.body = __prismElement("body");
document.documentElement = __prismElement("html");
document.head.appendChild = function (child) { document.__appended.push(child); return child; };
document.documentElement.appendChild = document.head.appendChild;

window.location = { href: "about:blank", protocol: "about:", host: "", pathname: "blank" };
window.addEventListener = function () {};
"""

BACKGROUND_ENVIRONMENT = """
var window = (function () { return this; })();
var self = window;
self.addEventListener = function () {};
"""

ENVIRONMENTS = {
    "page": PAGE_ENVIRONMENT,
    "popup": PAGE_ENVIRONMENT,
    "background": BACKGROUND_ENVIRONMENT,
}


class DukpyEngine(WebEngine):
    """WebEngine running scripts in per-context dukpy interpreters."""

    def __init__(self, rule_store_dir: Optional[str] = None):
        """
        Initialize the engine.

        Args:
            rule_store_dir: Directory persisting compiled rule list sources
        """
        self.rule_store = RuleStore(rule_store_dir)
        self._interpreters = {}

        logger.debug(f"dukpy engine initialized (rule store: {rule_store_dir or 'memory'})")

    def create_context(self, name: str, kind: str = "page") -> ScriptContext:
        context = ScriptContext(name, kind)
        interpreter = dukpy.JSInterpreter()
        interpreter.evaljs(ENVIRONMENTS.get(kind, PAGE_ENVIRONMENT))
        self._interpreters[context.id] = interpreter

        logger.debug(f"Created {kind} context {name}")
        return context

    def destroy_context(self, context: ScriptContext) -> None:
        with context.lock:
            context.destroyed = True
            context.message_handlers.clear()
            context.attached_rule_lists.clear()
            self._interpreters.pop(context.id, None)

        logger.debug(f"Destroyed context {context.name}")

    def _interpreter(self, context: ScriptContext) -> dukpy.JSInterpreter:
        interpreter = self._interpreters.get(context.id)
        if context.destroyed or interpreter is None:
            raise ScriptError(f"context {context.name} has been destroyed")
        return interpreter

    def evaluate_script(self, source: str, context: ScriptContext, **variables) -> Any:
        start_time = time.time()

        with context.lock:
            interpreter = self._interpreter(context)
            try:
                result = interpreter.evaljs(source, **variables)
            except dukpy.JSRuntimeError as e:
                raise ScriptError(str(e))
            except (TypeError, ValueError) as e:
                # Variables or the result could not cross the JSON boundary
                raise ScriptError(f"unserializable value ({e})")

        execution_time = (time.time() - start_time) * 1000
        logger.debug(f"JavaScript executed in {context.name} in {execution_time:.2f}ms")
        return result

    def register_message_handler(self, context: ScriptContext, channel: str,
                                 handler: MessageHandler) -> None:
        with context.lock:
            interpreter = self._interpreter(context)
            context.message_handlers[channel] = handler

            def _deliver(payload=None):
                try:
                    return handler(payload)
                except Exception as e:
                    logger.error(f"Error handling {channel} message from {context.name}: {e}")
                    return None

            interpreter.export_function(channel, _deliver)

    def load_local_file(self, path: str, sandbox_root: str, context: ScriptContext) -> None:
        """
        Load a local file into a context.

        HTML documents have their external ``<script src>`` files evaluated in
        order. Inline scripts are not run, as extension pages forbid them.
        Every file read must stay under sandbox_root.
        """
        root = os.path.realpath(sandbox_root)
        file_path = self._sandboxed(path, root)

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise ScriptError(f"cannot read {path}: {e}")

        context.url = pathlib.Path(file_path).as_uri()
        context.sandbox_root = root

        if not file_path.lower().endswith((".html", ".htm")):
            self.evaluate_script(content, context)
            return

        self.evaluate_script(
            "window.location = {href: dukpy.href, protocol: 'file:', host: '', pathname: dukpy.path};",
            context, href=context.url, path=file_path)

        soup = BeautifulSoup(content, "html.parser")
        base_dir = os.path.dirname(file_path)
        for tag in soup.find_all("script"):
            src = tag.get("src")
            if not src:
                logger.debug(f"Skipping inline script in {path}")
                continue
            if "://" in src:
                logger.warning(f"Refusing remote script {src} in {path}")
                continue
            script_path = self._sandboxed(os.path.join(base_dir, src.lstrip("/")), root)
            try:
                with open(script_path, 'r', encoding='utf-8') as f:
                    self.evaluate_script(f.read(), context)
            except OSError as e:
                logger.warning(f"Skipping unreadable script {src} in {path}: {e}")
            except ScriptError as e:
                logger.error(f"Error in script {src} of {path}: {e}")

        self.evaluate_script("document.readyState = 'complete';", context)

    def _sandboxed(self, path: str, root: str) -> str:
        candidate = os.path.realpath(path if os.path.isabs(path) else os.path.join(root, path))
        if candidate != root and not candidate.startswith(root + os.sep):
            raise ScriptError(f"{path} is outside the sandbox {root}")
        if not os.path.isfile(candidate):
            raise ScriptError(f"{path} does not exist")
        return candidate

    def load_url(self, context: ScriptContext, url: str) -> bool:
        """
        Navigate a page context, honouring its attached content rules.

        Returns:
            bool: False if the navigation was blocked
        """
        if self.should_block_request(context, url, "document"):
            logger.info(f"Blocked navigation to {url} in {context.name}")
            return False

        context.url = url
        self.evaluate_script(
            "window.location = {href: dukpy.href, protocol: dukpy.href.split(':')[0] + ':', host: '', pathname: ''};",
            context, href=url)
        return True

    def compile_rule_list(self, identifier: str, rules_json: str) -> ContentRuleList:
        return self.rule_store.compile(identifier, rules_json)

    def lookup_rule_list(self, identifier: str) -> Optional[ContentRuleList]:
        return self.rule_store.lookup(identifier)

    def remove_rule_list(self, identifier: str) -> bool:
        try:
            return self.rule_store.remove(identifier)
        except OSError as e:
            raise CompileError(f"cannot remove rule list {identifier}: {e}")

    def close(self) -> None:
        """Release every interpreter."""
        self._interpreters.clear()
        logger.debug("dukpy engine closed")

"""
Content script injection.

Works out which content scripts apply to a navigation and evaluates them in
the page context. Every payload is collected before any is evaluated, so a
navigation always sees the declared order.
"""

import logging
from typing import List, Optional

from prism_engine.engine.base import ScriptContext, WebEngine
from prism_engine.errors import ScriptError
from prism_engine.extensions.match_patterns import matches_url
from prism_engine.extensions.models import Extension, RunAt

logger = logging.getLogger(__name__)

_JS_ESCAPES = {
    "\\": "\\\\",
    "\"": "\\\"",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def escape_for_javascript(text: str) -> str:
    """Escape text for use inside a double-quoted JavaScript string literal."""
    return "".join(_JS_ESCAPES.get(char, char) for char in text)


def wrap_css(css: str) -> str:
    """Build a script that appends css as a new <style> element."""
    return (
        "(function() {\n"
        "    var style = document.createElement('style');\n"
        f"    style.textContent = \"{escape_for_javascript(css)}\";\n"
        "    (document.head || document.documentElement).appendChild(style);\n"
        "})();"
    )


class InjectionPayload:
    """A script ready to be evaluated in a page context."""

    CSS = "css"
    JS = "js"

    def __init__(self, kind: str, source: str, extension_id: str, file: str,
                 run_at: RunAt = RunAt.DOCUMENT_IDLE):
        self.kind = kind
        self.source = source
        self.extension_id = extension_id
        self.file = file
        self.run_at = run_at

    def __repr__(self) -> str:
        return f"InjectionPayload({self.kind!r}, {self.extension_id!r}, {self.file!r})"


class ContentScriptInjector:
    """Injects the content scripts of enabled extensions into pages."""

    def __init__(self, registry):
        """
        Initialize the injector.

        Args:
            registry: ExtensionManager providing the enabled extensions
        """
        self.registry = registry

    def scripts_for(self, url: str, run_at: Optional[RunAt] = None) -> List[InjectionPayload]:
        """
        Collect the payloads to inject for a URL.

        Extensions are taken in registry order and content scripts in
        declaration order. For each matching content script its CSS comes
        first, then its JavaScript. Files that cannot be read are skipped.

        Args:
            url: URL of the navigation
            run_at: Only include content scripts declared for this stage

        Returns:
            List[InjectionPayload]: Payloads in evaluation order
        """
        payloads = []

        for extension in self.registry.get_enabled_extensions():
            for content_script in extension.content_scripts:
                if run_at is not None and content_script.run_at != run_at:
                    continue
                if not matches_url(url, content_script.matches):
                    continue

                for css_file in content_script.css:
                    css = self._read(extension, css_file)
                    if css is not None:
                        payloads.append(InjectionPayload(
                            InjectionPayload.CSS, wrap_css(css), extension.id, css_file, content_script.run_at))

                for js_file in content_script.js:
                    js = self._read(extension, js_file)
                    if js is not None:
                        payloads.append(InjectionPayload(
                            InjectionPayload.JS, js, extension.id, js_file, content_script.run_at))

        return payloads

    def _read(self, extension: Extension, relative_path: str) -> Optional[str]:
        path = extension.resolve_path(relative_path)
        if path is None:
            logger.warning(f"Skipping {relative_path} of {extension.id}: outside the extension directory")
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Skipping unreadable {relative_path} of {extension.id}: {e}")
            return None

    def inject(self, url: str, context: ScriptContext, engine: WebEngine,
               run_at: Optional[RunAt] = None) -> int:
        """
        Inject every matching content script into a page context.

        Returns:
            int: Number of payloads that evaluated without error
        """
        payloads = self.scripts_for(url, run_at)

        injected = 0
        for payload in payloads:
            try:
                engine.evaluate_script(payload.source, context)
                injected += 1
            except ScriptError as e:
                logger.error(f"Error in content script {payload.file} of {payload.extension_id}: {e}")

        if payloads:
            logger.debug(f"Injected {injected}/{len(payloads)} content scripts into {url}")
        return injected

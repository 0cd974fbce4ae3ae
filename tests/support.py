"""
Shared helpers for the test suite.
"""

import concurrent.futures
import json
import os
import zipfile

from prism_engine.engine.base import ScriptContext, WebEngine
from prism_engine.engine.rule_store import RuleStore
from prism_engine.errors import ScriptError
from prism_engine.utils.dispatch import InlineDispatcher


def write_file(path, content):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    mode = 'wb' if isinstance(content, bytes) else 'w'
    with open(path, mode) as f:
        f.write(content)
    return path


def write_extension(directory, manifest, files=None):
    """Write manifest.json plus any extra files into directory."""
    os.makedirs(directory, exist_ok=True)
    manifest_data = manifest if isinstance(manifest, (str, bytes)) else json.dumps(manifest)
    write_file(os.path.join(directory, "manifest.json"), manifest_data)
    for relative_path, content in (files or {}).items():
        write_file(os.path.join(directory, relative_path), content)
    return directory


def zip_directory(directory, archive_path):
    with zipfile.ZipFile(archive_path, 'w') as archive:
        for root, _, filenames in os.walk(directory):
            for filename in filenames:
                path = os.path.join(root, filename)
                archive.write(path, os.path.relpath(path, directory))
    return archive_path


def manifest_v3(name="Test Extension", version="1.0", **extra):
    manifest = {"manifest_version": 3, "name": name, "version": version}
    manifest.update(extra)
    return manifest


class FakeEngine(WebEngine):
    """
    In-memory engine that records evaluated scripts.

    Sources listed in `failing_sources` raise ScriptError when evaluated.
    Rule lists compile through a real RuleStore.
    """

    def __init__(self, rule_store_dir=None):
        self.rule_store = RuleStore(rule_store_dir)
        self.contexts = []
        self.evaluated = []
        self.failing_sources = set()
        self.loaded_files = []

    def create_context(self, name, kind="page"):
        context = ScriptContext(name, kind)
        self.contexts.append(context)
        return context

    def destroy_context(self, context):
        context.destroyed = True

    def evaluate_script(self, source, context, **variables):
        if context.destroyed:
            raise ScriptError(f"context {context.name} has been destroyed")
        if source in self.failing_sources:
            raise ScriptError("failing source")
        self.evaluated.append((context, source))
        return None

    def load_local_file(self, path, sandbox_root, context):
        self.loaded_files.append((path, sandbox_root, context))

    def register_message_handler(self, context, channel, handler):
        context.message_handlers[channel] = handler

    def compile_rule_list(self, identifier, rules_json):
        return self.rule_store.compile(identifier, rules_json)

    def lookup_rule_list(self, identifier):
        return self.rule_store.lookup(identifier)

    def remove_rule_list(self, identifier):
        return self.rule_store.remove(identifier)

    def sources_in(self, context):
        return [source for ctx, source in self.evaluated if ctx is context]


class DeferredDispatcher(InlineDispatcher):
    """Dispatcher that holds async work until `run_pending` is called."""

    def __init__(self):
        self.pending = []

    def run_async(self, work, on_complete):
        future = concurrent.futures.Future()
        self.pending.append((work, on_complete, future))
        return future

    def run_pending(self):
        pending, self.pending = self.pending, []
        for work, on_complete, future in pending:
            try:
                result, error = work(), None
            except Exception as e:
                result, error = None, e
            future.set_result(on_complete(result, error))

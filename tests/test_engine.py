import json
import os
import tempfile
import unittest

from prism_engine.engine.dukpy_engine import DukpyEngine
from prism_engine.errors import ScriptError

from tests.support import write_file


class TestDukpyEngine(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = os.path.join(self._tmp.name, "ext")
        os.makedirs(self.root)
        self.engine = DukpyEngine(os.path.join(self._tmp.name, "rules"))

    def tearDown(self):
        self.engine.close()
        self._tmp.cleanup()

    def test_contexts_are_isolated(self):
        first = self.engine.create_context("first")
        second = self.engine.create_context("second")

        self.engine.evaluate_script("var shared = 1;", first)

        self.assertEqual(self.engine.evaluate_script("typeof shared", second), "undefined")
        self.assertEqual(self.engine.evaluate_script("shared + dukpy.offset", first, offset=2), 3)

    def test_script_errors(self):
        context = self.engine.create_context("page")

        with self.assertRaises(ScriptError):
            self.engine.evaluate_script("throw new Error('nope');", context)

    def test_destroyed_context(self):
        context = self.engine.create_context("page")
        self.engine.destroy_context(context)

        with self.assertRaises(ScriptError):
            self.engine.evaluate_script("1", context)

    def test_message_handler(self):
        context = self.engine.create_context("page")
        received = []

        def handler(payload):
            received.append(payload)
            return {"echo": payload["value"]}

        self.engine.register_message_handler(context, "channel", handler)

        result = self.engine.evaluate_script("call_python('channel', {value: 7}).echo", context)

        self.assertEqual(result, 7)
        self.assertEqual(received, [{"value": 7}])

    def test_failing_message_handler_returns_null(self):
        context = self.engine.create_context("page")

        def handler(payload):
            raise RuntimeError("handler failure")

        self.engine.register_message_handler(context, "channel", handler)

        self.assertIsNone(self.engine.evaluate_script("call_python('channel', 1)", context))

    def test_load_html_runs_external_scripts_in_order(self):
        write_file(os.path.join(self.root, "popup.html"),
                   '<html><head><script src="lib/a.js"></script></head>'
                   '<body><script>var inline = true;</script><script src="/b.js"></script></body></html>')
        write_file(os.path.join(self.root, "lib", "a.js"), "var order = ['a'];")
        write_file(os.path.join(self.root, "b.js"), "order.push('b');")
        context = self.engine.create_context("popup", "popup")

        self.engine.load_local_file(os.path.join(self.root, "popup.html"), self.root, context)

        self.assertEqual(self.engine.evaluate_script("order", context), ["a", "b"])
        self.assertEqual(self.engine.evaluate_script("typeof inline", context), "undefined")
        self.assertEqual(self.engine.evaluate_script("document.readyState", context), "complete")
        self.assertTrue(context.url.startswith("file://"))

    def test_html_script_outside_sandbox_is_refused(self):
        write_file(os.path.join(self._tmp.name, "evil.js"), "var evil = true;")
        write_file(os.path.join(self.root, "popup.html"), '<script src="../evil.js"></script>')
        context = self.engine.create_context("popup", "popup")

        with self.assertRaises(ScriptError):
            self.engine.load_local_file(os.path.join(self.root, "popup.html"), self.root, context)

        self.assertEqual(self.engine.evaluate_script("typeof evil", context), "undefined")

    def test_file_outside_sandbox_is_refused(self):
        outside = write_file(os.path.join(self._tmp.name, "outside.js"), "var x = 1;")
        context = self.engine.create_context("page")

        with self.assertRaises(ScriptError):
            self.engine.load_local_file(outside, self.root, context)

    def test_missing_file(self):
        context = self.engine.create_context("page")

        with self.assertRaises(ScriptError):
            self.engine.load_local_file(os.path.join(self.root, "missing.js"), self.root, context)

    def test_load_url_honours_attached_rules(self):
        rules = [{"action": {"type": "block"}, "trigger": {"url-filter": r"blocked\.example"}}]
        handle = self.engine.compile_rule_list("extension-test", json.dumps(rules))
        context = self.engine.create_context("page")
        self.engine.attach_rule_list(handle, context)

        self.assertFalse(self.engine.load_url(context, "https://blocked.example/"))
        self.assertTrue(self.engine.load_url(context, "https://allowed.example/"))
        self.assertEqual(context.url, "https://allowed.example/")
        self.assertEqual(self.engine.evaluate_script("window.location.href", context), "https://allowed.example/")

    def test_rule_lists_persist_in_store_directory(self):
        self.engine.compile_rule_list("extension-test", "[]")

        reopened = DukpyEngine(os.path.join(self._tmp.name, "rules"))

        self.assertIsNotNone(reopened.lookup_rule_list("extension-test"))
        self.assertTrue(reopened.remove_rule_list("extension-test"))
        self.assertIsNone(reopened.lookup_rule_list("extension-test"))
        self.assertEqual(os.listdir(os.path.join(self._tmp.name, "rules")), [])


if __name__ == '__main__':
    unittest.main()

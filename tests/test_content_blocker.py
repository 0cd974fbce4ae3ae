import json
import os
import tempfile
import unittest

from prism_engine.extensions.models import Extension
from prism_engine.privacy.content_blocker import CompiledRuleSet, ContentBlockingManager
from prism_engine.utils.config import Config

from tests.support import DeferredDispatcher, FakeEngine, write_file

NATIVE_RULES = [
    {"action": {"type": "block"}, "trigger": {"url-filter": r"native\.example\.com"}},
]


def _dnr_rule(url_filter, rule_id=1):
    return {"id": rule_id, "action": {"type": "block"}, "condition": {"urlFilter": url_filter}}


class ContentBlockerTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = FakeEngine(os.path.join(self._tmp.name, "rules"))
        self.blocker = ContentBlockingManager(self.engine)

    def tearDown(self):
        self._tmp.cleanup()

    def _extension(self, ext_id="blocker", files=None, **kwargs):
        directory = os.path.join(self._tmp.name, "extensions", ext_id)
        os.makedirs(directory, exist_ok=True)
        for relative_path, content in (files or {}).items():
            write_file(os.path.join(directory, relative_path), content)
        return Extension(ext_id, ext_id.title(), "1.0", directory, manifest_version=3, **kwargs)


class TestLoadRules(ContentBlockerTestCase):

    def test_native_rules_take_precedence(self):
        ext = self._extension(files={
            "webkit-rules.json": json.dumps(NATIVE_RULES),
            "rules.json": json.dumps([_dnr_rule("||converted.example.com^")]),
        })

        rule_set = self.blocker.load_rules_for_extension(ext)

        self.assertEqual(rule_set.origin, CompiledRuleSet.NATIVE)
        self.assertEqual(rule_set.handle.identifier, "extension-blocker")
        self.assertTrue(rule_set.handle.should_block("https://native.example.com/a.js", "script"))
        self.assertFalse(rule_set.handle.should_block("https://converted.example.com/a.js", "script"))

    def test_converted_rules(self):
        ext = self._extension(files={"rules.json": json.dumps([_dnr_rule("||ads.example.com^"), {"id": 2}])})

        rule_set = self.blocker.load_rules_for_extension(ext)

        self.assertEqual(rule_set.origin, CompiledRuleSet.CONVERTED)
        self.assertEqual(rule_set.rule_count, 1)
        self.assertTrue(rule_set.handle.should_block("https://cdn.ads.example.com/x.js", "script"))
        self.assertIs(self.blocker.get_rule_set(ext.id), rule_set)

    def test_rule_resources_are_combined(self):
        ext = self._extension(files={
            "rules/a.json": json.dumps([_dnr_rule("||a.example^")]),
            "rules/b.json": json.dumps([_dnr_rule("||b.example^")]),
            "rules.json": json.dumps([_dnr_rule("||ignored.example^")]),
        }, rule_resources=["rules/a.json", "missing.json", "rules/b.json"])

        rule_set = self.blocker.load_rules_for_extension(ext)

        self.assertEqual(rule_set.rule_count, 2)
        self.assertTrue(rule_set.handle.should_block("https://b.example/x"))
        self.assertFalse(rule_set.handle.should_block("https://ignored.example/x"))

    def test_no_rules(self):
        ext = self._extension()

        self.assertIsNone(self.blocker.load_rules_for_extension(ext))
        self.assertIsNone(self.blocker.get_rule_set(ext.id))

    def test_unreadable_rules_compile_to_empty_list(self):
        ext = self._extension(files={"rules.json": "{broken"})

        rule_set = self.blocker.load_rules_for_extension(ext)

        self.assertEqual(rule_set.rule_count, 0)
        self.assertEqual(rule_set.origin, CompiledRuleSet.CONVERTED)

    def test_failed_compile_falls_back_to_stored_list(self):
        ext = self._extension(files={"rules.json": json.dumps([_dnr_rule("||ads.example.com^")])})
        self.blocker.load_rules_for_extension(ext)

        write_file(os.path.join(ext.directory, "rules.json"), json.dumps([_dnr_rule("(unbalanced")]))
        rule_set = self.blocker.load_rules_for_extension(ext)

        self.assertEqual(rule_set.origin, CompiledRuleSet.FALLBACK)
        self.assertTrue(rule_set.handle.should_block("https://ads.example.com/x.js"))

    def test_failed_compile_without_stored_list(self):
        ext = self._extension(files={"rules.json": json.dumps([_dnr_rule("(unbalanced")])})

        self.assertIsNone(self.blocker.load_rules_for_extension(ext))

    def test_disabled_by_config(self):
        config = Config(base_dir=self._tmp.name)
        config.set("content_blocking.enabled", False)
        blocker = ContentBlockingManager(self.engine, config=config)
        ext = self._extension(files={"webkit-rules.json": json.dumps(NATIVE_RULES)})

        self.assertIsNone(blocker.load_rules_for_extension(ext))
        self.assertEqual(blocker.apply_to(self.engine.create_context("page"), [ext]), 0)


class TestCompileSerialization(ContentBlockerTestCase):

    def test_request_during_compile_is_dropped(self):
        dispatcher = DeferredDispatcher()
        blocker = ContentBlockingManager(self.engine, dispatcher=dispatcher)
        first = self._extension("first", files={"webkit-rules.json": json.dumps(NATIVE_RULES)})
        second = self._extension("second", files={"webkit-rules.json": json.dumps(NATIVE_RULES)})

        pending = blocker.load_rules_for_extension_async(first)
        with self.assertLogs("prism_engine.privacy.content_blocker", level="WARNING") as logs:
            self.assertIsNone(blocker.load_rules_for_extension(second))
            self.assertIsNone(blocker.load_rules_for_extension_async(second).result())
        self.assertIn("Already compiling rules, skipping", logs.output[0])

        dispatcher.run_pending()

        self.assertEqual(pending.result().origin, CompiledRuleSet.NATIVE)
        self.assertIsNotNone(blocker.load_rules_for_extension(second))

    def test_async_compile_error_releases_the_guard(self):
        dispatcher = DeferredDispatcher()
        blocker = ContentBlockingManager(self.engine, dispatcher=dispatcher)
        ext = self._extension(files={"webkit-rules.json": json.dumps(NATIVE_RULES)})

        def explode(extension):
            raise RuntimeError("disk on fire")

        blocker._build_rule_set = explode
        future = blocker.load_rules_for_extension_async(ext)
        dispatcher.run_pending()

        self.assertIsNone(future.result())
        del blocker._build_rule_set
        self.assertIsNotNone(blocker.load_rules_for_extension(ext))


class TestApplyAndRemove(ContentBlockerTestCase):

    def test_apply_to_enabled_extensions_only(self):
        enabled = self._extension("enabled", files={"webkit-rules.json": json.dumps(NATIVE_RULES)})
        disabled = self._extension("disabled", files={"webkit-rules.json": json.dumps(NATIVE_RULES)})
        self.blocker.reload_all_rules([enabled, disabled])
        disabled.is_enabled = False
        context = self.engine.create_context("page")

        self.assertEqual(self.blocker.apply_to(context, [enabled, disabled]), 1)
        self.assertEqual(self.blocker.apply_to(context, [enabled, disabled]), 1)

        self.assertEqual(list(context.attached_rule_lists), ["extension-enabled"])
        self.assertTrue(self.engine.should_block_request(context, "https://native.example.com/", "document"))

    def test_reload_all_rules_skips_disabled(self):
        enabled = self._extension("enabled", files={"webkit-rules.json": json.dumps(NATIVE_RULES)})
        disabled = self._extension("disabled", files={"webkit-rules.json": json.dumps(NATIVE_RULES)},
                                   is_enabled=False)
        empty = self._extension("empty")

        self.assertEqual(self.blocker.reload_all_rules([enabled, disabled, empty]), 1)
        self.assertIsNone(self.blocker.get_rule_set("disabled"))

    def test_remove_rules(self):
        ext = self._extension(files={"webkit-rules.json": json.dumps(NATIVE_RULES)})
        self.blocker.load_rules_for_extension(ext)

        self.assertTrue(self.blocker.remove_rules_for_extension(ext.id))

        self.assertIsNone(self.blocker.get_rule_set(ext.id))
        self.assertIsNone(self.engine.lookup_rule_list("extension-blocker"))
        self.assertFalse(self.blocker.remove_rules_for_extension(ext.id))

    def test_stats(self):
        native = self._extension("native", files={"webkit-rules.json": json.dumps(NATIVE_RULES * 2)})
        converted = self._extension("converted", files={"rules.json": json.dumps([_dnr_rule("ads")])})
        self.blocker.reload_all_rules([native, converted])

        self.assertEqual(self.blocker.get_stats(), {
            "enabled": True,
            "rule_sets": 2,
            "total_rules": 3,
            "origins": {"native": 1, "converted": 1},
        })


if __name__ == '__main__':
    unittest.main()

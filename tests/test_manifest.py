import json
import unittest

from prism_engine.errors import InvalidManifest
from prism_engine.extensions.manifest import parse_manifest
from prism_engine.extensions.models import RunAt


def _parse(document):
    return parse_manifest(json.dumps(document))


class TestParseManifest(unittest.TestCase):

    def test_required_fields(self):
        manifest = _parse({"manifest_version": 3, "name": "Example", "version": "1.2.3"})

        self.assertEqual(manifest.manifest_version, 3)
        self.assertEqual(manifest.name, "Example")
        self.assertEqual(manifest.version, "1.2.3")
        self.assertEqual(manifest.content_scripts, [])
        self.assertIsNone(manifest.background_script)
        self.assertIsNone(manifest.popup_path)

    def test_missing_or_wrong_typed_required_fields(self):
        for document in (
            {"name": "Example", "version": "1.0"},
            {"manifest_version": "3", "name": "Example", "version": "1.0"},
            {"manifest_version": True, "name": "Example", "version": "1.0"},
            {"manifest_version": 3, "version": "1.0"},
            {"manifest_version": 3, "name": "Example", "version": 1},
        ):
            with self.subTest(document=document):
                with self.assertRaises(InvalidManifest):
                    _parse(document)

    def test_malformed_json_and_non_object(self):
        with self.assertRaises(InvalidManifest):
            parse_manifest(b"{not json")
        with self.assertRaises(InvalidManifest):
            parse_manifest("[1, 2, 3]")

    def test_accepts_bytes_with_bom(self):
        data = b"\xef\xbb\xbf" + json.dumps({"manifest_version": 2, "name": "A", "version": "1"}).encode()
        self.assertEqual(parse_manifest(data).name, "A")

    def test_v2_browser_action_popup(self):
        manifest = _parse({"manifest_version": 2, "name": "A", "version": "1",
                           "browser_action": {"default_popup": "popup.html"}})
        self.assertEqual(manifest.popup_path, "popup.html")

    def test_v3_action_popup(self):
        manifest = _parse({"manifest_version": 3, "name": "A", "version": "1",
                           "action": {"default_popup": "popup.html"}})
        self.assertEqual(manifest.popup_path, "popup.html")

    def test_action_popup_preferred_over_browser_action(self):
        manifest = _parse({"manifest_version": 3, "name": "A", "version": "1",
                           "action": {"default_popup": "new.html"},
                           "browser_action": {"default_popup": "old.html"}})
        self.assertEqual(manifest.popup_path, "new.html")

    def test_background_resolution(self):
        service_worker = _parse({"manifest_version": 3, "name": "A", "version": "1",
                                 "background": {"service_worker": "sw.js", "scripts": ["bg.js"]}})
        self.assertEqual(service_worker.background_script, "sw.js")

        scripts = _parse({"manifest_version": 2, "name": "A", "version": "1",
                          "background": {"scripts": ["first.js", "second.js"]}})
        self.assertEqual(scripts.background_script, "first.js")

        empty = _parse({"manifest_version": 2, "name": "A", "version": "1", "background": {}})
        self.assertIsNone(empty.background_script)

    def test_content_scripts(self):
        manifest = _parse({
            "manifest_version": 3, "name": "A", "version": "1",
            "content_scripts": [
                {"matches": ["https://example.com/*"], "js": ["a.js"], "css": ["a.css"], "run_at": "document_start"},
                {"matches": ["<all_urls>"], "js": ["b.js"], "run_at": "whenever"},
                {"matches": ["*://*/*"], "js": [], "all_frames": True},
            ],
        })

        first, second, third = manifest.content_scripts
        self.assertEqual(first.matches, ["https://example.com/*"])
        self.assertEqual(first.css, ["a.css"])
        self.assertEqual(first.run_at, RunAt.DOCUMENT_START)
        self.assertEqual(second.css, [])
        self.assertEqual(second.run_at, RunAt.DOCUMENT_IDLE)
        self.assertFalse(second.all_frames)
        self.assertTrue(third.all_frames)

    def test_content_script_requires_matches_and_js(self):
        for entry in ({"js": ["a.js"]}, {"matches": ["<all_urls>"]}, {"matches": "x", "js": ["a.js"]}):
            with self.subTest(entry=entry):
                with self.assertRaises(InvalidManifest):
                    _parse({"manifest_version": 3, "name": "A", "version": "1", "content_scripts": [entry]})

    def test_optional_fields_and_unknown_keys(self):
        manifest = _parse({
            "manifest_version": 3, "name": "A", "version": "1",
            "description": "Does things",
            "author": {"email": "dev@example.com"},
            "permissions": ["storage", "tabs", "storage", 7],
            "host_permissions": ["https://*/*"],
            "options_page": "options.html",
            "icons": {"16": "icon.png"},
            "declarative_net_request": {"rule_resources": [
                {"id": "a", "enabled": True, "path": "rules/a.json"},
                {"id": "b", "enabled": False, "path": "rules/b.json"},
                {"id": "c", "path": "rules/c.json"},
            ]},
        })

        self.assertEqual(manifest.description, "Does things")
        self.assertEqual(manifest.author, "dev@example.com")
        self.assertEqual(manifest.permissions, ["storage", "tabs"])
        self.assertEqual(manifest.host_permissions, ["https://*/*"])
        self.assertEqual(manifest.options_page, "options.html")
        self.assertEqual(manifest.rule_resources, ["rules/a.json", "rules/c.json"])

    def test_wrong_typed_optional_fields_are_dropped(self):
        manifest = _parse({"manifest_version": 2, "name": "A", "version": "1",
                           "description": 5, "permissions": "storage", "options_page": ["x"]})

        self.assertIsNone(manifest.description)
        self.assertEqual(manifest.permissions, [])
        self.assertIsNone(manifest.options_page)


if __name__ == '__main__':
    unittest.main()

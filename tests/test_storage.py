import json
import os
import tempfile
import unittest

from prism_engine.extensions.storage import ExtensionStorage


class TestExtensionStorage(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "_storage", "local.json")
        self.storage = ExtensionStorage(self.path)

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_blob_is_empty(self):
        self.assertEqual(self.storage.load(), {})
        self.assertFalse(os.path.exists(self.path))

    def test_merge_keeps_existing_keys(self):
        self.storage.merge({"a": 1, "b": {"nested": True}})
        self.storage.merge({"b": 2, "c": [1, 2]})

        with open(self.path) as f:
            self.assertEqual(json.load(f), {"a": 1, "b": 2, "c": [1, 2]})

    def test_get_forms(self):
        self.storage.merge({"a": 1, "b": 2})

        self.assertEqual(self.storage.get(), {"a": 1, "b": 2})
        self.assertEqual(self.storage.get("a"), {"a": 1})
        self.assertEqual(self.storage.get(["a", "missing"]), {"a": 1})
        self.assertEqual(self.storage.get({"b": 0, "c": 3}), {"b": 2, "c": 3})

    def test_corrupt_blob_reads_as_empty(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            f.write("{corrupt")

        self.assertEqual(self.storage.load(), {})
        self.assertEqual(self.storage.merge({"a": 1}), {"a": 1})

    def test_remove_and_clear(self):
        self.storage.merge({"a": 1, "b": 2})

        self.storage.remove("a")
        self.assertEqual(self.storage.load(), {"b": 2})

        self.storage.clear()
        self.assertEqual(self.storage.load(), {})

    def test_no_temporary_files_left_behind(self):
        self.storage.merge({"a": 1})
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["local.json"])


if __name__ == '__main__':
    unittest.main()

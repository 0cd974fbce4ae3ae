import json
import os
import tempfile
import unittest

from prism_engine.utils.config import Config


class TestConfig(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self._tmp.cleanup()

    def test_defaults_live_under_base_dir(self):
        config = Config(base_dir=self._tmp.name)

        self.assertEqual(config.config_path, os.path.join(self._tmp.name, "config.json"))
        self.assertEqual(config.get("extensions.directory"), os.path.join(self._tmp.name, "extensions"))
        self.assertEqual(config.get("extensions.background.max_timer_rounds"), 100)
        self.assertTrue(config.get("content_blocking.enabled"))
        self.assertFalse(config.get("logging.log_to_file"))
        self.assertIsNone(config.get("logging.file"))

    def test_file_values_override_defaults(self):
        with open(os.path.join(self._tmp.name, "config.json"), 'w') as f:
            json.dump({"extensions": {"background": {"enabled": False}}}, f)

        config = Config(base_dir=self._tmp.name)

        self.assertFalse(config.get("extensions.background.enabled"))
        self.assertEqual(config.get("extensions.background.max_timer_rounds"), 100)

    def test_corrupt_file_keeps_defaults(self):
        with open(os.path.join(self._tmp.name, "config.json"), 'w') as f:
            f.write("{")

        self.assertEqual(Config(base_dir=self._tmp.name).get("logging.level"), "INFO")

    def test_set_get_remove(self):
        config = Config(base_dir=self._tmp.name)

        config.set("shell.theme.name", "dark")
        self.assertEqual(config.get("shell.theme.name"), "dark")
        self.assertIsNone(config.get("shell.missing.key"))
        self.assertEqual(config.get("logging.level.nested", "fallback"), "fallback")

        self.assertTrue(config.remove("shell.theme.name"))
        self.assertFalse(config.remove("shell.theme.name"))

    def test_save_round_trip(self):
        config = Config(base_dir=os.path.join(self._tmp.name, "profile"))
        config.set("logging.level", "DEBUG")
        config.save()

        self.assertEqual(Config(base_dir=os.path.join(self._tmp.name, "profile")).get("logging.level"), "DEBUG")


if __name__ == '__main__':
    unittest.main()

import os
import tempfile
import unittest

from prism_engine.engine.dukpy_engine import DukpyEngine
from prism_engine.errors import ExtensionError, ScriptError
from prism_engine.extensions.background import BackgroundRuntime
from prism_engine.extensions.models import Extension
from prism_engine.extensions.popup import ExtensionPopupHost
from prism_engine.utils.config import Config

from tests.support import write_file

BACKGROUND_SCRIPT = """
var theme = null;
chrome.storage.onChanged.addListener(function (changes) {
    if (changes.theme) { theme = changes.theme.newValue; }
});
chrome.runtime.onMessage.addListener(function (message, sender, sendResponse) {
    if (message.type === "ping") {
        sendResponse({pong: true, fromPopup: sender.url.indexOf("popup.html") >= 0});
    } else if (message.type === "theme") {
        sendResponse(theme);
    }
});
"""

POPUP_SCRIPT = """
var reply = null;
var stored = null;
chrome.runtime.sendMessage({type: "ping"}, function (response) { reply = response; });
chrome.storage.local.get("counter", function (items) { stored = items.counter; });
chrome.storage.local.set({theme: "dark"});
"""


class TestExtensionPopupHost(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = DukpyEngine()
        self.background = BackgroundRuntime(self.engine, config=Config(base_dir=self._tmp.name))
        self.host = ExtensionPopupHost(self.engine, self.background)

        self.directory = os.path.join(self._tmp.name, "popup-ext")
        write_file(os.path.join(self.directory, "bg.js"), BACKGROUND_SCRIPT)
        write_file(os.path.join(self.directory, "popup.html"),
                   '<html><body><h1>Popup</h1><script src="popup.js"></script></body></html>')
        write_file(os.path.join(self.directory, "popup.js"), POPUP_SCRIPT)
        write_file(os.path.join(self.directory, "options.html"),
                   '<html><body><script src="js/options.js"></script></body></html>')
        write_file(os.path.join(self.directory, "js", "options.js"),
                   'var optionsURL = chrome.runtime.getURL("/options.html");')
        self.extension = Extension("popup-ext", "Popup Extension", "1.0", self.directory,
                                   manifest_version=3, background_script="bg.js",
                                   popup_path="popup.html", options_page="options.html")

    def tearDown(self):
        self.background.stop_all()
        self._tmp.cleanup()

    def test_popup_talks_to_background(self):
        self.background.get_storage(self.extension).merge({"counter": 3})
        self.assertTrue(self.background.start_background_script(self.extension).result())

        request = self.host.open_popup(self.extension)

        self.assertEqual(request.extension_id, "popup-ext")
        self.assertTrue(request.file_path.endswith("popup.html"))
        self.assertEqual(self.engine.evaluate_script("reply", request.context),
                         {"pong": True, "fromPopup": True})
        self.assertEqual(self.engine.evaluate_script("stored", request.context), 3)

    def test_popup_storage_write_reaches_blob_and_background(self):
        self.assertTrue(self.background.start_background_script(self.extension).result())

        self.host.open_popup(self.extension)

        self.assertEqual(self.background.get_storage(self.extension).load(), {"theme": "dark"})
        self.assertEqual(self.background.send_message(self.extension.id, {"type": "theme"}), "dark")

    def test_popup_without_running_background(self):
        request = self.host.open_popup(self.extension)

        self.assertIsNone(self.engine.evaluate_script("reply", request.context))

    def test_options_page(self):
        request = self.host.open_options_page(self.extension)

        url = self.engine.evaluate_script("optionsURL", request.context)
        self.assertTrue(url.startswith("file://"))
        self.assertTrue(url.endswith("/popup-ext/options.html"))

        self.host.close(request)
        self.assertTrue(request.context.destroyed)

    def test_missing_popup_declaration(self):
        self.extension.popup_path = None
        self.extension.options_page = None

        with self.assertRaises(ExtensionError):
            self.host.open_popup(self.extension)
        with self.assertRaises(ExtensionError):
            self.host.open_options_page(self.extension)

    def test_popup_outside_extension_directory(self):
        self.extension.popup_path = "../elsewhere.html"

        with self.assertRaises(ExtensionError):
            self.host.open_popup(self.extension)

    def test_missing_popup_file_releases_context(self):
        self.extension.popup_path = "missing.html"
        created = []
        create_context = self.engine.create_context
        self.engine.create_context = lambda *args: created.append(create_context(*args)) or created[-1]

        with self.assertRaises(ScriptError):
            self.host.open_popup(self.extension)

        self.assertTrue(created[0].destroyed)


if __name__ == '__main__':
    unittest.main()

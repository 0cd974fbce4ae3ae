"""
The chrome.* API surface injected into extension contexts.

Background and popup contexts get the same shim. It is evaluated once per
context with these variables:

    dukpy.channel      message channel used to post to the host
    dukpy.extensionId  id of the owning extension
    dukpy.storage      current storage.local blob, used as the read cache
    dukpy.baseURL      URL of the extension directory, ending in "/"

The host reads state back through three globals: __prismDispatch (deliver a
runtime message), __prismDrainTimers (run queued setTimeout callbacks) and
__prismStorageChanged (apply a storage write made elsewhere).

Duktape only implements ES5, so the shim avoids later syntax.
"""

API_SHIM = r"""
(function (global) {
    var channel = dukpy.channel;
    var extensionId = dukpy.extensionId;
    var baseURL = dukpy.baseURL;
    var storageCache = dukpy.storage || {};
    var messageListeners = [];
    var storageListeners = [];
    var timers = [];
    var nextTimerId = 1;

    function clone(value) {
        return value === undefined ? undefined : JSON.parse(JSON.stringify(value));
    }

    function post(body) {
        body.extensionId = extensionId;
        return call_python(channel, body);
    }

    function format(args) {
        var parts = [];
        for (var i = 0; i < args.length; i++) {
            var value = args[i];
            if (typeof value === "string") {
                parts.push(value);
                continue;
            }
            var text;
            try {
                text = JSON.stringify(value);
            } catch (e) {
                text = undefined;
            }
            parts.push(text === undefined ? String(value) : text);
        }
        return parts.join(" ");
    }

    function consoleMethod(level) {
        return function () {
            post({type: "console", level: level, text: format(arguments)});
        };
    }

    global.console = {
        log: consoleMethod("log"),
        info: consoleMethod("info"),
        warn: consoleMethod("warn"),
        error: consoleMethod("error"),
        debug: consoleMethod("debug")
    };

    global.setTimeout = function (callback, delay) {
        if (typeof callback !== "function") {
            return 0;
        }
        var id = nextTimerId++;
        timers.push({
            id: id,
            callback: callback,
            delay: Number(delay) || 0,
            args: Array.prototype.slice.call(arguments, 2)
        });
        return id;
    };

    global.clearTimeout = function (id) {
        for (var i = 0; i < timers.length; i++) {
            if (timers[i].id === id) {
                timers.splice(i, 1);
                return;
            }
        }
    };

    global.__prismDrainTimers = function (maxRounds) {
        var rounds = 0;
        while (timers.length && rounds < maxRounds) {
            var due = timers;
            timers = [];
            due.sort(function (a, b) { return (a.delay - b.delay) || (a.id - b.id); });
            for (var i = 0; i < due.length; i++) {
                try {
                    due[i].callback.apply(global, due[i].args);
                } catch (e) {
                    global.console.error("Uncaught error in timer: " + e);
                }
            }
            rounds++;
        }
        return timers.length;
    };

    function resolved(value) {
        return {
            then: function (onFulfilled) {
                if (typeof onFulfilled === "function") {
                    global.setTimeout(function () { onFulfilled(value); }, 0);
                }
                return this;
            },
            "catch": function () {
                return this;
            }
        };
    }

    function deliver(callback, value) {
        if (typeof callback === "function") {
            global.setTimeout(function () { callback(value); }, 0);
            return undefined;
        }
        return resolved(value);
    }

    var runtime = {
        id: extensionId,
        lastError: undefined,
        onMessage: {
            addListener: function (listener) {
                if (typeof listener === "function" && messageListeners.indexOf(listener) < 0) {
                    messageListeners.push(listener);
                }
            },
            removeListener: function (listener) {
                var index = messageListeners.indexOf(listener);
                if (index >= 0) {
                    messageListeners.splice(index, 1);
                }
            },
            hasListener: function (listener) {
                return messageListeners.indexOf(listener) >= 0;
            },
            hasListeners: function () {
                return messageListeners.length > 0;
            }
        },
        sendMessage: function () {
            var args = Array.prototype.slice.call(arguments);
            var callback = typeof args[args.length - 1] === "function" ? args.pop() : null;
            // sendMessage(extensionId, message) addresses an extension explicitly
            var message = (args.length > 1 && typeof args[0] === "string") ? args[1] : args[0];
            var response = post({type: "sendMessage", message: message === undefined ? null : message});
            return deliver(callback, response === null ? undefined : response);
        },
        getURL: function (path) {
            return baseURL + String(path || "").replace(/^\/+/, "");
        }
    };

    function fireStorageChanged(changes) {
        var snapshot = storageListeners.slice();
        for (var i = 0; i < snapshot.length; i++) {
            try {
                snapshot[i](changes, "local");
            } catch (e) {
                global.console.error("Error in storage.onChanged listener: " + e);
            }
        }
    }

    function applyItems(items) {
        var changes = {};
        var changed = false;
        for (var key in items) {
            if (items.hasOwnProperty(key)) {
                changes[key] = {oldValue: clone(storageCache[key]), newValue: clone(items[key])};
                storageCache[key] = clone(items[key]);
                changed = true;
            }
        }
        return changed ? changes : null;
    }

    var storageLocal = {
        get: function (keys, callback) {
            if (typeof keys === "function") {
                callback = keys;
                keys = null;
            }
            var result = {};
            var key;
            if (keys === null || keys === undefined) {
                for (key in storageCache) {
                    if (storageCache.hasOwnProperty(key)) {
                        result[key] = clone(storageCache[key]);
                    }
                }
            } else if (typeof keys === "string") {
                if (storageCache.hasOwnProperty(keys)) {
                    result[keys] = clone(storageCache[keys]);
                }
            } else if (keys instanceof Array) {
                for (var i = 0; i < keys.length; i++) {
                    if (storageCache.hasOwnProperty(keys[i])) {
                        result[keys[i]] = clone(storageCache[keys[i]]);
                    }
                }
            } else if (typeof keys === "object") {
                for (key in keys) {
                    if (keys.hasOwnProperty(key)) {
                        result[key] = storageCache.hasOwnProperty(key) ? clone(storageCache[key]) : keys[key];
                    }
                }
            }
            post({type: "storageGet", keys: keys === undefined ? null : keys});
            return deliver(callback, result);
        },
        set: function (items, callback) {
            items = items || {};
            var changes = applyItems(items);
            post({type: "storageSet", items: items});
            if (changes) {
                global.setTimeout(function () { fireStorageChanged(changes); }, 0);
            }
            return deliver(callback, undefined);
        }
    };

    global.__prismStorageChanged = function (items) {
        var changes = applyItems(items || {});
        if (changes) {
            fireStorageChanged(changes);
        }
    };

    global.__prismDispatch = function (message, sender, maxRounds) {
        var state = {responded: false, response: null, hasFallback: false, fallback: null};

        function sendResponse(value) {
            if (!state.responded) {
                state.responded = true;
                state.response = value === undefined ? null : value;
            }
        }

        var snapshot = messageListeners.slice();
        for (var i = 0; i < snapshot.length; i++) {
            try {
                var result = snapshot[i](message, sender || {id: extensionId}, sendResponse);
                // true only announces an asynchronous sendResponse
                if (!state.hasFallback && result !== undefined && result !== true &&
                        !(result && typeof result.then === "function")) {
                    state.hasFallback = true;
                    state.fallback = result;
                }
            } catch (e) {
                global.console.error("Error in runtime.onMessage listener: " + e);
            }
        }

        global.__prismDrainTimers(maxRounds);

        if (state.responded) {
            return state.response;
        }
        return state.hasFallback ? state.fallback : null;
    };

    var chrome = {
        runtime: runtime,
        storage: {
            local: storageLocal,
            onChanged: {
                addListener: function (listener) {
                    if (typeof listener === "function") {
                        storageListeners.push(listener);
                    }
                },
                removeListener: function (listener) {
                    var index = storageListeners.indexOf(listener);
                    if (index >= 0) {
                        storageListeners.splice(index, 1);
                    }
                }
            }
        },
        declarativeNetRequest: {
            updateDynamicRules: function (options, callback) {
                post({type: "updateDynamicRules", options: options || {}});
                return deliver(callback, undefined);
            }
        }
    };

    global.chrome = chrome;
    global.browser = chrome;
})(this);
"""


def wrap_script(source: str) -> str:
    """Wrap a classic (non-module, sloppy-mode) script in its own function scope."""
    return "(function () {\n" + source + "\n}).call(this);"

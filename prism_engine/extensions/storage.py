"""
Per-extension storage.local blob.

The blob is a JSON object stored inside the extension directory, so it
survives background restarts and is removed only with the extension itself.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class ExtensionStorage:
    """A JSON object persisted to one file with merge-on-write semantics."""

    def __init__(self, path: str):
        """
        Initialize the storage.

        Args:
            path: Path of the JSON blob
        """
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> Dict[str, Any]:
        """
        Read the whole blob.

        Returns:
            Dict[str, Any]: Stored items; empty if the blob is missing or unreadable
        """
        with self._lock:
            return self._read()

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable storage blob {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-object storage blob {self.path}")
            return {}
        return data

    def get(self, keys: Union[None, str, List[str], Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Read items the way storage.local.get does.

        Args:
            keys: None for everything, a key, a list of keys, or a dict of
                keys to default values

        Returns:
            Dict[str, Any]: The requested items that exist (or their defaults)
        """
        items = self.load()
        if keys is None:
            return items
        if isinstance(keys, str):
            keys = [keys]
        if isinstance(keys, dict):
            result = dict(keys)
            result.update({key: items[key] for key in keys if key in items})
            return result
        return {key: items[key] for key in keys if key in items}

    def merge(self, items: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge items into the blob and write it back.

        Returns:
            Dict[str, Any]: The blob after the merge
        """
        with self._lock:
            data = self._read()
            data.update(items)
            self._write(data)
        return data

    def remove(self, keys: Union[str, List[str]]) -> None:
        if isinstance(keys, str):
            keys = [keys]
        with self._lock:
            data = self._read()
            for key in keys:
                data.pop(key, None)
            self._write(data)

    def clear(self) -> None:
        with self._lock:
            self._write({})

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


def storage_for(extension, cache: Optional[Dict[str, ExtensionStorage]] = None) -> ExtensionStorage:
    """Return the storage of an extension, reusing a cached instance if given."""
    if cache is None:
        return ExtensionStorage(extension.storage_path)
    storage = cache.get(extension.id)
    if storage is None or storage.path != extension.storage_path:
        storage = ExtensionStorage(extension.storage_path)
        cache[extension.id] = storage
    return storage

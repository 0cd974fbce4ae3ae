"""
Extension manager implementation.
This module is responsible for installing, loading and persisting extensions.
"""

import json
import logging
import os
import re
import shutil
import tempfile
import threading
import uuid
import zipfile
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from prism_engine.errors import (FailedToExtract, FailedToLoad, InstallError, InvalidFormat,
                                 InvalidManifest, InvalidPath, MissingManifest, UninstallError)
from prism_engine.extensions.manifest import MANIFEST_FILE, ExtensionManifest, parse_manifest
from prism_engine.extensions.models import Extension
from prism_engine.utils.config import Config, default_base_directory
from prism_engine.utils.dispatch import InlineDispatcher, on_owner
from prism_engine.utils.logging import log_exception

logger = logging.getLogger(__name__)


def generate_extension_id(name: str) -> str:
    """
    Generate an extension id from its declared name.

    Args:
        name: Extension name from the manifest

    Returns:
        str: Lowercase hyphenated name plus 8 random hex characters
    """
    sanitized = re.sub(r'[^a-z0-9-]', '', name.lower().replace(" ", "-"))
    return f"{sanitized or 'extension'}-{uuid.uuid4().hex[:8]}"


def read_manifest(manifest_path: str) -> ExtensionManifest:
    """
    Read and parse a manifest file.

    Raises:
        InvalidManifest: If the file cannot be read or parsed
    """
    try:
        with open(manifest_path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise InvalidManifest(f"cannot read {manifest_path} ({e})")
    return parse_manifest(data)


class _PreparedInstall:
    """An extension copied next to its final location, waiting to be committed."""

    def __init__(self, extension_id: str, work_dir: str, copy_dir: str):
        self.extension_id = extension_id
        self.work_dir = work_dir
        self.copy_dir = copy_dir


class ExtensionManager:
    """Registry of installed extensions."""

    def __init__(self, config: Optional[Config] = None, background_runtime=None,
                 content_blocker=None, dispatcher=None):
        """
        Initialize the extension manager.

        Args:
            config: Configuration object
            background_runtime: BackgroundRuntime started and stopped with extensions
            content_blocker: ContentBlockingManager compiling extension rules
            dispatcher: Owner-context dispatcher; defaults to inline dispatching
        """
        self.config = config or Config()
        self.background = background_runtime
        self.content_blocker = content_blocker
        self.dispatcher = dispatcher or InlineDispatcher()

        base_dir = default_base_directory()
        self.extensions_dir = self.config.get("extensions.directory", os.path.join(base_dir, "extensions"))
        self.metadata_file = self.config.get("extensions.metadata_file", os.path.join(base_dir, "extensions.json"))
        self.staging_dir = self.config.get("extensions.staging_directory")

        os.makedirs(self.extensions_dir, exist_ok=True)
        if self.staging_dir:
            os.makedirs(self.staging_dir, exist_ok=True)

        self.extensions: List[Extension] = []

        # Guards snapshot reads from other threads; mutations stay on the owner
        self._lock = threading.Lock()

        logger.debug(f"Extension manager initialized (dir: {self.extensions_dir})")

    # Loading

    @on_owner
    def load_extensions(self) -> None:
        """Load the catalog, falling back to a directory rescan, and start background scripts."""
        loaded = self._read_metadata()

        if loaded is None:
            self._scan_directory()
        else:
            present = [ext for ext in loaded if os.path.isdir(ext.directory)]
            with self._lock:
                self.extensions = present
            if len(present) != len(loaded):
                logger.debug(f"Dropped {len(loaded) - len(present)} extensions with missing directories")
                self._save_extensions()
            logger.info(f"Loaded {len(present)} extensions from metadata")

        for ext in self.get_enabled_extensions():
            self._start_background(ext)

    def _read_metadata(self) -> Optional[List[Extension]]:
        if not os.path.exists(self.metadata_file):
            return None

        try:
            with open(self.metadata_file, 'r', encoding='utf-8') as f:
                records = json.load(f)
            if not isinstance(records, list):
                raise ValueError("catalog must be a JSON array")
            return [Extension.from_dict(record) for record in records]
        except Exception as e:
            log_exception(logger, e, f"Error loading extension catalog {self.metadata_file}")
            return None

    @on_owner
    def rescan(self) -> None:
        """
        Rebuild the catalog from the extensions directory.

        Known extensions are only updated when their manifest version
        changed. Extensions whose directory disappeared are dropped. New
        extensions get their background script started and their content
        rules compiled.
        """
        added, updated = self._scan_directory()

        for ext in added:
            self._start_background(ext)
            self._compile_rules(ext)
        for ext in updated:
            self._apply_update(ext)

    def _scan_directory(self) -> Tuple[List[Extension], List[Extension]]:
        existing = {ext.id: ext for ext in self.get_extensions()}
        found = {}
        new_ids = []
        updated = []

        try:
            entries = sorted(os.listdir(self.extensions_dir))
        except OSError as e:
            logger.error(f"Cannot read extensions directory {self.extensions_dir}: {e}")
            entries = []

        for entry in entries:
            if entry.startswith("."):
                continue
            directory = os.path.join(self.extensions_dir, entry)
            manifest_path = os.path.join(directory, MANIFEST_FILE)
            if not os.path.isfile(manifest_path):
                # A known extension keeps its entry while its directory exists
                if entry in existing and os.path.isdir(directory):
                    logger.warning(f"Manifest of extension {entry} is missing, keeping catalog entry")
                    found[entry] = existing[entry]
                continue

            try:
                manifest = read_manifest(manifest_path)
            except InvalidManifest as e:
                logger.error(f"Failed to parse manifest at {manifest_path}: {e}")
                if entry in existing:
                    found[entry] = existing[entry]
                continue

            ext = existing.get(entry)
            if ext is None:
                ext = Extension.from_manifest(entry, manifest, directory, manifest_path)
                new_ids.append(entry)
                logger.info(f"Loaded extension: {ext.name} v{ext.version}")
            elif ext.version != manifest.version:
                logger.info(f"Updating extension {ext.name}: v{ext.version} -> v{manifest.version}")
                ext.apply_manifest(manifest)
                ext.update_date = datetime.now(timezone.utc)
                updated.append(ext)
            found[entry] = ext

        for ext_id in existing:
            if ext_id not in found:
                logger.debug(f"Dropping extension {ext_id}: directory is gone")
                if self.background:
                    self.background.stop_background_script(ext_id)
                if self.content_blocker:
                    self.content_blocker.remove_rules_for_extension(ext_id)

        # Known extensions keep their order, new ones follow
        catalog = [ext for ext_id, ext in existing.items() if ext_id in found]
        catalog.extend(found[ext_id] for ext_id in new_ids)

        with self._lock:
            self.extensions = catalog
        self._save_extensions()

        logger.info(f"Rescanned extensions: {len(catalog)} installed, {len(new_ids)} new, {len(updated)} updated")
        return [found[ext_id] for ext_id in new_ids], updated

    def _apply_update(self, ext: Extension) -> None:
        if self.background and self.background.is_running(ext.id):
            self.background.stop_background_script(ext.id)
            self._start_background(ext)
        self._compile_rules(ext)

    # Installation

    def install_extension(self, source_path: str) -> Extension:
        """
        Install an extension from a directory or a zip file.

        Args:
            source_path: Extension directory or .zip archive

        Returns:
            Extension: The installed extension

        Raises:
            InstallError: If the extension cannot be installed; the catalog is unchanged
        """
        prepared = self._prepare_install(source_path)
        return self.dispatcher.call(self._commit_install, prepared)

    def install_extension_async(self, source_path: str):
        """
        Install an extension without blocking the owner context.

        Extraction and copying run on a worker; the catalog is updated on
        the owner context.

        Returns:
            Future resolved with the installed Extension or the InstallError
        """
        def complete(prepared, error):
            if error is not None:
                logger.error(f"Failed to install extension from {source_path}: {error}")
                raise error
            return self._commit_install(prepared)

        return self.dispatcher.run_async(lambda: self._prepare_install(source_path), complete)

    def _prepare_install(self, source_path: str) -> _PreparedInstall:
        if not os.path.exists(source_path):
            raise InvalidPath(source_path)

        staging = None
        if os.path.isfile(source_path) and source_path.lower().endswith(".zip"):
            staging = tempfile.mkdtemp(prefix="prism-extension-", dir=self.staging_dir)
            source_dir = staging
        elif os.path.isdir(source_path):
            source_dir = source_path
        else:
            raise InvalidFormat(source_path)

        try:
            if staging:
                self._extract_zip(source_path, staging)

            manifest_path = os.path.join(source_dir, MANIFEST_FILE)
            if not os.path.isfile(manifest_path):
                raise MissingManifest(source_path)
            manifest = read_manifest(manifest_path)

            extension_id = generate_extension_id(manifest.name)

            # Copy next to the final location; hidden names are skipped by rescan
            work_dir = tempfile.mkdtemp(prefix=".install-", dir=self.extensions_dir)
            copy_dir = os.path.join(work_dir, extension_id)
            try:
                shutil.copytree(source_dir, copy_dir, symlinks=True)
            except (OSError, shutil.Error) as e:
                shutil.rmtree(work_dir, ignore_errors=True)
                raise FailedToLoad(f"cannot copy extension ({e})")

            return _PreparedInstall(extension_id, work_dir, copy_dir)
        finally:
            if staging:
                shutil.rmtree(staging, ignore_errors=True)

    def _extract_zip(self, archive_path: str, target_dir: str) -> None:
        root = os.path.realpath(target_dir)
        try:
            with zipfile.ZipFile(archive_path) as archive:
                for member in archive.infolist():
                    destination = os.path.realpath(os.path.join(root, member.filename))
                    if destination != root and not destination.startswith(root + os.sep):
                        raise FailedToExtract(f"{member.filename} is outside the archive root")
                archive.extractall(root)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError) as e:
            raise FailedToExtract(str(e))

        logger.debug(f"Extracted {archive_path} to {target_dir}")

    def _commit_install(self, prepared: _PreparedInstall) -> Extension:
        extension_id = prepared.extension_id
        destination = os.path.join(self.extensions_dir, extension_id)

        try:
            if self.get_extension(extension_id) is not None or os.path.exists(destination):
                logger.warning(f"Replacing existing extension {extension_id}")
                self._remove_existing(extension_id, destination)
            os.rename(prepared.copy_dir, destination)
        except OSError as e:
            raise FailedToLoad(f"cannot move extension into place ({e})")
        finally:
            shutil.rmtree(prepared.work_dir, ignore_errors=True)

        manifest_path = os.path.join(destination, MANIFEST_FILE)
        try:
            manifest = read_manifest(manifest_path)
        except InstallError as e:
            shutil.rmtree(destination, ignore_errors=True)
            raise FailedToLoad(str(e))

        ext = Extension.from_manifest(extension_id, manifest, destination, manifest_path)
        with self._lock:
            self.extensions.append(ext)
        self._save_extensions()

        self._start_background(ext)
        self._compile_rules(ext)

        logger.info(f"Installed extension: {ext.name} ({ext.id})")
        return ext

    def _remove_existing(self, extension_id: str, directory: str) -> None:
        if self.background:
            self.background.stop_background_script(extension_id)
        if self.content_blocker:
            self.content_blocker.remove_rules_for_extension(extension_id)
        if os.path.exists(directory):
            shutil.rmtree(directory)
        with self._lock:
            self.extensions = [ext for ext in self.extensions if ext.id != extension_id]

    @on_owner
    def uninstall_extension(self, extension: Extension) -> None:
        """
        Uninstall an extension.

        The background context is stopped before any file is removed.

        Raises:
            UninstallError: If the extension directory cannot be deleted
        """
        ext = self.get_extension(extension.id) or extension

        if self.background:
            self.background.stop_background_script(ext.id)
        if self.content_blocker:
            self.content_blocker.remove_rules_for_extension(ext.id)

        try:
            if os.path.exists(ext.directory):
                shutil.rmtree(ext.directory)
        except OSError as e:
            raise UninstallError(f"{ext.name}: {e}")

        with self._lock:
            self.extensions = [item for item in self.extensions if item.id != ext.id]
        self._save_extensions()

        logger.info(f"Uninstalled extension: {ext.name}")

    # Enable state

    @on_owner
    def toggle_extension(self, extension: Extension) -> bool:
        """
        Enable a disabled extension or disable an enabled one.

        Starts or stops its background script to match.

        Returns:
            bool: The new enabled state
        """
        ext = self.get_extension(extension.id)
        if ext is None:
            logger.warning(f"Extension {extension.id} does not exist")
            return False

        ext.is_enabled = not ext.is_enabled
        extension.is_enabled = ext.is_enabled
        self._save_extensions()

        if ext.is_enabled:
            self._start_background(ext)
            if self.content_blocker and self.content_blocker.get_rule_set(ext.id) is None:
                self._compile_rules(ext)
        elif self.background:
            self.background.stop_background_script(ext.id)

        logger.info(f"{'Enabled' if ext.is_enabled else 'Disabled'} extension: {ext.name}")
        return ext.is_enabled

    @on_owner
    def set_extension_enabled(self, extension: Extension, enabled: bool) -> bool:
        ext = self.get_extension(extension.id)
        if ext is None:
            logger.warning(f"Extension {extension.id} does not exist")
            return False
        if ext.is_enabled != enabled:
            return self.toggle_extension(ext)
        return ext.is_enabled

    def _start_background(self, ext: Extension) -> None:
        if self.background and ext.is_enabled and ext.background_script:
            self.background.start_background_script(ext)

    def _compile_rules(self, ext: Extension) -> None:
        if self.content_blocker and ext.is_enabled:
            self.content_blocker.load_rules_for_extension(ext)

    # Queries

    def get_extensions(self) -> List[Extension]:
        with self._lock:
            return list(self.extensions)

    def get_extension(self, extension_id: str) -> Optional[Extension]:
        with self._lock:
            for ext in self.extensions:
                if ext.id == extension_id:
                    return ext
        return None

    def get_enabled_extensions(self) -> List[Extension]:
        return [ext for ext in self.get_extensions() if ext.is_enabled]

    def is_extension_enabled(self, extension_id: str) -> bool:
        ext = self.get_extension(extension_id)
        return ext is not None and ext.is_enabled

    # Persistence

    def _save_extensions(self) -> None:
        """Write the whole catalog, replacing the previous file atomically."""
        records = [ext.to_dict() for ext in self.get_extensions()]

        try:
            directory = os.path.dirname(os.path.abspath(self.metadata_file))
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(records, f, indent=2)
                os.replace(tmp_path, self.metadata_file)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            logger.error(f"Failed to save extension catalog: {e}")

"""Manifest store: the generated JSON consumed by the packaging layer.

Layout:
    <root>/
        all_plugins.json        # "<id>/--/<version>" -> {"p": ..., "h": ...}
        ides_index.json         # typed list of manifests
        ides/
            <ide>-<version>.json  # plugin id -> registry key

Every file in ides/ is a manifest; consumers recover the IDE name and
version by splitting its file name on the last dash.

The store is only ever replaced as a whole: a new tree is written to a
staging directory next to the root and swapped in with renames.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from jbmarket.config.parser import ConfigError, load_json
from jbmarket.config.schemas import IdeManifestRecord, IndexEntry, RegistryEntry, StoreIndex
from jbmarket.core.registry import prune
from jbmarket.marketplace.ides import split_manifest_name
from jbmarket.utils.filesystem import (
    copy_file,
    ensure_directory,
    remove_directory,
    swap_directories,
    write_json_file,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Error reading or writing the manifest store."""

    def __init__(self, message: str, path: Path | None = None):
        self.path = path
        super().__init__(message)


class ManifestStore:
    """Reads and atomically publishes the generated store."""

    REGISTRY_FILE = "all_plugins.json"
    IDES_DIR = "ides"
    INDEX_FILE = "ides_index.json"

    def __init__(self, root: Path):
        """Initialize the store.

        Args:
            root: Output directory of the generator
        """
        self.root = root

    @property
    def registry_path(self) -> Path:
        return self.root / self.REGISTRY_FILE

    @property
    def ides_dir(self) -> Path:
        return self.root / self.IDES_DIR

    @property
    def index_path(self) -> Path:
        return self.root / self.INDEX_FILE

    def exists(self) -> bool:
        return self.registry_path.exists()

    def load_registry(self) -> dict[str, RegistryEntry]:
        """Load all_plugins.json (empty if the store does not exist yet).

        Raises:
            StoreError: If the file is malformed
        """
        if not self.registry_path.exists():
            return {}
        data = self._read_json(self.registry_path)
        if not isinstance(data, dict):
            raise StoreError("Registry must be a JSON object", self.registry_path)
        try:
            return {key: RegistryEntry.model_validate(value) for key, value in data.items()}
        except ValidationError as e:
            raise StoreError(f"Invalid registry entry: {e}", self.registry_path) from e

    def manifest_files(self) -> dict[tuple[str, str], Path]:
        """Map (IDE name, IDE version) to the manifest file on disk.

        Uses ides_index.json when present, otherwise recovers name and
        version from "<name>-<version>.json" file names.
        """
        if not self.ides_dir.is_dir():
            return {}

        if self.index_path.exists():
            data = self._read_json(self.index_path)
            try:
                index = StoreIndex.model_validate(data)
            except ValidationError as e:
                raise StoreError(f"Invalid store index: {e}", self.index_path) from e
            return {(e.ide_name, e.ide_version): self.ides_dir / e.file for e in index.manifests}

        files: dict[tuple[str, str], Path] = {}
        for path in sorted(self.ides_dir.glob("*.json")):
            parsed = split_manifest_name(path.name)
            if parsed is None:
                logger.warning("Invalid JSON file in ide directory skipped: %s", path)
                continue
            files[parsed] = path
        return files

    def load_manifest(self, ide_name: str, ide_version: str, path: Path) -> IdeManifestRecord:
        data = self._read_json(path)
        if not isinstance(data, dict):
            raise StoreError("Manifest must be a JSON object", path)
        return IdeManifestRecord(ide_name=ide_name, ide_version=ide_version, plugins=data)

    def load_manifests(self) -> list[IdeManifestRecord]:
        """Load every per-IDE manifest."""
        return [
            self.load_manifest(name, version, path)
            for (name, version), path in sorted(self.manifest_files().items())
        ]

    def publish(
        self,
        registry: dict[str, RegistryEntry],
        manifests: Iterable[IdeManifestRecord],
    ) -> Path:
        """Replace the store with new manifests.

        Manifests already on disk that are not in `manifests` are carried
        forward byte-for-byte. The registry is pruned to the keys referenced
        by the resulting set of manifests. If anything fails before the
        final swap, the existing store is untouched.

        Args:
            registry: Registry entries (new and reused)
            manifests: Regenerated manifests

        Returns:
            The store root
        """
        new_manifests = {(m.ide_name, m.ide_version): m for m in manifests}
        existing = self.manifest_files()
        carried = {k: p for k, p in existing.items() if k not in new_manifests}

        ensure_directory(self.root.parent)
        staging = Path(
            tempfile.mkdtemp(prefix=f".{self.root.name}.staging-", dir=self.root.parent)
        )
        logger.debug("Staging store in %s", staging)
        try:
            self._copy_unmanaged(staging)
            staging_ides = ensure_directory(staging / self.IDES_DIR)

            used_keys: set[str] = set()
            index = StoreIndex()

            for (name, version), path in sorted(carried.items()):
                record = self.load_manifest(name, version, path)
                used_keys.update(record.plugins.values())
                copy_file(path, staging_ides / path.name)
                index.manifests.append(
                    IndexEntry(ide_name=name, ide_version=version, file=path.name)
                )

            for _, record in sorted(new_manifests.items()):
                used_keys.update(record.plugins.values())
                write_json_file(staging_ides / record.file_name, record.plugins)
                index.manifests.append(
                    IndexEntry(
                        ide_name=record.ide_name,
                        ide_version=record.ide_version,
                        file=record.file_name,
                    )
                )

            index.manifests.sort(key=lambda e: (e.ide_name, e.ide_version))
            write_json_file(staging / self.INDEX_FILE, index.model_dump(by_alias=True))

            pruned = prune(registry, used_keys)
            write_json_file(
                staging / self.REGISTRY_FILE,
                {key: entry.model_dump() for key, entry in pruned.items()},
            )

            swap_directories(staging, self.root)
        except BaseException:
            remove_directory(staging)
            raise

        logger.info(
            "Published %d manifest(s) (%d carried forward) and %d registry entries to %s",
            len(new_manifests) + len(carried),
            len(carried),
            len(pruned),
            self.root,
        )
        return self.root

    def _copy_unmanaged(self, staging: Path) -> None:
        """Carry over files in the root that the generator does not own."""
        if not self.root.is_dir():
            return
        for path in self.root.iterdir():
            if path.name in (self.REGISTRY_FILE, self.INDEX_FILE, self.IDES_DIR):
                continue
            if path.is_dir():
                shutil.copytree(path, staging / path.name)
            else:
                copy_file(path, staging / path.name)

    @staticmethod
    def _read_json(path: Path) -> Any:
        try:
            return load_json(path)
        except ConfigError as e:
            raise StoreError(str(e), path) from e

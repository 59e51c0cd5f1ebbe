"""Global plugin registry: (plugin id, version) -> download descriptor."""

import logging
import threading
from collections.abc import Iterable, Mapping

from jbmarket.config.schemas import RegistryEntry
from jbmarket.marketplace.base import MARKETPLACE_DOWNLOAD_PREFIX, DownloadDescriptor

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "/--/"


class RegistryConflict(Exception):
    """A registry key was reported with two different descriptors.

    Fatal for the run: either the marketplace republished a version or two
    version strings collide, and a human has to look at it.
    """

    def __init__(self, key: str, existing: RegistryEntry, incoming: RegistryEntry):
        self.key = key
        self.existing = existing
        self.incoming = incoming
        self.summary = None  # BuildSummary of the aborted run, set by the builder
        super().__init__(
            f"Registry conflict for {key}: "
            f"{existing.p} ({existing.h}) != {incoming.p} ({incoming.h})"
        )


def make_key(plugin_id: str, version: str) -> str:
    """Build the composite registry key "<pluginId>/--/<pluginVersion>"."""
    return f"{plugin_id}{KEY_SEPARATOR}{version}"


def split_key(key: str) -> tuple[str, str]:
    """Split a registry key into (plugin id, version).

    Raises:
        ValueError: If the key has no separator
    """
    plugin_id, sep, version = key.partition(KEY_SEPARATOR)
    if not sep:
        raise ValueError(f"Invalid registry key: {key}")
    return plugin_id, version


def entry_from_descriptor(descriptor: DownloadDescriptor) -> RegistryEntry:
    """Convert a download descriptor to its stored form."""
    return RegistryEntry(p=descriptor.path, h=descriptor.bare_hash)


def descriptor_from_entry(entry: RegistryEntry) -> DownloadDescriptor:
    """Convert a stored registry entry back into a full descriptor."""
    return DownloadDescriptor(
        url=f"{MARKETPLACE_DOWNLOAD_PREFIX}{entry.p}", digest=f"sha256-{entry.h}"
    )


class RegistryAccumulator:
    """Registry under construction for one run.

    Merges are serialized by a lock. A key that is merged twice must carry
    the same entry both times.
    """

    def __init__(self, initial: Mapping[str, RegistryEntry] | None = None):
        self._entries: dict[str, RegistryEntry] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> RegistryEntry | None:
        with self._lock:
            return self._entries.get(key)

    def merge(self, key: str, entry: RegistryEntry) -> bool:
        """Insert an entry or validate it against the existing one.

        Returns:
            True if the key was new

        Raises:
            RegistryConflict: If the key exists with a different entry
        """
        with self._lock:
            existing = self._entries.get(key)
            if existing is None:
                self._entries[key] = entry
                return True
            if existing != entry:
                raise RegistryConflict(key, existing, entry)
            return False

    def merge_all(self, items: Iterable[tuple[str, RegistryEntry]]) -> None:
        for key, entry in items:
            self.merge(key, entry)

    def snapshot(self) -> dict[str, RegistryEntry]:
        """Copy of the entries, sorted by key."""
        with self._lock:
            return dict(sorted(self._entries.items()))

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def prune(
    registry: Mapping[str, RegistryEntry], used_keys: Iterable[str]
) -> dict[str, RegistryEntry]:
    """Drop registry entries that no manifest references."""
    used = set(used_keys)
    kept = {k: v for k, v in sorted(registry.items()) if k in used}
    dropped = len(registry) - len(kept)
    if dropped:
        logger.info("Pruned %d unreferenced registry entries", dropped)
    missing = used - set(registry)
    if missing:
        logger.warning("%d manifest entries reference unknown registry keys", len(missing))
    return kept

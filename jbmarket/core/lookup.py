"""Read-only view over a generated store, for packaging consumers.

Joins the per-IDE manifests with the registry and turns entries into
download descriptors the package manager can fetch.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from jbmarket.config.schemas import DEFAULT_ALIASES, IdeManifestRecord, RegistryEntry
from jbmarket.core.registry import descriptor_from_entry, split_key
from jbmarket.core.store import ManifestStore

logger = logging.getLogger(__name__)


class PluginNotFound(Exception):
    """A plugin is not available for the requested IDE version."""

    def __init__(self, ide_name: str, ide_version: str, plugin_id: str, reason: str = ""):
        self.ide_name = ide_name
        self.ide_version = ide_version
        self.plugin_id = plugin_id
        message = f"Plugin {plugin_id} not available for {ide_name} {ide_version}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


@dataclass(frozen=True)
class PluginDownload:
    """Everything needed to fetch one plugin archive."""

    plugin_id: str
    version: str
    url: str
    hash: str
    fetcher: str  # "fetchurl" for jar files, "fetchzip" for archives

    @property
    def executable(self) -> bool:
        return self.fetcher == "fetchurl"

    @property
    def store_name(self) -> str:
        suffix = ".jar" if self.url.endswith(".jar") else ""
        return f"{self.plugin_id}-{self.version}{suffix}"


class PluginLookup:
    """Query a manifest store by IDE name, IDE version and plugin id."""

    def __init__(self, store: ManifestStore, aliases: Mapping[str, str] | None = None):
        """Initialize the lookup.

        Args:
            store: Generated store
            aliases: Legacy IDE name -> canonical name (default: built-in aliases)
        """
        self.store = store
        self.aliases = dict(DEFAULT_ALIASES if aliases is None else aliases)
        self._registry: dict[str, RegistryEntry] | None = None
        self._manifests: dict[tuple[str, str], IdeManifestRecord] | None = None

    def _load(self) -> None:
        if self._registry is None:
            self._registry = self.store.load_registry()
            self._manifests = {
                (m.ide_name, m.ide_version): m for m in self.store.load_manifests()
            }
            logger.debug(
                "Loaded %d manifests and %d registry entries from %s",
                len(self._manifests),
                len(self._registry),
                self.store.root,
            )

    def canonical_name(self, ide_name: str) -> str:
        return self.aliases.get(ide_name, ide_name)

    def ides(self) -> dict[str, list[str]]:
        """Map every IDE name, aliases included, to its available versions."""
        self._load()
        assert self._manifests is not None
        versions: dict[str, list[str]] = {}
        for name, version in sorted(self._manifests):
            versions.setdefault(name, []).append(version)
        for alias, target in sorted(self.aliases.items()):
            if target in versions:
                versions[alias] = list(versions[target])
        return dict(sorted(versions.items()))

    def manifest(self, ide_name: str, ide_version: str) -> IdeManifestRecord | None:
        self._load()
        assert self._manifests is not None
        return self._manifests.get((self.canonical_name(ide_name), ide_version))

    def find(self, ide_name: str, ide_version: str, plugin_id: str) -> PluginDownload:
        """Get the download for one plugin.

        Raises:
            PluginNotFound: If the IDE version or the plugin is unknown
        """
        manifest = self.manifest(ide_name, ide_version)
        if manifest is None:
            raise PluginNotFound(ide_name, ide_version, plugin_id, "unknown IDE version")

        key = manifest.plugins.get(plugin_id)
        if key is None:
            raise PluginNotFound(ide_name, ide_version, plugin_id)

        assert self._registry is not None
        entry = self._registry.get(key)
        if entry is None:
            raise PluginNotFound(ide_name, ide_version, plugin_id, f"registry has no {key}")

        _, version = split_key(key)
        descriptor = descriptor_from_entry(entry)
        return PluginDownload(
            plugin_id=plugin_id,
            version=version,
            url=descriptor.url,
            hash=descriptor.digest,
            fetcher="fetchurl" if descriptor.url.endswith(".jar") else "fetchzip",
        )

    def plugins_for(
        self, ide_name: str, ide_version: str, plugin_ids: Iterable[str]
    ) -> list[PluginDownload]:
        """Resolve a list of plugins for one IDE version, failing on the first missing one."""
        return [self.find(ide_name, ide_version, plugin_id) for plugin_id in plugin_ids]

"""Plugin version resolver for jbmarket.

This module picks, for one IDE build, the best plugin version among the
entries the marketplace reports.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from jbmarket.marketplace.base import PluginCompatibilityEntry
from jbmarket.utils.version import BuildNumber, PluginVersion, in_build_range


class ResolutionError(Exception):
    """Error during plugin version resolution."""

    def __init__(self, message: str, plugin_id: str, build: str):
        self.plugin_id = plugin_id
        self.build = build
        super().__init__(message)


class NoCompatibleVersion(ResolutionError):
    """No plugin version supports the IDE build. Expected, causes omission."""

    def __init__(self, plugin_id: str, build: str):
        super().__init__(f"{plugin_id}: no version compatible with build {build}", plugin_id, build)


class AmbiguousResolution(ResolutionError):
    """The chosen version is reported with different download descriptors."""

    def __init__(
        self,
        plugin_id: str,
        build: str,
        version: str,
        candidates: list[tuple[str | None, str | None]],
    ):
        self.version = version
        self.candidates = candidates
        listing = ", ".join(f"{url or '?'} ({digest or '?'})" for url, digest in candidates)
        super().__init__(
            f"{plugin_id}@{version}: ambiguous download for build {build}: {listing}",
            plugin_id,
            build,
        )


@dataclass(frozen=True)
class ResolvedPlugin:
    """The outcome of resolving one plugin for one IDE build."""

    plugin_id: str
    version: str
    url: str | None = None
    digest: str | None = None


def _normalize_build(build: str | BuildNumber) -> BuildNumber:
    return build if isinstance(build, BuildNumber) else BuildNumber.parse(build)


def compatible_entries(
    build: str | BuildNumber,
    entries: Sequence[PluginCompatibilityEntry],
    product_code: str | None = None,
) -> list[tuple[int, PluginCompatibilityEntry]]:
    """Filter entries to those whose build range contains the build.

    Entries whose since/until cannot be parsed are skipped. Entries
    tagged with a different product code are skipped.

    Returns:
        (input position, entry) pairs in input order
    """
    build = _normalize_build(build)
    survivors = []
    for position, entry in enumerate(entries):
        if product_code and entry.product_code and entry.product_code != product_code:
            continue
        try:
            if in_build_range(build, entry.since_build, entry.until_build):
                survivors.append((position, entry))
        except ValueError:
            continue
    return survivors


def resolve(
    product_code: str | None,
    ide_build: str | BuildNumber,
    plugin_id: str,
    entries: Sequence[PluginCompatibilityEntry],
) -> ResolvedPlugin:
    """Resolve the best plugin version for an IDE build.

    Selection order: highest plugin version, then most recent publish
    timestamp, then earliest position in the input.

    Args:
        product_code: Marketplace product code of the IDE (None to ignore)
        ide_build: IDE build number
        plugin_id: Plugin being resolved
        entries: Marketplace entries for the plugin

    Returns:
        The resolved plugin

    Raises:
        NoCompatibleVersion: If no entry's range contains the build
        AmbiguousResolution: If the chosen version has conflicting descriptors
    """
    build = _normalize_build(ide_build)
    survivors = []
    for position, entry in compatible_entries(build, entries, product_code):
        try:
            survivors.append((PluginVersion(entry.version), position, entry))
        except ValueError:
            continue

    if not survivors:
        raise NoCompatibleVersion(plugin_id, str(build))

    def rank(item: tuple[PluginVersion, int, PluginCompatibilityEntry]) -> tuple:
        version, position, entry = item
        published = entry.published.timestamp() if entry.published else float("-inf")
        return (version.key, published, -position)

    best_version, _, best = max(survivors, key=rank)

    same_version = [entry for version, _, entry in survivors if version == best_version]
    descriptors = sorted(
        {(e.url, e.digest) for e in same_version},
        key=lambda d: (d[0] or "", d[1] or ""),
    )
    if len(descriptors) > 1:
        raise AmbiguousResolution(plugin_id, str(build), best.version, descriptors)

    return ResolvedPlugin(
        plugin_id=plugin_id, version=best.version, url=best.url, digest=best.digest
    )


class VersionResolver:
    """Resolves plugins against a marketplace snapshot.

    A thin object wrapper over resolve() so the builder can be handed a
    resolver with a fixed product scope.
    """

    def __init__(self, match_product_code: bool = False):
        """Initialize the resolver.

        Args:
            match_product_code: Skip entries tagged with a different product code
        """
        self._match_product_code = match_product_code

    def resolve(
        self,
        product_code: str | None,
        ide_build: str | BuildNumber,
        plugin_id: str,
        entries: Sequence[PluginCompatibilityEntry],
    ) -> ResolvedPlugin:
        """Resolve the best plugin version for an IDE build (see resolve())."""
        code = product_code if self._match_product_code else None
        return resolve(code, ide_build, plugin_id, entries)

"""Manifest builder.

Resolves every plugin for every in-window IDE build and aggregates the
results into per-IDE manifests plus registry entries. Plugins are processed
on a bounded thread pool; their outcomes are merged into the registry on
the calling thread in sorted plugin-id order, so conflicts are detected the
same way whatever order the workers finish in.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from jbmarket.config.schemas import IdeManifestRecord, RegistryEntry, RetryConfig
from jbmarket.core.registry import (
    RegistryAccumulator,
    RegistryConflict,
    entry_from_descriptor,
    make_key,
)
from jbmarket.core.resolver import (
    AmbiguousResolution,
    NoCompatibleVersion,
    ResolvedPlugin,
    VersionResolver,
)
from jbmarket.marketplace.base import (
    DownloadDescriptor,
    IdeBuild,
    MarketplaceClient,
    MarketplaceError,
    NotFound,
    PluginCompatibilityEntry,
)
from jbmarket.marketplace.ides import product_for_key
from jbmarket.marketplace.prefetch import PrefetchError
from jbmarket.marketplace.throttle import RetryBudgetExhausted, call_with_retries

logger = logging.getLogger(__name__)


@dataclass
class Omission:
    """A plugin left out of one IDE manifest (or out of all of them)."""

    plugin_id: str
    reason: str
    ide: str | None = None  # None: omitted from every IDE


@dataclass
class PluginOutcome:
    """What one worker produced for one plugin."""

    plugin_id: str
    assignments: list[tuple[IdeBuild, str, RegistryEntry]] = field(default_factory=list)
    omissions: list[Omission] = field(default_factory=list)
    ambiguities: list[AmbiguousResolution] = field(default_factory=list)
    conflicts: list[RegistryConflict] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


@dataclass
class BuildSummary:
    """Human-readable outcome of a builder run."""

    ide_builds: int = 0
    plugins: int = 0
    assigned: int = 0
    new_registry_entries: int = 0
    omissions: list[Omission] = field(default_factory=list)
    ambiguities: list[AmbiguousResolution] = field(default_factory=list)
    conflicts: list[RegistryConflict] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def incompatible_count(self) -> int:
        return sum(1 for o in self.omissions if o.ide is not None)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.ambiguities or self.conflicts)


@dataclass
class BuildResult:
    """Manifests and registry produced by a run."""

    manifests: list[IdeManifestRecord]
    registry: dict[str, RegistryEntry]
    summary: BuildSummary


class ManifestBuilder:
    """Builds IDE manifests and registry entries from marketplace data."""

    def __init__(
        self,
        client: MarketplaceClient,
        resolver: VersionResolver | None = None,
        known_registry: Mapping[str, RegistryEntry] | None = None,
        retry: RetryConfig | None = None,
        workers: int = 16,
        skip: Iterable[str] = (),
        reuse_registry: bool = True,
    ):
        """Initialize the builder.

        Args:
            client: Marketplace client
            resolver: Version resolver (default: VersionResolver())
            known_registry: Registry of the previous store. Seeds the run's
                registry and, with reuse_registry, saves re-hashing archives.
            retry: Retry budget for marketplace calls
            workers: Maximum number of plugins processed concurrently
            skip: Plugin ids known to be broken
            reuse_registry: Take descriptors for known keys from known_registry
        """
        self.client = client
        self.resolver = resolver or VersionResolver()
        self.known_registry = dict(known_registry or {})
        self.retry = retry or RetryConfig()
        self.workers = workers
        self.skip = set(skip)
        self.reuse_registry = reuse_registry

    def build(
        self,
        product_code: str,
        ide_build: IdeBuild,
        plugin_ids: Iterable[str],
        resolver: VersionResolver | None = None,
    ) -> tuple[IdeManifestRecord, dict[str, RegistryEntry]]:
        """Build the manifest of a single IDE build.

        Args:
            product_code: Marketplace product code of the IDE
            ide_build: The IDE build
            plugin_ids: Plugins to resolve
            resolver: Resolver overriding the builder's own

        Returns:
            (manifest, registry entries not present in the known registry)
        """
        product = product_for_key(ide_build.ide)
        if product is not None and product.code != product_code:
            logger.warning(
                "%s belongs to product %s, not %s", ide_build.label, product.code, product_code
            )

        previous = self.resolver
        if resolver is not None:
            self.resolver = resolver
        try:
            result = self.run([ide_build], plugin_ids)
        finally:
            self.resolver = previous

        deltas = {k: v for k, v in result.registry.items() if k not in self.known_registry}
        return result.manifests[0], deltas

    def run(self, ide_builds: Iterable[IdeBuild], plugin_ids: Iterable[str]) -> BuildResult:
        """Resolve every plugin for every IDE build.

        Both run-level errors carry the summary of what was collected before
        the run gave up in their `summary` attribute.

        Args:
            ide_builds: In-window IDE builds
            plugin_ids: Plugins to resolve

        Returns:
            BuildResult with one manifest per IDE build

        Raises:
            RegistryConflict: If a registry key is seen with two descriptors
            RetryBudgetExhausted: If the marketplace kept failing
        """
        builds = self._unique_builds(ide_builds)
        plugin_ids = sorted(set(plugin_ids))
        summary = BuildSummary(ide_builds=len(builds), plugins=len(plugin_ids))

        logger.info("Indexing %d IDE versions and %d plugins.", len(builds), len(plugin_ids))
        outcomes: dict[str, PluginOutcome] = {}
        try:
            self._collect_outcomes(builds, plugin_ids, outcomes)
        except RetryBudgetExhausted as e:
            self._merge(builds, plugin_ids, outcomes, summary)
            e.summary = summary
            raise

        manifests, registry = self._merge(builds, plugin_ids, outcomes, summary)
        if summary.conflicts:
            conflict = summary.conflicts[0]
            conflict.summary = summary
            raise conflict

        return BuildResult(manifests=manifests, registry=registry, summary=summary)

    def _merge(
        self,
        builds: list[IdeBuild],
        plugin_ids: list[str],
        outcomes: Mapping[str, PluginOutcome],
        summary: BuildSummary,
    ) -> tuple[list[IdeManifestRecord], dict[str, RegistryEntry]]:
        """Merge worker outcomes in plugin-id order, recording conflicts in the summary."""
        registry = RegistryAccumulator(self.known_registry)
        manifests = {
            b.label: IdeManifestRecord(ide_name=b.ide, ide_version=b.version) for b in builds
        }

        for plugin_id in plugin_ids:
            outcome = outcomes.get(plugin_id)
            if outcome is None:
                continue
            for build, key, entry in outcome.assignments:
                try:
                    if registry.merge(key, entry):
                        summary.new_registry_entries += 1
                except RegistryConflict as e:
                    logger.error("%s", e)
                    summary.conflicts.append(e)
                    continue
                manifests[build.label].plugins[plugin_id] = key
                summary.assigned += 1
            summary.omissions.extend(outcome.omissions)
            summary.ambiguities.extend(outcome.ambiguities)
            summary.conflicts.extend(outcome.conflicts)
            summary.failures.extend(outcome.failures)

        return [manifests[b.label] for b in builds], registry.snapshot()

    @staticmethod
    def _unique_builds(ide_builds: Iterable[IdeBuild]) -> list[IdeBuild]:
        seen: set[str] = set()
        unique: list[IdeBuild] = []
        for build in ide_builds:
            if build.label in seen:
                continue
            seen.add(build.label)
            unique.append(build)
        return unique

    def _collect_outcomes(
        self, builds: list[IdeBuild], plugin_ids: list[str], outcomes: dict[str, PluginOutcome]
    ) -> None:
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures: dict[Future[PluginOutcome], str] = {
                executor.submit(self._process_plugin, plugin_id, builds): plugin_id
                for plugin_id in plugin_ids
            }
            try:
                for future in as_completed(futures):
                    outcomes[futures[future]] = future.result()
            except BaseException:
                # Stop issuing new queries; in-flight ones drain on exit
                executor.shutdown(wait=False, cancel_futures=True)
                raise

    def _process_plugin(self, plugin_id: str, builds: list[IdeBuild]) -> PluginOutcome:
        outcome = PluginOutcome(plugin_id=plugin_id)
        logger.debug("Processing %s...", plugin_id)

        if plugin_id in self.skip:
            logger.warning("%s: plugin is marked as broken, skipping...", plugin_id)
            outcome.omissions.append(Omission(plugin_id, "marked as broken"))
            return outcome

        try:
            entries = call_with_retries(
                lambda: self.client.fetch_compatibility(plugin_id),
                self.retry,
                f"{plugin_id} details",
            )
        except NotFound:
            logger.warning("%s: not found on the marketplace", plugin_id)
            outcome.omissions.append(Omission(plugin_id, "not found"))
            return outcome
        except MarketplaceError as e:
            logger.error("%s: %s", plugin_id, e)
            outcome.failures.append(f"{plugin_id}: {e}")
            return outcome

        if not entries:
            outcome.omissions.append(Omission(plugin_id, "no plugin details"))
            return outcome

        outcome.conflicts.extend(self._listed_conflicts(plugin_id, entries))
        if outcome.conflicts:
            return outcome

        # Fetched descriptors per version; None marks a download that 404'd
        fetched: dict[str, RegistryEntry | None] = {}
        for build in builds:
            resolved = self._resolve_for(build, plugin_id, entries, outcome)
            if resolved is None:
                continue

            key = make_key(plugin_id, resolved.version)
            try:
                entry = self._descriptor_for(resolved, fetched)
            except (MarketplaceError, PrefetchError) as e:
                logger.error("%s@%s: %s", plugin_id, resolved.version, e)
                outcome.failures.append(f"{plugin_id}@{resolved.version}: {e}")
                break

            if entry is None:
                outcome.omissions.append(Omission(plugin_id, "download not available", build.label))
                continue
            outcome.assignments.append((build, key, entry))

        return outcome

    @staticmethod
    def _listed_conflicts(
        plugin_id: str, entries: list[PluginCompatibilityEntry]
    ) -> list[RegistryConflict]:
        """Check that every listed version has at most one descriptor.

        A version listed twice with different archives conflicts even when
        only one of the listings matches a build of this run.
        """
        listed = RegistryAccumulator()
        conflicts: list[RegistryConflict] = []
        for entry in entries:
            if not (entry.url and entry.digest):
                continue
            key = make_key(plugin_id, entry.version)
            try:
                descriptor = DownloadDescriptor(entry.url, entry.digest)
                listed.merge(key, entry_from_descriptor(descriptor))
            except RegistryConflict as e:
                logger.error("%s", e)
                conflicts.append(e)
        return conflicts

    def _resolve_for(
        self,
        build: IdeBuild,
        plugin_id: str,
        entries: list[PluginCompatibilityEntry],
        outcome: PluginOutcome,
    ) -> ResolvedPlugin | None:
        if not build.build_number:
            logger.debug("%s: no build number, skipped", build.label)
            return None

        product = product_for_key(build.ide)
        try:
            return self.resolver.resolve(
                product.code if product else None, build.build_number, plugin_id, entries
            )
        except NoCompatibleVersion:
            logger.debug("%s: IDE %s not supported.", plugin_id, build.label)
            outcome.omissions.append(Omission(plugin_id, "no compatible version", build.label))
        except AmbiguousResolution as e:
            logger.error("%s", e)
            outcome.ambiguities.append(e)
        except ValueError as e:
            logger.warning("%s: cannot compare build %s: %s", plugin_id, build.build_number, e)
            outcome.omissions.append(Omission(plugin_id, "invalid build number", build.label))
        return None

    def _descriptor_for(
        self, resolved: ResolvedPlugin, fetched: dict[str, RegistryEntry | None]
    ) -> RegistryEntry | None:
        """Get the registry entry for a resolved plugin, or None on 404."""
        if resolved.url and resolved.digest:
            return entry_from_descriptor(DownloadDescriptor(resolved.url, resolved.digest))

        key = make_key(resolved.plugin_id, resolved.version)
        if key in fetched:
            return fetched[key]
        if self.reuse_registry and key in self.known_registry:
            return self.known_registry[key]

        try:
            descriptor = call_with_retries(
                lambda: self.client.fetch_descriptor(resolved.plugin_id, resolved.version),
                self.retry,
                f"{resolved.plugin_id}@{resolved.version} download",
            )
        except NotFound:
            logger.warning("%s@%s: not available: skipping", resolved.plugin_id, resolved.version)
            fetched[key] = None
            return None
        fetched[key] = entry_from_descriptor(descriptor)
        return fetched[key]

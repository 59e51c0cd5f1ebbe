"""Generator run orchestrator.

Ties the marketplace client, freshness policy, builder and store together:
list IDE builds, keep the fresh ones, resolve every plugin for them and
publish the new store. Nothing is written unless the whole run succeeds.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from jbmarket.config.schemas import GeneratorConfig
from jbmarket.core.builder import BuildSummary, ManifestBuilder
from jbmarket.core.freshness import FreshnessPolicy
from jbmarket.core.resolver import VersionResolver
from jbmarket.core.store import ManifestStore
from jbmarket.marketplace.base import IdeBuild, MarketplaceClient
from jbmarket.marketplace.throttle import call_with_retries

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_PATH = "data/cache"


@dataclass
class GenerationReport:
    """Result of a generator run."""

    output_path: Path
    fresh_builds: list[IdeBuild] = field(default_factory=list)
    carried_forward: int = 0
    registry_size: int = 0
    published: bool = False
    summary: BuildSummary = field(default_factory=BuildSummary)


class Generator:
    """Regenerates the manifest store from the marketplace."""

    def __init__(
        self,
        config: GeneratorConfig,
        client: MarketplaceClient,
        output_path: Path | None = None,
        freshness: FreshnessPolicy | None = None,
    ):
        """Initialize the generator.

        Args:
            config: Generator configuration
            client: Marketplace client
            output_path: Store directory (overrides config.output_path)
            freshness: Freshness policy (default: built from config.freshness)
        """
        self.config = config
        self.client = client
        self.output_path = output_path or Path(config.output_path or DEFAULT_OUTPUT_PATH)
        self.store = ManifestStore(self.output_path)
        self.freshness = freshness or FreshnessPolicy.from_config(config.freshness)

    def run(self, dry_run: bool = False) -> GenerationReport:
        """Run the generator.

        Args:
            dry_run: Resolve everything but leave the store untouched

        Returns:
            GenerationReport

        Raises:
            RetryBudgetExhausted: If the marketplace kept failing
            RegistryConflict: If two descriptors were seen for one registry key
            StoreError: If the existing store is malformed or cannot be replaced
        """
        report = GenerationReport(output_path=self.output_path)

        known_registry = self.store.load_registry() if self.store.exists() else {}
        existing = self.store.manifest_files()
        logger.info(
            "Loaded store at %s: %d registry entries, %d manifests",
            self.output_path,
            len(known_registry),
            len(existing),
        )

        products = self.config.products or None
        builds = call_with_retries(
            lambda: self.client.list_all_ide_builds(products),
            self.config.retry,
            "IDE release feeds",
        )
        report.fresh_builds = self.freshness.select(builds)
        logger.info(
            "%d of %d IDE versions are inside the freshness window",
            len(report.fresh_builds),
            len(builds),
        )

        plugin_ids = self._plugin_ids()

        builder = ManifestBuilder(
            self.client,
            resolver=VersionResolver(),
            known_registry=known_registry,
            retry=self.config.retry,
            workers=self.config.workers,
            skip=self.config.quirks.skip,
            reuse_registry=self.config.reuse_registry,
        )
        result = builder.run(report.fresh_builds, plugin_ids)
        report.summary = result.summary
        report.registry_size = len(result.registry)

        regenerated = {(m.ide_name, m.ide_version) for m in result.manifests}
        report.carried_forward = sum(1 for key in existing if key not in regenerated)

        if dry_run:
            logger.info("Dry run: store at %s left untouched", self.output_path)
            return report

        self.store.publish(result.registry, result.manifests)
        report.published = True
        return report

    def _plugin_ids(self) -> list[str]:
        if self.config.plugins:
            return sorted(set(self.config.plugins))
        ids = call_with_retries(
            lambda: self.client.list_plugin_ids("all"),
            self.config.retry,
            "plugin indices",
        )
        return sorted(ids)

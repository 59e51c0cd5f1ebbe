"""Tests for jbmarket.core.generator module."""

from datetime import date
from pathlib import Path

import pytest

from jbmarket.config.schemas import GeneratorConfig
from jbmarket.core.freshness import FreshnessPolicy
from jbmarket.core.generator import Generator
from jbmarket.core.registry import RegistryConflict
from jbmarket.core.store import ManifestStore
from jbmarket.marketplace.base import IdeBuild


@pytest.fixture
def config(fast_retry) -> GeneratorConfig:
    return GeneratorConfig(retry=fast_retry, workers=4, freshness={"today": "2026-10-18"})


class TestGenerator:
    """Tests for Generator.run."""

    def test_publishes_fresh_manifests(self, config, sample_client, temp_dir: Path):
        """Only in-window IDE versions are written."""
        generator = Generator(config, sample_client, output_path=temp_dir / "cache")

        report = generator.run()

        assert report.published
        files = sorted(p.name for p in (temp_dir / "cache" / "ides").iterdir())
        assert files == [
            "idea-2025.3.1.json",
            "idea-2026.1.json",
            "pycharm-2026.1.json",
        ]

    def test_plugin_ids_from_index(self, config, sample_client, temp_dir: Path):
        """Without configured plugins, the marketplace index is used."""
        Generator(config, sample_client, output_path=temp_dir / "cache").run()

        assert sample_client.count("plugin-ids") == 1
        assert sample_client.count("details:gamma") == 1

    def test_configured_plugins_only(self, config, sample_client, temp_dir: Path):
        config.plugins = ["beta"]

        Generator(config, sample_client, output_path=temp_dir / "cache").run()

        assert sample_client.count("plugin-ids") == 0
        assert sample_client.count("details:alpha") == 0

    def test_dry_run_writes_nothing(self, config, sample_client, temp_dir: Path):
        report = Generator(config, sample_client, output_path=temp_dir / "cache").run(
            dry_run=True
        )

        assert not report.published
        assert report.summary.assigned > 0
        assert not (temp_dir / "cache").exists()

    def test_carries_forward_stale_manifests(self, config, sample_client, temp_dir: Path):
        """A second run, a year later, keeps the old manifests."""
        output = temp_dir / "cache"
        Generator(config, sample_client, output_path=output).run()
        old = (output / "ides" / "idea-2025.3.1.json").read_bytes()

        sample_client.builds.append(IdeBuild("idea", "2027.1", "271.1"))
        later = FreshnessPolicy(today=date(2027, 10, 18))
        report = Generator(config, sample_client, output_path=output, freshness=later).run()

        assert report.carried_forward == 1
        assert (output / "ides" / "idea-2025.3.1.json").read_bytes() == old
        assert (output / "ides" / "idea-2027.1.json").exists()

    def test_conflict_leaves_store_unchanged(
        self, config, sample_client, entry_factory, temp_dir: Path
    ):
        """A RegistryConflict aborts before anything is written."""
        output = temp_dir / "cache"
        Generator(config, sample_client, output_path=output).run()
        before = {p: p.read_bytes() for p in output.rglob("*") if p.is_file()}

        url = "https://downloads.marketplace.jetbrains.com/files/x/1.0/x.zip"
        sample_client.compatibility["x"] = [
            entry_factory("1.0", "253", "253.*", plugin_id="x", url=url, digest="sha256-h1"),
            entry_factory("1.0", "261", None, plugin_id="x", url=url, digest="sha256-h2"),
        ]

        with pytest.raises(RegistryConflict):
            Generator(config, sample_client, output_path=output).run()

        assert {p: p.read_bytes() for p in output.rglob("*") if p.is_file()} == before

    def test_republished_version_leaves_store_unchanged(
        self, config, sample_client, entry_factory, temp_dir: Path
    ):
        """Two hashes listed for one version abort the run, even when both match."""
        output = temp_dir / "cache"
        Generator(config, sample_client, output_path=output).run()
        before = {p: p.read_bytes() for p in output.rglob("*") if p.is_file()}

        url = "https://downloads.marketplace.jetbrains.com/files/x/1.0/x.zip"
        sample_client.compatibility["x"] = [
            entry_factory("1.0", url=url, digest="sha256-h1"),
            entry_factory("1.0", url=url, digest="sha256-h2"),
        ]

        with pytest.raises(RegistryConflict) as exc_info:
            Generator(config, sample_client, output_path=output).run()

        assert exc_info.value.key == "x/--/1.0"
        assert exc_info.value.summary.omissions
        assert {p: p.read_bytes() for p in output.rglob("*") if p.is_file()} == before

    def test_reuses_existing_registry(self, config, sample_client, temp_dir: Path):
        """A second run does not hash known archives again."""
        output = temp_dir / "cache"
        Generator(config, sample_client, output_path=output).run()
        downloads = sum(1 for c in sample_client.calls if c.startswith("download:"))

        Generator(config, sample_client, output_path=output).run()

        assert sum(1 for c in sample_client.calls if c.startswith("download:")) == downloads

    def test_default_output_path(self, config, sample_client):
        config.output_path = "out/store"

        generator = Generator(config, sample_client)

        assert generator.output_path == Path("out/store")
        assert isinstance(generator.store, ManifestStore)

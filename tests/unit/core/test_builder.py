"""Tests for jbmarket.core.builder module."""

import pytest

from jbmarket.config.schemas import RegistryEntry
from jbmarket.core.builder import ManifestBuilder
from jbmarket.core.registry import RegistryConflict
from jbmarket.marketplace.base import IdeBuild, NetworkFailure, RateLimited
from jbmarket.marketplace.throttle import RetryBudgetExhausted


class TestManifestBuilderRun:
    """Tests for ManifestBuilder.run."""

    def test_builds_one_manifest_per_ide(self, sample_client, sample_builds, fast_retry):
        """Every IDE build gets a manifest, in input order."""
        builder = ManifestBuilder(sample_client, retry=fast_retry)

        result = builder.run(sample_builds, ["alpha", "beta", "gamma"])

        assert [(m.ide_name, m.ide_version) for m in result.manifests] == [
            ("idea", "2026.1"),
            ("idea", "2025.3.1"),
            ("idea", "2025.2.4"),
            ("pycharm", "2026.1"),
        ]

    def test_resolves_per_build(self, sample_client, sample_builds, fast_retry):
        """Each manifest maps plugins to the version compatible with its build."""
        builder = ManifestBuilder(sample_client, retry=fast_retry)

        result = builder.run(sample_builds, ["alpha", "beta", "gamma"])
        by_label = {f"{m.ide_name}-{m.ide_version}": m.plugins for m in result.manifests}

        assert by_label["idea-2026.1"] == {"alpha": "alpha/--/2.0", "beta": "beta/--/0.9.1"}
        assert by_label["idea-2025.3.1"] == {"alpha": "alpha/--/1.0", "beta": "beta/--/0.9.1"}
        assert by_label["idea-2025.2.4"] == {
            "alpha": "alpha/--/1.0",
            "beta": "beta/--/0.9.1",
            "gamma": "gamma/--/3.1",
        }

    def test_registry_holds_path_and_bare_hash(self, sample_client, sample_builds, fast_retry):
        """Registry entries strip the download prefix and the hash algorithm."""
        builder = ManifestBuilder(sample_client, retry=fast_retry)

        result = builder.run(sample_builds, ["beta"])

        assert result.registry == {
            "beta/--/0.9.1": RegistryEntry(p="files/beta/0.9.1/beta.jar", h="beta0.9.1hash=")
        }

    def test_downloads_each_version_once(self, sample_client, sample_builds, fast_retry):
        """A version shared by several IDE builds is hashed once."""
        builder = ManifestBuilder(sample_client, retry=fast_retry)

        builder.run(sample_builds, ["beta"])

        assert sample_client.count("download:beta@0.9.1") == 1
        assert sample_client.count("details:beta") == 1

    def test_reuses_known_registry(self, sample_client, sample_builds, fast_retry):
        """Known registry entries are not downloaded again."""
        known = {"beta/--/0.9.1": RegistryEntry(p="files/beta/0.9.1/beta.jar", h="beta0.9.1hash=")}
        builder = ManifestBuilder(sample_client, known_registry=known, retry=fast_retry)

        result = builder.run(sample_builds, ["beta"])

        assert sample_client.count("download:beta@0.9.1") == 0
        assert result.summary.new_registry_entries == 0

    def test_ignores_known_registry_when_disabled(self, sample_client, sample_builds, fast_retry):
        """reuse_registry=False hashes everything again."""
        known = {"beta/--/0.9.1": RegistryEntry(p="files/beta/0.9.1/beta.jar", h="beta0.9.1hash=")}
        builder = ManifestBuilder(
            sample_client, known_registry=known, retry=fast_retry, reuse_registry=False
        )

        builder.run(sample_builds, ["beta"])

        assert sample_client.count("download:beta@0.9.1") == 1

    def test_incompatible_plugin_is_omitted(self, sample_client, sample_builds, fast_retry):
        """NoCompatibleVersion leaves the plugin out and reports it."""
        builder = ManifestBuilder(sample_client, retry=fast_retry)

        result = builder.run(sample_builds, ["gamma"])

        assert result.manifests[0].plugins == {}
        reasons = {(o.ide, o.reason) for o in result.summary.omissions}
        assert ("idea-2026.1", "no compatible version") in reasons
        assert result.summary.incompatible_count == 3

    def test_unknown_plugin_is_omitted(self, sample_client, sample_builds, fast_retry):
        """NotFound on the details request omits the plugin everywhere."""
        builder = ManifestBuilder(sample_client, retry=fast_retry)

        result = builder.run(sample_builds, ["missing"])

        assert all(m.plugins == {} for m in result.manifests)
        assert [(o.plugin_id, o.ide, o.reason) for o in result.summary.omissions] == [
            ("missing", None, "not found")
        ]
        assert sample_client.count("details:missing") == 1

    def test_skip_list(self, sample_client, sample_builds, fast_retry):
        """Plugins on the skip list are never queried."""
        builder = ManifestBuilder(sample_client, retry=fast_retry, skip=["alpha"])

        result = builder.run(sample_builds, ["alpha"])

        assert sample_client.count("details:alpha") == 0
        assert result.summary.omissions[0].reason == "marked as broken"

    def test_missing_download_not_retried(self, sample_client, sample_builds, fast_retry):
        """A 404 download is remembered for the other IDE builds."""
        del sample_client.descriptors[("beta", "0.9.1")]
        builder = ManifestBuilder(sample_client, retry=fast_retry)

        result = builder.run(sample_builds, ["beta"])

        assert sample_client.count("download:beta@0.9.1") == 1
        assert result.registry == {}
        assert all("beta" not in m.plugins for m in result.manifests)
        assert {o.reason for o in result.summary.omissions} == {"download not available"}

    def test_retries_transient_failures(self, sample_client, sample_builds, fast_retry):
        """NetworkFailure and RateLimited are retried within the budget."""
        sample_client.failures["details:beta"] = [
            NetworkFailure("boom", status_code=502),
            RateLimited("slow down", retry_after=0),
        ]
        builder = ManifestBuilder(sample_client, retry=fast_retry)

        result = builder.run(sample_builds, ["beta"])

        assert sample_client.count("details:beta") == 3
        assert result.manifests[0].plugins == {"beta": "beta/--/0.9.1"}

    def test_exhausted_retries_abort(self, sample_client, sample_builds, fast_retry):
        """RetryBudgetExhausted is a run-level failure."""
        sample_client.failures["details:beta"] = [NetworkFailure("down")] * 3
        builder = ManifestBuilder(sample_client, retry=fast_retry, workers=1)

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            builder.run(sample_builds, ["beta"])

        assert exc_info.value.attempts == 3

    def test_conflicting_descriptors_across_builds(self, fake_client_class, entry_factory):
        """The same key with two hashes raises RegistryConflict."""
        url = "https://downloads.marketplace.jetbrains.com/files/x/1.0/x.zip"
        client = fake_client_class(
            compatibility={
                "x": [
                    entry_factory("1.0", "100", "150", url=url, digest="sha256-h1"),
                    entry_factory("1.0", "160", None, url=url, digest="sha256-h2"),
                ]
            }
        )
        builds = [IdeBuild("idea", "2025.1", "120"), IdeBuild("idea", "2025.2", "170")]

        with pytest.raises(RegistryConflict) as exc_info:
            ManifestBuilder(client).run(builds, ["x"])

        assert exc_info.value.key == "x/--/1.0"
        assert exc_info.value.existing.h == "h1"
        assert exc_info.value.incoming.h == "h2"

    def test_conflict_with_known_registry(self, fake_client_class, entry_factory):
        """A marketplace hash that disagrees with the stored registry is a conflict."""
        url = "https://downloads.marketplace.jetbrains.com/files/x/1.0/x.zip"
        client = fake_client_class(
            compatibility={"x": [entry_factory("1.0", url=url, digest="sha256-new")]}
        )
        known = {"x/--/1.0": RegistryEntry(p="files/x/1.0/x.zip", h="old")}

        with pytest.raises(RegistryConflict):
            ManifestBuilder(client, known_registry=known).run(
                [IdeBuild("idea", "2026.1", "261.1")], ["x"]
            )

    def test_same_version_listed_twice_conflicts(self, fake_client_class, entry_factory):
        """One version listed with two hashes aborts even for a single build."""
        url = "https://downloads.marketplace.jetbrains.com/files/x/1.0/x.zip"
        client = fake_client_class(
            compatibility={
                "x": [
                    entry_factory("1.0", url=url, digest="sha256-h1"),
                    entry_factory("1.0", url=url, digest="sha256-h2"),
                ]
            }
        )

        with pytest.raises(RegistryConflict) as exc_info:
            ManifestBuilder(client).run([IdeBuild("idea", "2026.1", "261.1")], ["x"])

        assert exc_info.value.key == "x/--/1.0"
        assert {exc_info.value.existing.h, exc_info.value.incoming.h} == {"h1", "h2"}

    def test_overlapping_listings_conflict(self, fake_client_class, entry_factory):
        """A second hash for a version aborts even if one build resolves cleanly."""
        url = "https://downloads.marketplace.jetbrains.com/files/x/1.0/x.zip"
        client = fake_client_class(
            compatibility={
                "x": [
                    entry_factory("1.0", "100", "200", url=url, digest="sha256-h1"),
                    entry_factory("1.0", "150", "300", url=url, digest="sha256-h2"),
                ]
            }
        )
        builds = [IdeBuild("idea", "2025.1", "120"), IdeBuild("idea", "2025.2", "180")]

        with pytest.raises(RegistryConflict):
            ManifestBuilder(client).run(builds, ["x"])

    def test_conflict_carries_partial_summary(
        self, sample_client, sample_builds, entry_factory, fast_retry
    ):
        """The aborting conflict exposes what the other plugins produced."""
        url = "https://downloads.marketplace.jetbrains.com/files/x/1.0/x.zip"
        sample_client.compatibility["x"] = [
            entry_factory("1.0", url=url, digest="sha256-h1"),
            entry_factory("1.0", url=url, digest="sha256-h2"),
        ]
        builder = ManifestBuilder(sample_client, retry=fast_retry)

        with pytest.raises(RegistryConflict) as exc_info:
            builder.run(sample_builds, ["alpha", "gamma", "x"])

        summary = exc_info.value.summary
        assert summary.has_conflicts
        assert [c.key for c in summary.conflicts] == ["x/--/1.0"]
        assert ("gamma", "idea-2026.1") in {(o.plugin_id, o.ide) for o in summary.omissions}
        assert summary.assigned > 0

    def test_exhausted_retries_carry_summary(self, sample_client, sample_builds, fast_retry):
        sample_client.failures["details:beta"] = [NetworkFailure("down")] * 3
        builder = ManifestBuilder(sample_client, retry=fast_retry, workers=1)

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            builder.run(sample_builds, ["alpha", "beta"])

        assert exc_info.value.summary is not None
        assert exc_info.value.summary.plugins == 2

    def test_ambiguous_resolution_is_reported(self, fake_client_class, entry_factory):
        """Ambiguous resolution omits the entry without aborting."""
        client = fake_client_class(
            compatibility={
                "x": [
                    entry_factory("1.0", url="https://a/x.zip", digest="sha256-h1"),
                    entry_factory("1.0"),
                ]
            }
        )

        result = ManifestBuilder(client).run([IdeBuild("idea", "2026.1", "261.1")], ["x"])

        assert result.manifests[0].plugins == {}
        assert result.summary.has_conflicts
        assert result.summary.ambiguities[0].plugin_id == "x"

    def test_deterministic_across_worker_counts(self, sample_client, sample_builds, fast_retry):
        """Output does not depend on scheduling."""
        plugin_ids = ["gamma", "beta", "alpha"]

        serial = ManifestBuilder(sample_client, retry=fast_retry, workers=1).run(
            sample_builds, plugin_ids
        )
        parallel = ManifestBuilder(sample_client, retry=fast_retry, workers=8).run(
            sample_builds, plugin_ids
        )

        assert serial.manifests == parallel.manifests
        assert serial.registry == parallel.registry

    def test_duplicate_builds_collapse(self, sample_client, fast_retry):
        """The same IDE version listed twice yields one manifest."""
        build = IdeBuild("idea", "2026.1", "261.100.1")

        result = ManifestBuilder(sample_client, retry=fast_retry).run([build, build], ["beta"])

        assert len(result.manifests) == 1

    def test_build_without_build_number_gets_empty_manifest(self, sample_client, fast_retry):
        """IDE versions without a build number cannot be resolved against."""
        result = ManifestBuilder(sample_client, retry=fast_retry).run(
            [IdeBuild("idea", "2026.2")], ["beta"]
        )

        assert result.manifests[0].plugins == {}


class TestManifestBuilderBuild:
    """Tests for ManifestBuilder.build."""

    def test_returns_manifest_and_deltas(self, sample_client, fast_retry):
        """Deltas contain only keys unknown before the run."""
        known = {"beta/--/0.9.1": RegistryEntry(p="files/beta/0.9.1/beta.jar", h="beta0.9.1hash=")}
        builder = ManifestBuilder(sample_client, known_registry=known, retry=fast_retry)

        manifest, deltas = builder.build(
            "IU", IdeBuild("idea", "2026.1", "261.100.1"), ["alpha", "beta"]
        )

        assert manifest.plugins == {"alpha": "alpha/--/2.0", "beta": "beta/--/0.9.1"}
        assert list(deltas) == ["alpha/--/2.0"]

    def test_resolver_override_is_temporary(self, sample_client, fast_retry):
        """A resolver passed to build() does not replace the builder's own."""
        from jbmarket.core.resolver import VersionResolver

        builder = ManifestBuilder(sample_client, retry=fast_retry)
        own = builder.resolver

        builder.build(
            "IU",
            IdeBuild("idea", "2026.1", "261.100.1"),
            ["beta"],
            resolver=VersionResolver(match_product_code=True),
        )

        assert builder.resolver is own

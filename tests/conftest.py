"""Shared fixtures for jbmarket tests."""

import shutil
import tempfile
import threading
from collections.abc import Callable, Generator
from datetime import datetime, timezone
from pathlib import Path

import pytest

from jbmarket.config.schemas import RetryConfig
from jbmarket.marketplace.base import (
    MARKETPLACE_DOWNLOAD_PREFIX,
    DownloadDescriptor,
    IdeBuild,
    MarketplaceClient,
    NotFound,
    PluginCompatibilityEntry,
)
from jbmarket.marketplace.ides import product_for_code


class FakeMarketplaceClient(MarketplaceClient):
    """In-memory marketplace snapshot.

    - compatibility: plugin id -> entries (missing ids raise NotFound)
    - descriptors: (plugin id, version) -> descriptor (missing pairs raise NotFound)
    - failures: call name ("details:<id>", "download:<id>@<version>", "builds")
      -> exceptions raised, one per call, before succeeding
    """

    def __init__(
        self,
        compatibility: dict[str, list[PluginCompatibilityEntry]] | None = None,
        builds: list[IdeBuild] | None = None,
        descriptors: dict[tuple[str, str], DownloadDescriptor] | None = None,
        plugin_ids: set[str] | None = None,
        failures: dict[str, list[Exception]] | None = None,
    ):
        self.compatibility = compatibility or {}
        self.builds = builds or []
        self.descriptors = descriptors or {}
        self.plugin_ids = plugin_ids
        self.failures = failures or {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def _record(self, call: str) -> None:
        with self._lock:
            self.calls.append(call)
            pending = self.failures.get(call)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def fetch_compatibility(self, plugin_id: str) -> list[PluginCompatibilityEntry]:
        self._record(f"details:{plugin_id}")
        if plugin_id not in self.compatibility:
            raise NotFound(f"Not found: {plugin_id}")
        return list(self.compatibility[plugin_id])

    def list_plugin_ids(self, product_code: str) -> set[str]:
        self._record("plugin-ids")
        if self.plugin_ids is not None:
            return set(self.plugin_ids)
        return set(self.compatibility)

    def list_ide_builds(self, product_code: str) -> list[IdeBuild]:
        self._record("builds")
        product = product_for_code(product_code)
        if product is None:
            return []
        return [b for b in self.builds if b.ide == product.key]

    def fetch_descriptor(self, plugin_id: str, version: str) -> DownloadDescriptor:
        self._record(f"download:{plugin_id}@{version}")
        try:
            return self.descriptors[(plugin_id, version)]
        except KeyError:
            raise NotFound(f"No download for {plugin_id}@{version}") from None

    def count(self, call: str) -> int:
        return self.calls.count(call)


def make_entry(
    version: str,
    since: str | None = None,
    until: str | None = None,
    plugin_id: str = "x",
    url: str | None = None,
    digest: str | None = None,
    published: datetime | None = None,
    product_code: str | None = None,
) -> PluginCompatibilityEntry:
    """Build a compatibility entry with sensible test defaults."""
    return PluginCompatibilityEntry(
        plugin_id=plugin_id,
        version=version,
        product_code=product_code,
        since_build=since,
        until_build=until,
        url=url,
        digest=digest,
        published=published,
    )


def make_descriptor(plugin_id: str, version: str, jar: bool = False) -> DownloadDescriptor:
    """Build a plausible marketplace download descriptor."""
    suffix = "jar" if jar else "zip"
    return DownloadDescriptor(
        url=f"{MARKETPLACE_DOWNLOAD_PREFIX}files/{plugin_id}/{version}/{plugin_id}.{suffix}",
        digest=f"sha256-{plugin_id}{version}hash=",
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory."""
    path = Path(tempfile.mkdtemp(prefix="jbmarket_test_"))
    yield path
    if path.exists():
        shutil.rmtree(path)


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry budget without real waiting."""
    return RetryConfig(attempts=3, backoff_seconds=0, max_rate_limit_wait_seconds=0)


@pytest.fixture
def entry_factory() -> Callable[..., PluginCompatibilityEntry]:
    return make_entry


@pytest.fixture
def descriptor_factory() -> Callable[..., DownloadDescriptor]:
    return make_descriptor


@pytest.fixture
def published_at() -> Callable[[int], datetime]:
    """Build UTC publish timestamps from a day offset."""

    def _published(day: int) -> datetime:
        return datetime(2025, 1, 1 + day, tzinfo=timezone.utc)

    return _published


@pytest.fixture
def sample_builds() -> list[IdeBuild]:
    """A handful of IDE builds across two products."""
    return [
        IdeBuild("idea", "2026.1", "261.100.1"),
        IdeBuild("idea", "2025.3.1", "253.200.5"),
        IdeBuild("idea", "2025.2.4", "252.300.9"),
        IdeBuild("pycharm", "2026.1", "261.100.1"),
    ]


@pytest.fixture
def sample_client(sample_builds: list[IdeBuild]) -> FakeMarketplaceClient:
    """A marketplace with three plugins.

    - alpha: two versions, 2.0 only for 261+
    - beta: a jar plugin compatible with everything
    - gamma: only compatible with 252 builds
    """
    compatibility = {
        "alpha": [
            make_entry("1.0", "250", "259.*", plugin_id="alpha"),
            make_entry("2.0", "261", None, plugin_id="alpha"),
        ],
        "beta": [make_entry("0.9.1", None, None, plugin_id="beta")],
        "gamma": [make_entry("3.1", "252", "252.*", plugin_id="gamma")],
    }
    descriptors = {
        ("alpha", "1.0"): make_descriptor("alpha", "1.0"),
        ("alpha", "2.0"): make_descriptor("alpha", "2.0"),
        ("beta", "0.9.1"): make_descriptor("beta", "0.9.1", jar=True),
        ("gamma", "3.1"): make_descriptor("gamma", "3.1"),
    }
    return FakeMarketplaceClient(
        compatibility=compatibility, builds=sample_builds, descriptors=descriptors
    )


@pytest.fixture
def fake_client_class() -> type[FakeMarketplaceClient]:
    return FakeMarketplaceClient

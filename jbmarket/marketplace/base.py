"""Abstract base class for marketplace clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

MARKETPLACE_DOWNLOAD_PREFIX = "https://downloads.marketplace.jetbrains.com/"


class MarketplaceError(Exception):
    """Error interacting with the plugin marketplace."""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class NetworkFailure(MarketplaceError):
    """Transient failure (connection, timeout, 5xx). Retryable."""

    def __init__(self, message: str, url: str | None = None, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message, url)


class NotFound(MarketplaceError):
    """The plugin, version or IDE is absent. Not retryable."""


class RateLimited(MarketplaceError):
    """The marketplace asked us to slow down."""

    def __init__(self, message: str, url: str | None = None, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message, url)


@dataclass(frozen=True)
class PluginCompatibilityEntry:
    """One marketplace-reported compatibility fact for a plugin version."""

    plugin_id: str
    version: str
    product_code: str | None = None
    since_build: str | None = None
    until_build: str | None = None
    url: str | None = None
    digest: str | None = None  # Algorithm-tagged, e.g. "sha256-<base64>"
    published: datetime | None = None


@dataclass(frozen=True)
class IdeBuild:
    """A released IDE build.

    - ide: package-manager name of the IDE ("idea", "rust-rover", ...)
    - version: marketing version ("2025.1.2")
    - build_number: platform build ("251.26094.121"), empty when unknown
    """

    ide: str
    version: str
    build_number: str = ""

    @property
    def label(self) -> str:
        return f"{self.ide}-{self.version}"


@dataclass(frozen=True)
class DownloadDescriptor:
    """Where a plugin archive lives and what it hashes to."""

    url: str
    digest: str  # "sha256-<base64>"

    @property
    def path(self) -> str:
        """URL path below the marketplace download host."""
        if self.url.startswith(MARKETPLACE_DOWNLOAD_PREFIX):
            return self.url[len(MARKETPLACE_DOWNLOAD_PREFIX) :]
        return self.url

    @property
    def bare_hash(self) -> str:
        """Digest without its algorithm prefix."""
        return self.digest.split("-", 1)[1] if "-" in self.digest else self.digest


class MarketplaceClient(ABC):
    """Abstract base class for marketplace clients.

    Implementations report exactly what the marketplace returns at query
    time. They do no filtering and no caching across calls.
    """

    @abstractmethod
    def fetch_compatibility(self, plugin_id: str) -> list[PluginCompatibilityEntry]:
        """Get every published version of a plugin with its build range.

        Args:
            plugin_id: Marketplace plugin id

        Returns:
            Entries in marketplace order

        Raises:
            NotFound: If the plugin does not exist
            NetworkFailure: On transient errors
            RateLimited: If throttled
        """
        ...

    @abstractmethod
    def list_plugin_ids(self, product_code: str) -> set[str]:
        """Get the ids of plugins known to target a product."""
        ...

    @abstractmethod
    def list_ide_builds(self, product_code: str) -> list[IdeBuild]:
        """Get the released builds of a product, in feed order."""
        ...

    @abstractmethod
    def fetch_descriptor(self, plugin_id: str, version: str) -> DownloadDescriptor:
        """Locate and hash the archive of one plugin version.

        Raises:
            NotFound: If the marketplace has no download for this version
        """
        ...

    def list_all_ide_builds(self, product_codes: list[str] | None = None) -> list[IdeBuild]:
        """Get builds for several products (all known products by default)."""
        from jbmarket.marketplace.ides import PRODUCTS

        codes = product_codes or [p.code for p in PRODUCTS]
        builds: list[IdeBuild] = []
        for code in codes:
            builds.extend(self.list_ide_builds(code))
        return builds

"""Pydantic schemas for jbmarket configuration and generated files.

This module defines the data models for:
- jbmarket.yaml (generator configuration)
- all_plugins.json (global plugin registry)
- ides_index.json (typed index of per-IDE manifests)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# =============================================================================
# Common Types
# =============================================================================

PrefetcherType = Literal["nix", "download"]

DEFAULT_PLUGIN_INDICES = [
    "https://downloads.marketplace.jetbrains.com/files/pluginsXMLIds.json",
    "https://downloads.marketplace.jetbrains.com/files/jbPluginsXMLIds.json",
]

DEFAULT_ALIASES = {
    "idea-community": "idea",
    "idea-ultimate": "idea",
    "idea-oss": "idea",
    "pycharm-community": "pycharm",
    "pycharm-professional": "pycharm",
    "pycharm-oss": "pycharm",
}


# =============================================================================
# Generator Configuration (jbmarket.yaml)
# =============================================================================


class RetryConfig(BaseModel):
    """Retry budget for marketplace requests."""

    attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=0.25, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    max_backoff_seconds: float = Field(default=30.0, ge=0)
    # Upper bound for a server-mandated Retry-After delay
    max_rate_limit_wait_seconds: float = Field(default=120.0, ge=0)


class FreshnessConfig(BaseModel):
    """Which IDE release lines are regenerated on a run.

    - prefixes: explicit version prefixes (e.g. ["2026.", "2025.3."]);
      when empty the window is computed from the current date
    - today: override for the current date (ISO format), mostly for tests
    """

    prefixes: list[str] = Field(default_factory=list)
    today: str | None = None


class PluginQuirks(BaseModel):
    """Workarounds for plugins that trip up the marketplace API."""

    details_key_overrides: dict[str, str] = Field(
        default_factory=lambda: {"23.bytecode-disassembler": "bytecode-disassembler"}
    )
    skip: list[str] = Field(
        default_factory=lambda: [
            # Has invalid version numbers
            "com.valord577.mybatis-navigator",
            # ZIP contains invalid file names
            "io.github.kings1990.FastRequest",
            "com.majera.intellij.codereview.gitlab",
        ]
    )


class GeneratorConfig(BaseModel):
    """Generator configuration (jbmarket.yaml) schema."""

    output_path: str | None = None
    plugin_indices: list[str] = Field(default_factory=lambda: list(DEFAULT_PLUGIN_INDICES))
    plugins: list[str] = Field(default_factory=list)  # If set, only these plugin ids
    products: list[str] = Field(default_factory=list)  # If set, only these product codes
    workers: int = Field(default=16, ge=1)
    requests_per_second: float | None = Field(default=None, gt=0)
    timeout_seconds: int = Field(default=600, ge=1)
    prefetcher: PrefetcherType = "nix"
    reuse_registry: bool = True  # Reuse hashes already in all_plugins.json
    retry: RetryConfig = Field(default_factory=RetryConfig)
    freshness: FreshnessConfig = Field(default_factory=FreshnessConfig)
    quirks: PluginQuirks = Field(default_factory=PluginQuirks)
    aliases: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_ALIASES))

    @field_validator("plugins", "products")
    @classmethod
    def validate_non_empty(cls, v: list[str]) -> list[str]:
        """Identifiers are free-form but must not be blank."""
        for item in v:
            if not item or not item.strip():
                raise ValueError("identifiers must not be empty")
        return v

    @model_validator(mode="after")
    def validate_aliases(self) -> "GeneratorConfig":
        """An alias must not point at another alias."""
        for alias, target in self.aliases.items():
            if target in self.aliases:
                raise ValueError(f"alias '{alias}' points at another alias '{target}'")
        return self


# =============================================================================
# Generated Store Files
# =============================================================================


class RegistryEntry(BaseModel):
    """A download descriptor in all_plugins.json.

    - p: URL path below https://downloads.marketplace.jetbrains.com/
    - h: base64 sha256 digest without the "sha256-" prefix
    """

    model_config = {"frozen": True}

    p: str
    h: str


class IdeManifestRecord(BaseModel):
    """A typed per-IDE-version manifest.

    Named fields replace the information encoded in the file name.
    """

    ide_name: str = Field(alias="ideName")
    ide_version: str = Field(alias="ideVersion")
    plugins: dict[str, str] = Field(default_factory=dict)  # plugin id -> registry key

    model_config = {"populate_by_name": True}

    @property
    def file_name(self) -> str:
        """Get the manifest file name (<ideName>-<ideVersion>.json)."""
        return f"{self.ide_name}-{self.ide_version}.json"


class IndexEntry(BaseModel):
    """One row of ides_index.json."""

    ide_name: str = Field(alias="ideName")
    ide_version: str = Field(alias="ideVersion")
    file: str

    model_config = {"populate_by_name": True}


class StoreIndex(BaseModel):
    """ides_index.json schema."""

    version: str = "1.0"
    manifests: list[IndexEntry] = Field(default_factory=list)

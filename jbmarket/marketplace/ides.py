"""IDE product catalog and release feed parsing.

JetBrains products are listed in updates.xml; Android Studio publishes its
own JSON release list. Both are reduced to IdeBuild records keyed by the
package-manager name of the IDE.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any

from jbmarket.marketplace.base import IdeBuild, MarketplaceError

logger = logging.getLogger(__name__)

JETBRAINS_UPDATES_URL = "https://www.jetbrains.com/updates/updates.xml"
ANDROID_STUDIO_RELEASES_URL = "https://jb.gg/android-studio-releases-list.json"

RELEASE_CHANNEL_SUFFIX = "RELEASE-licensing-RELEASE"
ANDROID_STUDIO_CODE = "AI"


@dataclass(frozen=True)
class IdeProduct:
    """A supported IDE product."""

    code: str  # Marketplace product code ("IU")
    key: str  # Package-manager name ("idea")


PRODUCTS: list[IdeProduct] = [
    IdeProduct("IU", "idea"),
    IdeProduct("PS", "phpstorm"),
    IdeProduct("WS", "webstorm"),
    IdeProduct("PY", "pycharm"),
    IdeProduct("RM", "ruby-mine"),
    IdeProduct("CL", "clion"),
    IdeProduct("GO", "goland"),
    IdeProduct("DB", "datagrip"),
    IdeProduct("DS", "dataspell"),
    IdeProduct("RD", "rider"),
    IdeProduct(ANDROID_STUDIO_CODE, "android-studio"),
    IdeProduct("RR", "rust-rover"),
    IdeProduct("QA", "aqua"),
    IdeProduct("WRS", "writerside"),
    IdeProduct("MPS", "mps"),
]

_BY_CODE = {p.code: p for p in PRODUCTS}
_BY_KEY = {p.key: p for p in PRODUCTS}


def product_for_code(code: str) -> IdeProduct | None:
    """Look up a product by marketplace code."""
    return _BY_CODE.get(code)


def product_for_key(key: str) -> IdeProduct | None:
    """Look up a product by package-manager name."""
    return _BY_KEY.get(key)


def split_manifest_name(file_name: str) -> tuple[str, str] | None:
    """Recover (IDE name, IDE version) from "<name>-<version>.json".

    Everything before the last dash is the name, the rest the version.

    Returns:
        (name, version), or None if the name does not have that shape
    """
    if not file_name.endswith(".json"):
        return None
    stem = file_name[: -len(".json")]
    name, sep, version = stem.rpartition("-")
    if not sep or not name or not version:
        return None
    return name, version


def parse_jetbrains_updates(xml_text: str, product_code: str) -> list[IdeBuild]:
    """Extract release builds of one product from updates.xml.

    Only the first <product> element listing the code is used, and only
    channels whose id ends with RELEASE-licensing-RELEASE.

    Args:
        xml_text: Body of updates.xml
        product_code: Marketplace product code

    Returns:
        Builds in feed order

    Raises:
        MarketplaceError: If the XML cannot be parsed
    """
    product = product_for_code(product_code)
    if product is None:
        logger.warning("Unknown product code %s, no builds collected", product_code)
        return []

    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise MarketplaceError(f"Invalid updates.xml: {e}", url=JETBRAINS_UPDATES_URL) from e

    for product_el in root.iter("product"):
        codes = [c.text.strip() for c in product_el.findall("code") if c.text]
        if product_code not in codes:
            continue

        builds: list[IdeBuild] = []
        for channel in product_el.findall("channel"):
            if not channel.get("id", "").endswith(RELEASE_CHANNEL_SUFFIX):
                continue
            for build in channel.findall("build"):
                version = build.get("version")
                number = build.get("fullNumber") or build.get("number")
                if not version or not number:
                    logger.debug("Skipping incomplete build entry for %s", product.key)
                    continue
                builds.append(IdeBuild(ide=product.key, version=version, build_number=number))
        return builds

    logger.info("Product %s not present in updates.xml", product_code)
    return []


def parse_android_studio_releases(data: dict[str, Any]) -> list[IdeBuild]:
    """Extract Android Studio builds from the releases list.

    All channels are kept.

    Args:
        data: Parsed android-studio-releases-list.json

    Returns:
        Builds in feed order

    Raises:
        MarketplaceError: If an item has an unexpected product code or shape
    """
    try:
        items = data["content"]["item"]
    except (KeyError, TypeError) as e:
        raise MarketplaceError(
            "Unexpected Android Studio releases format", url=ANDROID_STUDIO_RELEASES_URL
        ) from e

    builds: list[IdeBuild] = []
    for item in items:
        build = item.get("build", "")
        if not build.startswith(f"{ANDROID_STUDIO_CODE}-"):
            raise MarketplaceError(
                f"Unexpected product code: {build} doesn't start with {ANDROID_STUDIO_CODE}",
                url=ANDROID_STUDIO_RELEASES_URL,
            )
        version = item.get("version")
        platform_build = item.get("platformBuild")
        if not version or not platform_build:
            raise MarketplaceError(
                f"Android Studio release {build} lacks version or platformBuild",
                url=ANDROID_STUDIO_RELEASES_URL,
            )
        builds.append(IdeBuild(ide="android-studio", version=version, build_number=platform_build))
    return builds

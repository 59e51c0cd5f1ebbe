"""HTTPS client for the JetBrains Marketplace."""

from __future__ import annotations

import json
import logging
import ssl
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlparse, urlunparse
from urllib.request import Request, urlopen

from jbmarket.config.schemas import DEFAULT_PLUGIN_INDICES
from jbmarket.marketplace.base import (
    MARKETPLACE_DOWNLOAD_PREFIX,
    DownloadDescriptor,
    IdeBuild,
    MarketplaceClient,
    MarketplaceError,
    NetworkFailure,
    NotFound,
    PluginCompatibilityEntry,
    RateLimited,
)
from jbmarket.marketplace.ides import (
    ANDROID_STUDIO_CODE,
    ANDROID_STUDIO_RELEASES_URL,
    JETBRAINS_UPDATES_URL,
    PRODUCTS,
    parse_android_studio_releases,
    parse_jetbrains_updates,
)
from jbmarket.marketplace.prefetch import NixPrefetcher, Prefetcher, store_name
from jbmarket.marketplace.throttle import RateLimiter

logger = logging.getLogger(__name__)

PLUGIN_DETAILS_URL = "https://plugins.jetbrains.com/plugins/list"
PLUGIN_DOWNLOAD_URL = "https://plugins.jetbrains.com/plugin/download"


def parse_retry_after(value: str | None, default: float = 1.0) -> float:
    """Convert a Retry-After header (seconds or HTTP date) to seconds."""
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def parse_plugin_details(xml_text: str, plugin_id: str) -> list[PluginCompatibilityEntry]:
    """Parse the plugins/list XML response for one plugin.

    Args:
        xml_text: Response body
        plugin_id: Plugin id the entries belong to

    Returns:
        Entries in response order (empty if the plugin has no category)

    Raises:
        MarketplaceError: If the XML is malformed
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise MarketplaceError(f"{plugin_id}: invalid plugin details XML: {e}") from e

    entries: list[PluginCompatibilityEntry] = []
    for plugin_el in root.iter("idea-plugin"):
        version = (plugin_el.findtext("version") or "").strip()
        if not version:
            logger.debug("%s: skipping entry without version", plugin_id)
            continue

        idea_version = plugin_el.find("idea-version")
        since = idea_version.get("since-build") if idea_version is not None else None
        until = idea_version.get("until-build") if idea_version is not None else None

        published = None
        date = plugin_el.get("date")
        if date and date.isdigit():
            published = datetime.fromtimestamp(int(date) / 1000, tz=timezone.utc)

        download_url = (plugin_el.findtext("download-url") or "").strip() or None

        entries.append(
            PluginCompatibilityEntry(
                plugin_id=plugin_id,
                version=version,
                since_build=since or None,
                until_build=until or None,
                url=download_url,
                published=published,
            )
        )
    return entries


class HttpsMarketplaceClient(MarketplaceClient):
    """Marketplace client over HTTPS (urllib).

    Every request first takes a token from the shared rate limiter, if any.
    HTTP failures are mapped to NotFound (404), RateLimited (429) and
    NetworkFailure (everything else, connection errors and timeouts).
    """

    DEFAULT_TIMEOUT = 600  # seconds

    def __init__(
        self,
        plugin_indices: list[str] | None = None,
        prefetcher: Prefetcher | None = None,
        rate_limiter: RateLimiter | None = None,
        details_key_overrides: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: int | None = None,
    ):
        """Initialize the marketplace client.

        Args:
            plugin_indices: URLs of JSON lists of plugin ids
            prefetcher: Hashes downloaded archives (default: nix-prefetch-url)
            rate_limiter: Shared token bucket
            details_key_overrides: Plugin id -> id to use for the details request
            headers: Extra HTTP headers
            timeout: Request timeout in seconds (default: 600)
        """
        self._plugin_indices = plugin_indices or list(DEFAULT_PLUGIN_INDICES)
        self._prefetcher = prefetcher or NixPrefetcher()
        self._rate_limiter = rate_limiter
        self._details_key_overrides = details_key_overrides or {}
        self._headers = headers or {}
        self._timeout = timeout or self.DEFAULT_TIMEOUT
        self._ssl_context = ssl.create_default_context()

    def _open(self, url: str, method: str = "GET") -> tuple[bytes, str]:
        """Make an HTTP request.

        Returns:
            (response body, final URL after redirects)
        """
        if self._rate_limiter is not None:
            self._rate_limiter.acquire()

        logger.debug("Making %s request to %s", method, url)
        try:
            request = Request(url, method=method)
            for key, value in self._headers.items():
                request.add_header(key, value)

            with urlopen(request, timeout=self._timeout, context=self._ssl_context) as response:
                body: bytes = response.read() if method != "HEAD" else b""
                return body, response.geturl()
        except HTTPError as e:
            if e.code == 404:
                raise NotFound(f"Not found: {url}", url=url) from e
            if e.code == 429:
                retry_after = parse_retry_after(e.headers.get("Retry-After") if e.headers else None)
                raise RateLimited(f"Rate limited: {url}", url=url, retry_after=retry_after) from e
            logger.debug("HTTP error %d: %s for %s", e.code, e.reason, url)
            raise NetworkFailure(f"HTTP {e.code}: {e.reason} for {url}", url, e.code) from e
        except URLError as e:
            raise NetworkFailure(f"Failed to connect to {url}: {e.reason}", url) from e
        except TimeoutError as e:
            raise NetworkFailure(f"Request timed out for {url}", url) from e

    def _get_json(self, url: str) -> Any:
        body, _ = self._open(url)
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise MarketplaceError(f"Invalid JSON from {url}: {e}", url=url) from e

    def fetch_compatibility(self, plugin_id: str) -> list[PluginCompatibilityEntry]:
        details_key = self._details_key_overrides.get(plugin_id, plugin_id)
        url = f"{PLUGIN_DETAILS_URL}?{urlencode({'pluginId': details_key})}"
        body, _ = self._open(url)
        entries = parse_plugin_details(body.decode("utf-8"), plugin_id)
        if not entries:
            logger.warning("%s: No plugin details available.", plugin_id)
        return entries

    def list_plugin_ids(self, product_code: str) -> set[str]:
        ids: set[str] = set()
        for index_url in self._plugin_indices:
            data = self._get_json(index_url)
            if not isinstance(data, list):
                raise MarketplaceError(f"Plugin index is not a list: {index_url}", url=index_url)
            ids.update(str(item) for item in data if item)
        logger.info("Indexed %d plugins for %s", len(ids), product_code)
        return ids

    def list_ide_builds(self, product_code: str) -> list[IdeBuild]:
        if product_code == ANDROID_STUDIO_CODE:
            return parse_android_studio_releases(self._get_json(ANDROID_STUDIO_RELEASES_URL))
        body, _ = self._open(JETBRAINS_UPDATES_URL)
        return parse_jetbrains_updates(body.decode("utf-8"), product_code)

    def list_all_ide_builds(self, product_codes: list[str] | None = None) -> list[IdeBuild]:
        codes = product_codes or [p.code for p in PRODUCTS]
        builds: list[IdeBuild] = []

        jetbrains_codes = [c for c in codes if c != ANDROID_STUDIO_CODE]
        if jetbrains_codes:
            body, _ = self._open(JETBRAINS_UPDATES_URL)
            xml_text = body.decode("utf-8")
            for code in jetbrains_codes:
                builds.extend(parse_jetbrains_updates(xml_text, code))
        if ANDROID_STUDIO_CODE in codes:
            builds.extend(self.list_ide_builds(ANDROID_STUDIO_CODE))
        return builds

    def fetch_descriptor(self, plugin_id: str, version: str) -> DownloadDescriptor:
        query = urlencode({"pluginId": plugin_id, "version": version})
        _, final_url = self._open(f"{PLUGIN_DOWNLOAD_URL}?{query}", method="HEAD")

        # Query parameters only feed analytics, the file is the same
        url = urlunparse(urlparse(final_url)._replace(query="", fragment=""))
        if not url.startswith(MARKETPLACE_DOWNLOAD_PREFIX):
            raise MarketplaceError(
                f"{plugin_id}@{version}: unexpected download location {url}", url=url
            )

        logger.info("%s@%s: Plugin not yet cached, downloading for hash...", plugin_id, version)
        is_jar = url.endswith(".jar")
        digest = self._prefetcher.prefetch(
            store_name(plugin_id, version), url, unpack=not is_jar, executable=is_jar
        )
        return DownloadDescriptor(url=url, digest=digest)

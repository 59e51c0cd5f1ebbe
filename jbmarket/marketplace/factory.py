"""Marketplace client factory."""

import logging

from jbmarket.config.schemas import GeneratorConfig
from jbmarket.marketplace.base import MarketplaceClient
from jbmarket.marketplace.prefetch import DownloadPrefetcher, NixPrefetcher, Prefetcher
from jbmarket.marketplace.throttle import RateLimiter

logger = logging.getLogger(__name__)


def create_prefetcher(config: GeneratorConfig) -> Prefetcher:
    """Create the prefetcher selected in the configuration."""
    if config.prefetcher == "download":
        logger.info("Using download prefetcher (flat sha256)")
        return DownloadPrefetcher(timeout=config.timeout_seconds)
    return NixPrefetcher()


def create_marketplace_client(config: GeneratorConfig) -> MarketplaceClient:
    """Create a marketplace client for a generator run.

    Args:
        config: Generator configuration

    Returns:
        HTTPS marketplace client sharing one rate limiter
    """
    from jbmarket.marketplace.https import HttpsMarketplaceClient

    rate_limiter = None
    if config.requests_per_second:
        rate_limiter = RateLimiter(config.requests_per_second)
        logger.debug("Rate limiting marketplace requests to %.1f/s", config.requests_per_second)

    return HttpsMarketplaceClient(
        plugin_indices=config.plugin_indices,
        prefetcher=create_prefetcher(config),
        rate_limiter=rate_limiter,
        details_key_overrides=config.quirks.details_key_overrides,
        timeout=config.timeout_seconds,
    )

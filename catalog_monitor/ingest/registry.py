"""Fetcher registry for provider implementations."""

import logging
from typing import Callable

from catalog_monitor.config import Settings
from catalog_monitor.exceptions import UnknownProviderError
from catalog_monitor.ingest.base import CatalogFetcher
from catalog_monitor.ingest.providers.spotify import SpotifyFetcher

logger = logging.getLogger(__name__)

FetcherFactory = Callable[[Settings], CatalogFetcher]


class ProviderRegistry:
    """
    Registry of catalog fetchers keyed by provider id.

    Each registry is built from an explicit settings object, so fetchers
    pick up credentials from the invocation that created them.
    """

    default_factories: dict[str, FetcherFactory] = {
        "spotify": SpotifyFetcher,
    }

    def __init__(
        self,
        settings: Settings,
        factories: dict[str, FetcherFactory] | None = None,
    ):
        self.settings = settings
        self._factories: dict[str, FetcherFactory] = dict(
            self.default_factories if factories is None else factories
        )
        self._instances: dict[str, CatalogFetcher] = {}

    @property
    def provider_ids(self) -> list[str]:
        return sorted(self._factories)

    def get_fetcher(self, provider_id: str) -> CatalogFetcher:
        """
        Get or create the fetcher for a provider.

        Raises:
            UnknownProviderError: If provider is not registered
        """
        if provider_id not in self._factories:
            raise UnknownProviderError(
                f"Unknown provider: {provider_id}. Available: {self.provider_ids}"
            )

        if provider_id not in self._instances:
            self._instances[provider_id] = self._factories[provider_id](self.settings)
            logger.info(f"Initialized fetcher for provider: {provider_id}")

        return self._instances[provider_id]

    def register_fetcher(self, provider_id: str, factory: FetcherFactory) -> None:
        """Register a new fetcher factory, replacing any existing instance."""
        self._factories[provider_id] = factory
        self._instances.pop(provider_id, None)
        logger.info(f"Registered fetcher for provider: {provider_id}")

    async def close(self) -> None:
        """Close all fetcher instances."""
        for fetcher in self._instances.values():
            await fetcher.close()
        self._instances.clear()

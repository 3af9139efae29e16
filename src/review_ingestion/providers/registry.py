"""
Platform registry

Maps platform names to display config and a provider factory. Providers
are built lazily so a platform with missing credentials only fails when it
is actually used, and only platforms in ``active`` status are dispatched.
"""
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..core.logging import get_logger
from ..models.schemas import PlatformConfig, PlatformStatus
from .base import PlatformProvider
from .facebook import FACEBOOK_CONFIG, FacebookProvider
from .google import GOOGLE_CONFIG, GoogleProvider
from .yelp import YELP_CONFIG, YelpProvider

logger = get_logger(__name__)

ProviderFactory = Callable[[], PlatformProvider]


@dataclass
class PlatformRegistryEntry:
    config: PlatformConfig
    factory: Optional[ProviderFactory] = None


class PlatformRegistry:
    """Name -> (config, factory) with a cache of constructed providers"""

    def __init__(self):
        self._entries: Dict[str, PlatformRegistryEntry] = {}
        self._providers: Dict[str, PlatformProvider] = {}

    def register(self, config: PlatformConfig, factory: Optional[ProviderFactory] = None) -> None:
        self._entries[config.name] = PlatformRegistryEntry(config=config, factory=factory)
        # Re-registration drops any provider built from the previous factory
        self._providers.pop(config.name, None)

    def get_platform_provider(self, name: str) -> Optional[PlatformProvider]:
        """
        Provider for an active platform, constructed on first access.

        Returns None for unknown platforms and for platforms that are not
        active. Construction errors (e.g. ConfigurationError) propagate.
        """
        entry = self._entries.get(name)
        if entry is None or entry.config.status != PlatformStatus.ACTIVE or entry.factory is None:
            return None

        provider = self._providers.get(name)
        if provider is None:
            provider = entry.factory()
            self._providers[name] = provider
            logger.debug("Initialized platform provider", platform=name)
        return provider

    def get_platform_config(self, name: str) -> Optional[PlatformConfig]:
        entry = self._entries.get(name)
        return entry.config if entry else None

    def get_all_platforms(self) -> List[PlatformConfig]:
        return [entry.config for entry in self._entries.values()]

    def get_active_platforms(self) -> List[PlatformConfig]:
        return [
            entry.config for entry in self._entries.values()
            if entry.config.status == PlatformStatus.ACTIVE
        ]

    async def aclose(self) -> None:
        """Close HTTP clients of every provider built so far"""
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            await provider.aclose()


def create_default_registry() -> PlatformRegistry:
    registry = PlatformRegistry()
    registry.register(FACEBOOK_CONFIG, FacebookProvider)
    registry.register(GOOGLE_CONFIG, GoogleProvider)
    registry.register(YELP_CONFIG, YelpProvider)
    registry.register(PlatformConfig(
        name="trustpilot",
        display_name="Trustpilot",
        color="#00B67A",
        base_url="https://www.trustpilot.com",
        status=PlatformStatus.COMING_SOON,
    ))
    registry.register(PlatformConfig(
        name="tripadvisor",
        display_name="TripAdvisor",
        color="#34E0A1",
        base_url="https://www.tripadvisor.com",
        status=PlatformStatus.COMING_SOON,
    ))
    return registry

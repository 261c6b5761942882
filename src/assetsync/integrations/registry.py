"""Provider registry -- adapter lookup by provider key.

The registry is built once at startup with the adapter defaults from
settings; sync and webhook services resolve adapters through it and never
instantiate vendor classes themselves.
"""

from __future__ import annotations

import httpx
import structlog

from src.assetsync.integrations.errors import UnsupportedProviderError
from src.assetsync.integrations.providers import (
    AuvikProvider,
    ConnectWiseProvider,
    CustomProvider,
    HttpDefaults,
    IntegrationProvider,
    ItGlueProvider,
    KaseyaProvider,
)

logger = structlog.get_logger(__name__)

PROVIDER_CLASSES: tuple[type[IntegrationProvider], ...] = (
    ConnectWiseProvider,
    ItGlueProvider,
    KaseyaProvider,
    AuvikProvider,
    CustomProvider,
)


class ProviderRegistry:
    """Registry of provider adapters keyed by provider key.

    Args:
        providers: Adapters to register. Keys must be unique.
    """

    def __init__(self, providers: list[IntegrationProvider] | None = None) -> None:
        self._providers: dict[str, IntegrationProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: IntegrationProvider) -> None:
        """Register an adapter.

        Raises:
            ValueError: If an adapter with the same key is already registered.
        """
        if provider.key in self._providers:
            raise ValueError(f"Provider already registered: {provider.key}")
        self._providers[provider.key] = provider
        logger.debug("provider_registered", provider=provider.key)

    def resolve(self, provider_key: str) -> IntegrationProvider:
        """Return the adapter for ``provider_key``.

        Raises:
            UnsupportedProviderError: No adapter is registered for the key.
        """
        provider = self._providers.get(provider_key)
        if provider is None:
            raise UnsupportedProviderError(provider_key)
        return provider

    def options(self) -> dict[str, str]:
        """Provider key -> display name, in registration order."""
        return {key: provider.display_name for key, provider in self._providers.items()}

    def keys(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, provider_key: object) -> bool:
        return provider_key in self._providers

    def __len__(self) -> int:
        return len(self._providers)


def build_provider_registry(
    defaults: HttpDefaults | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """Registry with every built-in vendor adapter sharing the same defaults."""
    return ProviderRegistry([cls(defaults=defaults, transport=transport) for cls in PROVIDER_CLASSES])

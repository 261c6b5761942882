"""Provider adapter abstract base class -- the contract every vendor adapter implements.

Adapters are stateless apart from their HTTP defaults: the connection record
is passed to every call, and no adapter reads application settings. Shared
behavior lives in ``field_mapping`` and ``http`` and is called explicitly by
each variant, so vendor overrides stay visible in the vendor module.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

import httpx

from src.assetsync.integrations.providers.field_mapping import (
    discovered_client,
    extract_items,
    generic_asset,
    map_items,
    webhook_items,
)
from src.assetsync.integrations.providers.http import (
    HttpDefaults,
    build_url,
    open_client,
    paginate,
)
from src.assetsync.integrations.schemas import (
    ConnectionRead,
    DiscoveredClient,
    NormalizedAsset,
)


class IntegrationProvider(ABC):
    """Abstract interface for vendor inventory adapters.

    Methods:
        iter_asset_pages: Pull inventory page by page (incremental when ``since`` is set).
        fetch_assets: Pull all pages into one list.
        discover_clients: Enumerate vendor-side tenants/organizations.
        map_webhook_payload: Convert one push payload into normalized items.
        auth_headers: Vendor authentication headers for a connection.

    Args:
        defaults: Timeout/page-size/page-cap defaults, overridable per connection.
        transport: Optional httpx transport (tests inject httpx.MockTransport).
    """

    def __init__(
        self,
        defaults: HttpDefaults | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._defaults = defaults or HttpDefaults()
        self._transport = transport

    @property
    @abstractmethod
    def key(self) -> str:
        """Stable provider identifier stored on connections."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable provider label."""
        ...

    @abstractmethod
    def auth_headers(self, connection: ConnectionRead) -> dict[str, str]:
        """Authentication headers for requests made on behalf of ``connection``."""
        ...

    @abstractmethod
    def iter_asset_pages(
        self, connection: ConnectionRead, since: datetime | None = None
    ) -> AsyncIterator[list[NormalizedAsset]]:
        """Yield normalized assets one vendor page at a time."""
        ...

    @abstractmethod
    async def discover_clients(self, connection: ConnectionRead) -> list[DiscoveredClient]:
        """Enumerate vendor-side clients for mapping setup."""
        ...

    @abstractmethod
    def map_webhook_payload(self, connection: ConnectionRead, payload: object) -> list[NormalizedAsset]:
        """Convert one push payload into normalized items."""
        ...

    async def fetch_assets(
        self, connection: ConnectionRead, since: datetime | None = None
    ) -> list[NormalizedAsset]:
        """Pull all pages and return every normalized asset."""
        assets: list[NormalizedAsset] = []
        async for page in self.iter_asset_pages(connection, since):
            assets.extend(page)
        return assets

    # ── Helpers for subclasses ──────────────────────────────────────────────

    def client(self, connection: ConnectionRead) -> httpx.AsyncClient:
        """AsyncClient carrying this adapter's auth headers for ``connection``."""
        return open_client(
            connection,
            headers=self.auth_headers(connection),
            defaults=self._defaults,
            transport=self._transport,
        )

    def endpoint(self, connection: ConnectionRead, setting_key: str, default: str) -> str:
        """Absolute URL for an endpoint, honoring the connection's override setting."""
        return build_url(connection, str(connection.setting(setting_key, default)))

    def page_size(self, connection: ConnectionRead) -> int:
        return self._defaults.page_size_for(connection)

    def max_pages(self, connection: ConnectionRead) -> int:
        return self._defaults.max_pages_for(connection)


# ── Shared default behaviors ────────────────────────────────────────────────


async def paged_assets(
    provider: IntegrationProvider,
    connection: ConnectionRead,
    *,
    endpoint: str,
    params: dict[str, object],
    extract: Callable[[Any], list[dict[str, Any]]],
    mapper: Callable[[dict[str, Any]], NormalizedAsset | None],
    page_param: str | None = None,
) -> AsyncIterator[list[NormalizedAsset]]:
    """Standard pull loop: paginate ``endpoint`` and map each page's items."""
    async with provider.client(connection) as client:
        async for items in paginate(
            client,
            endpoint,
            params=params,
            extract=extract,
            max_pages=provider.max_pages(connection),
            page_param=page_param,
            page_size=provider.page_size(connection),
        ):
            yield map_items(items, mapper)


async def generic_discover_clients(
    provider: IntegrationProvider,
    connection: ConnectionRead,
    *,
    default_endpoint: str = "/clients",
    params: dict[str, object] | None = None,
    extract: Callable[[Any], list[dict[str, Any]]] = extract_items,
    id_paths: tuple[str, ...] = ("id", "external_client_id"),
    name_paths: tuple[str, ...] = ("name", "external_client_name"),
    default_name: str | None = None,
    page_param: str | None = None,
) -> list[DiscoveredClient]:
    """Fetch a client listing and keep entries that carry an id.

    The endpoint can be overridden with the ``clients_endpoint`` setting.
    """
    url = provider.endpoint(connection, "clients_endpoint", default_endpoint)
    clients: list[DiscoveredClient] = []
    async with provider.client(connection) as client:
        async for items in paginate(
            client,
            url,
            params=dict(params or {}),
            extract=extract,
            max_pages=provider.max_pages(connection),
            page_param=page_param,
            page_size=provider.page_size(connection),
        ):
            for item in items:
                found = discovered_client(item, id_paths, name_paths, default_name)
                if found is not None:
                    clients.append(found)
    return clients


def generic_webhook_assets(
    payload: object,
    mapper: Callable[[dict[str, Any]], NormalizedAsset | None] = generic_asset,
) -> list[NormalizedAsset]:
    """Default push mapping: unwrap asset/assets/data envelopes and map each item."""
    return map_items(webhook_items(payload), mapper)

"""Custom API adapter for vendors without a dedicated integration.

Authentication follows the connection's auth_type:
- bearer: ``token`` or ``access_token`` credential
- basic: ``username``/``password`` credentials
- anything else: a ``headers`` credential map, or ``x-api-key`` from ``api_key``

Pagination is opt-in through connection settings ``page_param`` and
``page_size_param``; next links in the body or Link header are always followed.
"""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from src.assetsync.integrations.providers.base import (
    IntegrationProvider,
    generic_discover_clients,
    generic_webhook_assets,
    paged_assets,
)
from src.assetsync.integrations.providers.field_mapping import (
    GENERIC_ASSET_NAME,
    extract_items,
    first_value,
    normalize_asset,
)
from src.assetsync.integrations.providers.http import iso_utc
from src.assetsync.integrations.schemas import (
    AuthType,
    ConnectionRead,
    DiscoveredClient,
    NormalizedAsset,
)

ASSETS_ENDPOINT = "/assets"
CLIENTS_ENDPOINT = "/clients"


def map_item(item: dict[str, Any]) -> NormalizedAsset | None:
    """Map one item from a custom feed, honoring a direct ``client_id``."""
    return normalize_asset(
        item,
        external_id=first_value(item, "external_id", "id", "attributes.external_id", "attributes.id"),
        external_type=first_value(item, "external_type", "type", "attributes.type", default="asset"),
        name=first_value(item, "name", "attributes.name", default=GENERIC_ASSET_NAME),
        hostname=first_value(item, "hostname", "attributes.hostname"),
        ip_address=first_value(item, "ip_address", "ipAddress", "attributes.ip_address"),
        status=first_value(item, "status", "attributes.status"),
        external_client_id=first_value(item, "external_client_id", "organization_id"),
        external_client_name=first_value(item, "external_client_name", "organization_name"),
        last_seen_at=first_value(item, "last_seen_at", "updated_at"),
        client_id=item.get("client_id"),
    )


class CustomProvider(IntegrationProvider):
    """Generic JSON API with configurable auth and endpoints."""

    key = "custom"
    display_name = "Custom API"

    def auth_headers(self, connection: ConnectionRead) -> dict[str, str]:
        if connection.auth_type == AuthType.bearer:
            return {"Authorization": f"Bearer {connection.credential('token', 'access_token')}"}
        if connection.auth_type == AuthType.basic:
            pair = f"{connection.credential('username')}:{connection.credential('password')}"
            return {"Authorization": f"Basic {base64.b64encode(pair.encode()).decode()}"}
        headers = (connection.credentials or {}).get("headers")
        if isinstance(headers, dict):
            return {str(k): str(v) for k, v in headers.items()}
        return {"x-api-key": connection.credential("api_key")}

    def _page_params(self, connection: ConnectionRead) -> dict[str, Any]:
        size_param = connection.setting("page_size_param")
        return {size_param: self.page_size(connection)} if size_param else {}

    async def iter_asset_pages(
        self, connection: ConnectionRead, since: datetime | None = None
    ) -> AsyncIterator[list[NormalizedAsset]]:
        params = self._page_params(connection)
        if since is not None:
            params[connection.setting("since_param", "updated_since")] = iso_utc(since)

        async for page in paged_assets(
            self,
            connection,
            endpoint=self.endpoint(connection, "assets_endpoint", ASSETS_ENDPOINT),
            params=params,
            extract=extract_items,
            mapper=map_item,
            page_param=connection.setting("page_param"),
        ):
            yield page

    async def discover_clients(self, connection: ConnectionRead) -> list[DiscoveredClient]:
        return await generic_discover_clients(
            self,
            connection,
            default_endpoint=CLIENTS_ENDPOINT,
            params=self._page_params(connection),
            page_param=connection.setting("page_param"),
        )

    def map_webhook_payload(self, connection: ConnectionRead, payload: object) -> list[NormalizedAsset]:
        return generic_webhook_assets(payload, map_item)

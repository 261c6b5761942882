"""Kaseya VSA adapter -- bearer-token asset inventory."""

from __future__ import annotations

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
    extract_items,
    first_value,
    normalize_asset,
)
from src.assetsync.integrations.providers.http import iso_utc
from src.assetsync.integrations.schemas import (
    ConnectionRead,
    DiscoveredClient,
    NormalizedAsset,
)

ASSETS_ENDPOINT = "/api/v1/assets"
CLIENTS_ENDPOINT = "/api/v1/organizations"


def map_asset(item: dict[str, Any]) -> NormalizedAsset | None:
    """Map one Kaseya asset; organization falls back to site."""
    return normalize_asset(
        item,
        external_id=first_value(item, "id", "assetId"),
        external_type=first_value(item, "assetType", default="asset"),
        name=first_value(item, "name", "deviceName", default="Kaseya Asset"),
        hostname=first_value(item, "hostname", "deviceName"),
        ip_address=item.get("ipAddress"),
        status=first_value(item, "status", default="unknown"),
        external_client_id=first_value(item, "organizationId", "siteId"),
        external_client_name=first_value(item, "organizationName", "siteName"),
        last_seen_at=first_value(item, "lastSeen", "lastCheckIn"),
    )


class KaseyaProvider(IntegrationProvider):
    """Kaseya VSA (RMM) assets."""

    key = "kaseya"
    display_name = "Kaseya"

    def auth_headers(self, connection: ConnectionRead) -> dict[str, str]:
        token = connection.credential("access_token", "api_token")
        return {"Authorization": f"Bearer {token}"}

    async def iter_asset_pages(
        self, connection: ConnectionRead, since: datetime | None = None
    ) -> AsyncIterator[list[NormalizedAsset]]:
        params: dict[str, Any] = {"pageSize": self.page_size(connection)}
        if since is not None:
            params["updatedSince"] = iso_utc(since)

        async for page in paged_assets(
            self,
            connection,
            endpoint=self.endpoint(connection, "assets_endpoint", ASSETS_ENDPOINT),
            params=params,
            extract=extract_items,
            mapper=map_asset,
            page_param="page",
        ):
            yield page

    async def discover_clients(self, connection: ConnectionRead) -> list[DiscoveredClient]:
        return await generic_discover_clients(
            self,
            connection,
            default_endpoint=CLIENTS_ENDPOINT,
            params={"pageSize": self.page_size(connection)},
            id_paths=("id", "organizationId"),
            name_paths=("name", "organizationName"),
            default_name="Kaseya Organization",
            page_param="page",
        )

    def map_webhook_payload(self, connection: ConnectionRead, payload: object) -> list[NormalizedAsset]:
        return generic_webhook_assets(payload)

"""Auvik adapter -- network device inventory over a JSON:API cursor feed.

Auvik pages with ``page[first]`` and a ``links.next`` cursor; there is no
page number, so pagination is link-only.
"""

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
    dig,
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

ASSETS_ENDPOINT = "/v1/inventory/device"
CLIENTS_ENDPOINT = "/v1/tenants"


def _data_items(payload: Any) -> list[dict[str, Any]]:
    return extract_items(payload, keys=("data",), fallback_to_payload=False)


def map_device(item: dict[str, Any]) -> NormalizedAsset | None:
    """Map one Auvik device resource; items without attributes are skipped."""
    if not isinstance(item.get("attributes"), dict):
        return None
    return normalize_asset(
        item,
        external_id=item.get("id"),
        external_type=first_value(item, "attributes.deviceType", default="network_device"),
        name=first_value(item, "attributes.deviceName", default="Auvik Device"),
        hostname=first_value(item, "attributes.deviceName"),
        ip_address=first_value(item, "attributes.primaryIp"),
        status=first_value(item, "attributes.monitoringStatus", default="unknown"),
        external_client_id=dig(item, "relationships.tenant.data.id"),
        last_seen_at=first_value(item, "attributes.lastSeenTime", "attributes.lastModified"),
    )


class AuvikProvider(IntegrationProvider):
    """Auvik network monitoring devices."""

    key = "auvik"
    display_name = "Auvik"

    def auth_headers(self, connection: ConnectionRead) -> dict[str, str]:
        return {"Authorization": f"Bearer {connection.credential('api_token')}"}

    async def iter_asset_pages(
        self, connection: ConnectionRead, since: datetime | None = None
    ) -> AsyncIterator[list[NormalizedAsset]]:
        params: dict[str, Any] = {"page[first]": self.page_size(connection)}
        if since is not None:
            params["filter[modifiedAt][gte]"] = iso_utc(since)

        async for page in paged_assets(
            self,
            connection,
            endpoint=self.endpoint(connection, "assets_endpoint", ASSETS_ENDPOINT),
            params=params,
            extract=_data_items,
            mapper=map_device,
        ):
            yield page

    async def discover_clients(self, connection: ConnectionRead) -> list[DiscoveredClient]:
        return await generic_discover_clients(
            self,
            connection,
            default_endpoint=CLIENTS_ENDPOINT,
            params={"page[first]": self.page_size(connection)},
            extract=_data_items,
            id_paths=("id",),
            name_paths=("attributes.tenantName", "attributes.name"),
            default_name="Auvik Tenant",
        )

    def map_webhook_payload(self, connection: ConnectionRead, payload: object) -> list[NormalizedAsset]:
        return generic_webhook_assets(payload)

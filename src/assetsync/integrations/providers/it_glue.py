"""IT Glue adapter -- JSON:API configurations with ``x-api-key`` auth."""

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

ASSETS_ENDPOINT = "/configurations"
CLIENTS_ENDPOINT = "/organizations"


def _data_items(payload: Any) -> list[dict[str, Any]]:
    return extract_items(payload, keys=("data",), fallback_to_payload=False)


def map_configuration(item: dict[str, Any]) -> NormalizedAsset | None:
    """Map one IT Glue configuration resource."""
    return normalize_asset(
        item,
        external_id=item.get("id"),
        external_type="configuration",
        name=first_value(item, "attributes.name", default="IT Glue Configuration"),
        hostname=first_value(item, "attributes.hostname"),
        ip_address=first_value(item, "attributes.primary-ip"),
        status=first_value(item, "attributes.configuration-status-name", default="unknown"),
        external_client_id=first_value(item, "attributes.organization-id"),
        external_client_name=first_value(item, "attributes.organization-name"),
        last_seen_at=first_value(item, "attributes.updated-at"),
    )


class ItGlueProvider(IntegrationProvider):
    """IT Glue documentation platform configurations."""

    key = "it_glue"
    display_name = "IT Glue"

    def auth_headers(self, connection: ConnectionRead) -> dict[str, str]:
        return {
            "x-api-key": connection.credential("api_key"),
            "Accept": "application/vnd.api+json",
        }

    async def iter_asset_pages(
        self, connection: ConnectionRead, since: datetime | None = None
    ) -> AsyncIterator[list[NormalizedAsset]]:
        params: dict[str, Any] = {"page[size]": self.page_size(connection)}
        if since is not None:
            params["filter[updated_at]"] = iso_utc(since)

        async for page in paged_assets(
            self,
            connection,
            endpoint=self.endpoint(connection, "assets_endpoint", ASSETS_ENDPOINT),
            params=params,
            extract=_data_items,
            mapper=map_configuration,
            page_param="page[number]",
        ):
            yield page

    async def discover_clients(self, connection: ConnectionRead) -> list[DiscoveredClient]:
        return await generic_discover_clients(
            self,
            connection,
            default_endpoint=CLIENTS_ENDPOINT,
            params={"page[size]": self.page_size(connection)},
            extract=_data_items,
            id_paths=("id",),
            name_paths=("attributes.name",),
            default_name="IT Glue Organization",
            page_param="page[number]",
        )

    def map_webhook_payload(self, connection: ConnectionRead, payload: object) -> list[NormalizedAsset]:
        return generic_webhook_assets(payload)

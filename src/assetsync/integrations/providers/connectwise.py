"""ConnectWise Manage adapter -- company configurations as assets.

Auth is ConnectWise's composite Basic scheme: base64 of
``{company}+{public_key}:{private_key}`` plus a ``clientId`` header.
Responses are bare JSON arrays; further pages are announced in the
``Link`` header and otherwise requested with ``page``/``pageSize``.
"""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator
from datetime import datetime, timezone
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
from src.assetsync.integrations.schemas import (
    ConnectionRead,
    DiscoveredClient,
    NormalizedAsset,
    ensure_utc,
)

API_PREFIX = "/v4_6_release/apis/3.0"
ASSETS_ENDPOINT = f"{API_PREFIX}/company/configurations"
CLIENTS_ENDPOINT = f"{API_PREFIX}/company/companies"


def _items(payload: Any) -> list[dict[str, Any]]:
    return extract_items(payload, keys=("items",))


def map_configuration(item: dict[str, Any]) -> NormalizedAsset | None:
    """Map one ConnectWise configuration record."""
    return normalize_asset(
        item,
        external_id=item.get("id"),
        external_type=dig(item, "type.name") or "configuration",
        name=first_value(item, "name", "deviceName", default="ConnectWise Asset"),
        hostname=item.get("name"),
        ip_address=item.get("ipAddress"),
        status=dig(item, "status.name") or "unknown",
        external_client_id=dig(item, "company.id"),
        external_client_name=dig(item, "company.name"),
        last_seen_at=first_value(item, "lastUpdated", "_info.lastUpdated"),
    )


class ConnectWiseProvider(IntegrationProvider):
    """ConnectWise Manage (PSA) configurations."""

    key = "connectwise"
    display_name = "ConnectWise"

    def auth_headers(self, connection: ConnectionRead) -> dict[str, str]:
        company = connection.credential("company_id", "company")
        public_key = connection.credential("public_key")
        private_key = connection.credential("private_key")
        token = base64.b64encode(f"{company}+{public_key}:{private_key}".encode()).decode()
        return {
            "Authorization": f"Basic {token}",
            "clientId": connection.credential("client_id"),
        }

    async def iter_asset_pages(
        self, connection: ConnectionRead, since: datetime | None = None
    ) -> AsyncIterator[list[NormalizedAsset]]:
        params: dict[str, Any] = {"pageSize": self.page_size(connection)}
        if since is not None:
            stamp = ensure_utc(since).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            params["conditions"] = f"lastUpdated > [{stamp}]"

        async for page in paged_assets(
            self,
            connection,
            endpoint=self.endpoint(connection, "assets_endpoint", ASSETS_ENDPOINT),
            params=params,
            extract=_items,
            mapper=map_configuration,
            page_param="page",
        ):
            yield page

    async def discover_clients(self, connection: ConnectionRead) -> list[DiscoveredClient]:
        return await generic_discover_clients(
            self,
            connection,
            default_endpoint=CLIENTS_ENDPOINT,
            params={"pageSize": self.page_size(connection)},
            extract=_items,
            id_paths=("id",),
            name_paths=("name",),
            default_name="ConnectWise Company",
            page_param="page",
        )

    def map_webhook_payload(self, connection: ConnectionRead, payload: object) -> list[NormalizedAsset]:
        return generic_webhook_assets(payload)

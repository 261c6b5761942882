"""Asset reconciler -- idempotent upsert of normalized items into the asset store.

The natural key (connection, external id, external type) decides between
insert and update. Client resolution order:
1. A numeric ``client_id`` carried by the item itself (custom feeds)
2. An active client mapping for (connection, external client id)
3. The connection's own client, when the connection is scoped to one
4. None -- an unmapped asset is not an error
"""

from __future__ import annotations

import structlog

from src.assetsync.core.monitoring import assets_reconciled_total
from src.assetsync.integrations.repository import IntegrationRepository
from src.assetsync.integrations.schemas import (
    ConnectionRead,
    NormalizedAsset,
    ReconcileOutcome,
)

logger = structlog.get_logger(__name__)

# Column widths of the external_assets table.
_MAX_LENGTHS = {
    "name": 255,
    "hostname": 255,
    "ip_address": 100,
    "status": 50,
}


def _clip(field: str, value: str | None) -> str | None:
    if value is None:
        return None
    return value[: _MAX_LENGTHS[field]]


class AssetReconciler:
    """Upserts NormalizedAsset items for a connection.

    Args:
        repository: IntegrationRepository used for lookups and writes.
    """

    def __init__(self, repository: IntegrationRepository) -> None:
        self._repository = repository

    async def resolve_client_id(
        self,
        connection: ConnectionRead,
        item: NormalizedAsset,
        client_map: dict[str, int] | None = None,
    ) -> int | None:
        """Resolve the internal client for an item.

        Args:
            connection: Owning connection.
            item: Normalized item.
            client_map: Preloaded active mappings; queried per item when None.
        """
        if item.client_id is not None:
            return item.client_id

        if item.external_client_id:
            if client_map is not None:
                mapped = client_map.get(item.external_client_id)
            else:
                mapped = await self._repository.find_client_mapping(
                    connection.id, item.external_client_id
                )
            if mapped is not None:
                return mapped

        return connection.client_id

    async def reconcile(
        self,
        connection: ConnectionRead,
        item: NormalizedAsset,
        client_map: dict[str, int] | None = None,
    ) -> ReconcileOutcome:
        """Insert or update one item.

        Returns:
            ``created`` for a new natural key, ``updated`` for an existing one,
            ``skipped`` when the item has no external id.

        Raises:
            Exception: Persistence errors propagate so the caller can count
                the item as failed and continue with the batch.
        """
        external_id = (item.external_id or "").strip()
        if not external_id:
            logger.debug("reconcile.skipped_missing_id", connection_id=connection.id)
            return ReconcileOutcome.skipped

        client_id = await self.resolve_client_id(connection, item, client_map)
        values = {
            "client_id": client_id,
            "provider": connection.provider,
            "name": _clip("name", item.name),
            "hostname": _clip("hostname", item.hostname),
            "ip_address": _clip("ip_address", item.ip_address),
            "status": _clip("status", item.status),
            "metadata_json": item.metadata,
            "last_seen_at": item.last_seen_at,
        }

        outcome = await self._repository.save_asset(
            connection.id,
            external_id[:255],
            item.external_type[:100],
            values,
        )
        assets_reconciled_total.labels(provider=connection.provider, outcome=outcome.value).inc()
        return outcome

"""Integration repository -- async persistence for connections, runs, assets, mappings, and webhook events.

Provides IntegrationRepository with the session_factory callable pattern.
Every method opens its own short-lived session so a failure while persisting
one item never poisons the session used for the next. ORM models are
converted to Read schemas before leaving the repository.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.assetsync.integrations.errors import ConnectionBusyError
from src.assetsync.integrations.models import (
    ClientMappingModel,
    ExternalAssetModel,
    IntegrationConnectionModel,
    SyncRunModel,
    WebhookEventModel,
)
from src.assetsync.integrations.schemas import (
    ClientMappingRead,
    ConnectionCreate,
    ConnectionRead,
    ExternalAssetRead,
    ReconcileOutcome,
    SyncDirection,
    SyncRunRead,
    SyncStatus,
    WebhookEventRead,
    WebhookEventStatus,
    ensure_utc,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Mutable asset columns written on insert and update.
ASSET_FIELDS = (
    "client_id",
    "provider",
    "name",
    "hostname",
    "ip_address",
    "status",
    "metadata_json",
    "last_seen_at",
)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_connection(model: IntegrationConnectionModel) -> ConnectionRead:
    """Convert IntegrationConnectionModel to ConnectionRead schema."""
    return ConnectionRead(
        id=model.id,
        client_id=model.client_id,
        name=model.name,
        slug=model.slug,
        provider=model.provider,
        auth_type=model.auth_type,
        base_url=model.base_url,
        credentials=model.credentials or {},
        settings=model.settings or {},
        webhook_secret=model.webhook_secret,
        sync_frequency_minutes=model.sync_frequency_minutes,
        last_synced_at=ensure_utc(model.last_synced_at),
        is_active=model.is_active,
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


def _model_to_run(model: SyncRunModel) -> SyncRunRead:
    """Convert SyncRunModel to SyncRunRead schema."""
    return SyncRunRead(
        id=model.id,
        run_uuid=model.run_uuid,
        integration_connection_id=model.integration_connection_id,
        direction=model.direction,
        status=model.status,
        items_processed=model.items_processed or 0,
        items_created=model.items_created or 0,
        items_updated=model.items_updated or 0,
        items_failed=model.items_failed or 0,
        retry_count=model.retry_count or 0,
        next_retry_at=ensure_utc(model.next_retry_at),
        summary=model.summary,
        error_message=model.error_message,
        started_at=ensure_utc(model.started_at),
        completed_at=ensure_utc(model.completed_at),
        created_at=ensure_utc(model.created_at),
    )


def _model_to_asset(model: ExternalAssetModel) -> ExternalAssetRead:
    """Convert ExternalAssetModel to ExternalAssetRead schema."""
    return ExternalAssetRead(
        id=model.id,
        integration_connection_id=model.integration_connection_id,
        client_id=model.client_id,
        provider=model.provider,
        external_id=model.external_id,
        external_type=model.external_type,
        name=model.name,
        hostname=model.hostname,
        ip_address=model.ip_address,
        status=model.status,
        metadata=model.metadata_json or {},
        last_seen_at=ensure_utc(model.last_seen_at),
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


def _model_to_mapping(model: ClientMappingModel) -> ClientMappingRead:
    """Convert ClientMappingModel to ClientMappingRead schema."""
    return ClientMappingRead(
        id=model.id,
        integration_connection_id=model.integration_connection_id,
        client_id=model.client_id,
        external_client_id=model.external_client_id,
        external_client_name=model.external_client_name,
        is_active=model.is_active,
    )


def _model_to_event(model: WebhookEventModel) -> WebhookEventRead:
    """Convert WebhookEventModel to WebhookEventRead schema."""
    return WebhookEventRead(
        id=model.id,
        integration_connection_id=model.integration_connection_id,
        sync_run_id=model.sync_run_id,
        provider=model.provider,
        event_type=model.event_type,
        external_event_id=model.external_event_id,
        headers=model.headers or {},
        payload=model.payload,
        status=model.status,
        error_message=model.error_message,
        received_at=ensure_utc(model.received_at),
        processed_at=ensure_utc(model.processed_at),
    )


# ── Repository ──────────────────────────────────────────────────────────────


class IntegrationRepository:
    """Async persistence for all integration entities.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Connections ─────────────────────────────────────────────────────────

    async def create_connection(self, data: ConnectionCreate) -> ConnectionRead:
        """Persist a new connection.

        Args:
            data: ConnectionCreate with provider, credentials and settings.

        Returns:
            ConnectionRead with the generated id.
        """
        connection: ConnectionRead | None = None
        async for session in self._session_factory():
            model = IntegrationConnectionModel(
                client_id=data.client_id,
                name=data.name,
                slug=data.slug,
                provider=data.provider,
                auth_type=data.auth_type.value,
                base_url=data.base_url,
                credentials=data.credentials,
                settings=data.settings,
                webhook_secret=data.webhook_secret,
                sync_frequency_minutes=data.sync_frequency_minutes,
                is_active=data.is_active,
            )
            session.add(model)
            await session.commit()
            connection = _model_to_connection(model)
        return connection  # type: ignore[return-value]

    async def get_connection(self, connection_id: int) -> ConnectionRead | None:
        """Get a connection by id, or None."""
        connection: ConnectionRead | None = None
        async for session in self._session_factory():
            model = await session.get(IntegrationConnectionModel, connection_id)
            if model is not None:
                connection = _model_to_connection(model)
        return connection

    async def list_connections(self, active_only: bool = False) -> list[ConnectionRead]:
        """List connections ordered by id."""
        connections: list[ConnectionRead] = []
        async for session in self._session_factory():
            stmt = select(IntegrationConnectionModel).order_by(IntegrationConnectionModel.id)
            if active_only:
                stmt = stmt.where(IntegrationConnectionModel.is_active.is_(True))
            result = await session.execute(stmt)
            connections = [_model_to_connection(m) for m in result.scalars().all()]
        return connections

    async def set_last_synced(self, connection_id: int, synced_at: datetime) -> None:
        """Record the start time of the latest successful/partial sync."""
        async for session in self._session_factory():
            await session.execute(
                update(IntegrationConnectionModel)
                .where(IntegrationConnectionModel.id == connection_id)
                .values(last_synced_at=synced_at, updated_at=utcnow())
            )
            await session.commit()

    async def set_active(self, connection_id: int, is_active: bool) -> None:
        """Toggle the connection's active flag."""
        async for session in self._session_factory():
            await session.execute(
                update(IntegrationConnectionModel)
                .where(IntegrationConnectionModel.id == connection_id)
                .values(is_active=is_active, updated_at=utcnow())
            )
            await session.commit()

    # ── Sync Runs ───────────────────────────────────────────────────────────

    async def start_run(
        self,
        connection_id: int,
        direction: SyncDirection,
        summary: dict[str, Any] | None = None,
        started_at: datetime | None = None,
    ) -> SyncRunRead:
        """Create a run in ``running`` state.

        Args:
            connection_id: Connection the run belongs to.
            direction: pull or push.
            summary: Free-form context stored with the run.
            started_at: Start timestamp, defaults to now.

        Returns:
            The new SyncRunRead.

        Raises:
            ConnectionBusyError: Another run is already running for the connection.
        """
        run: SyncRunRead | None = None
        async for session in self._session_factory():
            model = SyncRunModel(
                run_uuid=str(uuid.uuid4()),
                integration_connection_id=connection_id,
                direction=direction.value,
                status=SyncStatus.running.value,
                summary=summary or {},
                started_at=started_at or utcnow(),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConnectionBusyError(connection_id) from exc
            run = _model_to_run(model)
        return run  # type: ignore[return-value]

    async def has_running_run(self, connection_id: int) -> bool:
        """Return True if a run for the connection is currently ``running``."""
        count = 0
        async for session in self._session_factory():
            stmt = select(func.count(SyncRunModel.id)).where(
                SyncRunModel.integration_connection_id == connection_id,
                SyncRunModel.status == SyncStatus.running.value,
            )
            count = (await session.execute(stmt)).scalar_one()
        return count > 0

    async def get_run(self, run_id: int) -> SyncRunRead | None:
        """Get a run by id, or None."""
        run: SyncRunRead | None = None
        async for session in self._session_factory():
            model = await session.get(SyncRunModel, run_id)
            if model is not None:
                run = _model_to_run(model)
        return run

    async def list_runs(self, connection_id: int, limit: int = 50) -> list[SyncRunRead]:
        """List the most recent runs for a connection, newest first."""
        runs: list[SyncRunRead] = []
        async for session in self._session_factory():
            stmt = (
                select(SyncRunModel)
                .where(SyncRunModel.integration_connection_id == connection_id)
                .order_by(SyncRunModel.id.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            runs = [_model_to_run(m) for m in result.scalars().all()]
        return runs

    async def complete_run(
        self,
        run_id: int,
        status: SyncStatus,
        created: int,
        updated: int,
        failed: int,
        error_message: str | None = None,
        next_retry_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> SyncRunRead:
        """Persist terminal status and counters for a run.

        ``items_processed`` is always written as created + updated + failed.
        """
        run: SyncRunRead | None = None
        async for session in self._session_factory():
            model = await session.get(SyncRunModel, run_id)
            if model is None:
                raise LookupError(f"Sync run {run_id} not found")
            model.status = status.value
            model.items_created = created
            model.items_updated = updated
            model.items_failed = failed
            model.items_processed = created + updated + failed
            model.error_message = error_message
            model.next_retry_at = next_retry_at
            model.completed_at = completed_at or utcnow()
            await session.commit()
            run = _model_to_run(model)
        return run  # type: ignore[return-value]

    async def due_retry_runs(
        self, now: datetime, max_retries: int, limit: int = 25
    ) -> list[SyncRunRead]:
        """Failed pull runs whose retry is due and whose budget remains, oldest first."""
        runs: list[SyncRunRead] = []
        async for session in self._session_factory():
            stmt = (
                select(SyncRunModel)
                .where(
                    SyncRunModel.status == SyncStatus.failed.value,
                    SyncRunModel.direction == SyncDirection.pull.value,
                    SyncRunModel.next_retry_at.is_not(None),
                    SyncRunModel.next_retry_at <= now,
                    SyncRunModel.retry_count < max_retries,
                )
                .order_by(SyncRunModel.created_at, SyncRunModel.id)
                .limit(limit)
            )
            result = await session.execute(stmt)
            runs = [_model_to_run(m) for m in result.scalars().all()]
        return runs

    async def claim_retry(self, run_id: int, now: datetime) -> SyncRunRead | None:
        """Move a failed run back to ``running`` and bump its retry count.

        The conditional update makes concurrent sweeps safe: only one caller
        sees a matched row. Counters and error are reset for the new attempt.

        Returns:
            The claimed run, or None if it was no longer failed or the
            connection already has a running run.
        """
        run: SyncRunRead | None = None
        async for session in self._session_factory():
            stmt = (
                update(SyncRunModel)
                .where(
                    SyncRunModel.id == run_id,
                    SyncRunModel.status == SyncStatus.failed.value,
                )
                .values(
                    status=SyncStatus.running.value,
                    retry_count=SyncRunModel.retry_count + 1,
                    items_processed=0,
                    items_created=0,
                    items_updated=0,
                    items_failed=0,
                    error_message=None,
                    next_retry_at=None,
                    started_at=now,
                    completed_at=None,
                    updated_at=now,
                )
            )
            try:
                result = await session.execute(stmt)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("sync.retry_claim_busy", run_id=run_id)
                continue
            if result.rowcount != 1:
                continue
            model = await session.get(SyncRunModel, run_id, populate_existing=True)
            if model is not None:
                run = _model_to_run(model)
        return run

    async def clear_retry(self, run_id: int) -> None:
        """Drop a run's pending retry (connection gone or inactive)."""
        async for session in self._session_factory():
            await session.execute(
                update(SyncRunModel)
                .where(SyncRunModel.id == run_id)
                .values(next_retry_at=None, updated_at=utcnow())
            )
            await session.commit()

    async def clear_pending_retries(self, connection_id: int, exclude_run_id: int) -> int:
        """Cancel retries of older failed pull runs superseded by a newer sync.

        Returns:
            Number of runs whose pending retry was cleared.
        """
        count = 0
        async for session in self._session_factory():
            result = await session.execute(
                update(SyncRunModel)
                .where(
                    SyncRunModel.integration_connection_id == connection_id,
                    SyncRunModel.id != exclude_run_id,
                    SyncRunModel.status == SyncStatus.failed.value,
                    SyncRunModel.direction == SyncDirection.pull.value,
                    SyncRunModel.next_retry_at.is_not(None),
                )
                .values(next_retry_at=None, updated_at=utcnow())
            )
            await session.commit()
            count = result.rowcount or 0
        return count

    async def stale_running_runs(self, started_before: datetime) -> list[SyncRunRead]:
        """Runs still ``running`` that started before the cutoff."""
        runs: list[SyncRunRead] = []
        async for session in self._session_factory():
            stmt = select(SyncRunModel).where(
                SyncRunModel.status == SyncStatus.running.value,
                SyncRunModel.started_at < started_before,
            )
            result = await session.execute(stmt)
            runs = [_model_to_run(m) for m in result.scalars().all()]
        return runs

    async def fail_running_run(
        self, run_id: int, error_message: str, next_retry_at: datetime | None
    ) -> bool:
        """Mark a still-running run failed. Returns False if it already finished."""
        matched = 0
        async for session in self._session_factory():
            now = utcnow()
            result = await session.execute(
                update(SyncRunModel)
                .where(
                    SyncRunModel.id == run_id,
                    SyncRunModel.status == SyncStatus.running.value,
                )
                .values(
                    status=SyncStatus.failed.value,
                    error_message=error_message,
                    next_retry_at=next_retry_at,
                    completed_at=now,
                    items_processed=(
                        SyncRunModel.items_created
                        + SyncRunModel.items_updated
                        + SyncRunModel.items_failed
                    ),
                    updated_at=now,
                )
            )
            await session.commit()
            matched = result.rowcount or 0
        return matched == 1

    # ── External Assets ─────────────────────────────────────────────────────

    async def get_asset(
        self, connection_id: int, external_id: str, external_type: str
    ) -> ExternalAssetRead | None:
        """Look up an asset by its natural key."""
        asset: ExternalAssetRead | None = None
        async for session in self._session_factory():
            model = await self._find_asset(session, connection_id, external_id, external_type)
            if model is not None:
                asset = _model_to_asset(model)
        return asset

    async def list_assets(self, connection_id: int) -> list[ExternalAssetRead]:
        """List all assets for a connection."""
        assets: list[ExternalAssetRead] = []
        async for session in self._session_factory():
            stmt = (
                select(ExternalAssetModel)
                .where(ExternalAssetModel.integration_connection_id == connection_id)
                .order_by(ExternalAssetModel.id)
            )
            result = await session.execute(stmt)
            assets = [_model_to_asset(m) for m in result.scalars().all()]
        return assets

    async def save_asset(
        self,
        connection_id: int,
        external_id: str,
        external_type: str,
        values: dict[str, Any],
    ) -> ReconcileOutcome:
        """Insert or update an asset by natural key.

        A unique violation on insert means a concurrent writer created the
        row first; the write is retried once as an update.

        Args:
            connection_id: Owning connection.
            external_id: Vendor id (natural key part).
            external_type: Vendor type (natural key part).
            values: Mutable columns from ASSET_FIELDS.

        Returns:
            ReconcileOutcome.created or ReconcileOutcome.updated.
        """
        outcome = ReconcileOutcome.updated
        async for session in self._session_factory():
            model = await self._find_asset(session, connection_id, external_id, external_type)
            if model is not None:
                self._apply_asset_values(model, values)
                await session.commit()
                continue

            session.add(
                ExternalAssetModel(
                    integration_connection_id=connection_id,
                    external_id=external_id,
                    external_type=external_type,
                    **values,
                )
            )
            try:
                await session.commit()
                outcome = ReconcileOutcome.created
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "reconcile.insert_race",
                    connection_id=connection_id,
                    external_id=external_id,
                    external_type=external_type,
                )
                model = await self._find_asset(session, connection_id, external_id, external_type)
                if model is None:
                    raise
                self._apply_asset_values(model, values)
                await session.commit()
        return outcome

    @staticmethod
    async def _find_asset(
        session: AsyncSession, connection_id: int, external_id: str, external_type: str
    ) -> ExternalAssetModel | None:
        stmt = select(ExternalAssetModel).where(
            ExternalAssetModel.integration_connection_id == connection_id,
            ExternalAssetModel.external_id == external_id,
            ExternalAssetModel.external_type == external_type,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _apply_asset_values(model: ExternalAssetModel, values: dict[str, Any]) -> None:
        for field in ASSET_FIELDS:
            if field in values:
                setattr(model, field, values[field])
        model.updated_at = utcnow()

    # ── Client Mappings ─────────────────────────────────────────────────────

    async def active_client_map(self, connection_id: int) -> dict[str, int]:
        """Map of external client id -> internal client id for active mappings."""
        mapping: dict[str, int] = {}
        async for session in self._session_factory():
            stmt = select(
                ClientMappingModel.external_client_id, ClientMappingModel.client_id
            ).where(
                ClientMappingModel.integration_connection_id == connection_id,
                ClientMappingModel.is_active.is_(True),
            )
            result = await session.execute(stmt)
            mapping = {str(ext_id): client_id for ext_id, client_id in result.all()}
        return mapping

    async def find_client_mapping(
        self, connection_id: int, external_client_id: str
    ) -> int | None:
        """Internal client id for an active mapping, or None."""
        client_id: int | None = None
        async for session in self._session_factory():
            stmt = select(ClientMappingModel.client_id).where(
                ClientMappingModel.integration_connection_id == connection_id,
                ClientMappingModel.external_client_id == external_client_id,
                ClientMappingModel.is_active.is_(True),
            )
            client_id = (await session.execute(stmt)).scalar_one_or_none()
        return client_id

    async def list_client_mappings(self, connection_id: int) -> list[ClientMappingRead]:
        """All mappings (active or not) for a connection."""
        mappings: list[ClientMappingRead] = []
        async for session in self._session_factory():
            stmt = (
                select(ClientMappingModel)
                .where(ClientMappingModel.integration_connection_id == connection_id)
                .order_by(ClientMappingModel.id)
            )
            result = await session.execute(stmt)
            mappings = [_model_to_mapping(m) for m in result.scalars().all()]
        return mappings

    async def upsert_client_mapping(
        self,
        connection_id: int,
        external_client_id: str,
        client_id: int,
        external_client_name: str | None = None,
        is_active: bool = True,
    ) -> ClientMappingRead:
        """Create or update the mapping for (connection, external client id)."""
        mapping: ClientMappingRead | None = None
        async for session in self._session_factory():
            stmt = select(ClientMappingModel).where(
                ClientMappingModel.integration_connection_id == connection_id,
                ClientMappingModel.external_client_id == external_client_id,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                model = ClientMappingModel(
                    integration_connection_id=connection_id,
                    external_client_id=external_client_id,
                    client_id=client_id,
                    external_client_name=external_client_name,
                    is_active=is_active,
                )
                session.add(model)
            else:
                model.client_id = client_id
                model.external_client_name = external_client_name or model.external_client_name
                model.is_active = is_active
                model.updated_at = utcnow()
            await session.commit()
            mapping = _model_to_mapping(model)
        return mapping  # type: ignore[return-value]

    # ── Webhook Events ──────────────────────────────────────────────────────

    async def create_webhook_event(
        self,
        connection_id: int,
        provider: str,
        payload: Any,
        headers: dict[str, Any],
        event_type: str | None = None,
        external_event_id: str | None = None,
    ) -> WebhookEventRead:
        """Persist a received webhook event (status ``received``)."""
        event: WebhookEventRead | None = None
        async for session in self._session_factory():
            model = WebhookEventModel(
                integration_connection_id=connection_id,
                provider=provider,
                event_type=event_type,
                external_event_id=external_event_id,
                headers=headers,
                payload=payload,
                status=WebhookEventStatus.received.value,
                received_at=utcnow(),
            )
            session.add(model)
            await session.commit()
            event = _model_to_event(model)
        return event  # type: ignore[return-value]

    async def get_webhook_event(self, event_id: int) -> WebhookEventRead | None:
        """Get a webhook event by id, or None."""
        event: WebhookEventRead | None = None
        async for session in self._session_factory():
            model = await session.get(WebhookEventModel, event_id)
            if model is not None:
                event = _model_to_event(model)
        return event

    async def claim_webhook_event(self, event_id: int) -> bool:
        """Move an event to ``processing`` unless it already reached processed/ignored.

        Returns:
            True if this caller claimed the event.
        """
        matched = 0
        async for session in self._session_factory():
            result = await session.execute(
                update(WebhookEventModel)
                .where(
                    WebhookEventModel.id == event_id,
                    WebhookEventModel.status.not_in(
                        [WebhookEventStatus.processed.value, WebhookEventStatus.ignored.value]
                    ),
                )
                .values(status=WebhookEventStatus.processing.value, updated_at=utcnow())
            )
            await session.commit()
            matched = result.rowcount or 0
        return matched == 1

    async def finish_webhook_event(
        self,
        event_id: int,
        status: WebhookEventStatus,
        error_message: str | None = None,
        sync_run_id: int | None = None,
        only_if: WebhookEventStatus | None = None,
    ) -> bool:
        """Record the terminal status of an event and stamp processed_at.

        Args:
            only_if: Apply only while the event still has this status.

        Returns:
            True if the event row was updated.
        """
        matched = 0
        async for session in self._session_factory():
            now = utcnow()
            values: dict[str, Any] = {
                "status": status.value,
                "error_message": error_message,
                "processed_at": now,
                "updated_at": now,
            }
            if sync_run_id is not None:
                values["sync_run_id"] = sync_run_id
            stmt = update(WebhookEventModel).where(WebhookEventModel.id == event_id)
            if only_if is not None:
                stmt = stmt.where(WebhookEventModel.status == only_if.value)
            result = await session.execute(stmt.values(**values))
            await session.commit()
            matched = result.rowcount or 0
        return matched == 1

    async def stuck_webhook_event_ids(self, older_than: datetime, limit: int = 100) -> list[int]:
        """Ids of events left unfinished since before the cutoff, oldest first.

        Covers events still ``received`` and events claimed as ``processing``
        whose outcome was never recorded (keyed on their last update).
        """
        ids: list[int] = []
        async for session in self._session_factory():
            stmt = (
                select(WebhookEventModel.id)
                .where(
                    or_(
                        and_(
                            WebhookEventModel.status == WebhookEventStatus.received.value,
                            WebhookEventModel.received_at < older_than,
                        ),
                        and_(
                            WebhookEventModel.status == WebhookEventStatus.processing.value,
                            func.coalesce(
                                WebhookEventModel.updated_at, WebhookEventModel.received_at
                            )
                            < older_than,
                        ),
                    )
                )
                .order_by(WebhookEventModel.id)
                .limit(limit)
            )
            ids = list((await session.execute(stmt)).scalars().all())
        return ids

"""Sync orchestrator -- drives pull syncs, webhook push runs, and client discovery.

Every unit of reconciliation work is wrapped in a SyncRun. At most one run
per connection is ``running`` at a time: the in-process ConnectionLocks
serialize work inside this process, and the partial unique index on
running runs rejects a second run from another process.

Status rules for a finished run:
- success: no item failed and the fetch completed
- partial: some items succeeded, and some failed or the fetch broke midway
- failed: nothing succeeded (fetch error up front, or every item failed)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.assetsync.core.monitoring import sync_run_duration_seconds, sync_runs_total
from src.assetsync.integrations.clients import ClientDirectory
from src.assetsync.integrations.errors import (
    ConnectionBusyError,
    ConnectionInactiveError,
    ConnectionNotFoundError,
)
from src.assetsync.integrations.locks import ConnectionLocks
from src.assetsync.integrations.reconciler import AssetReconciler
from src.assetsync.integrations.registry import ProviderRegistry
from src.assetsync.integrations.repository import IntegrationRepository
from src.assetsync.integrations.retry import RetryPolicy
from src.assetsync.integrations.schemas import (
    ConnectionRead,
    DiscoveryResult,
    NormalizedAsset,
    SyncCounts,
    SyncDirection,
    SyncRunRead,
    SyncStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Item-level errors kept in the run summary.
_MAX_ITEM_ERRORS = 20


@dataclass
class _RunTally:
    """Counters and errors accumulated while a run executes."""

    counts: SyncCounts = field(default_factory=SyncCounts)
    item_errors: list[dict[str, Any]] = field(default_factory=list)
    fetch_error: str | None = None

    def item_failed(self, item: NormalizedAsset, exc: Exception) -> None:
        self.counts.failed += 1
        if len(self.item_errors) < _MAX_ITEM_ERRORS:
            self.item_errors.append(
                {
                    "external_id": item.external_id,
                    "external_type": item.external_type,
                    "error": str(exc),
                }
            )

    def status(self) -> SyncStatus:
        counts = self.counts
        if self.fetch_error is None and counts.failed == 0:
            return SyncStatus.success
        if counts.succeeded > 0:
            return SyncStatus.partial
        return SyncStatus.failed

    def error_message(self) -> str | None:
        if self.fetch_error is not None:
            return self.fetch_error
        if self.item_errors:
            return f"{self.counts.failed} item(s) failed to reconcile: {self.item_errors[0]['error']}"
        return None


class SyncOrchestrator:
    """Coordinates provider adapters, the reconciler, and run bookkeeping.

    Args:
        repository: IntegrationRepository for connections, runs, and mappings.
        registry: ProviderRegistry resolving a connection's provider key.
        reconciler: AssetReconciler, built from the repository when omitted.
        locks: Shared ConnectionLocks; share one instance per process.
        retry_policy: Backoff applied to failed pull runs.
        client_directory: Internal client lookup used by discovery auto-mapping.
    """

    def __init__(
        self,
        repository: IntegrationRepository,
        registry: ProviderRegistry,
        reconciler: AssetReconciler | None = None,
        locks: ConnectionLocks | None = None,
        retry_policy: RetryPolicy | None = None,
        client_directory: ClientDirectory | None = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._reconciler = reconciler or AssetReconciler(repository)
        self._locks = locks or ConnectionLocks()
        self._retry_policy = retry_policy or RetryPolicy()
        self._client_directory = client_directory

    @property
    def locks(self) -> ConnectionLocks:
        return self._locks

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def is_connection_busy(self, connection_id: int) -> bool:
        """True while this process holds the connection's lock."""
        return self._locks.is_locked(connection_id)

    # ── Pull Sync ───────────────────────────────────────────────────────────

    async def sync_connection(
        self, connection_id: int, source: str = "manual"
    ) -> SyncRunRead | None:
        """Run one pull sync for a connection.

        Args:
            connection_id: Connection to sync.
            source: Trigger label stored in the run summary (manual, schedule, cli).

        Returns:
            The completed SyncRunRead, or None when a run for the connection
            is already in progress.

        Raises:
            ConnectionNotFoundError: No connection with that id.
            ConnectionInactiveError: The connection is deactivated.
        """
        connection = await self._repository.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        if not connection.is_active:
            raise ConnectionInactiveError(connection_id)

        lock = self._locks.get(connection_id)
        if lock.locked():
            logger.info("sync.skipped_busy", connection_id=connection_id, reason="lock_held")
            return None

        async with lock:
            try:
                run = await self._repository.start_run(
                    connection_id,
                    SyncDirection.pull,
                    summary={"source": source, "provider": connection.provider},
                )
            except ConnectionBusyError:
                logger.info("sync.skipped_busy", connection_id=connection_id, reason="run_active")
                return None
            return await self._execute_pull(connection, run)

    async def retry_run(
        self, connection: ConnectionRead, run_id: int, now: datetime | None = None
    ) -> SyncRunRead | None:
        """Re-execute a failed pull run in place.

        Returns:
            The completed run, or None if the connection is busy or the run
            was claimed by someone else.
        """
        lock = self._locks.get(connection.id)
        if lock.locked():
            logger.info("sync.retry_deferred_busy", run_id=run_id, connection_id=connection.id)
            return None

        async with lock:
            run = await self._repository.claim_retry(run_id, now or utcnow())
            if run is None:
                return None
            logger.info(
                "sync.retry_started",
                run_id=run.id,
                connection_id=connection.id,
                retry_count=run.retry_count,
            )
            return await self._execute_pull(connection, run)

    async def _execute_pull(self, connection: ConnectionRead, run: SyncRunRead) -> SyncRunRead:
        """Fetch, reconcile, and finalize a run already in ``running`` state."""
        started = time.monotonic()
        tally = _RunTally()

        try:
            provider = self._registry.resolve(connection.provider)
            client_map = await self._repository.active_client_map(connection.id)
            async for page in provider.iter_asset_pages(connection, connection.last_synced_at):
                for item in page:
                    await self._reconcile_item(connection, item, client_map, tally)
        except Exception as exc:
            tally.fetch_error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "sync.fetch_failed",
                run_id=run.id,
                connection_id=connection.id,
                provider=connection.provider,
                error=str(exc),
            )

        status = tally.status()
        now = utcnow()
        next_retry_at = None
        if status == SyncStatus.failed:
            next_retry_at = self._retry_policy.next_retry_at(run.retry_count, now)

        completed = await self._repository.complete_run(
            run.id,
            status,
            created=tally.counts.created,
            updated=tally.counts.updated,
            failed=tally.counts.failed,
            error_message=tally.error_message(),
            next_retry_at=next_retry_at,
            completed_at=now,
        )

        if status in (SyncStatus.success, SyncStatus.partial):
            await self._repository.set_last_synced(connection.id, run.started_at or now)
            await self._repository.clear_pending_retries(connection.id, run.id)

        self._observe(connection, SyncDirection.pull, status, started)
        logger.info(
            "sync.run_completed",
            run_id=run.id,
            connection_id=connection.id,
            provider=connection.provider,
            direction=SyncDirection.pull.value,
            status=status.value,
            created=tally.counts.created,
            updated=tally.counts.updated,
            failed=tally.counts.failed,
            skipped=tally.counts.skipped,
            retry_count=run.retry_count,
            next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
        )
        return completed

    async def _reconcile_item(
        self,
        connection: ConnectionRead,
        item: NormalizedAsset,
        client_map: dict[str, int],
        tally: _RunTally,
    ) -> None:
        try:
            outcome = await self._reconciler.reconcile(connection, item, client_map)
        except Exception as exc:
            tally.item_failed(item, exc)
            logger.warning(
                "sync.item_failed",
                connection_id=connection.id,
                external_id=item.external_id,
                error=str(exc),
            )
            return
        tally.counts.record(outcome)

    @staticmethod
    def _observe(
        connection: ConnectionRead, direction: SyncDirection, status: SyncStatus, started: float
    ) -> None:
        sync_runs_total.labels(
            provider=connection.provider, direction=direction.value, status=status.value
        ).inc()
        sync_run_duration_seconds.labels(
            provider=connection.provider, direction=direction.value
        ).observe(time.monotonic() - started)

    # ── Push (Webhook) Runs ─────────────────────────────────────────────────

    async def process_webhook_payload(
        self, connection: ConnectionRead, payload: Any
    ) -> SyncRunRead:
        """Reconcile one webhook payload inside a push-direction run.

        Waits for the connection's lock instead of skipping, so pushes queue
        behind an in-flight pull. Push runs never schedule retries and never
        move ``last_synced_at``.
        """
        async with self._locks.get(connection.id):
            run = await self._start_push_run(connection)
            started = time.monotonic()
            tally = _RunTally()

            try:
                provider = self._registry.resolve(connection.provider)
                items = provider.map_webhook_payload(connection, payload)
            except Exception as exc:
                tally.fetch_error = f"{type(exc).__name__}: {exc}"
                items = []

            client_map = await self._repository.active_client_map(connection.id) if items else {}
            for item in items:
                await self._reconcile_item(connection, item, client_map, tally)

            status = tally.status()
            completed = await self._repository.complete_run(
                run.id,
                status,
                created=tally.counts.created,
                updated=tally.counts.updated,
                failed=tally.counts.failed,
                error_message=tally.error_message(),
            )
            self._observe(connection, SyncDirection.push, status, started)
            logger.info(
                "sync.run_completed",
                run_id=run.id,
                connection_id=connection.id,
                provider=connection.provider,
                direction=SyncDirection.push.value,
                status=status.value,
                created=tally.counts.created,
                updated=tally.counts.updated,
                failed=tally.counts.failed,
                skipped=tally.counts.skipped,
            )
            return completed

    @retry(
        retry=retry_if_exception_type(ConnectionBusyError),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        reraise=True,
    )
    async def _start_push_run(self, connection: ConnectionRead) -> SyncRunRead:
        """Start a push run, backing off while another process holds a running run."""
        return await self._repository.start_run(
            connection.id,
            SyncDirection.push,
            summary={"source": "webhook", "provider": connection.provider},
        )

    # ── Scheduling ──────────────────────────────────────────────────────────

    @staticmethod
    def is_due(connection: ConnectionRead, now: datetime) -> bool:
        """Never synced, or at least sync_frequency_minutes since the last success."""
        if connection.last_synced_at is None:
            return True
        return now >= connection.last_synced_at + timedelta(
            minutes=connection.sync_frequency_minutes
        )

    async def due_connections(self, now: datetime | None = None) -> list[ConnectionRead]:
        """Active connections whose next pull sync is due."""
        now = now or utcnow()
        connections = await self._repository.list_connections(active_only=True)
        return [c for c in connections if self.is_due(c, now)]

    async def sync_due_connections(self, now: datetime | None = None) -> list[SyncRunRead]:
        """Sync every due connection one after another.

        A failure on one connection is logged and does not stop the sweep.

        Returns:
            Runs that executed; busy connections are absent.
        """
        runs: list[SyncRunRead] = []
        due = await self.due_connections(now)
        for connection in due:
            try:
                run = await self.sync_connection(connection.id, source="schedule")
            except Exception as exc:
                logger.error(
                    "sync.sweep_connection_error",
                    connection_id=connection.id,
                    error=str(exc),
                    exc_info=True,
                )
                continue
            if run is not None:
                runs.append(run)
        logger.info("sync.sweep_complete", due=len(due), executed=len(runs))
        return runs

    # ── Client Discovery ────────────────────────────────────────────────────

    async def discover_clients(
        self,
        connection_id: int,
        auto_map: bool = False,
        directory: ClientDirectory | None = None,
    ) -> DiscoveryResult:
        """List vendor-side clients and optionally map them to internal clients.

        Args:
            connection_id: Connection to query.
            auto_map: Upsert a mapping for every vendor client whose name
                matches an internal client (case-insensitive).
            directory: Internal client lookup; falls back to the one given at
                construction. Auto-mapping is a no-op without a directory.

        Raises:
            ConnectionNotFoundError: No connection with that id.
            UnsupportedProviderError: The provider key is not registered.
        """
        connection = await self._repository.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)

        provider = self._registry.resolve(connection.provider)
        clients = [
            c for c in await provider.discover_clients(connection) if c.external_client_id.strip()
        ]
        result = DiscoveryResult(clients=clients)

        directory = directory or self._client_directory
        if not auto_map or directory is None:
            return result

        for found in clients:
            if not found.external_client_name:
                continue
            client_id = await directory.find_client_id_by_name(found.external_client_name)
            if client_id is None:
                continue
            mapping = await self._repository.upsert_client_mapping(
                connection.id,
                found.external_client_id,
                client_id,
                external_client_name=found.external_client_name,
            )
            result.mapped.append(mapping)

        logger.info(
            "sync.clients_discovered",
            connection_id=connection.id,
            discovered=len(clients),
            mapped=len(result.mapped),
        )
        return result

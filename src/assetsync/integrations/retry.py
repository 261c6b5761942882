"""Retry scheduling for failed pull runs.

RetryPolicy computes exponential backoff; RetryScheduler sweeps failed runs
that are due and re-runs them through the orchestrator, and recovers runs
left ``running`` by a crashed worker.

State machine: failed -> running (retry sweep) -> success | partial | failed.
A run that fails with its retry budget spent keeps ``next_retry_at = NULL``
and stays terminally failed until someone triggers a sync manually.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from src.assetsync.integrations.repository import IntegrationRepository
from src.assetsync.integrations.schemas import SyncDirection, utcnow

if TYPE_CHECKING:
    from src.assetsync.config import Settings
    from src.assetsync.integrations.sync import SyncOrchestrator

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff and budget for failed pull runs.

    Attributes:
        max_retries: Retry attempts allowed per run.
        base_minutes: Delay before the first retry.
        max_minutes: Ceiling on any single delay.
        batch_size: Runs handled per sweep.
        run_timeout_minutes: Age after which a running run counts as abandoned.
    """

    max_retries: int = 3
    base_minutes: int = 15
    max_minutes: int = 720
    batch_size: int = 25
    run_timeout_minutes: int = 120

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_retries=settings.SYNC_MAX_RETRIES,
            base_minutes=settings.SYNC_RETRY_BASE_MINUTES,
            max_minutes=settings.SYNC_RETRY_MAX_MINUTES,
            batch_size=settings.SYNC_RETRY_BATCH_SIZE,
            run_timeout_minutes=settings.SYNC_RUN_TIMEOUT_MINUTES,
        )

    def backoff(self, retry_count: int) -> timedelta:
        """base * 2**retry_count, capped at max_minutes."""
        minutes = min(self.base_minutes * (2 ** max(retry_count, 0)), self.max_minutes)
        return timedelta(minutes=minutes)

    def next_retry_at(self, retry_count: int, now: datetime | None = None) -> datetime | None:
        """When a run that just failed should be retried, or None if the budget is spent."""
        if retry_count >= self.max_retries:
            return None
        return (now or utcnow()) + self.backoff(retry_count)


class RetryScheduler:
    """Sweeps failed sync runs and retries the due ones.

    Safe to run concurrently with itself: claiming a run is a conditional
    update, and per-connection exclusivity rejects a second running run.

    Args:
        repository: IntegrationRepository for run bookkeeping.
        orchestrator: SyncOrchestrator that executes the retried pull.
        policy: RetryPolicy with budget, backoff and batch size.
    """

    def __init__(
        self,
        repository: IntegrationRepository,
        orchestrator: SyncOrchestrator,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._policy = policy or RetryPolicy()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def retry_failed_runs(self, now: datetime | None = None) -> int:
        """Retry failed pull runs whose next_retry_at has passed.

        Runs of missing or inactive connections are skipped and their
        pending retry cleared.

        Returns:
            Number of runs actually re-executed.
        """
        now = now or utcnow()
        due = await self._repository.due_retry_runs(
            now, self._policy.max_retries, self._policy.batch_size
        )
        retried = 0

        for run in due:
            connection = await self._repository.get_connection(run.integration_connection_id)
            if connection is None or not connection.is_active:
                await self._repository.clear_retry(run.id)
                logger.info(
                    "sync.retry_skipped_inactive",
                    run_id=run.id,
                    connection_id=run.integration_connection_id,
                )
                continue

            try:
                result = await self._orchestrator.retry_run(connection, run.id, now)
            except Exception as exc:
                logger.error(
                    "sync.retry_error",
                    run_id=run.id,
                    connection_id=connection.id,
                    error=str(exc),
                    exc_info=True,
                )
                continue

            if result is not None:
                retried += 1

        logger.info("sync.retry_sweep_complete", due=len(due), retried=retried)
        return retried

    async def fail_stale_runs(self, now: datetime | None = None) -> int:
        """Mark runs stuck in ``running`` past the timeout as failed.

        Runs whose connection lock is held in this process are still in
        progress and left alone. Recovered pull runs become retry-eligible.

        Returns:
            Number of runs marked failed.
        """
        now = now or utcnow()
        timeout = timedelta(minutes=self._policy.run_timeout_minutes)
        stale = await self._repository.stale_running_runs(now - timeout)
        recovered = 0

        for run in stale:
            if self._orchestrator.is_connection_busy(run.integration_connection_id):
                continue
            next_retry_at = None
            if run.direction == SyncDirection.pull:
                next_retry_at = self._policy.next_retry_at(run.retry_count, now)
            message = (
                f"Sync run abandoned: still running after "
                f"{self._policy.run_timeout_minutes} minutes."
            )
            if await self._repository.fail_running_run(run.id, message, next_retry_at):
                recovered += 1
                logger.warning(
                    "sync.stale_run_failed",
                    run_id=run.id,
                    connection_id=run.integration_connection_id,
                    next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
                )
        return recovered

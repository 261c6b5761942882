"""Background scheduler for integration sweeps.

Wraps an AsyncIOScheduler with interval jobs:
- Sync sweep: pull-sync every due connection
- Retry sweep: fail abandoned running runs, then retry due failed runs
- Webhook redelivery: re-dispatch events stuck in ``received``

Every job catches and logs its own errors so one bad sweep never stops
the scheduler.

Exports:
    IntegrationScheduler: Async scheduler for sync, retry, and redelivery sweeps.
"""

from __future__ import annotations

from datetime import timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.assetsync.integrations.retry import RetryScheduler
from src.assetsync.integrations.sync import SyncOrchestrator
from src.assetsync.webhooks.dispatch import WebhookDispatcher
from src.assetsync.webhooks.processor import WebhookProcessor

logger = structlog.get_logger(__name__)


class IntegrationScheduler:
    """Periodic sync, retry, and webhook redelivery jobs.

    Args:
        orchestrator: SyncOrchestrator for the due-connection sweep.
        retry_scheduler: RetryScheduler for the retry sweep.
        processor: WebhookProcessor for stuck-event redelivery. Optional.
        dispatcher: Dispatcher used to redeliver stuck events. Optional.
        sync_interval_minutes: Minutes between sync sweeps.
        retry_interval_minutes: Minutes between retry sweeps.
        redeliver_after_minutes: Age at which a ``received`` event counts as stuck.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        retry_scheduler: RetryScheduler,
        processor: WebhookProcessor | None = None,
        dispatcher: WebhookDispatcher | None = None,
        sync_interval_minutes: int = 15,
        retry_interval_minutes: int = 15,
        redeliver_after_minutes: int = 10,
    ) -> None:
        self._orchestrator = orchestrator
        self._retry_scheduler = retry_scheduler
        self._processor = processor
        self._dispatcher = dispatcher
        self._sync_interval = sync_interval_minutes
        self._retry_interval = retry_interval_minutes
        self._redeliver_after = redeliver_after_minutes
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Register jobs and start the scheduler. Returns False if already running."""
        if self._started:
            return False

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            self.run_sync_sweep,
            trigger=IntervalTrigger(minutes=self._sync_interval),
            id="integration_sync_sweep",
            name="Pull-sync all due integration connections",
            misfire_grace_time=300,
            coalesce=True,
            max_instances=1,
        )

        self._scheduler.add_job(
            self.run_retry_sweep,
            trigger=IntervalTrigger(minutes=self._retry_interval),
            id="integration_retry_sweep",
            name="Retry failed integration sync runs",
            misfire_grace_time=300,
            coalesce=True,
            max_instances=1,
        )

        jobs = ["sync_sweep", "retry_sweep"]
        if self._processor is not None and self._dispatcher is not None:
            self._scheduler.add_job(
                self.run_webhook_redelivery,
                trigger=IntervalTrigger(minutes=self._redeliver_after),
                id="integration_webhook_redelivery",
                name="Redeliver stuck webhook events",
                misfire_grace_time=300,
                coalesce=True,
                max_instances=1,
            )
            jobs.append("webhook_redelivery")

        self._scheduler.start()
        self._started = True
        logger.info(
            "integration_scheduler_started",
            jobs=jobs,
            sync_interval_minutes=self._sync_interval,
            retry_interval_minutes=self._retry_interval,
        )
        return True

    async def run_sync_sweep(self) -> int:
        """Sync every due connection. Returns the number of runs executed."""
        try:
            runs = await self._orchestrator.sync_due_connections()
        except Exception as exc:
            logger.error("integration_sync_sweep_failed", error=str(exc), exc_info=True)
            return 0
        return len(runs)

    async def run_retry_sweep(self) -> int:
        """Recover abandoned runs, then retry due failed runs. Returns runs retried."""
        try:
            await self._retry_scheduler.fail_stale_runs()
            return await self._retry_scheduler.retry_failed_runs()
        except Exception as exc:
            logger.error("integration_retry_sweep_failed", error=str(exc), exc_info=True)
            return 0

    async def run_webhook_redelivery(self) -> int:
        """Re-dispatch stuck webhook events. Returns events redelivered."""
        if self._processor is None or self._dispatcher is None:
            return 0
        try:
            return await self._processor.redeliver_stuck(
                self._dispatcher, timedelta(minutes=self._redeliver_after)
            )
        except Exception as exc:
            logger.error("integration_webhook_redelivery_failed", error=str(exc), exc_info=True)
            return 0

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("integration_scheduler_stopped")


__all__ = ["IntegrationScheduler"]

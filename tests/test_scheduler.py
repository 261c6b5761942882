"""Tests for IntegrationScheduler job registration and job bodies."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.assetsync.integrations.scheduler import IntegrationScheduler


@pytest.fixture
def orchestrator() -> AsyncMock:
    mock = AsyncMock()
    mock.sync_due_connections.return_value = [MagicMock(), MagicMock()]
    return mock


@pytest.fixture
def retry_scheduler() -> AsyncMock:
    mock = AsyncMock()
    mock.fail_stale_runs.return_value = 0
    mock.retry_failed_runs.return_value = 3
    return mock


class TestJobs:
    async def test_sync_sweep_counts_runs(self, orchestrator, retry_scheduler):
        scheduler = IntegrationScheduler(orchestrator, retry_scheduler)
        assert await scheduler.run_sync_sweep() == 2

    async def test_sync_sweep_swallows_errors(self, orchestrator, retry_scheduler):
        orchestrator.sync_due_connections.side_effect = RuntimeError("db down")
        scheduler = IntegrationScheduler(orchestrator, retry_scheduler)
        assert await scheduler.run_sync_sweep() == 0

    async def test_retry_sweep_recovers_stale_first(self, orchestrator, retry_scheduler):
        order: list[str] = []
        retry_scheduler.fail_stale_runs.side_effect = lambda: order.append("stale") or 0
        retry_scheduler.retry_failed_runs.side_effect = lambda: order.append("retry") or 3
        scheduler = IntegrationScheduler(orchestrator, retry_scheduler)

        assert await scheduler.run_retry_sweep() == 3
        assert order == ["stale", "retry"]

    async def test_redelivery_requires_processor_and_dispatcher(self, orchestrator, retry_scheduler):
        scheduler = IntegrationScheduler(orchestrator, retry_scheduler)
        assert await scheduler.run_webhook_redelivery() == 0

    async def test_redelivery_uses_configured_age(self, orchestrator, retry_scheduler):
        processor = AsyncMock()
        processor.redeliver_stuck.return_value = 4
        dispatcher = AsyncMock()
        scheduler = IntegrationScheduler(
            orchestrator, retry_scheduler, processor, dispatcher, redeliver_after_minutes=7
        )

        assert await scheduler.run_webhook_redelivery() == 4
        processor.redeliver_stuck.assert_awaited_once_with(dispatcher, timedelta(minutes=7))


class TestLifecycle:
    async def test_start_registers_jobs_once(self, orchestrator, retry_scheduler):
        scheduler = IntegrationScheduler(orchestrator, retry_scheduler, AsyncMock(), AsyncMock())

        assert scheduler.start() is True
        try:
            assert scheduler.running
            assert scheduler.start() is False
            job_ids = {job.id for job in scheduler._scheduler.get_jobs()}
            assert job_ids == {
                "integration_sync_sweep",
                "integration_retry_sweep",
                "integration_webhook_redelivery",
            }
        finally:
            scheduler.stop()
        assert not scheduler.running

    async def test_no_redelivery_job_without_dispatcher(self, orchestrator, retry_scheduler):
        scheduler = IntegrationScheduler(orchestrator, retry_scheduler)
        scheduler.start()
        try:
            job_ids = {job.id for job in scheduler._scheduler.get_jobs()}
            assert "integration_webhook_redelivery" not in job_ids
        finally:
            scheduler.stop()

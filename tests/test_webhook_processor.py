"""Tests for WebhookProcessor and the inline dispatcher."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.assetsync.integrations.schemas import SyncStatus, WebhookEventStatus, utcnow
from src.assetsync.webhooks.dispatch import InlineWebhookDispatcher
from src.assetsync.webhooks.processor import INACTIVE_MESSAGE, WebhookProcessor


@pytest.fixture
def processor(repository, orchestrator) -> WebhookProcessor:
    return WebhookProcessor(repository, orchestrator)


async def _event(repository, connection, payload):
    return await repository.create_webhook_event(
        connection.id, connection.provider, payload, {"content-type": "application/json"}
    )


class TestProcess:
    async def test_processed_event_links_run(self, repository, processor, make_connection):
        connection = await make_connection()
        event = await _event(repository, connection, {"asset": {"id": "a-1", "name": "NAS"}})

        result = await processor.process(event.id)

        assert result.status == WebhookEventStatus.processed
        assert result.processed_at is not None
        run = await repository.get_run(result.sync_run_id)
        assert run.status == SyncStatus.success
        assert run.items_created == 1

    async def test_missing_event_returns_none(self, processor):
        assert await processor.process(12345) is None

    async def test_inactive_connection_ignored_without_run(self, repository, processor, make_connection):
        connection = await make_connection(is_active=False)
        event = await _event(repository, connection, {"asset": {"id": 1}})

        result = await processor.process(event.id)

        assert result.status == WebhookEventStatus.ignored
        assert result.error_message == INACTIVE_MESSAGE
        assert result.sync_run_id is None
        assert await repository.list_runs(connection.id) == []
        assert await repository.list_assets(connection.id) == []

    async def test_redelivery_is_a_no_op(self, repository, processor, make_connection):
        connection = await make_connection()
        event = await _event(repository, connection, {"asset": {"id": 1}})

        first = await processor.process(event.id)
        second = await processor.process(event.id)

        assert second.status == WebhookEventStatus.processed
        assert second.sync_run_id == first.sync_run_id
        assert len(await repository.list_runs(connection.id)) == 1
        assert len(await repository.list_assets(connection.id)) == 1

    async def test_failed_run_marks_event_failed(self, repository, processor, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.webhook_error = ValueError("unexpected shape")
        event = await _event(repository, connection, {"x": 1})

        result = await processor.process(event.id)

        assert result.status == WebhookEventStatus.failed
        assert "unexpected shape" in result.error_message
        assert result.sync_run_id is not None

    async def test_orchestrator_exception_marks_event_failed(self, repository, make_connection):
        connection = await make_connection()
        event = await _event(repository, connection, {"asset": {"id": 1}})
        orchestrator = AsyncMock()
        orchestrator.process_webhook_payload.side_effect = RuntimeError("database is locked")

        result = await WebhookProcessor(repository, orchestrator).process(event.id)

        assert result.status == WebhookEventStatus.failed
        assert result.error_message == "database is locked"


class TestRedelivery:
    async def test_only_old_received_events_redelivered(self, repository, processor, make_connection):
        connection = await make_connection()
        stuck = await _event(repository, connection, {"asset": {"id": 1}})
        done = await _event(repository, connection, {"asset": {"id": 2}})
        await processor.process(done.id)
        dispatcher = AsyncMock()

        count = await processor.redeliver_stuck(
            dispatcher, timedelta(minutes=10), now=utcnow() + timedelta(minutes=15)
        )

        assert count == 1
        dispatched = dispatcher.dispatch.await_args.args[0]
        assert dispatched.id == stuck.id

    async def test_recent_events_not_redelivered(self, repository, processor, make_connection):
        connection = await make_connection()
        await _event(repository, connection, {"asset": {"id": 1}})
        dispatcher = AsyncMock()

        assert await processor.redeliver_stuck(dispatcher, timedelta(minutes=10)) == 0
        dispatcher.dispatch.assert_not_awaited()


class TestInlineDispatcher:
    async def test_dispatch_and_drain(self, repository, processor, make_connection):
        connection = await make_connection()
        events = [await _event(repository, connection, {"asset": {"id": i}}) for i in range(3)]
        dispatcher = InlineWebhookDispatcher(processor)

        for event in events:
            await dispatcher.dispatch(event)
        await dispatcher.drain()

        assert dispatcher.pending == 0
        for event in events:
            stored = await repository.get_webhook_event(event.id)
            assert stored.status == WebhookEventStatus.processed
        assert len(await repository.list_assets(connection.id)) == 3

    async def test_processor_error_is_contained(self, repository, make_connection):
        connection = await make_connection()
        event = await _event(repository, connection, {})
        processor = AsyncMock()
        processor.process.side_effect = RuntimeError("boom")
        dispatcher = InlineWebhookDispatcher(processor)

        await dispatcher.dispatch(event)
        await dispatcher.drain()

        processor.process.assert_awaited_once_with(event.id)


class TestUnrecordedOutcomes:
    async def test_failure_recorded_when_first_write_fails(self, repository, make_connection, monkeypatch):
        connection = await make_connection()
        event = await _event(repository, connection, {"asset": {"id": 1}})
        orchestrator = AsyncMock()
        orchestrator.process_webhook_payload.side_effect = RuntimeError("reconcile blew up")
        real_finish = repository.finish_webhook_event
        calls = {"n": 0}

        async def _flaky_finish(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("db gone during finish")
            return await real_finish(*args, **kwargs)

        monkeypatch.setattr(repository, "finish_webhook_event", _flaky_finish)

        assert await WebhookProcessor(repository, orchestrator).process(event.id) is None

        stored = await repository.get_webhook_event(event.id)
        assert stored.status == WebhookEventStatus.failed
        assert stored.error_message == "db gone during finish"

    async def test_claimed_event_left_processing_is_redelivered(self, repository, make_connection, monkeypatch):
        connection = await make_connection()
        event = await _event(repository, connection, {"asset": {"id": 1}})
        orchestrator = AsyncMock()
        orchestrator.process_webhook_payload.side_effect = RuntimeError("reconcile blew up")

        async def _down(*args, **kwargs):
            raise RuntimeError("db gone during finish")

        monkeypatch.setattr(repository, "finish_webhook_event", _down)
        processor = WebhookProcessor(repository, orchestrator)

        assert await processor.process(event.id) is None
        assert (await repository.get_webhook_event(event.id)).status == WebhookEventStatus.processing

        dispatcher = AsyncMock()
        assert await processor.redeliver_stuck(dispatcher, timedelta(minutes=10)) == 0
        later = utcnow() + timedelta(minutes=15)
        assert await processor.redeliver_stuck(dispatcher, timedelta(minutes=10), now=later) == 1
        assert dispatcher.dispatch.await_args.args[0].id == event.id

    async def test_redelivered_processing_event_completes(self, repository, processor, make_connection):
        connection = await make_connection()
        event = await _event(repository, connection, {"asset": {"id": "r-1"}})
        assert await repository.claim_webhook_event(event.id)

        result = await processor.process(event.id)

        assert result.status == WebhookEventStatus.processed
        assert len(await repository.list_assets(connection.id)) == 1

    async def test_lookup_error_before_claim_leaves_event_received(self, repository, processor, make_connection, monkeypatch):
        connection = await make_connection()
        event = await _event(repository, connection, {"asset": {"id": 1}})

        async def _broken(connection_id):
            raise RuntimeError("connection pool exhausted")

        monkeypatch.setattr(repository, "get_connection", _broken)

        assert await processor.process(event.id) is None
        assert (await repository.get_webhook_event(event.id)).status == WebhookEventStatus.received

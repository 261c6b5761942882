"""Tests for SyncOrchestrator pull runs, push runs, due checks, and discovery.

Uses the FakeProvider from conftest against a SQLite database.
"""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from src.assetsync.integrations.clients import StaticClientDirectory
from src.assetsync.integrations.errors import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    UnsupportedProviderError,
)
from src.assetsync.integrations.reconciler import AssetReconciler
from src.assetsync.integrations.schemas import (
    DiscoveredClient,
    ReconcileOutcome,
    SyncDirection,
    SyncStatus,
    utcnow,
)
from src.assetsync.integrations.sync import SyncOrchestrator


class FlakyReconciler(AssetReconciler):
    """Fails for chosen external ids, delegates otherwise."""

    def __init__(self, repository, failing: set[str]) -> None:
        super().__init__(repository)
        self._failing = failing

    async def reconcile(self, connection, item, client_map=None) -> ReconcileOutcome:
        if item.external_id in self._failing:
            raise RuntimeError(f"cannot store {item.external_id}")
        return await super().reconcile(connection, item, client_map)


def _orchestrator(repository, registry, retry_policy, failing: set[str]) -> SyncOrchestrator:
    return SyncOrchestrator(
        repository,
        registry,
        reconciler=FlakyReconciler(repository, failing),
        retry_policy=retry_policy,
    )


# ── Pull Runs ────────────────────────────────────────────────────────────────


class TestPullSync:
    async def test_success_counts_and_last_synced(self, repository, orchestrator, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.pages = [[{"id": 123, "name": "Server1"}, {"name": "NoId"}], [{"id": 124}]]

        run = await orchestrator.sync_connection(connection.id)

        assert run is not None
        assert run.status == SyncStatus.success
        assert run.direction == SyncDirection.pull
        assert run.items_created == 2
        assert run.items_updated == 0
        assert run.items_failed == 0
        assert run.items_processed == 2
        assert run.next_retry_at is None
        assert run.completed_at is not None
        assert len(await repository.list_assets(connection.id)) == 2

        refreshed = await repository.get_connection(connection.id)
        assert refreshed.last_synced_at == run.started_at

    async def test_second_sync_is_incremental_and_updates(self, orchestrator, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.pages = [[{"id": 1}]]

        first = await orchestrator.sync_connection(connection.id)
        second = await orchestrator.sync_connection(connection.id)

        assert fake_provider.since_calls[0] is None
        assert fake_provider.since_calls[1] == first.started_at
        assert second.items_created == 0
        assert second.items_updated == 1

    async def test_partial_when_some_items_fail(self, repository, registry, retry_policy, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.pages = [[{"id": "ok-1"}, {"id": "bad"}, {"id": "ok-2"}]]
        orchestrator = _orchestrator(repository, registry, retry_policy, {"bad"})

        run = await orchestrator.sync_connection(connection.id)

        assert run.status == SyncStatus.partial
        assert (run.items_created, run.items_failed, run.items_processed) == (2, 1, 3)
        assert "cannot store bad" in run.error_message
        assert run.next_retry_at is None
        assert (await repository.get_connection(connection.id)).last_synced_at is not None

    async def test_failed_when_every_item_fails(self, repository, registry, retry_policy, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.pages = [[{"id": "bad"}]]
        orchestrator = _orchestrator(repository, registry, retry_policy, {"bad"})

        run = await orchestrator.sync_connection(connection.id)

        assert run.status == SyncStatus.failed
        assert run.items_failed == 1
        assert run.next_retry_at is not None
        assert (await repository.get_connection(connection.id)).last_synced_at is None

    async def test_fetch_error_before_any_item_fails_run(self, repository, orchestrator, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.error = httpx.ConnectError("vendor unreachable")

        before = utcnow()
        run = await orchestrator.sync_connection(connection.id)

        assert run.status == SyncStatus.failed
        assert run.items_processed == 0
        assert "vendor unreachable" in run.error_message
        # First failure: retry_count 0 -> now + base delay
        assert run.next_retry_at >= before + timedelta(minutes=15)
        assert run.next_retry_at <= utcnow() + timedelta(minutes=15)

    async def test_fetch_error_after_success_is_partial(self, repository, orchestrator, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.pages = [[{"id": 1}, {"id": 2}]]
        fake_provider.error = RuntimeError("page 2 timed out")

        run = await orchestrator.sync_connection(connection.id)

        assert run.status == SyncStatus.partial
        assert run.items_created == 2
        assert run.error_message.endswith("page 2 timed out")
        assert (await repository.get_connection(connection.id)).last_synced_at == run.started_at

    async def test_unsupported_provider_fails_run(self, orchestrator, make_connection):
        connection = await make_connection(provider="datto")
        run = await orchestrator.sync_connection(connection.id)
        assert run.status == SyncStatus.failed
        assert "Unsupported integration provider: datto" in run.error_message

    async def test_success_clears_older_pending_retries(self, repository, orchestrator, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.error = RuntimeError("down")
        failed = await orchestrator.sync_connection(connection.id)
        assert failed.next_retry_at is not None

        fake_provider.error = None
        fake_provider.pages = [[{"id": 1}]]
        await orchestrator.sync_connection(connection.id)

        assert (await repository.get_run(failed.id)).next_retry_at is None

    async def test_missing_connection_raises(self, orchestrator):
        with pytest.raises(ConnectionNotFoundError):
            await orchestrator.sync_connection(999)

    async def test_inactive_connection_raises(self, orchestrator, make_connection):
        connection = await make_connection(is_active=False)
        with pytest.raises(ConnectionInactiveError):
            await orchestrator.sync_connection(connection.id)


class TestExclusivity:
    async def test_skipped_when_lock_held(self, repository, orchestrator, make_connection):
        connection = await make_connection()
        async with orchestrator.locks.get(connection.id):
            assert await orchestrator.sync_connection(connection.id) is None
        assert await repository.list_runs(connection.id) == []

    async def test_skipped_when_run_active_elsewhere(self, repository, orchestrator, make_connection):
        connection = await make_connection()
        running = await repository.start_run(connection.id, SyncDirection.pull)

        assert await orchestrator.sync_connection(connection.id) is None
        runs = await repository.list_runs(connection.id)
        assert [r.id for r in runs] == [running.id]


# ── Push Runs ────────────────────────────────────────────────────────────────


class TestWebhookPayload:
    async def test_push_run_reconciles_payload(self, repository, orchestrator, make_connection):
        connection = await make_connection()

        run = await orchestrator.process_webhook_payload(
            connection, {"assets": [{"id": 5, "name": "Printer"}, {"name": "NoId"}]}
        )

        assert run.direction == SyncDirection.push
        assert run.status == SyncStatus.success
        assert run.items_created == 1
        assert run.next_retry_at is None
        assert (await repository.get_connection(connection.id)).last_synced_at is None

    async def test_redelivered_payload_creates_no_duplicates(self, repository, orchestrator, make_connection):
        connection = await make_connection()
        payload = {"asset": {"id": "dup-1"}}

        await orchestrator.process_webhook_payload(connection, payload)
        second = await orchestrator.process_webhook_payload(connection, payload)

        assert second.items_updated == 1
        assert len(await repository.list_assets(connection.id)) == 1

    async def test_mapping_error_fails_push_run_without_retry(self, orchestrator, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.webhook_error = ValueError("unexpected shape")

        run = await orchestrator.process_webhook_payload(connection, {"x": 1})

        assert run.status == SyncStatus.failed
        assert "unexpected shape" in run.error_message
        assert run.next_retry_at is None


# ── Due Connections ──────────────────────────────────────────────────────────


class TestDueConnections:
    async def test_due_rules(self, repository, orchestrator, make_connection):
        now = utcnow()
        never = await make_connection()
        recent = await make_connection(sync_frequency_minutes=60)
        stale = await make_connection(sync_frequency_minutes=60)
        await make_connection(is_active=False)
        await repository.set_last_synced(recent.id, now - timedelta(minutes=30))
        await repository.set_last_synced(stale.id, now - timedelta(minutes=61))

        due = await orchestrator.due_connections(now)

        assert [c.id for c in due] == [never.id, stale.id]

    async def test_sync_due_connections_continues_after_error(self, repository, orchestrator, fake_provider, make_connection):
        first = await make_connection()
        second = await make_connection()
        fake_provider.pages = [[{"id": 1}]]

        async with orchestrator.locks.get(first.id):
            runs = await orchestrator.sync_due_connections()

        assert [r.integration_connection_id for r in runs] == [second.id]
        assert runs[0].summary["source"] == "schedule"


# ── Client Discovery ─────────────────────────────────────────────────────────


class TestDiscoverClients:
    async def test_lists_clients_without_mapping(self, repository, orchestrator, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.clients = [
            DiscoveredClient(external_client_id="c1", external_client_name="Acme Corp"),
            DiscoveredClient(external_client_id="  ", external_client_name="Blank"),
        ]

        result = await orchestrator.discover_clients(connection.id)

        assert [c.external_client_id for c in result.clients] == ["c1"]
        assert result.mapped == []
        assert await repository.list_client_mappings(connection.id) == []

    async def test_auto_map_matches_names_case_insensitively(self, repository, orchestrator, fake_provider, make_connection):
        connection = await make_connection()
        fake_provider.clients = [
            DiscoveredClient(external_client_id="c1", external_client_name="ACME corp"),
            DiscoveredClient(external_client_id="c2", external_client_name="Unknown Co"),
            DiscoveredClient(external_client_id="c3"),
        ]
        directory = StaticClientDirectory({"Acme Corp": 7})

        result = await orchestrator.discover_clients(connection.id, auto_map=True, directory=directory)

        assert [(m.external_client_id, m.client_id) for m in result.mapped] == [("c1", 7)]
        assert await repository.find_client_mapping(connection.id, "c1") == 7

    async def test_unknown_provider(self, orchestrator, make_connection):
        connection = await make_connection(provider="datto")
        with pytest.raises(UnsupportedProviderError):
            await orchestrator.discover_clients(connection.id)

    async def test_missing_connection(self, orchestrator):
        with pytest.raises(ConnectionNotFoundError):
            await orchestrator.discover_clients(404)

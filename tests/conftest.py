"""Test fixtures for the integration layer.

Provides:
- A throwaway SQLite database (aiosqlite) per test with all tables created
- IntegrationRepository bound to that database
- A connection factory with sensible defaults
- FakeProvider: an in-memory adapter registered under the "fake" key
- A SyncOrchestrator wired to the fake provider
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator, AsyncIterator
from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from src.assetsync.core.database import Base, create_engine_for_url, make_session_factory
from src.assetsync.integrations import models  # noqa: F401
from src.assetsync.integrations.locks import ConnectionLocks
from src.assetsync.integrations.providers.base import IntegrationProvider, generic_webhook_assets
from src.assetsync.integrations.providers.field_mapping import generic_asset, map_items
from src.assetsync.integrations.registry import ProviderRegistry
from src.assetsync.integrations.repository import IntegrationRepository
from src.assetsync.integrations.retry import RetryPolicy
from src.assetsync.integrations.schemas import (
    ConnectionCreate,
    ConnectionRead,
    DiscoveredClient,
    NormalizedAsset,
)
from src.assetsync.integrations.sync import SyncOrchestrator


# ── Fake Provider ────────────────────────────────────────────────────────────


class FakeProvider(IntegrationProvider):
    """In-memory adapter: serves configured pages, then optionally raises."""

    key = "fake"
    display_name = "Fake Vendor"

    def __init__(self) -> None:
        super().__init__()
        self.pages: list[list[dict[str, Any]]] = []
        self.error: Exception | None = None
        self.webhook_error: Exception | None = None
        self.clients: list[DiscoveredClient] = []
        self.since_calls: list[datetime | None] = []

    def auth_headers(self, connection: ConnectionRead) -> dict[str, str]:
        return {}

    async def iter_asset_pages(
        self, connection: ConnectionRead, since: datetime | None = None
    ) -> AsyncIterator[list[NormalizedAsset]]:
        self.since_calls.append(since)
        for page in self.pages:
            yield map_items(page, generic_asset)
        if self.error is not None:
            raise self.error

    async def discover_clients(self, connection: ConnectionRead) -> list[DiscoveredClient]:
        return list(self.clients)

    def map_webhook_payload(self, connection: ConnectionRead, payload: object) -> list[NormalizedAsset]:
        if self.webhook_error is not None:
            raise self.webhook_error
        return generic_webhook_assets(payload)


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database with every integration table."""
    db_engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'assetsync.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def repository(engine) -> IntegrationRepository:
    return IntegrationRepository(make_session_factory(engine))


@pytest.fixture
def make_connection(repository):
    """Factory creating connections; keyword arguments override defaults."""
    counter = itertools.count(1)

    async def _make(**overrides: Any) -> ConnectionRead:
        n = next(counter)
        data: dict[str, Any] = {
            "name": f"Connection {n}",
            "slug": f"connection-{n}",
            "provider": "fake",
            "base_url": "https://vendor.test",
            "credentials": {"api_key": "secret-key"},
        }
        data.update(overrides)
        return await repository.create_connection(ConnectionCreate(**data))

    return _make


# ── Services ─────────────────────────────────────────────────────────────────


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(fake_provider) -> ProviderRegistry:
    return ProviderRegistry([fake_provider])


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_minutes=15, max_minutes=720, batch_size=25)


@pytest.fixture
def orchestrator(repository, registry, retry_policy) -> SyncOrchestrator:
    return SyncOrchestrator(
        repository,
        registry,
        locks=ConnectionLocks(),
        retry_policy=retry_policy,
    )

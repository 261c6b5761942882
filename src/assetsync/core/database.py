"""Async SQLAlchemy engine, declarative base, and session factories.

Provides:
- Base: Declarative base for all integration tables
- get_engine(): Lazily created engine singleton from DATABASE_URL
- get_session(): Async generator yielding an AsyncSession
- make_session_factory(): Session generator bound to an explicit engine (scripts, tests)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.assetsync.config import get_settings

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def normalize_database_url(url: str) -> str:
    """Select the async driver for plain sqlite/postgres URLs."""
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine_for_url(url: str, pool_size: int = 10) -> AsyncEngine:
    """Create an async engine; SQLite engines skip pool sizing."""
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=pool_size,
        pool_pre_ping=True,
        echo=False,
    )


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(settings.DATABASE_URL, settings.DATABASE_POOL_SIZE)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for integration persistence models."""


# ── Session Factories ───────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the application engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Build a get_session-compatible generator for an explicit engine."""

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create integration tables if they don't exist.

    Production schemas are managed by Alembic; this keeps local development
    and SQLite deployments usable without running migrations.
    """
    # Register models on Base.metadata
    from src.assetsync.integrations import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None

"""Integration persistence models.

Five SQLAlchemy models:
- IntegrationConnectionModel: One configured vendor integration instance
- SyncRunModel: One pull or push reconciliation against a connection
- ExternalAssetModel: Canonical inventory item keyed by (connection, external id, type)
- ClientMappingModel: Vendor-side client/tenant id mapped to an internal client
- WebhookEventModel: Durable record of one received push payload

No foreign key constraints (application-level referential integrity via the
repository). Timestamps are stored timezone-aware and written in UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.assetsync.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntegrationConnectionModel(Base):
    """Configured instance of one vendor integration.

    Holds the provider key, auth scheme, base URL, decrypted credentials and
    per-connection settings (endpoint overrides, page size, timeout). Soft
    deactivated through is_active rather than deleted while runs and assets
    reference it.
    """

    __tablename__ = "integration_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    auth_type: Mapped[str] = mapped_column(String(20), nullable=False, default="api_key")
    base_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    credentials: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sync_frequency_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=_utcnow,
        nullable=True,
    )


class SyncRunModel(Base):
    """One execution of pull or push reconciliation against a connection.

    At most one run per connection may be ``running``; the partial unique
    index enforces this at the database level.
    """

    __tablename__ = "integration_sync_runs"
    __table_args__ = (
        Index(
            "uq_sync_run_one_running_per_connection",
            "integration_connection_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("idx_sync_runs_retry_due", "status", "next_retry_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    integration_connection_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False, default="pull")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=_utcnow,
        nullable=True,
    )


class ExternalAssetModel(Base):
    """Canonical representation of one vendor inventory item.

    Created on first reconciliation of a natural key, updated afterwards.
    The sync path never deletes rows.
    """

    __tablename__ = "external_assets"
    __table_args__ = (
        UniqueConstraint(
            "integration_connection_id",
            "external_id",
            "external_type",
            name="uq_external_asset_natural_key",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration_connection_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    client_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_type: Mapped[str] = mapped_column(String(100), nullable=False, default="asset")
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    hostname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=_utcnow,
        nullable=True,
    )


class ClientMappingModel(Base):
    """Maps a vendor-side client/tenant identifier to an internal client."""

    __tablename__ = "integration_client_mappings"
    __table_args__ = (
        UniqueConstraint(
            "integration_connection_id",
            "external_client_id",
            name="uq_client_mapping_connection_external",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration_connection_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(Integer, nullable=False)
    external_client_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=_utcnow,
        nullable=True,
    )


class WebhookEventModel(Base):
    """Durable record of one received webhook payload.

    Acts as the work-queue item for asynchronous processing; status moves
    received -> processing -> processed/failed, or straight to ignored.
    """

    __tablename__ = "integration_webhook_events"
    __table_args__ = (
        Index("idx_webhook_events_status_received", "status", "received_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration_connection_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    sync_run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    headers: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="received")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=_utcnow,
        nullable=True,
    )

"""Create integration tables for connections, sync runs, assets, client mappings, and webhook events.

Revision ID: 001_integration_tables
Revises:
Create Date: 2026-10-19

Creates five tables:
- integration_connections: Configured vendor integrations
- integration_sync_runs: Pull/push reconciliation runs with retry bookkeeping
- external_assets: Canonical inventory keyed by (connection, external id, type)
- integration_client_mappings: Vendor client id -> internal client id
- integration_webhook_events: Received webhook payloads and their outcome

The partial unique index on running sync runs allows at most one running
run per connection. No foreign key constraints (application-level
referential integrity via repository).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_integration_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ── integration_connections ──────────────────────────────────────────

    op.create_table(
        "integration_connections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column(
            "auth_type",
            sa.String(20),
            server_default=sa.text("'api_key'"),
            nullable=False,
        ),
        sa.Column("base_url", sa.String(500), nullable=True),
        sa.Column("credentials", sa.JSON(), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        sa.Column(
            "sync_frequency_minutes",
            sa.Integer(),
            server_default=sa.text("60"),
            nullable=False,
        ),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("slug", name="uq_integration_connections_slug"),
    )
    op.create_index("ix_integration_connections_client_id", "integration_connections", ["client_id"])
    op.create_index("ix_integration_connections_provider", "integration_connections", ["provider"])
    op.create_index("ix_integration_connections_is_active", "integration_connections", ["is_active"])

    # ── integration_sync_runs ────────────────────────────────────────────

    op.create_table(
        "integration_sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("run_uuid", sa.String(36), nullable=False),
        sa.Column("integration_connection_id", sa.Integer(), nullable=False),
        sa.Column("direction", sa.String(10), server_default=sa.text("'pull'"), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("items_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("items_created", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("items_updated", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("items_failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("run_uuid", name="uq_integration_sync_runs_run_uuid"),
    )
    op.create_index(
        "ix_integration_sync_runs_integration_connection_id",
        "integration_sync_runs",
        ["integration_connection_id"],
    )
    op.create_index(
        "idx_sync_runs_retry_due",
        "integration_sync_runs",
        ["status", "next_retry_at"],
    )
    op.create_index(
        "uq_sync_run_one_running_per_connection",
        "integration_sync_runs",
        ["integration_connection_id"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
        sqlite_where=sa.text("status = 'running'"),
    )

    # ── external_assets ──────────────────────────────────────────────────

    op.create_table(
        "external_assets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("integration_connection_id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column(
            "external_type",
            sa.String(100),
            server_default=sa.text("'asset'"),
            nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("hostname", sa.String(255), nullable=True),
        sa.Column("ip_address", sa.String(100), nullable=True),
        sa.Column("status", sa.String(50), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "integration_connection_id",
            "external_id",
            "external_type",
            name="uq_external_asset_natural_key",
        ),
    )
    op.create_index(
        "ix_external_assets_integration_connection_id",
        "external_assets",
        ["integration_connection_id"],
    )
    op.create_index("ix_external_assets_client_id", "external_assets", ["client_id"])

    # ── integration_client_mappings ──────────────────────────────────────

    op.create_table(
        "integration_client_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("integration_connection_id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=False),
        sa.Column("external_client_id", sa.String(255), nullable=False),
        sa.Column("external_client_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "integration_connection_id",
            "external_client_id",
            name="uq_client_mapping_connection_external",
        ),
    )
    op.create_index(
        "ix_integration_client_mappings_integration_connection_id",
        "integration_client_mappings",
        ["integration_connection_id"],
    )

    # ── integration_webhook_events ───────────────────────────────────────

    op.create_table(
        "integration_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("integration_connection_id", sa.Integer(), nullable=False),
        sa.Column("sync_run_id", sa.Integer(), nullable=True),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=True),
        sa.Column("external_event_id", sa.String(255), nullable=True),
        sa.Column("headers", sa.JSON(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'received'"),
            nullable=False,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_integration_webhook_events_integration_connection_id",
        "integration_webhook_events",
        ["integration_connection_id"],
    )
    op.create_index(
        "ix_integration_webhook_events_external_event_id",
        "integration_webhook_events",
        ["external_event_id"],
    )
    op.create_index(
        "idx_webhook_events_status_received",
        "integration_webhook_events",
        ["status", "received_at"],
    )


def downgrade() -> None:
    op.drop_table("integration_webhook_events")
    op.drop_table("integration_client_mappings")
    op.drop_table("external_assets")
    op.drop_index("uq_sync_run_one_running_per_connection", table_name="integration_sync_runs")
    op.drop_table("integration_sync_runs")
    op.drop_table("integration_connections")

"""Pydantic schemas for the integration layer.

Read schemas mirror the ORM models and are what services and providers
operate on. NormalizedAsset is the provider-neutral shape every adapter
produces; its validators fill the canonical defaults so downstream code
never sees a null where a default is defined.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class AuthType(str, Enum):
    api_key = "api_key"
    bearer = "bearer"
    basic = "basic"
    custom = "custom"


class SyncDirection(str, Enum):
    pull = "pull"
    push = "push"


class SyncStatus(str, Enum):
    pending = "pending"
    running = "running"
    success = "success"
    partial = "partial"
    failed = "failed"


class WebhookEventStatus(str, Enum):
    received = "received"
    processing = "processing"
    processed = "processed"
    failed = "failed"
    ignored = "ignored"


class ReconcileOutcome(str, Enum):
    created = "created"
    updated = "updated"
    skipped = "skipped"


# ── Provider Output ─────────────────────────────────────────────────────────


DEFAULT_EXTERNAL_TYPE = "asset"
DEFAULT_ASSET_NAME = "Unknown Asset"


def _parse_timestamp(value: Any) -> datetime:
    """Best-effort vendor timestamp parsing; unusable values become now."""
    if isinstance(value, datetime):
        return ensure_utc(value)  # type: ignore[return-value]
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return utcnow()
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return utcnow()
        return ensure_utc(parsed)  # type: ignore[return-value]
    return utcnow()


class NormalizedAsset(BaseModel):
    """Provider-neutral inventory item ready for reconciliation.

    Attributes:
        external_id: Vendor identifier. Required and non-empty.
        external_type: Vendor item type, defaults to "asset".
        name: Display name, defaults to "Unknown Asset".
        hostname: Host name if the vendor reports one.
        ip_address: Primary IP address if reported.
        status: Vendor status string.
        external_client_id: Vendor-side client/tenant id used for mapping.
        external_client_name: Vendor-side client/tenant name.
        client_id: Internal client id supplied directly by the payload (custom provider).
        metadata: The original vendor item.
        last_seen_at: Vendor timestamp, or the time of normalization.
    """

    external_id: str
    external_type: str = DEFAULT_EXTERNAL_TYPE
    name: str = DEFAULT_ASSET_NAME
    hostname: str | None = None
    ip_address: str | None = None
    status: str | None = None
    external_client_id: str | None = None
    external_client_name: str | None = None
    client_id: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_seen_at: datetime = Field(default_factory=utcnow)

    @field_validator("external_id", mode="before")
    @classmethod
    def _require_external_id(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip()
        if not text:
            raise ValueError("external_id must not be empty")
        return text

    @field_validator("external_type", mode="before")
    @classmethod
    def _default_type(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip()
        return text or DEFAULT_EXTERNAL_TYPE

    @field_validator("name", mode="before")
    @classmethod
    def _default_name(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip()
        return text or DEFAULT_ASSET_NAME

    @field_validator(
        "hostname",
        "ip_address",
        "status",
        "external_client_id",
        "external_client_name",
        mode="before",
    )
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        if value is None or isinstance(value, (dict, list)):
            return None
        text = str(value).strip()
        return text or None

    @field_validator("client_id", mode="before")
    @classmethod
    def _numeric_client_id(cls, value: Any) -> int | None:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return None

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_dict(cls, value: Any) -> dict[str, Any]:
        if isinstance(value, dict):
            return value
        if value is None:
            return {}
        return {"value": value}

    @field_validator("last_seen_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> datetime:
        return _parse_timestamp(value)


class DiscoveredClient(BaseModel):
    """Vendor-side tenant/organization returned by client discovery."""

    external_client_id: str
    external_client_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Read Schemas ────────────────────────────────────────────────────────────


class ConnectionRead(BaseModel):
    """Integration connection as seen by services and provider adapters."""

    id: int
    client_id: int | None = None
    name: str
    slug: str
    provider: str
    auth_type: AuthType = AuthType.api_key
    base_url: str | None = None
    credentials: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    webhook_secret: str | None = None
    sync_frequency_minutes: int = 60
    last_synced_at: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def setting(self, key: str, default: Any = None) -> Any:
        """Return a per-connection setting, treating empty values as unset."""
        value = (self.settings or {}).get(key)
        return default if value in (None, "") else value

    def credential(self, *keys: str, default: str = "") -> str:
        """Return the first non-empty credential among ``keys``."""
        for key in keys:
            value = (self.credentials or {}).get(key)
            if value not in (None, ""):
                return str(value)
        return default


class ConnectionCreate(BaseModel):
    """Fields for registering a new connection."""

    name: str
    slug: str
    provider: str
    auth_type: AuthType = AuthType.api_key
    base_url: str | None = None
    credentials: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    webhook_secret: str | None = None
    sync_frequency_minutes: int = Field(default=60, ge=5, le=1440)
    is_active: bool = True
    client_id: int | None = None


class SyncRunRead(BaseModel):
    """One sync run with its counters and retry bookkeeping."""

    id: int
    run_uuid: str
    integration_connection_id: int
    direction: SyncDirection
    status: SyncStatus
    items_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_failed: int = 0
    retry_count: int = 0
    next_retry_at: datetime | None = None
    summary: dict[str, Any] | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


class ExternalAssetRead(BaseModel):
    """Canonical asset row."""

    id: int
    integration_connection_id: int
    client_id: int | None = None
    provider: str
    external_id: str
    external_type: str
    name: str
    hostname: str | None = None
    ip_address: str | None = None
    status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_seen_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ClientMappingRead(BaseModel):
    """Vendor client id to internal client mapping."""

    id: int
    integration_connection_id: int
    client_id: int
    external_client_id: str
    external_client_name: str | None = None
    is_active: bool = True


class WebhookEventRead(BaseModel):
    """Persisted webhook event."""

    id: int
    integration_connection_id: int
    sync_run_id: int | None = None
    provider: str
    event_type: str | None = None
    external_event_id: str | None = None
    headers: dict[str, Any] = Field(default_factory=dict)
    payload: Any = None
    status: WebhookEventStatus
    error_message: str | None = None
    received_at: datetime | None = None
    processed_at: datetime | None = None


class SyncCounts(BaseModel):
    """Running per-item tally for a sync run."""

    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.failed

    @property
    def succeeded(self) -> int:
        return self.created + self.updated

    def record(self, outcome: ReconcileOutcome) -> None:
        if outcome == ReconcileOutcome.created:
            self.created += 1
        elif outcome == ReconcileOutcome.updated:
            self.updated += 1
        else:
            self.skipped += 1


class DiscoveryResult(BaseModel):
    """Client discovery output, plus mappings created by auto-mapping."""

    clients: list[DiscoveredClient] = Field(default_factory=list)
    mapped: list[ClientMappingRead] = Field(default_factory=list)

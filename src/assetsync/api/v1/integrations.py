"""REST API endpoints for integration management.

Provides the provider listing, a manual sync trigger, and client discovery.
Syncs run as background tasks, never inside the request.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.assetsync.api.deps import (
    get_client_directory,
    get_orchestrator,
    get_registry,
    get_repository,
    require_admin_key,
)
from src.assetsync.integrations.errors import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    UnsupportedProviderError,
)

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/integrations",
    tags=["integrations"],
    dependencies=[Depends(require_admin_key)],
)


# ── Response Schemas ─────────────────────────────────────────────────────────


class ProviderOption(BaseModel):
    """One registered provider."""

    key: str
    name: str


class SyncQueuedResponse(BaseModel):
    """Acknowledgement for a queued manual sync."""

    message: str = "Sync queued."
    connection_id: int


class DiscoveredClientResponse(BaseModel):
    external_client_id: str
    external_client_name: str | None = None


class ClientMappingResponse(BaseModel):
    external_client_id: str
    external_client_name: str | None = None
    client_id: int


class DiscoveryResponse(BaseModel):
    """Vendor clients found for a connection and mappings created."""

    connection_id: int
    clients: list[DiscoveredClientResponse] = Field(default_factory=list)
    mapped: list[ClientMappingResponse] = Field(default_factory=list)


# ── Background Job ───────────────────────────────────────────────────────────


async def _run_sync(orchestrator: Any, connection_id: int) -> None:
    """Background task body for a manual sync."""
    try:
        await orchestrator.sync_connection(connection_id, source="manual")
    except Exception as exc:
        logger.error(
            "sync.manual_trigger_failed",
            connection_id=connection_id,
            error=str(exc),
            exc_info=True,
        )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/providers", response_model=list[ProviderOption])
async def list_providers(registry: Any = Depends(get_registry)) -> list[ProviderOption]:
    """List provider keys and display names."""
    return [ProviderOption(key=key, name=name) for key, name in registry.options().items()]


@router.post(
    "/{connection_id}/sync",
    response_model=SyncQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(
    connection_id: int,
    background_tasks: BackgroundTasks,
    repository: Any = Depends(get_repository),
    orchestrator: Any = Depends(get_orchestrator),
) -> SyncQueuedResponse:
    """Queue a pull sync for one connection.

    Raises:
        HTTPException(404): Unknown connection.
        HTTPException(409): Connection is inactive.
    """
    connection = await repository.get_connection(connection_id)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found.")
    if not connection.is_active:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Integration is inactive.")

    background_tasks.add_task(_run_sync, orchestrator, connection_id)
    logger.info("sync.manual_trigger_queued", connection_id=connection_id)
    return SyncQueuedResponse(connection_id=connection_id)


@router.post("/{connection_id}/discover-clients", response_model=DiscoveryResponse)
async def discover_clients(
    connection_id: int,
    auto_map: bool = Query(default=False),
    orchestrator: Any = Depends(get_orchestrator),
    directory: Any = Depends(get_client_directory),
) -> DiscoveryResponse:
    """Enumerate vendor clients and optionally auto-map them by name.

    Raises:
        HTTPException(404): Unknown connection.
        HTTPException(422): Unsupported provider.
        HTTPException(502): Vendor request failed.
    """
    try:
        result = await orchestrator.discover_clients(
            connection_id, auto_map=auto_map, directory=directory
        )
    except ConnectionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found.") from exc
    except (ConnectionInactiveError, UnsupportedProviderError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("sync.discovery_failed", connection_id=connection_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Client discovery failed: {exc}",
        ) from exc

    return DiscoveryResponse(
        connection_id=connection_id,
        clients=[
            DiscoveredClientResponse(
                external_client_id=c.external_client_id,
                external_client_name=c.external_client_name,
            )
            for c in result.clients
        ],
        mapped=[
            ClientMappingResponse(
                external_client_id=m.external_client_id,
                external_client_name=m.external_client_name,
                client_id=m.client_id,
            )
            for m in result.mapped
        ],
    )

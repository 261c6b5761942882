"""FastAPI dependency injection for integration services.

Services are built once in the application lifespan and stored on
``app.state``; these helpers fetch them with a 503 fallback when startup
did not initialize them.
"""

from __future__ import annotations

import hmac
from typing import Any

from fastapi import HTTPException, Request, status

from src.assetsync.config import get_settings


def _get_service(request: Request, service_name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, service_name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_repository(request: Request) -> Any:
    """IntegrationRepository from app.state."""
    return _get_service(request, "integration_repository", "Integration repository")


def get_registry(request: Request) -> Any:
    """ProviderRegistry from app.state."""
    return _get_service(request, "provider_registry", "Provider registry")


def get_orchestrator(request: Request) -> Any:
    """SyncOrchestrator from app.state."""
    return _get_service(request, "sync_orchestrator", "Sync orchestrator")


def get_ingestor(request: Request) -> Any:
    """WebhookIngestor from app.state."""
    return _get_service(request, "webhook_ingestor", "Webhook ingestion")


def get_client_directory(request: Request) -> Any:
    """Internal client directory, or None when none is configured."""
    return getattr(request.app.state, "client_directory", None)


async def require_admin_key(request: Request) -> None:
    """Check X-API-Key against ADMIN_API_KEY when one is configured.

    Raises:
        HTTPException(401): Key configured and missing or wrong.
    """
    expected = get_settings().ADMIN_API_KEY
    if not expected:
        return
    provided = request.headers.get("X-API-Key", "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )

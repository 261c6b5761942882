"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness checks
the database always and Redis only when the webhook queue uses it.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.assetsync.config import WebhookQueueBackend, get_settings
from src.assetsync.core.database import get_engine
from src.assetsync.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database and (when used) Redis connectivity."""
    settings = get_settings()
    checks: dict = {"database": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    if settings.WEBHOOK_QUEUE_BACKEND == WebhookQueueBackend.redis:
        checks["redis"] = "ok"
        try:
            pong = await get_redis_pool().ping()
            if not pong:
                checks["redis"] = "error"
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 when every dependency answers, else 503."""
    checks = await _check_dependencies()
    all_healthy = all(
        value == "ok" for key, value in checks.items() if not key.endswith("_error")
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )

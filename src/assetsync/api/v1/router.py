"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.assetsync.api.v1 import integrations, webhooks

router = APIRouter()

router.include_router(webhooks.router)
router.include_router(integrations.router)

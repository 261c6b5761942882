"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS,
lifespan events for database initialization and integration services,
and the v1 API router.
"""

from __future__ import annotations

import asyncio
import os
import socket
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.assetsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.assetsync.api.v1 import health
from src.assetsync.api.v1.router import router as v1_router
from src.assetsync.config import WebhookQueueBackend, get_settings
from src.assetsync.core.database import close_db, init_db
from src.assetsync.core.monitoring import MetricsMiddleware, get_metrics_response
from src.assetsync.core.redis import close_redis, get_redis_pool
from src.assetsync.integrations.scheduler import IntegrationScheduler
from src.assetsync.integrations.services import build_integration_services
from src.assetsync.webhooks.dispatch import InlineWebhookDispatcher
from src.assetsync.webhooks.ingestor import WebhookIngestor
from src.assetsync.webhooks.processor import WebhookProcessor
from src.assetsync.webhooks.queue import RedisWebhookQueue, WebhookQueueConsumer


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # ── Integration services ─────────────────────────────────────────────
    services = build_integration_services(
        settings, client_directory=getattr(app.state, "client_directory", None)
    )
    processor = WebhookProcessor(services.repository, services.orchestrator)

    consumer_tasks: list[asyncio.Task[None]] = []
    consumers: list[WebhookQueueConsumer] = []
    inline_dispatcher: InlineWebhookDispatcher | None = None

    if settings.WEBHOOK_QUEUE_BACKEND == WebhookQueueBackend.redis:
        redis = get_redis_pool()
        dispatcher = RedisWebhookQueue(redis, partitions=settings.WEBHOOK_QUEUE_PARTITIONS)
        worker = f"{socket.gethostname()}-{os.getpid()}"
        for partition in range(settings.WEBHOOK_QUEUE_PARTITIONS):
            consumer = WebhookQueueConsumer(
                redis, processor, partition, consumer_name=f"{worker}-{partition}"
            )
            consumers.append(consumer)
            consumer_tasks.append(
                asyncio.create_task(consumer.process_loop(), name=f"webhook-consumer-{partition}")
            )
    else:
        inline_dispatcher = InlineWebhookDispatcher(processor)
        dispatcher = inline_dispatcher

    app.state.integration_repository = services.repository
    app.state.provider_registry = services.registry
    app.state.sync_orchestrator = services.orchestrator
    app.state.retry_scheduler = services.retry_scheduler
    app.state.webhook_processor = processor
    app.state.webhook_dispatcher = dispatcher
    app.state.webhook_ingestor = WebhookIngestor(services.repository, dispatcher)

    scheduler: IntegrationScheduler | None = None
    if settings.SCHEDULER_ENABLED:
        scheduler = IntegrationScheduler(
            services.orchestrator,
            services.retry_scheduler,
            processor=processor,
            dispatcher=dispatcher,
            sync_interval_minutes=settings.SYNC_SWEEP_INTERVAL_MINUTES,
            retry_interval_minutes=settings.RETRY_SWEEP_INTERVAL_MINUTES,
            redeliver_after_minutes=settings.WEBHOOK_REDELIVER_AFTER_MINUTES,
        )
        scheduler.start()
    app.state.integration_scheduler = scheduler

    # Events persisted but never processed before the last shutdown
    try:
        await processor.redeliver_stuck(
            dispatcher, timedelta(minutes=settings.WEBHOOK_REDELIVER_AFTER_MINUTES)
        )
    except Exception:
        log.warning("webhook.startup_redelivery_failed", exc_info=True)

    log.info(
        "integrations.initialized",
        providers=services.registry.keys(),
        webhook_backend=settings.WEBHOOK_QUEUE_BACKEND.value,
        scheduler_enabled=settings.SCHEDULER_ENABLED,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    if scheduler is not None:
        scheduler.stop()

    for consumer in consumers:
        consumer.stop()
    for task in consumer_tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            log.warning("webhook.consumer_shutdown_error", exc_info=True)

    if inline_dispatcher is not None:
        await inline_dispatcher.drain()

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="MSP Asset Sync API",
        version="0.1.0",
        description="Asset inventory ingestion from MSP vendor integrations",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins() or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health.router)
    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()

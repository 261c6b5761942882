"""Webhook dispatch -- hands persisted events to the processor off the request path.

InlineWebhookDispatcher runs processing as asyncio tasks in this process.
RedisWebhookQueue (``webhooks.queue``) implements the same protocol over
Redis Streams for multi-process deployments.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from src.assetsync.integrations.schemas import WebhookEventRead
from src.assetsync.webhooks.processor import WebhookProcessor

logger = structlog.get_logger(__name__)


class WebhookDispatcher(Protocol):
    """Anything that can schedule a stored event for processing."""

    async def dispatch(self, event: WebhookEventRead) -> None: ...


class InlineWebhookDispatcher:
    """Processes events as background tasks of the running event loop.

    Tasks are tracked so shutdown can wait for in-flight events. Events of
    the same connection are serialized by the orchestrator's connection lock.

    Args:
        processor: WebhookProcessor invoked for every event.
    """

    def __init__(self, processor: WebhookProcessor) -> None:
        self._processor = processor
        self._tasks: set[asyncio.Task[None]] = set()

    async def dispatch(self, event: WebhookEventRead) -> None:
        task = asyncio.create_task(self._run(event.id), name=f"webhook-event-{event.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event_id: int) -> None:
        try:
            await self._processor.process(event_id)
        except Exception as exc:
            logger.error("webhook.dispatch_error", event_id=event_id, error=str(exc), exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight event to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

"""Webhook event processor.

Turns a persisted webhook event into a push-direction sync run. Processing is
redelivery safe: an event already ``processed`` or ``ignored`` is left alone,
and reconciliation upserts by natural key so a replayed payload creates no
duplicate assets. Errors are recorded on the event and never propagate, so
a queue consumer can always acknowledge the message.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from src.assetsync.core.monitoring import webhook_events_total
from src.assetsync.integrations.repository import IntegrationRepository
from src.assetsync.integrations.schemas import (
    SyncStatus,
    WebhookEventRead,
    WebhookEventStatus,
    utcnow,
)
from src.assetsync.integrations.sync import SyncOrchestrator

if TYPE_CHECKING:
    from src.assetsync.webhooks.dispatch import WebhookDispatcher

logger = structlog.get_logger(__name__)

INACTIVE_MESSAGE = "Integration is inactive."

_DONE = (WebhookEventStatus.processed.value, WebhookEventStatus.ignored.value)


class WebhookProcessor:
    """Processes stored webhook events.

    Args:
        repository: IntegrationRepository for events and connections.
        orchestrator: SyncOrchestrator that runs the push reconciliation.
    """

    def __init__(self, repository: IntegrationRepository, orchestrator: SyncOrchestrator) -> None:
        self._repository = repository
        self._orchestrator = orchestrator

    async def process(self, event_id: int) -> WebhookEventRead | None:
        """Process one webhook event by id. Never raises.

        An error outside the push run itself (a failing database call, for
        example) is logged and, when the event was already claimed, recorded
        as ``failed`` on a best-effort basis. An event whose failure could not
        be recorded stays unfinished and is picked up by ``redeliver_stuck``.

        Returns:
            The event after processing, or None if it does not exist or
            processing broke down.
        """
        try:
            return await self._process(event_id)
        except Exception as exc:
            logger.error(
                "webhook.processor_error", event_id=event_id, error=str(exc), exc_info=True
            )
            await self._record_failure(event_id, exc)
            return None

    async def _record_failure(self, event_id: int, exc: Exception) -> None:
        try:
            recorded = await self._repository.finish_webhook_event(
                event_id,
                WebhookEventStatus.failed,
                error_message=str(exc) or type(exc).__name__,
                only_if=WebhookEventStatus.processing,
            )
        except Exception as record_exc:
            logger.error(
                "webhook.failure_not_recorded", event_id=event_id, error=str(record_exc)
            )
            return
        if recorded:
            logger.info("webhook.failure_recorded", event_id=event_id)

    async def _process(self, event_id: int) -> WebhookEventRead | None:
        event = await self._repository.get_webhook_event(event_id)
        if event is None:
            logger.warning("webhook.event_missing", event_id=event_id)
            return None
        if event.status.value in _DONE:
            logger.info("webhook.already_handled", event_id=event_id, status=event.status.value)
            return event

        connection = await self._repository.get_connection(event.integration_connection_id)
        if connection is None or not connection.is_active:
            await self._repository.finish_webhook_event(
                event_id, WebhookEventStatus.ignored, error_message=INACTIVE_MESSAGE
            )
            self._count(event.provider, WebhookEventStatus.ignored)
            logger.info(
                "webhook.ignored",
                event_id=event_id,
                connection_id=event.integration_connection_id,
            )
            return await self._repository.get_webhook_event(event_id)

        if not await self._repository.claim_webhook_event(event_id):
            return await self._repository.get_webhook_event(event_id)

        try:
            run = await self._orchestrator.process_webhook_payload(connection, event.payload)
        except Exception as exc:
            await self._repository.finish_webhook_event(
                event_id, WebhookEventStatus.failed, error_message=str(exc) or type(exc).__name__
            )
            self._count(event.provider, WebhookEventStatus.failed)
            logger.error(
                "webhook.processing_error",
                event_id=event_id,
                connection_id=connection.id,
                error=str(exc),
                exc_info=True,
            )
            return await self._repository.get_webhook_event(event_id)

        if run.status == SyncStatus.failed:
            status = WebhookEventStatus.failed
            await self._repository.finish_webhook_event(
                event_id, status, error_message=run.error_message, sync_run_id=run.id
            )
        else:
            status = WebhookEventStatus.processed
            await self._repository.finish_webhook_event(event_id, status, sync_run_id=run.id)

        self._count(event.provider, status)
        logger.info(
            "webhook.processed",
            event_id=event_id,
            connection_id=connection.id,
            run_id=run.id,
            status=status.value,
        )
        return await self._repository.get_webhook_event(event_id)

    async def redeliver_stuck(
        self,
        dispatcher: WebhookDispatcher,
        older_than: timedelta,
        now: datetime | None = None,
    ) -> int:
        """Re-dispatch events left unfinished for longer than ``older_than``.

        Covers a crash between persisting an event and processing it, and
        events stuck in ``processing`` because their outcome could not be
        recorded.

        Returns:
            Number of events re-dispatched.
        """
        cutoff = (now or utcnow()) - older_than
        event_ids = await self._repository.stuck_webhook_event_ids(cutoff)
        for event_id in event_ids:
            event = await self._repository.get_webhook_event(event_id)
            if event is not None:
                await dispatcher.dispatch(event)
        if event_ids:
            logger.info("webhook.redelivered", count=len(event_ids))
        return len(event_ids)

    @staticmethod
    def _count(provider: str, status: WebhookEventStatus) -> None:
        webhook_events_total.labels(provider=provider, status=status.value).inc()

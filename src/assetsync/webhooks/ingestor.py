"""Webhook ingestor -- authenticates, persists, and dispatches inbound webhooks.

Ingestion never reconciles inline: the event is stored with status
``received`` and handed to a dispatcher, and the caller answers 202. Once
the event is stored, a dispatch failure is logged rather than raised so the
vendor does not resend a payload that is already persisted.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import structlog

from src.assetsync.core.monitoring import webhook_events_total
from src.assetsync.integrations.errors import (
    ConnectionNotFoundError,
    InvalidWebhookPayloadError,
)
from src.assetsync.integrations.repository import IntegrationRepository
from src.assetsync.integrations.schemas import WebhookEventRead, WebhookEventStatus
from src.assetsync.webhooks.auth import strip_auth_headers, verify_webhook_request
from src.assetsync.webhooks.dispatch import WebhookDispatcher

logger = structlog.get_logger(__name__)

EVENT_TYPE_KEYS = ("event_type", "eventType", "type")
EVENT_ID_KEYS = ("event_id", "eventId", "id")


def _first_scalar(payload: Any, keys: tuple[str, ...], max_length: int) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in keys:
        value = payload.get(key)
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text:
            return text[:max_length]
    return None


def parse_payload(body: bytes) -> dict[str, Any] | list[Any]:
    """Decode a webhook body that must be a JSON object or array.

    Raises:
        InvalidWebhookPayloadError: Empty, undecodable, or scalar JSON.
    """
    try:
        payload = json.loads(body or b"")
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidWebhookPayloadError() from exc
    if not isinstance(payload, (dict, list)):
        raise InvalidWebhookPayloadError()
    return payload


class WebhookIngestor:
    """Entry point for inbound webhook requests.

    Args:
        repository: IntegrationRepository for connections and events.
        dispatcher: Where accepted events go for processing.
    """

    def __init__(self, repository: IntegrationRepository, dispatcher: WebhookDispatcher) -> None:
        self._repository = repository
        self._dispatcher = dispatcher

    async def receive(
        self, connection_id: int, headers: Mapping[str, str], body: bytes
    ) -> WebhookEventRead:
        """Validate and store one webhook request, then dispatch it.

        Args:
            connection_id: Target connection from the URL.
            headers: Request headers.
            body: Raw request body (the signature covers these exact bytes).

        Returns:
            The stored event in ``received`` state.

        Raises:
            ConnectionNotFoundError: Unknown connection.
            WebhookNotEnabledError: Connection has no webhook secret.
            InvalidWebhookTokenError: Authentication failed.
            InvalidWebhookPayloadError: Body is not a JSON object or array.
        """
        connection = await self._repository.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)

        verify_webhook_request(connection, headers, body)
        payload = parse_payload(body)

        event = await self._repository.create_webhook_event(
            connection.id,
            connection.provider,
            payload,
            strip_auth_headers(headers),
            event_type=_first_scalar(payload, EVENT_TYPE_KEYS, 100),
            external_event_id=_first_scalar(payload, EVENT_ID_KEYS, 255),
        )
        webhook_events_total.labels(
            provider=connection.provider, status=WebhookEventStatus.received.value
        ).inc()
        logger.info(
            "webhook.received",
            event_id=event.id,
            connection_id=connection.id,
            provider=connection.provider,
            event_type=event.event_type,
        )

        try:
            await self._dispatcher.dispatch(event)
        except Exception as exc:
            # Stored as received; the stuck-event sweep dispatches it later.
            logger.error(
                "webhook.dispatch_failed",
                event_id=event.id,
                connection_id=connection.id,
                error=str(exc),
                exc_info=True,
            )
        return event

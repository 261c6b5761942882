"""Inbound webhook endpoint for integration connections.

Vendors (or relays in front of them) POST inventory change notifications
here. The request is authenticated with the connection's webhook secret,
stored, and processed asynchronously; the response is always 202 on
acceptance.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.assetsync.api.deps import get_ingestor
from src.assetsync.integrations.errors import (
    ConnectionNotFoundError,
    InvalidWebhookPayloadError,
    WebhookAuthError,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookAcceptedResponse(BaseModel):
    """Acknowledgement for an accepted webhook."""

    message: str = "Webhook accepted."
    event_id: int


@router.post(
    "/integrations/{connection_id}",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_integration_webhook(
    connection_id: int,
    request: Request,
    ingestor: Any = Depends(get_ingestor),
) -> WebhookAcceptedResponse:
    """Accept a webhook for one integration connection.

    Returns:
        202 with the stored event id.

    Raises:
        HTTPException(404): Unknown connection.
        HTTPException(403): Webhooks not enabled for the connection.
        HTTPException(401): Token or signature mismatch.
        HTTPException(400): Body is not a JSON object or array.
    """
    body = await request.body()
    try:
        event = await ingestor.receive(connection_id, dict(request.headers), body)
    except ConnectionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Integration not found.",
        ) from exc
    except WebhookAuthError as exc:
        logger.info(
            "webhook.rejected",
            connection_id=connection_id,
            status_code=exc.status_code,
            reason=str(exc),
        )
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except InvalidWebhookPayloadError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    return WebhookAcceptedResponse(event_id=event.id)

"""Webhook authentication.

A connection accepts webhooks only when it has a secret, either in the
``webhook_secret`` column or in ``settings.webhook_secret``. A request is
authentic when it carries either:

- ``X-Webhook-Token`` or ``X-Integration-Token`` equal to the secret, or
- ``X-Webhook-Signature: sha256=<hex>`` equal to HMAC-SHA256(secret, raw body).

All comparisons are constant-time.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping

from src.assetsync.integrations.errors import (
    InvalidWebhookTokenError,
    WebhookNotEnabledError,
)
from src.assetsync.integrations.schemas import ConnectionRead

TOKEN_HEADERS = ("x-webhook-token", "x-integration-token")
SIGNATURE_HEADER = "x-webhook-signature"
AUTH_HEADERS = frozenset((*TOKEN_HEADERS, SIGNATURE_HEADER, "authorization"))

_SIGNATURE_PREFIX = "sha256="


def resolve_secret(connection: ConnectionRead) -> str | None:
    """Webhook secret configured for a connection, or None."""
    secret = connection.webhook_secret or connection.setting("webhook_secret")
    if secret is None:
        return None
    secret = str(secret).strip()
    return secret or None


def sign_body(secret: str, body: bytes) -> str:
    """``sha256=<hex>`` signature of a raw request body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{_SIGNATURE_PREFIX}{digest}"


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def verify_webhook_request(
    connection: ConnectionRead, headers: Mapping[str, str], body: bytes
) -> None:
    """Check a webhook request against the connection's secret.

    Args:
        connection: Target connection.
        headers: Request headers (any case).
        body: Raw request body, as received.

    Raises:
        WebhookNotEnabledError: The connection has no secret.
        InvalidWebhookTokenError: Neither a matching token nor signature was sent.
    """
    secret = resolve_secret(connection)
    if secret is None:
        raise WebhookNotEnabledError()

    for name in TOKEN_HEADERS:
        token = _header(headers, name)
        if token and hmac.compare_digest(token.strip().encode(), secret.encode()):
            return

    signature = _header(headers, SIGNATURE_HEADER)
    if signature and hmac.compare_digest(
        signature.strip().lower().encode(), sign_body(secret, body).encode()
    ):
        return

    raise InvalidWebhookTokenError()


def strip_auth_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Copy of ``headers`` without credentials, safe to persist."""
    return {key: value for key, value in headers.items() if key.lower() not in AUTH_HEADERS}

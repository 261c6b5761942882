"""Integration-layer exceptions.

API routes translate these into HTTP status codes; the sync and webhook
services raise them for conditions callers are expected to handle.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for integration errors."""


class ConnectionNotFoundError(IntegrationError):
    """No integration connection exists with the given id."""

    def __init__(self, connection_id: int) -> None:
        self.connection_id = connection_id
        super().__init__(f"Integration connection {connection_id} not found.")


class ConnectionInactiveError(IntegrationError):
    """The connection exists but its active flag is off."""

    def __init__(self, connection_id: int) -> None:
        self.connection_id = connection_id
        super().__init__(f"Integration connection {connection_id} is inactive.")


class ConnectionBusyError(IntegrationError):
    """Another sync run is already running for the connection."""

    def __init__(self, connection_id: int) -> None:
        self.connection_id = connection_id
        super().__init__(f"A sync run is already running for connection {connection_id}.")


class UnsupportedProviderError(IntegrationError, ValueError):
    """No adapter is registered for the provider key."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Unsupported integration provider: {provider}")


class WebhookAuthError(IntegrationError):
    """Base class for webhook authentication failures."""

    status_code: int = 401


class WebhookNotEnabledError(WebhookAuthError):
    """The connection has no webhook secret configured."""

    status_code = 403

    def __init__(self) -> None:
        super().__init__("Webhook not enabled for this integration.")


class InvalidWebhookTokenError(WebhookAuthError):
    """Neither the token header nor the body signature matched the secret."""

    status_code = 401

    def __init__(self) -> None:
        super().__init__("Invalid webhook token.")


class InvalidWebhookPayloadError(IntegrationError):
    """The webhook body is not a JSON object or array."""

    status_code = 400

    def __init__(self) -> None:
        super().__init__("Webhook payload must be a JSON object or array.")

"""Unit tests for webhook authentication and payload parsing helpers."""

from __future__ import annotations

import pytest

from src.assetsync.integrations.errors import (
    InvalidWebhookPayloadError,
    InvalidWebhookTokenError,
    WebhookNotEnabledError,
)
from src.assetsync.integrations.schemas import ConnectionRead
from src.assetsync.webhooks.auth import (
    resolve_secret,
    sign_body,
    strip_auth_headers,
    verify_webhook_request,
)
from src.assetsync.webhooks.ingestor import parse_payload


def _connection(**overrides) -> ConnectionRead:
    data = {"id": 1, "name": "Auvik", "slug": "auvik", "provider": "auvik"}
    data.update(overrides)
    return ConnectionRead(**data)


class TestResolveSecret:
    def test_column_wins_over_settings(self):
        conn = _connection(webhook_secret="col", settings={"webhook_secret": "set"})
        assert resolve_secret(conn) == "col"

    def test_settings_fallback(self):
        assert resolve_secret(_connection(settings={"webhook_secret": " set "})) == "set"

    def test_blank_means_disabled(self):
        assert resolve_secret(_connection(webhook_secret="   ")) is None
        assert resolve_secret(_connection()) is None


class TestVerify:
    def test_disabled_connection(self):
        with pytest.raises(WebhookNotEnabledError):
            verify_webhook_request(_connection(), {"X-Webhook-Token": "x"}, b"{}")

    def test_token_is_case_insensitive_on_header_name(self):
        verify_webhook_request(_connection(webhook_secret="s3"), {"X-WEBHOOK-TOKEN": "s3"}, b"{}")

    def test_signature_prefix_and_case(self):
        body = b'{"id": 1}'
        signature = sign_body("s3", body).upper().replace("SHA256=", "sha256=")
        verify_webhook_request(_connection(webhook_secret="s3"), {"x-webhook-signature": signature}, body)

    def test_bad_credentials(self):
        with pytest.raises(InvalidWebhookTokenError):
            verify_webhook_request(
                _connection(webhook_secret="s3"),
                {"x-webhook-token": "nope", "x-webhook-signature": "sha256=00"},
                b"{}",
            )


def test_strip_auth_headers():
    headers = {
        "X-Webhook-Token": "s3",
        "Authorization": "Bearer t",
        "x-webhook-signature": "sha256=ab",
        "User-Agent": "auvik-hooks/1.0",
    }
    assert strip_auth_headers(headers) == {"User-Agent": "auvik-hooks/1.0"}


class TestParsePayload:
    def test_object_and_array(self):
        assert parse_payload(b'{"a": 1}') == {"a": 1}
        assert parse_payload(b"[1, 2]") == [1, 2]

    @pytest.mark.parametrize("body", [b"", b"{", b"null", b"3.5", b"\xff\xfe"])
    def test_rejected(self, body):
        with pytest.raises(InvalidWebhookPayloadError):
            parse_payload(body)

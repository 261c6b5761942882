"""Inbound webhook handling for integration connections.

Webhooks are authenticated against the connection's secret, stored as
events, and processed off the request path as push-direction sync runs.

Exports:
    WebhookIngestor: Authenticate, persist, and dispatch inbound requests.
    WebhookProcessor: Turn a stored event into a push sync run.
    InlineWebhookDispatcher: In-process asyncio task dispatcher.
    RedisWebhookQueue: Partitioned Redis Streams dispatcher.
    WebhookQueueConsumer: Consumer for one Redis partition stream.
"""

from __future__ import annotations

__all__ = [
    "InlineWebhookDispatcher",
    "RedisWebhookQueue",
    "WebhookIngestor",
    "WebhookProcessor",
    "WebhookQueueConsumer",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load submodules to avoid circular imports."""
    if name == "WebhookIngestor":
        from src.assetsync.webhooks.ingestor import WebhookIngestor

        return WebhookIngestor
    if name == "WebhookProcessor":
        from src.assetsync.webhooks.processor import WebhookProcessor

        return WebhookProcessor
    if name == "InlineWebhookDispatcher":
        from src.assetsync.webhooks.dispatch import InlineWebhookDispatcher

        return InlineWebhookDispatcher
    if name in ("RedisWebhookQueue", "WebhookQueueConsumer"):
        from src.assetsync.webhooks import queue

        return getattr(queue, name)
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)

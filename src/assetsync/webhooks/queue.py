"""Redis Streams webhook queue.

Events are partitioned by connection so that one consumer per partition
processes a connection's events in order while different connections run
in parallel.

Stream key pattern: integrations:webhooks:{partition}
Partition: connection_id % partitions

Messages carry only ids; the payload stays in the webhook events table.
A message is acknowledged once the processor returns. Events whose outcome
could not be recorded stay unfinished in the table and are redelivered by
the stuck-event sweep.
"""

from __future__ import annotations

import asyncio

import redis.asyncio as aioredis
import structlog

from src.assetsync.integrations.schemas import WebhookEventRead
from src.assetsync.webhooks.processor import WebhookProcessor

logger = structlog.get_logger(__name__)

STREAM_PREFIX = "integrations:webhooks"
CONSUMER_GROUP = "webhook-processors"


def stream_key(partition: int) -> str:
    return f"{STREAM_PREFIX}:{partition}"


class RedisWebhookQueue:
    """Publishes webhook events to partitioned Redis Streams.

    Args:
        redis: Async Redis client created with ``decode_responses=True``.
        partitions: Number of partition streams.
        maxlen: Approximate length cap per stream.
    """

    def __init__(self, redis: aioredis.Redis, partitions: int = 8, maxlen: int = 10000) -> None:
        if partitions < 1:
            raise ValueError("partitions must be at least 1")
        self._redis = redis
        self._partitions = partitions
        self._maxlen = maxlen

    @property
    def partitions(self) -> int:
        return self._partitions

    def partition_for(self, connection_id: int) -> int:
        return connection_id % self._partitions

    async def dispatch(self, event: WebhookEventRead) -> None:
        key = stream_key(self.partition_for(event.integration_connection_id))
        message_id = await self._redis.xadd(
            key,
            {
                "event_id": str(event.id),
                "connection_id": str(event.integration_connection_id),
            },
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug("webhook.enqueued", stream=key, event_id=event.id, message_id=message_id)


class WebhookQueueConsumer:
    """Consumes one partition stream and feeds events to the processor.

    Run one consumer per partition to keep per-connection ordering.

    Args:
        redis: Async Redis client created with ``decode_responses=True``.
        processor: WebhookProcessor for each event.
        partition: Partition index to consume.
        consumer_name: Unique consumer identifier within the group.
        group: Consumer group name.
        error_backoff: Seconds to pause after a batch fails for a reason
            other than a lost Redis connection.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        processor: WebhookProcessor,
        partition: int,
        consumer_name: str,
        group: str = CONSUMER_GROUP,
        error_backoff: float = 1.0,
    ) -> None:
        self._redis = redis
        self._processor = processor
        self._stream = stream_key(partition)
        self._group = group
        self._consumer_name = consumer_name
        self._error_backoff = error_backoff
        self._running = False

    async def ensure_group(self) -> None:
        """Create the consumer group if it does not exist yet."""
        try:
            await self._redis.xgroup_create(self._stream, self._group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def read_once(self, count: int = 10, block: int = 5000) -> int:
        """Read and process one batch of new messages.

        Returns:
            Number of messages handled.
        """
        messages = await self._redis.xreadgroup(
            groupname=self._group,
            consumername=self._consumer_name,
            streams={self._stream: ">"},
            count=count,
            block=block,
        )
        handled = 0
        for _stream_key, stream_messages in messages or []:
            for message_id, data in stream_messages:
                await self._handle(message_id, data)
                handled += 1
        return handled

    async def process_loop(self) -> None:
        """Read and process until ``stop()`` is called."""
        await self.ensure_group()
        self._running = True
        logger.info(
            "webhook.consumer_started",
            stream=self._stream,
            group=self._group,
            consumer=self._consumer_name,
        )
        try:
            await self.reclaim_abandoned()
        except aioredis.ConnectionError:
            self._running = False
            raise
        except Exception as exc:
            logger.error("webhook.reclaim_failed", stream=self._stream, error=str(exc), exc_info=True)
        while self._running:
            try:
                await self.read_once()
            except aioredis.ConnectionError as exc:
                logger.error("webhook.consumer_redis_error", stream=self._stream, error=str(exc))
                self._running = False
                raise
            except Exception as exc:
                logger.error(
                    "webhook.consumer_batch_error",
                    stream=self._stream,
                    error=str(exc),
                    exc_info=True,
                )
                await asyncio.sleep(self._error_backoff)

    async def _handle(self, message_id: str, data: dict[str, str]) -> None:
        try:
            event_id = int(data["event_id"])
        except (KeyError, ValueError):
            logger.warning("webhook.malformed_message", message_id=message_id, data=data)
            await self._redis.xack(self._stream, self._group, message_id)
            return

        try:
            await self._processor.process(event_id)
        except Exception as exc:
            # The stored event stays unfinished; redeliver_stuck picks it up.
            logger.error(
                "webhook.message_failed",
                message_id=message_id,
                event_id=event_id,
                error=str(exc),
                exc_info=True,
            )
        await self._redis.xack(self._stream, self._group, message_id)
        logger.debug("webhook.message_acked", message_id=message_id, event_id=event_id)

    async def reclaim_abandoned(self, idle_time_ms: int = 60000) -> int:
        """Take over and process messages left pending by a dead consumer.

        Uses XAUTOCLAIM on entries idle longer than ``idle_time_ms``.

        Returns:
            Number of reclaimed messages processed.
        """
        result = await self._redis.xautoclaim(
            self._stream,
            self._group,
            self._consumer_name,
            min_idle_time=idle_time_ms,
            start_id="0",
            count=10,
        )
        claimed = result[1] if len(result) > 1 else []
        handled = 0
        for message_id, data in claimed:
            if data is None:
                continue
            await self._handle(message_id, data)
            handled += 1
        if handled:
            logger.info("webhook.messages_reclaimed", stream=self._stream, count=handled)
        return handled

    def stop(self) -> None:
        """Signal the processing loop to stop after the current batch."""
        self._running = False

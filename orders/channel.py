"""
Orders — event channel (Redis Streams)

Pub/Sub is fire-and-forget: events published while no worker is
listening are lost. The order pipeline needs at-least-once delivery, so
the channel is a Redis Stream read through a consumer group:

    ┌───────────┐  XADD   ┌───────────────┐ XREADGROUP ┌──────────┐
    │ Order API │───────▶ │ order_events  │──────────▶ │ Worker 1 │
    └───────────┘         │ (stream)      │──────────▶ │ Worker 2 │
                          └───────┬───────┘            └──────────┘
                                  │ abandon × max_delivery_count
                          ┌───────▼───────┐
                          │ order_events: │
                          │ dead          │
                          └───────────────┘

An entry stays in the group's pending list until it is acknowledged.
abandon() re-appends it (delivery_count + 1) and acknowledges the old
entry in one MULTI, so it is redelivered to whichever worker reads next.
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .errors import PublishError
from .events import OrderCreated

logger = logging.getLogger(__name__)


class ReceivedMessage:
    """A stream entry handed to a consumer. Settle it with ack() or abandon()."""

    def __init__(
        self,
        channel: "EventChannel",
        message_id: str,
        body: str,
        delivery_count: int,
    ) -> None:
        self._channel = channel
        self.message_id = message_id
        self.body = body
        self.delivery_count = delivery_count

    async def ack(self) -> None:
        await self._channel.ack(self)

    async def abandon(self) -> None:
        await self._channel.abandon(self)

    def __repr__(self) -> str:
        return f"<ReceivedMessage {self.message_id} delivery={self.delivery_count}>"


class EventChannel:
    """Redis Streams consumer-group channel for OrderCreated events."""

    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str,
        group: str,
        consumer: str,
        max_delivery_count: int = 10,
        block_ms: int | None = 1000,
        batch_size: int = 1,
        claim_idle_ms: int = 60_000,
        max_length: int = 10_000,
    ) -> None:
        self.redis = redis
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.max_delivery_count = max_delivery_count
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.claim_idle_ms = claim_idle_ms
        self.max_length = max_length

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.stream}:dead"

    async def ensure_group(self) -> None:
        """Create the stream and consumer group. Existing groups are kept."""
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self.group, self.stream)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    # ── Sending ──────────────────────────────────────

    async def send(self, event: OrderCreated) -> str:
        """Append an event to the stream. Raises PublishError on failure."""
        try:
            return await self.redis.xadd(
                self.stream,
                {"body": event.to_json(), "delivery_count": 1},
                maxlen=self.max_length,
                approximate=True,
            )
        except RedisError as exc:
            raise PublishError(f"Failed to publish to {self.stream}: {exc}") from exc

    # ── Receiving ────────────────────────────────────

    def _wrap(self, entries) -> list[ReceivedMessage]:
        messages = []
        for message_id, fields in entries:
            # XAUTOCLAIM reports entries trimmed from the stream as None
            if fields is None:
                continue
            try:
                delivery_count = int(fields.get("delivery_count", 1))
            except ValueError:
                delivery_count = 1
            messages.append(
                ReceivedMessage(self, message_id, fields.get("body", ""), delivery_count)
            )
        return messages

    async def receive(self) -> list[ReceivedMessage]:
        """Read new entries for this consumer, blocking up to block_ms."""
        results = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: ">"},
            count=self.batch_size,
            block=self.block_ms,
        )
        messages = []
        for _stream, entries in results or []:
            messages.extend(self._wrap(entries))
        return messages

    async def reclaim_stale(self) -> list[ReceivedMessage]:
        """
        Take over entries left pending by a worker that died mid-message,
        or whose ack/abandon failed. Walks the whole pending list.
        """
        messages: list[ReceivedMessage] = []
        cursor = "0-0"
        while True:
            result = await self.redis.xautoclaim(
                self.stream,
                self.group,
                self.consumer,
                min_idle_time=self.claim_idle_ms,
                start_id=cursor,
                count=self.batch_size,
            )
            messages.extend(self._wrap(result[1]))
            cursor = result[0]
            if cursor in ("0-0", b"0-0"):
                break
        if messages:
            logger.warning("Reclaimed %d stale message(s) from %s", len(messages), self.stream)
        return messages

    # ── Settling ─────────────────────────────────────

    async def ack(self, message: ReceivedMessage) -> None:
        await self.redis.xack(self.stream, self.group, message.message_id)

    async def abandon(self, message: ReceivedMessage) -> None:
        """Return the message for redelivery, or dead-letter it when exhausted."""
        if message.delivery_count >= self.max_delivery_count:
            target = self.dead_letter_stream
            logger.warning(
                "Message %s exceeded %d deliveries, moving to %s",
                message.message_id, self.max_delivery_count, target,
            )
        else:
            target = self.stream

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.xadd(
                target,
                {"body": message.body, "delivery_count": message.delivery_count + 1},
                maxlen=self.max_length,
                approximate=True,
            )
            pipe.xack(self.stream, self.group, message.message_id)
            await pipe.execute()

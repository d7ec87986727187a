"""Redis Streams channel: delivery, acknowledgement, redelivery and dead-lettering."""

from uuid import uuid4

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import GROUP, STREAM
from orders.channel import EventChannel
from orders.errors import PublishError
from orders.events import OrderCreated, parse


async def pending_count(redis) -> int:
    info = await redis.xpending(STREAM, GROUP)
    return info["pending"]


class TestChannel:
    @pytest.mark.asyncio
    async def test_ensure_group_is_idempotent(self, channel):
        await channel.ensure_group()

    @pytest.mark.asyncio
    async def test_send_then_receive(self, channel):
        order_id = uuid4()
        await channel.send(OrderCreated.for_order(order_id))

        messages = await channel.receive()

        assert len(messages) == 1
        assert messages[0].delivery_count == 1
        assert parse(messages[0].body).order_id == order_id

    @pytest.mark.asyncio
    async def test_receive_on_empty_stream(self, channel):
        assert await channel.receive() == []

    @pytest.mark.asyncio
    async def test_ack_clears_pending(self, channel, redis):
        await channel.send(OrderCreated.for_order(uuid4()))
        [message] = await channel.receive()
        assert await pending_count(redis) == 1

        await message.ack()

        assert await pending_count(redis) == 0
        assert await channel.receive() == []

    @pytest.mark.asyncio
    async def test_abandon_redelivers(self, channel, redis):
        order_id = uuid4()
        await channel.send(OrderCreated.for_order(order_id))
        [first] = await channel.receive()

        await first.abandon()

        [second] = await channel.receive()
        assert second.message_id != first.message_id
        assert second.delivery_count == 2
        assert parse(second.body).order_id == order_id
        assert await pending_count(redis) == 1

    @pytest.mark.asyncio
    async def test_exhausted_message_is_dead_lettered(self, channel, redis):
        await channel.send(OrderCreated.for_order(uuid4()))

        for expected in range(1, channel.max_delivery_count + 1):
            [message] = await channel.receive()
            assert message.delivery_count == expected
            await message.abandon()

        assert await channel.receive() == []
        assert await pending_count(redis) == 0
        dead = await redis.xrange(channel.dead_letter_stream)
        assert len(dead) == 1
        assert dead[0][1]["delivery_count"] == str(channel.max_delivery_count + 1)

    @pytest.mark.asyncio
    async def test_send_failure_raises_publish_error(self, channel, monkeypatch):
        async def broken_xadd(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(channel.redis, "xadd", broken_xadd)

        with pytest.raises(PublishError):
            await channel.send(OrderCreated.for_order(uuid4()))

    @pytest.mark.asyncio
    async def test_reclaim_takes_over_every_pending_entry(self, channel, redis):
        for _ in range(3):
            await channel.send(OrderCreated.for_order(uuid4()))
        assert len(await channel.receive()) == 3
        # Small batches force several XAUTOCLAIM round trips
        other = EventChannel(
            redis, stream=STREAM, group=GROUP, consumer="worker-2",
            claim_idle_ms=0, batch_size=1, block_ms=None,
        )

        reclaimed = await other.reclaim_stale()

        assert len(reclaimed) == 3
        assert len({m.message_id for m in reclaimed}) == 3
        for message in reclaimed:
            await message.ack()
        assert await pending_count(redis) == 0

"""
Pytest configuration and fixtures.

The store runs on a file-backed SQLite database (aiosqlite) so that
separate sessions behave like separate connections; the channel runs on
fakeredis.
"""

import asyncio
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from orders import store
from orders.aggregate import Order, OrderStatus
from orders.channel import EventChannel
from orders.consumer import OrderConsumer
from orders.events import OrderCreated

STREAM = "test_order_events"
GROUP = "test-workers"


class FakeMessage:
    """Stands in for a ReceivedMessage and records how it was settled."""

    def __init__(self, body: str, message_id: str = "1-0", delivery_count: int = 1) -> None:
        self.message_id = message_id
        self.body = body
        self.delivery_count = delivery_count
        self.acked = False
        self.abandoned = False

    async def ack(self) -> None:
        self.acked = True

    async def abandon(self) -> None:
        self.abandoned = True


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, Any]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await store.create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def redis():
    conn = fake_aioredis.FakeRedis(decode_responses=True)
    yield conn
    await conn.flushall()
    await conn.aclose()


@pytest_asyncio.fixture
async def channel(redis) -> EventChannel:
    channel = EventChannel(
        redis,
        stream=STREAM,
        group=GROUP,
        consumer="worker-1",
        max_delivery_count=3,
        block_ms=None,
        batch_size=10,
    )
    await channel.ensure_group()
    return channel


@pytest.fixture
def consumer(channel: EventChannel, session_factory) -> OrderConsumer:
    return OrderConsumer(channel, session_factory, processing_delay=0.01)


@pytest.fixture
def shutdown() -> asyncio.Event:
    return asyncio.Event()


@pytest_asyncio.fixture
async def make_order(session_factory):
    """Insert an order directly into the store, bypassing the command."""

    async def _make(status: OrderStatus = OrderStatus.PENDING, **fields) -> Order:
        order = Order.new(
            fields.get("customer", "Ana"),
            fields.get("product", "Widget"),
            fields.get("amount", Decimal("10.50")),
        )
        if status is not OrderStatus.PENDING:
            order = order.model_copy(update={"status": status})
        async with session_factory() as session:
            await store.insert_order(session, order)
            await session.commit()
        return order

    return _make


@pytest_asyncio.fixture
async def fetch_order(session_factory):
    async def _fetch(order_id):
        async with session_factory() as session:
            return await store.get_order(session, order_id)

    return _fetch


def created_message(order_id, **kwargs) -> FakeMessage:
    return FakeMessage(OrderCreated.for_order(order_id).to_json(), **kwargs)

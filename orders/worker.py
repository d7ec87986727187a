"""
Orders — worker entry point

Hosts the OrderConsumer as a long-running asyncio program. SIGINT/SIGTERM
set the shutdown event; the consumer finishes or abandons the message in
hand and the process exits.

The only fatal condition is failing to reach the channel at start-up.
"""

import asyncio
import logging
import signal
import sys

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from . import store
from .channel import EventChannel
from .config import Settings, configure_logging, get_settings
from .consumer import OrderConsumer

logger = logging.getLogger(__name__)


def build_channel(redis_conn: aioredis.Redis, settings: Settings) -> EventChannel:
    return EventChannel(
        redis_conn,
        stream=settings.order_stream,
        group=settings.consumer_group,
        consumer=settings.consumer_name,
        max_delivery_count=settings.max_delivery_count,
        block_ms=settings.receive_block_ms,
        batch_size=settings.receive_batch_size,
        claim_idle_ms=settings.claim_idle_ms,
        max_length=settings.stream_max_length,
    )


async def run_worker(settings: Settings, shutdown: asyncio.Event | None = None) -> int:
    """Run the consumer until shutdown. Returns the process exit status."""
    shutdown = shutdown or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            pass

    engine = create_async_engine(settings.database_url, echo=settings.database_echo)
    redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await store.create_schema(engine)
        channel = build_channel(redis_conn, settings)
        try:
            await channel.ensure_group()
        except RedisError:
            logger.exception("Event channel unreachable at %s, exiting", settings.redis_url)
            return 1

        consumer = OrderConsumer(
            channel,
            async_sessionmaker(engine, expire_on_commit=False),
            processing_delay=settings.processing_delay_seconds,
            receive_retry_delay=settings.receive_retry_delay_seconds,
            reclaim_interval=max(settings.claim_idle_ms / 1000, 1.0),
        )
        logger.info(
            "Worker %s consuming %s as group %s",
            settings.consumer_name, settings.order_stream, settings.consumer_group,
        )
        await consumer.run(shutdown)
        return 0
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await redis_conn.aclose()
        await engine.dispose()


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(run_worker(settings)))


if __name__ == "__main__":
    main()

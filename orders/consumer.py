"""
Orders — order consumer (worker side)

Reads OrderCreated events from the channel and drives each order through

    Pending ──▶ Processing ──(processing delay)──▶ Completed

Delivery is at-least-once and several workers may share the consumer
group, so every step is guarded:

  * status != Pending on arrival    → duplicate/redelivery, ack and skip
  * Pending→Processing CAS rejected → another worker claimed it, ack
  * order missing                   → nothing to do, ack
  * bad payload / store failure     → abandon, the channel redelivers
  * shutdown during the delay       → abandon, the channel redelivers

Each message is settled (ack or abandon) before handle() returns, and a
single bad message never stops run().
"""

import asyncio
import logging
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import store
from .aggregate import OrderStatus
from .channel import EventChannel, ReceivedMessage
from .errors import ConcurrencyConflict, MalformedMessage
from .events import OrderCreated, parse

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    COMPLETED = "completed"
    NOT_FOUND = "not_found"
    ALREADY_HANDLED = "already_handled"
    LOST_RACE = "lost_race"
    MALFORMED = "malformed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"

    @property
    def acknowledges(self) -> bool:
        return self not in (Outcome.MALFORMED, Outcome.INTERRUPTED, Outcome.FAILED)


class ProcessingInterrupted(Exception):
    """Shutdown was requested while an order was being processed."""


class OrderConsumer:
    def __init__(
        self,
        channel: EventChannel,
        session_factory: async_sessionmaker[AsyncSession],
        processing_delay: float = 5.0,
        receive_retry_delay: float = 1.0,
        reclaim_interval: float = 60.0,
    ) -> None:
        self.channel = channel
        self.session_factory = session_factory
        self.processing_delay = processing_delay
        self.receive_retry_delay = receive_retry_delay
        self.reclaim_interval = reclaim_interval

    # ── Receive loop ─────────────────────────────────

    async def run(self, shutdown: asyncio.Event) -> None:
        """Process messages one at a time until shutdown is set."""
        logger.info("Order consumer started on %s", self.channel.stream)
        loop = asyncio.get_running_loop()
        next_reclaim = loop.time()

        while not shutdown.is_set():
            # Entries abandoned by dead workers or left by a failed settle
            if loop.time() >= next_reclaim:
                await self._handle_all(await self._reclaim(), shutdown)
                next_reclaim = loop.time() + self.reclaim_interval

            try:
                messages = await self.channel.receive()
            except Exception:
                logger.exception("Failed to receive from %s", self.channel.stream)
                await self._pause(shutdown, self.receive_retry_delay)
                continue

            await self._handle_all(messages, shutdown)

        logger.info("Order consumer stopped")

    async def _reclaim(self) -> list[ReceivedMessage]:
        try:
            return await self.channel.reclaim_stale()
        except Exception:
            logger.exception("Failed to reclaim stale messages from %s", self.channel.stream)
            return []

    async def _handle_all(self, messages: list[ReceivedMessage], shutdown: asyncio.Event) -> None:
        for message in messages:
            if shutdown.is_set():
                # Received but not started: hand it straight back
                await self._settle(message, Outcome.INTERRUPTED)
                continue
            await self.handle(message, shutdown)

    # ── Per-message state machine ────────────────────

    async def handle(self, message: ReceivedMessage, shutdown: asyncio.Event) -> Outcome:
        logger.info("Message received: %s %s", message.message_id, message.body)

        try:
            event = parse(message.body)
        except MalformedMessage:
            logger.error("Invalid payload in message %s, abandoning", message.message_id)
            return await self._settle(message, Outcome.MALFORMED)

        try:
            async with self.session_factory() as session:
                outcome = await self._process(session, event, shutdown)
        except ConcurrencyConflict:
            logger.warning(
                "Order %s was claimed by another worker, acknowledging", event.order_id
            )
            outcome = Outcome.LOST_RACE
        except ProcessingInterrupted:
            logger.warning(
                "Shutdown while processing order %s, abandoning message", event.order_id
            )
            outcome = Outcome.INTERRUPTED
        except asyncio.CancelledError:
            logger.warning("Cancelled while processing order %s, abandoning", event.order_id)
            await asyncio.shield(self._settle(message, Outcome.INTERRUPTED))
            raise
        except Exception:
            logger.exception("Error processing order %s, abandoning message", event.order_id)
            outcome = Outcome.FAILED

        return await self._settle(message, outcome)

    async def _process(
        self,
        session: AsyncSession,
        event: OrderCreated,
        shutdown: asyncio.Event,
    ) -> Outcome:
        order_id = event.order_id

        order = await store.get_order(session, order_id)
        if order is None:
            logger.warning("Order %s not found, message is irrelevant", order_id)
            return Outcome.NOT_FOUND

        if not order.status.can_advance_to(OrderStatus.PROCESSING):
            logger.info("Order %s is already %s, skipping", order_id, order.status.value)
            return Outcome.ALREADY_HANDLED

        # 1. Claim the order: only one worker wins Pending → Processing
        claimed = await store.update_status_if(
            session, order_id, OrderStatus.PENDING, OrderStatus.PROCESSING
        )
        await session.commit()
        if not claimed:
            raise ConcurrencyConflict(order_id)
        logger.info("Order %s moved to Processing", order_id)

        # 2. Simulated fulfilment work
        logger.info("Processing order %s for %.1fs", order_id, self.processing_delay)
        await self._wait_or_interrupt(shutdown)

        # 3. This worker owns the order now, no guard needed
        await store.set_status(session, order_id, OrderStatus.COMPLETED)
        await session.commit()
        logger.info("Order %s moved to Completed", order_id)
        return Outcome.COMPLETED

    async def _wait_or_interrupt(self, shutdown: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(shutdown.wait(), timeout=self.processing_delay)
        except asyncio.TimeoutError:
            return
        raise ProcessingInterrupted()

    # ── Helpers ──────────────────────────────────────

    async def _settle(self, message: ReceivedMessage, outcome: Outcome) -> Outcome:
        try:
            if outcome.acknowledges:
                await message.ack()
            else:
                await message.abandon()
        except Exception:
            # Left pending in the group; the next periodic reclaim picks it up
            logger.exception("Failed to settle message %s (%s)", message.message_id, outcome.value)
        else:
            logger.info(
                "Message %s %s (%s)",
                message.message_id,
                "acknowledged" if outcome.acknowledges else "abandoned",
                outcome.value,
            )
        return outcome

    @staticmethod
    async def _pause(shutdown: asyncio.Event, delay: float) -> None:
        try:
            await asyncio.wait_for(shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

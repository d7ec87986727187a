"""
Orders — query handlers (read side)

Reads go straight to the order store. Nothing is cached, so a client
polling GET /orders/{id} sees the worker's status changes as soon as
they are committed.
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from . import store
from .aggregate import Order
from .errors import NotFoundError


async def get_order(session: AsyncSession, order_id: UUID) -> Order:
    order = await store.get_order(session, order_id)
    if order is None:
        raise NotFoundError(order_id)
    return order


async def list_orders(session: AsyncSession) -> list[Order]:
    """Every order, newest first."""
    return await store.list_orders(session)

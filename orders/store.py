"""
Orders — order store

A single `orders` table. Functions take an AsyncSession and never commit;
the command or consumer that owns the unit of work does.

Status changes go through update_status_if, a compare-and-swap on the
status column: the database row lock makes it atomic, so two workers
racing for the same Pending order cannot both win.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    Numeric,
    String,
    Table,
    Uuid,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from .aggregate import Order, OrderStatus

# Column limits; input beyond them is rejected at validation, not by the INSERT
MAX_NAME_LENGTH = 200
MAX_AMOUNT = Decimal("9999999999.99")

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("customer", String(MAX_NAME_LENGTH), nullable=False),
    Column("product", String(MAX_NAME_LENGTH), nullable=False),
    Column("amount", Numeric(12, 2, asdecimal=True), nullable=False),
    Column("status", String(20), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    """Create the orders table if it does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def _to_order(row) -> Order:
    created_at: datetime = row.created_at
    # SQLite hands back naive datetimes; everything is stored in UTC
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return Order(
        id=row.id,
        customer=row.customer,
        product=row.product,
        amount=Decimal(str(row.amount)),
        status=OrderStatus(row.status),
        created_at=created_at,
    )


async def insert_order(session: AsyncSession, order: Order) -> None:
    await session.execute(
        insert(orders).values(
            id=order.id,
            customer=order.customer,
            product=order.product,
            amount=order.amount,
            status=order.status.value,
            created_at=order.created_at,
        )
    )


async def get_order(session: AsyncSession, order_id: UUID) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return _to_order(row)


async def list_orders(session: AsyncSession) -> list[Order]:
    """All orders, newest first."""
    result = await session.execute(select(orders).order_by(orders.c.created_at.desc()))
    return [_to_order(row) for row in result.fetchall()]


async def update_status_if(
    session: AsyncSession,
    order_id: UUID,
    expected: OrderStatus,
    new: OrderStatus,
) -> bool:
    """
    Set status to `new` only if it is still `expected`.

    Returns False when the row is missing or another writer got there first.
    """
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.status == expected.value)
        .values(status=new.value)
    )
    return result.rowcount == 1


async def set_status(session: AsyncSession, order_id: UUID, new: OrderStatus) -> bool:
    """Unconditional status write. Returns False if the order does not exist."""
    result = await session.execute(
        update(orders).where(orders.c.id == order_id).values(status=new.value)
    )
    return result.rowcount == 1


async def ping(session: AsyncSession) -> None:
    await session.execute(text("SELECT 1"))

"""
Orders — command handlers (write side)

create_order persists first, then publishes:

1. Validate the request (every invalid field is reported)
2. Insert the order into the store and commit
3. Publish OrderCreated to the event channel

Publishing is best effort. There is no outbox: if step 3 fails the order
exists but no worker will ever see it, and it stays Pending.
"""

import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import store
from .aggregate import Order
from .channel import EventChannel
from .errors import PersistenceError, PublishError, ValidationError
from .events import OrderCreated

logger = logging.getLogger(__name__)


def validate_order_input(customer, product, amount) -> dict[str, str]:
    """Return {field: message} for every invalid field (empty when valid)."""
    errors: dict[str, str] = {}

    for field, value in (("customer", customer), ("product", product)):
        if not isinstance(value, str) or not value.strip():
            errors[field] = f"{field} is required"
        elif len(value.strip()) > store.MAX_NAME_LENGTH:
            errors[field] = f"{field} must be at most {store.MAX_NAME_LENGTH} characters"

    if amount is None or isinstance(amount, bool):
        errors["amount"] = "amount is required"
    else:
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            errors["amount"] = "amount must be a number"
        else:
            if not value.is_finite() or value <= 0:
                errors["amount"] = "amount must be positive"
            elif value.as_tuple().exponent < -2:
                errors["amount"] = "amount must have at most two decimal places"
            elif value > store.MAX_AMOUNT:
                errors["amount"] = f"amount must not exceed {store.MAX_AMOUNT}"

    return errors


async def create_order(
    session: AsyncSession,
    channel: EventChannel,
    customer: str,
    product: str,
    amount: Decimal | float | str,
) -> Order:
    """Create a Pending order and announce it. See module docstring."""
    errors = validate_order_input(customer, product, amount)
    if errors:
        raise ValidationError(errors)

    order = Order.new(customer.strip(), product.strip(), Decimal(str(amount)))

    # 1. The store write is authoritative
    try:
        await store.insert_order(session, order)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError(f"Failed to save order {order.id}") from exc

    logger.info("Order %s created for %s", order.id, order.customer)

    # 2. Best-effort signal to the workers
    try:
        message_id = await channel.send(OrderCreated.for_order(order.id))
    except PublishError:
        logger.exception("Failed to publish OrderCreated for order %s; it will stay Pending", order.id)
    else:
        logger.info("Published OrderCreated for order %s as %s", order.id, message_id)

    return order

"""
Orders — order entity

The order is the only entity. Everything except `status` is fixed at
creation; status only ever moves forward:

    Pending → Processing → Completed
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"

    def can_advance_to(self, new: "OrderStatus") -> bool:
        """Only the two forward steps are legal transitions."""
        return (self, new) in _FORWARD_STEPS


_FORWARD_STEPS = {
    (OrderStatus.PENDING, OrderStatus.PROCESSING),
    (OrderStatus.PROCESSING, OrderStatus.COMPLETED),
}


class Order(BaseModel):
    """A customer order as stored in the order store."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    customer: str
    product: str
    amount: Decimal
    status: OrderStatus
    created_at: datetime

    @classmethod
    def new(cls, customer: str, product: str, amount: Decimal) -> "Order":
        """Mint a fresh Pending order. Input must already be validated."""
        return cls(
            id=uuid4(),
            customer=customer,
            product=product,
            amount=amount,
            status=OrderStatus.PENDING,
            created_at=datetime.now(timezone.utc),
        )

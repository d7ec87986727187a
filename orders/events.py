"""
Orders — event definitions

OrderCreated is a trigger only: it carries the order id and nothing else.
The consumer always reloads the order from the store.

Wire format:
    {"orderId": "<uuid>", "eventType": "OrderCreated", "timestamp": "<ISO-8601>"}
"""

from datetime import datetime, timezone
from typing import Literal
from uuid import UUID

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import MalformedMessage

ORDER_CREATED = "OrderCreated"


class OrderCreated(BaseModel):
    """An order was created and is waiting to be processed."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    order_id: UUID = Field(alias="orderId")
    event_type: Literal["OrderCreated"] = Field(default=ORDER_CREATED, alias="eventType")
    timestamp: datetime

    @classmethod
    def for_order(cls, order_id: UUID) -> "OrderCreated":
        return cls(order_id=order_id, timestamp=datetime.now(timezone.utc))

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def parse(body: str | bytes) -> OrderCreated:
    """Deserialize a message body, raising MalformedMessage on any mismatch."""
    try:
        return OrderCreated.model_validate_json(body)
    except pydantic.ValidationError as exc:
        raise MalformedMessage(f"Not an {ORDER_CREATED} event: {exc.error_count()} error(s)") from exc

"""
Orders — error taxonomy

Write-path errors (validation, persistence) are raised to the caller.
Everything the consumer hits is turned into an ack/abandon decision and
never escapes the worker loop.
"""

from uuid import UUID


class OrderError(Exception):
    """Base class for every error raised by the orders package."""


class ValidationError(OrderError):
    """Bad creation input. Carries every invalid field, not just the first."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        fields = ", ".join(sorted(self.errors))
        super().__init__(f"Invalid order: {fields}")


class PersistenceError(OrderError):
    """The order store could not be read or written."""


class PublishError(OrderError):
    """The event channel rejected or failed to accept a message."""


class ConcurrencyConflict(OrderError):
    """Another writer changed the order status first."""

    def __init__(self, order_id: UUID) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} was claimed by another worker")


class MalformedMessage(OrderError):
    """A received message does not deserialize into an OrderCreated event."""


class NotFoundError(OrderError):
    """No order exists with the given id."""

    def __init__(self, order_id: UUID | str) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")

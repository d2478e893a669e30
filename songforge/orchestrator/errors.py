"""Exceptions raised by the orchestrator and translated at the API edge."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestration errors."""


class OrderNotFoundError(OrchestratorError):
    def __init__(self, order_id: int) -> None:
        super().__init__(f"order {order_id} does not exist")
        self.order_id = order_id


class JobNotFoundError(OrchestratorError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"generation job {job_id} does not exist")
        self.job_id = job_id


class DuplicateOrderError(OrchestratorError):
    def __init__(self, payment_reference: str) -> None:
        super().__init__(f"an order for payment {payment_reference} already exists")
        self.payment_reference = payment_reference


class EmptyOrderError(OrchestratorError):
    def __init__(self, order_id: int) -> None:
        super().__init__(f"order {order_id} has no items to generate")
        self.order_id = order_id


class FanOutConflictError(OrchestratorError):
    """Raised when generation jobs already exist for an order."""

    def __init__(self, order_id: int) -> None:
        super().__init__(f"generation was already started for order {order_id}")
        self.order_id = order_id


class NotificationNotAllowedError(OrchestratorError):
    """Raised when a notification resend is requested in the wrong order state."""

    def __init__(self, order_id: int, reason: str) -> None:
        super().__init__(f"cannot notify order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason


__all__ = [
    "DuplicateOrderError",
    "EmptyOrderError",
    "FanOutConflictError",
    "JobNotFoundError",
    "NotificationNotAllowedError",
    "OrchestratorError",
    "OrderNotFoundError",
]

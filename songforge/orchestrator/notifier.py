"""Build and dispatch the single customer notification for a settled order."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
import logging

from songforge.logging import get_logger
from songforge.logging_events import log_event
from songforge.orchestrator.contracts import NotificationTransport
from songforge.orchestrator.models import (
    DispatchResult,
    JobSnapshot,
    NotificationKind,
    NotificationMessage,
    OrderSnapshot,
    TransportResult,
)
from songforge.utils.metrics import counter

logger = get_logger(__name__)


def build_message(order: OrderSnapshot, jobs: Sequence[JobSnapshot]) -> NotificationMessage:
    """Split jobs into delivered artifacts and failures and pick the message kind."""

    completed = tuple(job for job in jobs if job.has_artifact)
    failed = tuple(job for job in jobs if not job.has_artifact)
    kind = NotificationKind.READY if completed else NotificationKind.GENERATION_FAILED
    return NotificationMessage(
        kind=kind,
        order_id=order.id,
        recipient=order.customer_email,
        completed=completed,
        failed=failed,
    )


class Notifier:
    """Send one result message per call; at-most-once is the caller's concern."""

    def __init__(self, transport: NotificationTransport) -> None:
        self._transport = transport

    async def notify(self, order: OrderSnapshot, jobs: Sequence[JobSnapshot]) -> DispatchResult:
        message = build_message(order, jobs)
        try:
            result = await self._transport.send(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "Notification transport raised",
                extra={"event": "notifier.transport_error", "order_id": order.id},
            )
            result = TransportResult(success=False, error=f"{type(exc).__name__}: {exc}")

        outcome = "sent" if result.success else "failed"
        counter(
            "songforge_notifications_total",
            "Customer notifications by kind and delivery result.",
            label_names=("kind", "result"),
        ).labels(kind=message.kind.value, result=outcome).inc()
        log_event(
            logger,
            "notifier.dispatch",
            level=logging.INFO if result.success else logging.WARNING,
            component="orchestrator.notifier",
            entity_id=str(order.id),
            status=outcome,
            kind=message.kind.value,
            completed=len(message.completed),
            failed=len(message.failed),
            message_id=result.message_id,
            error=result.error,
        )
        return DispatchResult(
            order_id=order.id,
            kind=message.kind,
            success=result.success,
            message_id=result.message_id,
            error=result.error,
        )


__all__ = ["Notifier", "build_message"]

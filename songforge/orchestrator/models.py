"""Domain types shared by the song generation orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, Sequence

from songforge.models import (
    FailureReason,
    JobStatus,
    OrderStatus,
    SubmissionMode,
    TaskState,
)


@dataclass(slots=True, frozen=True)
class NewOrderItem:
    """Generation parameters for one requested song."""

    lyrics: str
    style_tags: tuple[str, ...] = ()
    dedication: str | None = None
    price: Decimal = Decimal("0")


@dataclass(slots=True, frozen=True)
class OrderItemSnapshot:
    id: int
    order_id: int
    lyrics: str
    style_tags: tuple[str, ...]
    dedication: str | None
    price: Decimal


@dataclass(slots=True, frozen=True)
class OrderSnapshot:
    """Read-only view of an order row including notification bookkeeping."""

    id: int
    customer_id: str
    customer_email: str | None
    payment_reference: str
    total_amount: Decimal
    status: OrderStatus
    notification_claimed: bool
    settled_at: datetime | None
    notified_at: datetime | None
    notification_message_id: str | None
    notification_error: str | None
    notification_attempts: int
    created_at: datetime

    @property
    def is_settled(self) -> bool:
        return self.notification_claimed

    @property
    def is_notified(self) -> bool:
        return self.notified_at is not None


@dataclass(slots=True, frozen=True)
class GenerationRequest:
    """Payload handed to the provider for one order item."""

    job_id: int
    order_id: int
    order_item_id: int
    lyrics: str
    style: str
    title: str


@dataclass(slots=True, frozen=True)
class SubmissionResult:
    """Provider task handles for a submission and the channel that completes them."""

    task_ids: tuple[str, ...]
    mode: SubmissionMode

    def __post_init__(self) -> None:
        if not self.task_ids:
            raise ValueError("a submission must yield at least one task id")


@dataclass(slots=True, frozen=True)
class TaskStatus:
    """Normalised state of a single provider task."""

    task_id: str
    state: TaskState
    audio_url: str | None = None
    image_url: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


@dataclass(slots=True, frozen=True)
class TaskSnapshot:
    task_id: str
    position: int
    state: TaskState
    audio_url: str | None = None
    image_url: str | None = None
    error_detail: str | None = None


@dataclass(slots=True, frozen=True)
class JobSnapshot:
    """Read-only view of a generation job together with its provider tasks."""

    id: int
    order_id: int
    order_item_id: int
    title: str
    status: JobStatus
    mode: SubmissionMode | None
    audio_url: str | None
    image_url: str | None
    failure_reason: FailureReason | None
    error_detail: str | None
    created_at: datetime
    updated_at: datetime
    submitted_at: datetime | None
    completed_at: datetime | None
    tasks: tuple[TaskSnapshot, ...] = ()

    @property
    def task_ids(self) -> tuple[str, ...]:
        return tuple(task.task_id for task in self.tasks)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def has_artifact(self) -> bool:
        return self.status is JobStatus.COMPLETED and bool(self.audio_url)


@dataclass(slots=True, frozen=True)
class JobOutcome:
    """Terminal result to be written onto a generation job."""

    status: JobStatus
    audio_url: str | None = None
    image_url: str | None = None
    reason: FailureReason | None = None
    detail: str | None = None

    def __post_init__(self) -> None:
        if not self.status.is_terminal:
            raise ValueError("a job outcome must be terminal")

    @classmethod
    def completed(cls, audio_url: str, image_url: str | None = None) -> JobOutcome:
        return cls(status=JobStatus.COMPLETED, audio_url=audio_url, image_url=image_url)

    @classmethod
    def failed(cls, reason: FailureReason, detail: str | None = None) -> JobOutcome:
        return cls(status=JobStatus.FAILED, reason=reason, detail=detail)


@dataclass(slots=True, frozen=True)
class FanOutResult:
    """Jobs created for an order, partitioned by how they will be completed."""

    order_id: int
    jobs: tuple[JobSnapshot, ...]
    webhook_job_ids: tuple[int, ...] = ()
    polling_job_ids: tuple[int, ...] = ()
    failed_job_ids: tuple[int, ...] = ()


@dataclass(slots=True, frozen=True)
class SettlementSummary:
    order_id: int
    outcome: OrderStatus
    jobs: tuple[JobSnapshot, ...]
    settled_at: datetime


class NotificationKind(str, Enum):
    READY = "ready"
    GENERATION_FAILED = "generation_failed"


@dataclass(slots=True, frozen=True)
class NotificationMessage:
    """Customer-facing result for a settled order.

    ``completed`` only ever holds jobs that carry an audio artifact.
    """

    kind: NotificationKind
    order_id: int
    recipient: str | None
    completed: tuple[JobSnapshot, ...] = ()
    failed: tuple[JobSnapshot, ...] = ()


@dataclass(slots=True, frozen=True)
class TransportResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class DispatchResult:
    """Outcome of one notification attempt for an order."""

    order_id: int
    kind: NotificationKind
    success: bool
    message_id: str | None = None
    error: str | None = None


class _TaskLike(Protocol):
    @property
    def state(self) -> TaskState: ...

    @property
    def audio_url(self) -> str | None: ...

    @property
    def image_url(self) -> str | None: ...


def resolve_job_outcome(tasks: Sequence[_TaskLike]) -> JobOutcome | None:
    """Derive the terminal outcome of a job from its tasks, ordered by position.

    Returns ``None`` while any task is still pending and none has failed.
    """

    if not tasks:
        return None
    for task in tasks:
        if task.state is TaskState.FAILED:
            detail = getattr(task, "error_detail", None) or getattr(task, "error", None)
            return JobOutcome.failed(
                FailureReason.PROVIDER_FAILURE,
                detail or "provider reported failure",
            )
    if any(task.state is TaskState.PENDING for task in tasks):
        return None
    for task in tasks:
        if task.audio_url:
            return JobOutcome.completed(task.audio_url, task.image_url)
    return JobOutcome.failed(
        FailureReason.MISSING_ARTIFACT,
        "provider reported success without an audio artifact",
    )


def classify_outcome(jobs: Sequence[JobSnapshot]) -> OrderStatus:
    """Classify a settled cohort of jobs into the order-level status."""

    completed = sum(1 for job in jobs if job.has_artifact)
    if jobs and completed == len(jobs):
        return OrderStatus.FULFILLED
    if completed:
        return OrderStatus.PARTIALLY_FULFILLED
    return OrderStatus.FAILED


__all__ = [
    "DispatchResult",
    "FanOutResult",
    "GenerationRequest",
    "JobOutcome",
    "JobSnapshot",
    "NewOrderItem",
    "NotificationKind",
    "NotificationMessage",
    "OrderItemSnapshot",
    "OrderSnapshot",
    "SettlementSummary",
    "SubmissionResult",
    "TaskSnapshot",
    "TaskStatus",
    "TransportResult",
    "classify_outcome",
    "resolve_job_outcome",
]

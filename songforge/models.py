"""Database models for orders, order items and generation jobs."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)

from songforge.db import Base
from songforge.utils.time import naive_utc


class OrderStatus(str, Enum):
    """Order-level fulfillment states."""

    PROCESSING = "processing"
    FULFILLED = "fulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Lifecycle of a generation job; ``completed`` and ``failed`` are terminal."""

    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.GENERATING


class SubmissionMode(str, Enum):
    """Completion channel chosen for a job when it was submitted."""

    WEBHOOK = "webhook"
    POLLING = "polling"


class TaskState(str, Enum):
    """State of a single provider task (one variant of a job)."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskState.PENDING


class FailureReason(str, Enum):
    SUBMISSION_ERROR = "submission_error"
    PROVIDER_FAILURE = "provider_failure"
    TIMEOUT = "timeout"
    MISSING_ARTIFACT = "missing_artifact"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String(128), nullable=False, index=True)
    customer_email = Column(String(320), nullable=True)
    payment_reference = Column(String(255), nullable=False, unique=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(
        String(32),
        nullable=False,
        default=OrderStatus.PROCESSING.value,
        index=True,
    )
    notification_claimed = Column(Boolean, nullable=False, default=False)
    settled_at = Column(DateTime, nullable=True)
    notified_at = Column(DateTime, nullable=True)
    notification_message_id = Column(String(255), nullable=True)
    notification_error = Column(Text, nullable=True)
    notification_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=naive_utc, nullable=False)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    lyrics = Column(Text, nullable=False)
    style_tags = Column(JSON, nullable=False, default=list)
    dedication = Column(String(512), nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, default=naive_utc, nullable=False)


class GenerationJob(Base):
    __tablename__ = "generation_jobs"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = Column(
        Integer,
        ForeignKey("order_items.id"),
        nullable=False,
        unique=True,
    )
    title = Column(String(512), nullable=False)
    status = Column(
        String(32),
        nullable=False,
        default=JobStatus.GENERATING.value,
        index=True,
    )
    mode = Column(String(16), nullable=True)
    audio_url = Column(String(2048), nullable=True)
    image_url = Column(String(2048), nullable=True)
    failure_reason = Column(String(64), nullable=True)
    error_detail = Column(Text, nullable=True)
    created_at = Column(DateTime, default=naive_utc, nullable=False)
    updated_at = Column(DateTime, default=naive_utc, onupdate=naive_utc, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class GenerationTask(Base):
    __tablename__ = "generation_tasks"
    __table_args__ = (Index("ix_generation_tasks_job_position", "job_id", "position"),)

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("generation_jobs.id"), nullable=False)
    task_id = Column(String(255), nullable=False, unique=True)
    position = Column(Integer, nullable=False, default=0)
    state = Column(String(16), nullable=False, default=TaskState.PENDING.value)
    audio_url = Column(String(2048), nullable=True)
    image_url = Column(String(2048), nullable=True)
    error_detail = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=naive_utc, onupdate=naive_utc, nullable=False)


__all__ = [
    "FailureReason",
    "GenerationJob",
    "GenerationTask",
    "JobStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "SubmissionMode",
    "TaskState",
]

"""Pydantic schemas for request and response bodies."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from songforge.models import (
    FailureReason,
    JobStatus,
    OrderStatus,
    SubmissionMode,
    TaskState,
)
from songforge.orchestrator.models import JobSnapshot, NotificationKind, OrderSnapshot


class OrderItemCreate(BaseModel):
    lyrics: str = Field(min_length=1)
    style_tags: List[str] = Field(default_factory=list)
    dedication: Optional[str] = None
    price: Decimal = Field(default=Decimal("0"), ge=0)


class OrderCreateRequest(BaseModel):
    """A paid order as handed over by the payment flow."""

    customer_id: str = Field(min_length=1)
    customer_email: Optional[str] = None
    payment_reference: str = Field(min_length=1)
    total_amount: Optional[Decimal] = Field(default=None, ge=0)
    items: List[OrderItemCreate] = Field(min_length=1)


class OrderResponse(BaseModel):
    id: int
    customer_id: str
    customer_email: Optional[str] = None
    payment_reference: str
    total_amount: Decimal
    status: OrderStatus
    notification_claimed: bool
    settled_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    notification_message_id: Optional[str] = None
    notification_error: Optional[str] = None
    notification_attempts: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TaskResponse(BaseModel):
    task_id: str
    position: int
    state: TaskState
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    error_detail: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class JobResponse(BaseModel):
    id: int
    order_id: int
    order_item_id: int
    title: str
    status: JobStatus
    mode: Optional[SubmissionMode] = None
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    error_detail: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    tasks: List[TaskResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class FanOutResponse(BaseModel):
    order_id: int
    jobs: List[JobResponse]
    webhook_job_ids: List[int] = Field(default_factory=list)
    polling_job_ids: List[int] = Field(default_factory=list)
    failed_job_ids: List[int] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class FulfillmentStatusResponse(BaseModel):
    """Diagnostic view of an order's generation and notification state."""

    order: OrderResponse
    settled: bool
    notified: bool
    jobs_total: int
    jobs_pending: int
    jobs_completed: int
    jobs_failed: int
    jobs: List[JobResponse] = Field(default_factory=list)

    @classmethod
    def from_snapshots(
        cls, order: OrderSnapshot, jobs: Sequence[JobSnapshot]
    ) -> FulfillmentStatusResponse:
        return cls(
            order=OrderResponse.model_validate(order),
            settled=order.is_settled,
            notified=order.is_notified,
            jobs_total=len(jobs),
            jobs_pending=sum(1 for job in jobs if job.status is JobStatus.GENERATING),
            jobs_completed=sum(1 for job in jobs if job.status is JobStatus.COMPLETED),
            jobs_failed=sum(1 for job in jobs if job.status is JobStatus.FAILED),
            jobs=[JobResponse.model_validate(job) for job in jobs],
        )


class NotificationDispatchResponse(BaseModel):
    order_id: int
    kind: NotificationKind
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CallbackAckEntry(BaseModel):
    task_id: str
    decision: str
    job_id: Optional[int] = None


class CallbackAckResponse(BaseModel):
    received: bool = True
    results: List[CallbackAckEntry] = Field(default_factory=list)


class ProviderConfigResponse(BaseModel):
    base_url: str
    model: str
    api_key_configured: bool
    callback_url_configured: bool
    callback_url: Optional[str] = None


__all__ = [
    "CallbackAckEntry",
    "CallbackAckResponse",
    "FanOutResponse",
    "FulfillmentStatusResponse",
    "JobResponse",
    "NotificationDispatchResponse",
    "OrderCreateRequest",
    "OrderItemCreate",
    "OrderResponse",
    "ProviderConfigResponse",
    "TaskResponse",
]

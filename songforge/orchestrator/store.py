"""Persistence and state-transition operations for orders and generation jobs.

Every transition that can race (terminalizing a job, recording a task result,
claiming an order's settlement) is a conditional ``UPDATE`` keyed on the prior
state; the caller learns whether it won from the affected row count.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from songforge.db import SessionFactory, run_session
from songforge.models import (
    FailureReason,
    GenerationJob,
    GenerationTask,
    JobStatus,
    Order,
    OrderItem,
    OrderStatus,
    SubmissionMode,
    TaskState,
)
from songforge.orchestrator.errors import (
    DuplicateOrderError,
    EmptyOrderError,
    FanOutConflictError,
    JobNotFoundError,
    NotificationNotAllowedError,
    OrderNotFoundError,
)
from songforge.orchestrator.models import (
    DispatchResult,
    JobOutcome,
    JobSnapshot,
    NewOrderItem,
    OrderItemSnapshot,
    OrderSnapshot,
    SubmissionResult,
    TaskSnapshot,
    TaskStatus,
)
from songforge.utils.time import naive_utc

TitleResolver = Callable[[OrderItemSnapshot], str]


def _order_snapshot(record: Order) -> OrderSnapshot:
    return OrderSnapshot(
        id=int(record.id),
        customer_id=str(record.customer_id),
        customer_email=record.customer_email,
        payment_reference=str(record.payment_reference),
        total_amount=Decimal(record.total_amount),
        status=OrderStatus(record.status),
        notification_claimed=bool(record.notification_claimed),
        settled_at=record.settled_at,
        notified_at=record.notified_at,
        notification_message_id=record.notification_message_id,
        notification_error=record.notification_error,
        notification_attempts=int(record.notification_attempts or 0),
        created_at=record.created_at,
    )


def _item_snapshot(record: OrderItem) -> OrderItemSnapshot:
    return OrderItemSnapshot(
        id=int(record.id),
        order_id=int(record.order_id),
        lyrics=str(record.lyrics),
        style_tags=tuple(str(tag) for tag in (record.style_tags or ())),
        dedication=record.dedication,
        price=Decimal(record.price),
    )


def _task_snapshot(record: GenerationTask) -> TaskSnapshot:
    return TaskSnapshot(
        task_id=str(record.task_id),
        position=int(record.position),
        state=TaskState(record.state),
        audio_url=record.audio_url,
        image_url=record.image_url,
        error_detail=record.error_detail,
    )


def _job_snapshot(record: GenerationJob, tasks: Sequence[GenerationTask] = ()) -> JobSnapshot:
    return JobSnapshot(
        id=int(record.id),
        order_id=int(record.order_id),
        order_item_id=int(record.order_item_id),
        title=str(record.title),
        status=JobStatus(record.status),
        mode=SubmissionMode(record.mode) if record.mode else None,
        audio_url=record.audio_url,
        image_url=record.image_url,
        failure_reason=FailureReason(record.failure_reason) if record.failure_reason else None,
        error_detail=record.error_detail,
        created_at=record.created_at,
        updated_at=record.updated_at,
        submitted_at=record.submitted_at,
        completed_at=record.completed_at,
        tasks=tuple(_task_snapshot(task) for task in tasks),
    )


def _load_job(session: Session, job_id: int) -> JobSnapshot | None:
    record = session.get(GenerationJob, job_id)
    if record is None:
        return None
    tasks = (
        session.execute(
            select(GenerationTask)
            .where(GenerationTask.job_id == job_id)
            .order_by(GenerationTask.position)
        )
        .scalars()
        .all()
    )
    return _job_snapshot(record, tasks)


def _load_jobs(session: Session, *conditions: Any) -> list[JobSnapshot]:
    records = (
        session.execute(select(GenerationJob).where(*conditions).order_by(GenerationJob.id))
        .scalars()
        .all()
    )
    if not records:
        return []
    job_ids = [record.id for record in records]
    tasks_by_job: dict[int, list[GenerationTask]] = {job_id: [] for job_id in job_ids}
    for task in (
        session.execute(
            select(GenerationTask)
            .where(GenerationTask.job_id.in_(job_ids))
            .order_by(GenerationTask.job_id, GenerationTask.position)
        )
        .scalars()
        .all()
    ):
        tasks_by_job[int(task.job_id)].append(task)
    return [_job_snapshot(record, tasks_by_job[int(record.id)]) for record in records]


def _require_order(session: Session, order_id: int) -> Order:
    record = session.get(Order, order_id)
    if record is None:
        raise OrderNotFoundError(order_id)
    return record


class GenerationStore:
    """Async facade over the order and job tables.

    Calls run in a worker thread through :func:`songforge.db.run_session`; each
    public method is one transaction.
    """

    def __init__(self, *, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory

    async def _run(self, func: Callable[[Session], Any]) -> Any:
        return await run_session(func, factory=self._session_factory)

    # Orders -----------------------------------------------------------------

    async def create_order(
        self,
        *,
        customer_id: str,
        payment_reference: str,
        items: Sequence[NewOrderItem],
        customer_email: str | None = None,
        total_amount: Decimal | None = None,
    ) -> OrderSnapshot:
        """Persist a paid order together with its items."""

        total = (
            total_amount
            if total_amount is not None
            else sum((item.price for item in items), Decimal("0"))
        )

        def _create(session: Session) -> OrderSnapshot:
            order = Order(
                customer_id=customer_id,
                customer_email=customer_email,
                payment_reference=payment_reference,
                total_amount=total,
                status=OrderStatus.PROCESSING.value,
                notification_claimed=False,
                notification_attempts=0,
            )
            session.add(order)
            session.flush()
            for item in items:
                session.add(
                    OrderItem(
                        order_id=order.id,
                        lyrics=item.lyrics,
                        style_tags=list(item.style_tags),
                        dedication=item.dedication,
                        price=item.price,
                    )
                )
            session.flush()
            return _order_snapshot(order)

        try:
            return await self._run(_create)
        except IntegrityError as exc:
            raise DuplicateOrderError(payment_reference) from exc

    async def get_order(self, order_id: int) -> OrderSnapshot:
        def _get(session: Session) -> OrderSnapshot:
            return _order_snapshot(_require_order(session, order_id))

        return await self._run(_get)

    async def list_items(self, order_id: int) -> list[OrderItemSnapshot]:
        def _list(session: Session) -> list[OrderItemSnapshot]:
            _require_order(session, order_id)
            records = (
                session.execute(
                    select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
                )
                .scalars()
                .all()
            )
            return [_item_snapshot(record) for record in records]

        return await self._run(_list)

    async def claim_settlement(self, order_id: int, outcome: OrderStatus) -> datetime | None:
        """Mark the order settled if nobody has yet; return the settlement time on success.

        Only one caller per order ever gets a timestamp back. The claim is
        refused while any job of the order is still generating.
        """

        def _claim(session: Session) -> datetime | None:
            pending = session.execute(
                select(func.count(GenerationJob.id)).where(
                    GenerationJob.order_id == order_id,
                    GenerationJob.status == JobStatus.GENERATING.value,
                )
            ).scalar_one()
            if pending:
                return None
            settled_at = naive_utc()
            result = session.execute(
                update(Order)
                .where(Order.id == order_id, Order.notification_claimed.is_(False))
                .values(
                    notification_claimed=True,
                    status=outcome.value,
                    settled_at=settled_at,
                    notification_attempts=Order.notification_attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            return settled_at if result.rowcount == 1 else None

        return await self._run(_claim)

    async def claim_notification_retry(
        self, order_id: int, *, force: bool = False
    ) -> OrderSnapshot:
        """Reserve an out-of-band notification attempt for a settled order."""

        def _claim(session: Session) -> OrderSnapshot:
            order = _require_order(session, order_id)
            if not order.notification_claimed:
                raise NotificationNotAllowedError(order_id, "order is not settled yet")
            if order.notified_at is not None and not force:
                raise NotificationNotAllowedError(order_id, "customer was already notified")
            observed = int(order.notification_attempts or 0)
            result = session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.notification_attempts == observed,
                )
                .values(notification_attempts=observed + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotificationNotAllowedError(
                    order_id, "another notification attempt is in progress"
                )
            session.refresh(order)
            return _order_snapshot(order)

        return await self._run(_claim)

    async def record_notification(self, result: DispatchResult) -> OrderSnapshot:
        def _record(session: Session) -> OrderSnapshot:
            order = _require_order(session, result.order_id)
            if result.success:
                order.notified_at = naive_utc()
                order.notification_message_id = result.message_id
                order.notification_error = None
            else:
                order.notification_error = result.error or "notification failed"
            session.flush()
            return _order_snapshot(order)

        return await self._run(_record)

    async def list_unsettled_order_ids(self) -> list[int]:
        """Orders that have generation jobs but were never claimed as settled."""

        def _list(session: Session) -> list[int]:
            rows = session.execute(
                select(Order.id)
                .join(GenerationJob, GenerationJob.order_id == Order.id)
                .where(Order.notification_claimed.is_(False))
                .group_by(Order.id)
                .order_by(Order.id)
            ).scalars()
            return [int(row) for row in rows]

        return await self._run(_list)

    # Jobs -------------------------------------------------------------------

    async def create_jobs(
        self, order_id: int, *, title_for: TitleResolver
    ) -> list[tuple[OrderItemSnapshot, JobSnapshot]]:
        """Create one ``generating`` job per order item.

        Raises :class:`FanOutConflictError` when the order already has jobs, so
        a second fan-out can never double the cohort.
        """

        def _create(session: Session) -> list[tuple[OrderItemSnapshot, JobSnapshot]]:
            _require_order(session, order_id)
            existing = session.execute(
                select(func.count(GenerationJob.id)).where(GenerationJob.order_id == order_id)
            ).scalar_one()
            if existing:
                raise FanOutConflictError(order_id)
            items = [
                _item_snapshot(record)
                for record in session.execute(
                    select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
                )
                .scalars()
                .all()
            ]
            if not items:
                raise EmptyOrderError(order_id)
            records: list[tuple[OrderItemSnapshot, GenerationJob]] = []
            for item in items:
                record = GenerationJob(
                    order_id=order_id,
                    order_item_id=item.id,
                    title=title_for(item),
                    status=JobStatus.GENERATING.value,
                )
                session.add(record)
                records.append((item, record))
            session.flush()
            return [(item, _job_snapshot(record)) for item, record in records]

        try:
            return await self._run(_create)
        except IntegrityError as exc:
            raise FanOutConflictError(order_id) from exc

    async def attach_submission(
        self, job_id: int, submission: SubmissionResult
    ) -> JobSnapshot | None:
        """Fix the job's mode and record its provider tasks.

        The mode can only be set once; ``None`` means the job was already
        submitted or is no longer generating.
        """

        def _attach(session: Session) -> JobSnapshot | None:
            now = naive_utc()
            result = session.execute(
                update(GenerationJob)
                .where(
                    GenerationJob.id == job_id,
                    GenerationJob.mode.is_(None),
                    GenerationJob.status == JobStatus.GENERATING.value,
                )
                .values(mode=submission.mode.value, submitted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            for position, task_id in enumerate(submission.task_ids):
                session.add(
                    GenerationTask(
                        job_id=job_id,
                        task_id=task_id,
                        position=position,
                        state=TaskState.PENDING.value,
                    )
                )
            session.flush()
            return _load_job(session, job_id)

        return await self._run(_attach)

    async def get_job(self, job_id: int) -> JobSnapshot:
        def _get(session: Session) -> JobSnapshot:
            job = _load_job(session, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job

        return await self._run(_get)

    async def get_job_by_task_id(self, task_id: str) -> JobSnapshot | None:
        def _get(session: Session) -> JobSnapshot | None:
            job_id = session.execute(
                select(GenerationTask.job_id).where(GenerationTask.task_id == task_id)
            ).scalar_one_or_none()
            if job_id is None:
                return None
            return _load_job(session, int(job_id))

        return await self._run(_get)

    async def list_jobs(self, order_id: int) -> list[JobSnapshot]:
        def _list(session: Session) -> list[JobSnapshot]:
            return _load_jobs(session, GenerationJob.order_id == order_id)

        return await self._run(_list)

    async def list_active_jobs(self) -> list[JobSnapshot]:
        """All jobs still ``generating``, across orders."""

        def _list(session: Session) -> list[JobSnapshot]:
            return _load_jobs(session, GenerationJob.status == JobStatus.GENERATING.value)

        return await self._run(_list)

    async def record_task_state(self, status: TaskStatus) -> bool:
        """Store a terminal task result; later reports for the same task are ignored."""

        if not status.is_terminal:
            return False

        def _record(session: Session) -> bool:
            result = session.execute(
                update(GenerationTask)
                .where(
                    GenerationTask.task_id == status.task_id,
                    GenerationTask.state == TaskState.PENDING.value,
                )
                .values(
                    state=status.state.value,
                    audio_url=status.audio_url,
                    image_url=status.image_url,
                    error_detail=status.error,
                    updated_at=naive_utc(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return await self._run(_record)

    async def list_tasks(self, job_id: int) -> list[TaskSnapshot]:
        def _list(session: Session) -> list[TaskSnapshot]:
            records = (
                session.execute(
                    select(GenerationTask)
                    .where(GenerationTask.job_id == job_id)
                    .order_by(GenerationTask.position)
                )
                .scalars()
                .all()
            )
            return [_task_snapshot(record) for record in records]

        return await self._run(_list)

    async def terminalize(self, job_id: int, outcome: JobOutcome) -> JobSnapshot | None:
        """Move a generating job into ``outcome``; ``None`` if it was already terminal."""

        def _terminalize(session: Session) -> JobSnapshot | None:
            now = naive_utc()
            result = session.execute(
                update(GenerationJob)
                .where(
                    GenerationJob.id == job_id,
                    GenerationJob.status == JobStatus.GENERATING.value,
                )
                .values(
                    status=outcome.status.value,
                    audio_url=outcome.audio_url,
                    image_url=outcome.image_url,
                    failure_reason=outcome.reason.value if outcome.reason else None,
                    error_detail=outcome.detail,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return _load_job(session, job_id)

        return await self._run(_terminalize)


__all__ = ["GenerationStore", "TitleResolver"]

"""Per-order fan-out, settlement detection and notification hand-off."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

from songforge.logging import get_logger
from songforge.logging_events import log_event
from songforge.models import FailureReason, SubmissionMode
from songforge.orchestrator.contracts import GenerationProvider
from songforge.orchestrator.errors import NotificationNotAllowedError
from songforge.orchestrator.models import (
    DispatchResult,
    FanOutResult,
    GenerationRequest,
    JobOutcome,
    JobSnapshot,
    NotificationKind,
    OrderItemSnapshot,
    OrderSnapshot,
    SettlementSummary,
    classify_outcome,
)
from songforge.orchestrator.notifier import Notifier
from songforge.orchestrator.store import GenerationStore
from songforge.orchestrator.waiter import CompletionWaiter
from songforge.utils.metrics import counter, histogram
from songforge.utils.time import naive_utc

logger = get_logger(__name__)

NOTIFICATION_INTERRUPTED = "interrupted by shutdown"


def _jobs_submitted(mode: str) -> None:
    counter(
        "songforge_jobs_submitted_total",
        "Generation jobs accepted by the provider, by completion mode.",
        label_names=("mode",),
    ).labels(mode=mode).inc()


def _jobs_terminal(job: JobSnapshot) -> None:
    reason = job.failure_reason.value if job.failure_reason else "none"
    counter(
        "songforge_jobs_terminal_total",
        "Generation jobs that reached a terminal state.",
        label_names=("status", "reason"),
    ).labels(status=job.status.value, reason=reason).inc()
    if job.completed_at is not None:
        histogram(
            "songforge_job_wait_seconds",
            "Seconds from job creation to its terminal state.",
        ).observe(max(0.0, (job.completed_at - job.created_at).total_seconds()))


class OrderAggregator:
    """Drive every job of an order to a terminal state and notify exactly once.

    Jobs are completed by whichever channel reports first: a per-job polling
    waiter, a provider webhook or the webhook watchdog. Each terminalization
    calls :meth:`check_settlement`, which only lets one caller claim the order.
    """

    def __init__(
        self,
        *,
        store: GenerationStore,
        provider: GenerationProvider,
        waiter: CompletionWaiter,
        notifier: Notifier,
        default_style: str = "pop",
        default_title: str = "Personalized Song",
        webhook_grace_seconds: float = 0.0,
        shutdown_grace_seconds: float = 10.0,
    ) -> None:
        self._store = store
        self._provider = provider
        self._waiter = waiter
        self._notifier = notifier
        self._default_style = default_style
        self._default_title = default_title
        self._webhook_grace = max(0.0, float(webhook_grace_seconds))
        self._shutdown_grace = max(0.0, float(shutdown_grace_seconds))
        self._tasks: set[asyncio.Task[Any]] = set()
        self._notification_tasks: set[asyncio.Task[Any]] = set()
        self._dispatching: set[int] = set()
        self._closing = False

    # Fan-out ----------------------------------------------------------------

    async def fan_out(self, order_id: int) -> FanOutResult:
        """Create one job per order item and submit them all concurrently."""

        if self._closing:
            raise RuntimeError("aggregator is shutting down")
        pairs = await self._store.create_jobs(order_id, title_for=self._title_for)
        log_event(
            logger,
            "orchestrator.fan_out",
            component="orchestrator.aggregator",
            entity_id=str(order_id),
            status="started",
            jobs=len(pairs),
        )
        jobs = await asyncio.gather(*(self._submit(item, job) for item, job in pairs))

        webhook_ids: list[int] = []
        polling_ids: list[int] = []
        failed_ids: list[int] = []
        for job in jobs:
            if job.mode is None:
                failed_ids.append(job.id)
            elif job.mode is SubmissionMode.WEBHOOK:
                webhook_ids.append(job.id)
            else:
                polling_ids.append(job.id)
        return FanOutResult(
            order_id=order_id,
            jobs=tuple(jobs),
            webhook_job_ids=tuple(webhook_ids),
            polling_job_ids=tuple(polling_ids),
            failed_job_ids=tuple(failed_ids),
        )

    def _title_for(self, item: OrderItemSnapshot) -> str:
        if item.dedication and item.dedication.strip():
            return item.dedication.strip()
        return self._default_title

    async def _submit(self, item: OrderItemSnapshot, job: JobSnapshot) -> JobSnapshot:
        request = GenerationRequest(
            job_id=job.id,
            order_id=job.order_id,
            order_item_id=item.id,
            lyrics=item.lyrics,
            style=item.style_tags[0] if item.style_tags else self._default_style,
            title=job.title,
        )
        try:
            submission = await self._provider.submit(request)
            attached = await self._store.attach_submission(job.id, submission)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                logger,
                "orchestrator.submit_failed",
                level=logging.WARNING,
                component="orchestrator.aggregator",
                entity_id=str(job.id),
                status="failed",
                order_id=job.order_id,
                error=f"{type(exc).__name__}: {exc}",
            )
            outcome = JobOutcome.failed(
                FailureReason.SUBMISSION_ERROR, str(exc) or type(exc).__name__
            )
            terminal = await self.record_outcome(job.id, outcome)
            return terminal if terminal is not None else await self._store.get_job(job.id)

        if attached is None:
            return await self._store.get_job(job.id)

        mode = attached.mode or SubmissionMode.POLLING
        _jobs_submitted(mode.value)
        log_event(
            logger,
            "orchestrator.job_submitted",
            component="orchestrator.aggregator",
            entity_id=str(attached.id),
            status="generating",
            order_id=attached.order_id,
            mode=mode.value,
            tasks=len(attached.tasks),
        )
        self._track(attached)
        return attached

    def _track(self, job: JobSnapshot, *, budget_seconds: float | None = None) -> None:
        if job.mode is SubmissionMode.POLLING:
            self._spawn(
                self._run_waiter(job, budget_seconds=budget_seconds),
                name=f"songforge-wait-{job.id}",
            )
        elif job.mode is SubmissionMode.WEBHOOK and self._webhook_grace > 0:
            delay = self._webhook_grace if budget_seconds is None else budget_seconds
            self._spawn(self._watch_webhook(job, delay), name=f"songforge-watch-{job.id}")

    async def _run_waiter(self, job: JobSnapshot, *, budget_seconds: float | None = None) -> None:
        try:
            outcome = await self._waiter.wait(job, budget_seconds=budget_seconds)
        except Exception as exc:
            outcome = self._tracking_failed(job, exc)
        if outcome is not None:
            await self.record_outcome(job.id, outcome)

    async def _watch_webhook(self, job: JobSnapshot, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))
        try:
            current = await self._store.get_job(job.id)
            if current.is_terminal:
                return
            outcome = await self._waiter.check_once(current)
        except Exception as exc:
            outcome = self._tracking_failed(job, exc)
        if outcome is None:
            outcome = JobOutcome.failed(
                FailureReason.TIMEOUT,
                f"no provider callback within {self._webhook_grace:g}s",
            )
        await self.record_outcome(job.id, outcome)

    def _tracking_failed(self, job: JobSnapshot, exc: Exception) -> JobOutcome:
        # A job must never stay generating without a tracker.
        logger.exception(
            "Completion tracking failed",
            extra={"event": "orchestrator.tracking_failed", "job_id": job.id},
        )
        return JobOutcome.failed(
            FailureReason.TIMEOUT,
            f"completion tracking failed: {type(exc).__name__}: {exc}",
        )

    # Transitions ------------------------------------------------------------

    async def record_outcome(self, job_id: int, outcome: JobOutcome) -> JobSnapshot | None:
        """Terminalize a job and re-check its order; ``None`` if the job was already terminal."""

        job = await self._store.terminalize(job_id, outcome)
        if job is None:
            log_event(
                logger,
                "orchestrator.job_terminal_ignored",
                level=logging.DEBUG,
                component="orchestrator.aggregator",
                entity_id=str(job_id),
                status=outcome.status.value,
            )
            return None

        _jobs_terminal(job)
        log_event(
            logger,
            "orchestrator.job_terminal",
            level=logging.INFO if outcome.reason is None else logging.WARNING,
            component="orchestrator.aggregator",
            entity_id=str(job.id),
            status=job.status.value,
            order_id=job.order_id,
            reason=outcome.reason.value if outcome.reason else None,
            detail=outcome.detail,
        )
        await self.check_settlement(job.order_id)
        return job

    async def check_settlement(self, order_id: int) -> SettlementSummary | None:
        """Claim the order if all of its jobs are terminal.

        Safe to call any number of times from any path; the notification is
        scheduled only by the caller whose claim succeeds.
        """

        jobs = await self._store.list_jobs(order_id)
        if not jobs or not all(job.is_terminal for job in jobs):
            return None
        outcome = classify_outcome(jobs)
        settled_at = await self._store.claim_settlement(order_id, outcome)
        if settled_at is None:
            return None

        counter(
            "songforge_settlements_total",
            "Orders settled, by outcome.",
            label_names=("outcome",),
        ).labels(outcome=outcome.value).inc()
        log_event(
            logger,
            "orchestrator.order_settled",
            component="orchestrator.aggregator",
            entity_id=str(order_id),
            status=outcome.value,
            jobs=len(jobs),
            completed=sum(1 for job in jobs if job.has_artifact),
        )
        # Delivery runs in the background so webhook acks never wait on email.
        self._dispatching.add(order_id)
        task = self._spawn(self._dispatch(order_id, jobs), name=f"songforge-notify-{order_id}")
        self._notification_tasks.add(task)
        task.add_done_callback(self._notification_tasks.discard)
        return SettlementSummary(
            order_id=order_id,
            outcome=outcome,
            jobs=tuple(jobs),
            settled_at=settled_at,
        )

    # Notification -----------------------------------------------------------

    async def _dispatch(
        self,
        order_id: int,
        jobs: list[JobSnapshot],
        *,
        order: OrderSnapshot | None = None,
    ) -> DispatchResult:
        try:
            try:
                current = order if order is not None else await self._store.get_order(order_id)
                result = await self._notifier.notify(current, jobs)
            except asyncio.CancelledError:
                await self._record_interrupted(order_id, jobs)
                raise
            await self._store.record_notification(result)
            return result
        finally:
            self._dispatching.discard(order_id)

    async def _record_interrupted(self, order_id: int, jobs: list[JobSnapshot]) -> None:
        # Delivery state is unknown; the error marks the order for an operator resend.
        kind = (
            NotificationKind.READY
            if any(job.has_artifact for job in jobs)
            else NotificationKind.GENERATION_FAILED
        )
        log_event(
            logger,
            "orchestrator.notification_interrupted",
            level=logging.WARNING,
            component="orchestrator.aggregator",
            entity_id=str(order_id),
            status="interrupted",
            kind=kind.value,
        )
        await self._store.record_notification(
            DispatchResult(
                order_id=order_id,
                kind=kind,
                success=False,
                error=NOTIFICATION_INTERRUPTED,
            )
        )

    async def resend_notification(self, order_id: int, *, force: bool = False) -> DispatchResult:
        """Dispatch the result message again without touching generation."""

        if order_id in self._dispatching:
            raise NotificationNotAllowedError(order_id, "a notification is being sent")
        self._dispatching.add(order_id)
        try:
            order = await self._store.claim_notification_retry(order_id, force=force)
            jobs = await self._store.list_jobs(order_id)
        except BaseException:
            self._dispatching.discard(order_id)
            raise
        log_event(
            logger,
            "orchestrator.notification_resend",
            component="orchestrator.aggregator",
            entity_id=str(order_id),
            status="requested",
            force=force,
            attempt=order.notification_attempts,
        )
        return await self._dispatch(order_id, jobs, order=order)

    # Lifecycle --------------------------------------------------------------

    async def resume_pending(self) -> int:
        """Re-attach completion tracking to jobs left open by a previous process."""

        resumed = 0
        now = naive_utc()
        for job in await self._store.list_active_jobs():
            if job.mode is None:
                await self.record_outcome(
                    job.id,
                    JobOutcome.failed(
                        FailureReason.SUBMISSION_ERROR,
                        "interrupted before the submission was recorded",
                    ),
                )
                continue
            started = job.submitted_at or job.created_at
            elapsed = max(0.0, (now - started).total_seconds())
            if job.mode is SubmissionMode.POLLING:
                remaining = self._waiter.wait_budget_seconds - elapsed
            elif self._webhook_grace > 0:
                remaining = self._webhook_grace - elapsed
            else:
                continue
            self._track(job, budget_seconds=max(0.0, remaining))
            resumed += 1

        for order_id in await self._store.list_unsettled_order_ids():
            await self.check_settlement(order_id)

        log_event(
            logger,
            "orchestrator.resume",
            component="orchestrator.aggregator",
            status="resumed",
            jobs=resumed,
        )
        return resumed

    async def join(self) -> None:
        """Wait until every background waiter, watchdog and dispatch has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def flush_notifications(self) -> None:
        """Wait for notification dispatches that are already scheduled."""

        while self._notification_tasks:
            await asyncio.gather(*list(self._notification_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop completion tracking, then give in-flight notifications a bounded drain.

        Waiters and watchdogs are cancelled first; jobs they leave open are
        resumed on the next start. Dispatches still sending after the grace
        period are cancelled and recorded as interrupted.
        """

        self._closing = True
        trackers = [task for task in self._tasks if task not in self._notification_tasks]
        for task in trackers:
            task.cancel()
        await asyncio.gather(*trackers, return_exceptions=True)

        pending = list(self._notification_tasks)
        if pending:
            _, still_sending = await asyncio.wait(pending, timeout=self._shutdown_grace)
            for task in still_sending:
                task.cancel()
            await asyncio.gather(*still_sending, return_exceptions=True)
        self._tasks.clear()

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Background orchestration task failed",
                exc_info=error,
                extra={"event": "orchestrator.task_failed", "task": task.get_name()},
            )


__all__ = ["OrderAggregator"]

"""Bounded polling of provider status for jobs without a push channel."""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from songforge.logging import get_logger
from songforge.logging_events import log_event
from songforge.models import FailureReason
from songforge.orchestrator.contracts import GenerationProvider
from songforge.orchestrator.models import (
    JobOutcome,
    JobSnapshot,
    TaskStatus,
    resolve_job_outcome,
)
from songforge.orchestrator.store import GenerationStore

logger = get_logger(__name__)


class CompletionWaiter:
    """Poll a job's provider tasks until they settle or the wait budget runs out.

    The waiter only decides the outcome; recording it (and re-checking the
    order) is left to the aggregator so both completion channels share one
    transition path.
    """

    def __init__(
        self,
        *,
        provider: GenerationProvider,
        store: GenerationStore,
        poll_interval_seconds: float,
        wait_budget_seconds: float,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if wait_budget_seconds <= 0:
            raise ValueError("wait_budget_seconds must be positive")
        self._provider = provider
        self._store = store
        self._poll_interval = float(poll_interval_seconds)
        self._wait_budget = float(wait_budget_seconds)

    @property
    def wait_budget_seconds(self) -> float:
        return self._wait_budget

    async def wait(
        self, job: JobSnapshot, *, budget_seconds: float | None = None
    ) -> JobOutcome | None:
        """Return the job's outcome, or ``None`` if another path already terminalized it."""

        budget = self._wait_budget if budget_seconds is None else max(0.0, budget_seconds)
        try:
            return await asyncio.wait_for(self._poll_until_settled(job.id), timeout=budget)
        except asyncio.TimeoutError:
            # The last poll may have stored results just before the deadline.
            outcome = resolve_job_outcome(await self._store.list_tasks(job.id))
            if outcome is not None:
                return outcome
            log_event(
                logger,
                "waiter.timeout",
                level=logging.WARNING,
                component="orchestrator.waiter",
                entity_id=str(job.id),
                status="timeout",
                order_id=job.order_id,
                budget_seconds=budget,
            )
            return JobOutcome.failed(
                FailureReason.TIMEOUT,
                f"no terminal status within {budget:g}s",
            )

    async def check_once(self, job: JobSnapshot) -> JobOutcome | None:
        """Run a single status pass; ``None`` when the job is still open."""

        current = await self._store.get_job(job.id)
        if current.is_terminal:
            return None
        return await self._poll_pending(current)

    async def _poll_until_settled(self, job_id: int) -> JobOutcome | None:
        while True:
            try:
                job = await self._store.get_job(job_id)
                if job.is_terminal:
                    return None
                outcome = await self._poll_pending(job)
            except SQLAlchemyError as exc:
                # Store errors are retried on the next pass until the budget expires.
                log_event(
                    logger,
                    "waiter.store_error",
                    level=logging.WARNING,
                    component="orchestrator.waiter",
                    entity_id=str(job_id),
                    status="error",
                    error=f"{type(exc).__name__}: {exc}",
                )
            else:
                if outcome is not None:
                    return outcome
            await asyncio.sleep(self._poll_interval)

    async def _poll_pending(self, job: JobSnapshot) -> JobOutcome | None:
        pending = [task.task_id for task in job.tasks if not task.state.is_terminal]
        if pending:
            results = await asyncio.gather(
                *(self._provider.get_status(task_id) for task_id in pending),
                return_exceptions=True,
            )
            for task_id, result in zip(pending, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    # Transient provider errors keep the job open until the budget expires.
                    log_event(
                        logger,
                        "waiter.poll_error",
                        level=logging.WARNING,
                        component="orchestrator.waiter",
                        entity_id=str(job.id),
                        status="error",
                        task_id=task_id,
                        error=f"{type(result).__name__}: {result}",
                    )
                    continue
                await self._record(result)
        return resolve_job_outcome(await self._store.list_tasks(job.id))

    async def _record(self, status: TaskStatus) -> None:
        if status.is_terminal:
            await self._store.record_task_state(status)


__all__ = ["CompletionWaiter"]

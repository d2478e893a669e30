"""Inbound provider callbacks: record task results and re-check settlement."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any

from songforge.integrations.provider_client import parse_callback
from songforge.logging import get_logger
from songforge.logging_events import log_event
from songforge.orchestrator.aggregator import OrderAggregator
from songforge.orchestrator.models import TaskStatus, resolve_job_outcome
from songforge.orchestrator.store import GenerationStore

logger = get_logger(__name__)


class IngestDecision(str, Enum):
    UNKNOWN_TASK = "unknown_task"
    INTERMEDIATE = "intermediate"
    ALREADY_TERMINAL = "already_terminal"
    DUPLICATE = "duplicate"
    RECORDED = "recorded"
    TERMINALIZED = "terminalized"


@dataclass(slots=True, frozen=True)
class IngestAck:
    task_id: str
    decision: IngestDecision
    job_id: int | None = None


class WebhookIngest:
    """Apply provider callbacks to the job store.

    Only database work happens on the request path; the notification that a
    settlement may trigger is scheduled in the background by the aggregator.
    """

    def __init__(self, *, store: GenerationStore, aggregator: OrderAggregator) -> None:
        self._store = store
        self._aggregator = aggregator

    async def handle(self, payload: Any) -> list[IngestAck]:
        """Parse ``payload`` and apply every task update it carries.

        Raises :class:`ProviderInvalidResponseError` for payloads that name no task.
        """

        return [await self.apply(status) for status in parse_callback(payload)]

    async def apply(self, status: TaskStatus) -> IngestAck:
        job = await self._store.get_job_by_task_id(status.task_id)
        if job is None:
            return self._ack(status, IngestDecision.UNKNOWN_TASK, level=logging.WARNING)
        if not status.is_terminal:
            return self._ack(status, IngestDecision.INTERMEDIATE, job_id=job.id)
        if job.is_terminal:
            return self._ack(status, IngestDecision.ALREADY_TERMINAL, job_id=job.id)

        if not await self._store.record_task_state(status):
            return self._ack(status, IngestDecision.DUPLICATE, job_id=job.id)

        outcome = resolve_job_outcome(await self._store.list_tasks(job.id))
        if outcome is None:
            return self._ack(status, IngestDecision.RECORDED, job_id=job.id)
        terminal = await self._aggregator.record_outcome(job.id, outcome)
        decision = IngestDecision.TERMINALIZED if terminal else IngestDecision.ALREADY_TERMINAL
        return self._ack(status, decision, job_id=job.id)

    @staticmethod
    def _ack(
        status: TaskStatus,
        decision: IngestDecision,
        *,
        job_id: int | None = None,
        level: int = logging.INFO,
    ) -> IngestAck:
        log_event(
            logger,
            "ingest.callback",
            level=level,
            component="orchestrator.ingest",
            entity_id=str(job_id) if job_id is not None else None,
            status=decision.value,
            task_id=status.task_id,
            task_state=status.state.value,
        )
        return IngestAck(task_id=status.task_id, decision=decision, job_id=job_id)


__all__ = ["IngestAck", "IngestDecision", "WebhookIngest"]

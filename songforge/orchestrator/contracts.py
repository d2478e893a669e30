"""Collaborator contracts consumed by the orchestrator."""

from __future__ import annotations

from typing import Protocol

from songforge.orchestrator.models import (
    GenerationRequest,
    NotificationMessage,
    SubmissionResult,
    TaskStatus,
    TransportResult,
)


class GenerationProvider(Protocol):
    """External song generation API."""

    async def submit(self, request: GenerationRequest) -> SubmissionResult:
        """Start a generation and return its task handles and completion mode."""

    async def get_status(self, task_id: str) -> TaskStatus:
        """Return the current state of a single provider task."""


class NotificationTransport(Protocol):
    """Delivery channel for customer result messages."""

    async def send(self, message: NotificationMessage) -> TransportResult:
        """Deliver ``message`` and report success or the delivery error."""


__all__ = ["GenerationProvider", "NotificationTransport"]

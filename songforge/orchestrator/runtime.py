"""Runtime helpers for wiring the generation orchestrator."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging

from songforge.config import AppConfig
from songforge.db import init_db
from songforge.integrations.email_transport import ResendEmailTransport
from songforge.integrations.provider_client import GenerationProviderClient
from songforge.logging import get_logger
from songforge.logging_events import log_event
from songforge.orchestrator.aggregator import OrderAggregator
from songforge.orchestrator.contracts import GenerationProvider, NotificationTransport
from songforge.orchestrator.ingest import WebhookIngest
from songforge.orchestrator.notifier import Notifier
from songforge.orchestrator.store import GenerationStore
from songforge.orchestrator.waiter import CompletionWaiter

logger = get_logger(__name__)


@dataclass(slots=True)
class OrchestratorRuntime:
    """Container for the orchestrator components of one process."""

    config: AppConfig
    store: GenerationStore
    provider: GenerationProvider
    waiter: CompletionWaiter
    notifier: Notifier
    aggregator: OrderAggregator
    ingest: WebhookIngest

    async def start(self) -> int:
        """Ensure the schema exists and resume jobs left open; returns jobs resumed."""

        await asyncio.to_thread(init_db)
        if self.config.generation.webhook_grace_seconds <= 0:
            log_event(
                logger,
                "orchestrator.webhook_watchdog_disabled",
                level=logging.WARNING,
                component="orchestrator.runtime",
                status="disabled",
                detail="webhook jobs without a callback stay generating",
            )
        if not self.config.resume_on_startup:
            return 0
        return await self.aggregator.resume_pending()

    async def shutdown(self) -> None:
        await self.aggregator.shutdown()


def build_runtime(
    config: AppConfig,
    *,
    provider: GenerationProvider | None = None,
    transport: NotificationTransport | None = None,
    store: GenerationStore | None = None,
) -> OrchestratorRuntime:
    """Initialise orchestrator components using the supplied configuration."""

    store = store or GenerationStore()
    provider = provider or GenerationProviderClient.from_config(config.provider)
    transport = transport or ResendEmailTransport.from_config(config.notifier)
    waiter = CompletionWaiter(
        provider=provider,
        store=store,
        poll_interval_seconds=config.generation.poll_interval_seconds,
        wait_budget_seconds=config.generation.wait_budget_seconds,
    )
    notifier = Notifier(transport)
    aggregator = OrderAggregator(
        store=store,
        provider=provider,
        waiter=waiter,
        notifier=notifier,
        default_style=config.provider.default_style,
        default_title=config.provider.default_title,
        webhook_grace_seconds=config.generation.webhook_grace_seconds,
    )
    return OrchestratorRuntime(
        config=config,
        store=store,
        provider=provider,
        waiter=waiter,
        notifier=notifier,
        aggregator=aggregator,
        ingest=WebhookIngest(store=store, aggregator=aggregator),
    )


__all__ = ["OrchestratorRuntime", "build_runtime"]

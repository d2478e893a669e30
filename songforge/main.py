"""FastAPI application exposing the song generation orchestrator."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from songforge import __version__
from songforge.config import AppConfig
from songforge.dependencies import get_app_config
from songforge.errors import setup_exception_handlers
from songforge.logging import configure_logging, get_logger
from songforge.logging_events import log_event
from songforge.orchestrator.contracts import GenerationProvider, NotificationTransport
from songforge.orchestrator.runtime import OrchestratorRuntime, build_runtime
from songforge.routers import metrics_router, orders_router, webhook_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime: OrchestratorRuntime = app.state.orchestrator_runtime
    configure_logging(runtime.config.logging.level)
    resumed = await runtime.start()
    log_event(
        logger,
        "app.started",
        component="app",
        status="started",
        resumed_jobs=resumed,
        webhook_enabled=runtime.config.provider.webhook_enabled,
    )
    try:
        yield
    finally:
        await runtime.shutdown()
        logger.info("SongForge application stopped")


def create_app(
    config: AppConfig | None = None,
    *,
    provider: GenerationProvider | None = None,
    transport: NotificationTransport | None = None,
) -> FastAPI:
    """Build the API with its orchestrator runtime attached to ``app.state``."""

    resolved = config or get_app_config()
    app = FastAPI(title="SongForge", version=__version__, lifespan=lifespan)
    app.state.orchestrator_runtime = build_runtime(
        resolved, provider=provider, transport=transport
    )
    setup_exception_handlers(app)
    app.include_router(orders_router)
    app.include_router(webhook_router)
    app.include_router(metrics_router)
    return app


app = create_app()


__all__ = ["app", "create_app", "lifespan"]

"""FastAPI dependency providers."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Request

from songforge.config import AppConfig, load_config
from songforge.errors import DependencyError
from songforge.orchestrator.aggregator import OrderAggregator
from songforge.orchestrator.ingest import WebhookIngest
from songforge.orchestrator.runtime import OrchestratorRuntime
from songforge.orchestrator.store import GenerationStore


@lru_cache
def get_app_config() -> AppConfig:
    return load_config()


def get_runtime(request: Request) -> OrchestratorRuntime:
    runtime = getattr(request.app.state, "orchestrator_runtime", None)
    if not isinstance(runtime, OrchestratorRuntime):
        raise DependencyError("Generation orchestrator is not available.")
    return runtime


def get_store(runtime: OrchestratorRuntime = Depends(get_runtime)) -> GenerationStore:
    return runtime.store


def get_aggregator(runtime: OrchestratorRuntime = Depends(get_runtime)) -> OrderAggregator:
    return runtime.aggregator


def get_ingest(runtime: OrchestratorRuntime = Depends(get_runtime)) -> WebhookIngest:
    return runtime.ingest


__all__ = [
    "get_aggregator",
    "get_app_config",
    "get_ingest",
    "get_runtime",
    "get_store",
]

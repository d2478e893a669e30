"""Inbound provider callbacks and the callback configuration check."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Request

from songforge.config import AppConfig
from songforge.dependencies import get_ingest, get_runtime
from songforge.errors import ValidationAppError
from songforge.integrations.provider_client import ProviderInvalidResponseError
from songforge.orchestrator.ingest import WebhookIngest
from songforge.orchestrator.runtime import OrchestratorRuntime
from songforge.schemas import CallbackAckEntry, CallbackAckResponse, ProviderConfigResponse

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/provider-callback", response_model=CallbackAckResponse)
async def provider_callback(
    request: Request,
    ingest: WebhookIngest = Depends(get_ingest),
) -> CallbackAckResponse:
    """Acknowledge a provider callback after recording it."""

    try:
        payload = json.loads(await request.body())
    except ValueError as exc:
        raise ValidationAppError("Callback body must be valid JSON.") from exc
    try:
        acks = await ingest.handle(payload)
    except ProviderInvalidResponseError as exc:
        raise ValidationAppError(str(exc)) from exc
    return CallbackAckResponse(
        results=[
            CallbackAckEntry(task_id=ack.task_id, decision=ack.decision.value, job_id=ack.job_id)
            for ack in acks
        ]
    )


@router.get("/provider-config", response_model=ProviderConfigResponse)
async def provider_config(
    runtime: OrchestratorRuntime = Depends(get_runtime),
) -> ProviderConfigResponse:
    """Report whether callbacks can be delivered, without exposing secrets."""

    config: AppConfig = runtime.config
    provider = config.provider
    return ProviderConfigResponse(
        base_url=provider.base_url,
        model=provider.model,
        api_key_configured=bool(provider.api_key),
        callback_url_configured=provider.webhook_enabled,
        callback_url=provider.callback_url,
    )


__all__ = ["router"]

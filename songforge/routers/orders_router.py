"""HTTP endpoints for paid orders, their fulfillment and notifications."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from songforge.dependencies import get_aggregator, get_store
from songforge.orchestrator.aggregator import OrderAggregator
from songforge.orchestrator.models import NewOrderItem
from songforge.orchestrator.store import GenerationStore
from songforge.schemas import (
    FanOutResponse,
    FulfillmentStatusResponse,
    JobResponse,
    NotificationDispatchResponse,
    OrderCreateRequest,
    OrderResponse,
)

router = APIRouter(tags=["Orders"])


@router.post("/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreateRequest,
    store: GenerationStore = Depends(get_store),
) -> OrderResponse:
    """Register an order whose payment has already been confirmed."""

    order = await store.create_order(
        customer_id=payload.customer_id,
        customer_email=payload.customer_email,
        payment_reference=payload.payment_reference,
        total_amount=payload.total_amount,
        items=[
            NewOrderItem(
                lyrics=item.lyrics,
                style_tags=tuple(item.style_tags),
                dedication=item.dedication,
                price=item.price,
            )
            for item in payload.items
        ],
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/fulfillment",
    response_model=FanOutResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_fulfillment(
    order_id: int,
    aggregator: OrderAggregator = Depends(get_aggregator),
) -> FanOutResponse:
    """Submit every item of the order for generation.

    Returns once all submissions were answered; completion continues in the
    background.
    """

    result = await aggregator.fan_out(order_id)
    return FanOutResponse.model_validate(result)


@router.get("/orders/{order_id}/fulfillment", response_model=FulfillmentStatusResponse)
async def get_fulfillment(
    order_id: int,
    store: GenerationStore = Depends(get_store),
) -> FulfillmentStatusResponse:
    order = await store.get_order(order_id)
    jobs = await store.list_jobs(order_id)
    return FulfillmentStatusResponse.from_snapshots(order, jobs)


@router.post("/orders/{order_id}/notification", response_model=NotificationDispatchResponse)
async def resend_notification(
    order_id: int,
    force: bool = Query(False, description="Send even if the customer was already notified."),
    aggregator: OrderAggregator = Depends(get_aggregator),
) -> NotificationDispatchResponse:
    result = await aggregator.resend_notification(order_id, force=force)
    return NotificationDispatchResponse.model_validate(result)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: int,
    store: GenerationStore = Depends(get_store),
) -> JobResponse:
    return JobResponse.model_validate(await store.get_job(job_id))


__all__ = ["router"]

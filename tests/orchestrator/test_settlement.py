from __future__ import annotations

import asyncio

import pytest

from songforge.models import FailureReason, JobStatus, OrderStatus, SubmissionMode
from songforge.orchestrator.models import JobOutcome, NotificationKind
from songforge.utils.metrics import sample_value
from tests.support.fakes import (
    FakeProvider,
    build_harness,
    complete_callback,
    create_paid_order,
    error_callback,
    settle,
    task_id_for,
)


@pytest.mark.asyncio
async def test_three_webhook_jobs_with_one_failure_notify_partial_once() -> None:
    harness = build_harness(provider=FakeProvider(mode=SubmissionMode.WEBHOOK))
    order, items = await create_paid_order(harness.store)
    result = await harness.aggregator.fan_out(order.id)
    assert len(result.webhook_job_ids) == 3

    await harness.ingest.handle(
        complete_callback(task_id_for(items[0].id), audio_url="https://cdn/1.mp3")
    )
    await harness.ingest.handle(
        complete_callback(task_id_for(items[1].id), audio_url="https://cdn/2.mp3")
    )
    assert (await harness.store.get_order(order.id)).is_settled is False

    await harness.ingest.handle(error_callback(task_id_for(items[2].id)))
    await settle(harness)

    settled = await harness.store.get_order(order.id)
    assert settled.status is OrderStatus.PARTIALLY_FULFILLED
    assert settled.is_notified
    assert settled.notification_message_id == "msg-1"
    assert len(harness.transport.messages) == 1
    message = harness.transport.messages[0]
    assert message.kind is NotificationKind.READY
    assert message.recipient == "customer@example.com"
    assert [job.audio_url for job in message.completed] == [
        "https://cdn/1.mp3",
        "https://cdn/2.mp3",
    ]
    assert [job.order_item_id for job in message.failed] == [items[2].id]
    assert harness.provider.status_calls == []


@pytest.mark.asyncio
async def test_last_two_jobs_terminalizing_together_notify_once() -> None:
    provider = FakeProvider(mode=SubmissionMode.WEBHOOK)
    provider.modes["song-3"] = SubmissionMode.POLLING
    harness = build_harness(provider=provider, poll_interval=0.01)
    order, items = await create_paid_order(harness.store)
    await harness.aggregator.fan_out(order.id)

    await harness.ingest.handle(
        complete_callback(task_id_for(items[0].id), audio_url="https://cdn/1.mp3")
    )
    # The poll for item 3 and the webhook for item 2 land in the same instant.
    provider.succeed(task_id_for(items[2].id))
    await harness.ingest.handle(
        complete_callback(task_id_for(items[1].id), audio_url="https://cdn/2.mp3")
    )
    await settle(harness)

    assert len(harness.transport.messages) == 1
    settled = await harness.store.get_order(order.id)
    assert settled.status is OrderStatus.FULFILLED
    assert settled.notification_attempts == 1
    assert sample_value("songforge_settlements_total", {"outcome": "fulfilled"}) == 1.0


@pytest.mark.asyncio
async def test_concurrent_outcomes_for_the_last_jobs_claim_once() -> None:
    harness = build_harness(provider=FakeProvider(mode=SubmissionMode.WEBHOOK))
    order, _ = await create_paid_order(harness.store)
    result = await harness.aggregator.fan_out(order.id)
    first, second, third = result.jobs

    await harness.aggregator.record_outcome(first.id, JobOutcome.completed("https://cdn/a.mp3"))
    await asyncio.gather(
        harness.aggregator.record_outcome(second.id, JobOutcome.completed("https://cdn/b.mp3")),
        harness.aggregator.record_outcome(
            third.id, JobOutcome.failed(FailureReason.PROVIDER_FAILURE, "boom")
        ),
        harness.aggregator.check_settlement(order.id),
        harness.aggregator.check_settlement(order.id),
    )
    await settle(harness)

    assert len(harness.transport.messages) == 1
    assert (await harness.store.get_order(order.id)).status is OrderStatus.PARTIALLY_FULFILLED


@pytest.mark.asyncio
async def test_repeated_settlement_checks_return_one_summary() -> None:
    harness = build_harness(provider=FakeProvider(mode=SubmissionMode.WEBHOOK))
    order, _ = await create_paid_order(harness.store, ("a", "b"))
    result = await harness.aggregator.fan_out(order.id)
    for job in result.jobs:
        # Bypass the aggregator so no settlement check runs yet.
        await harness.store.terminalize(job.id, JobOutcome.completed(f"https://cdn/{job.id}"))

    summaries = await asyncio.gather(
        *(harness.aggregator.check_settlement(order.id) for _ in range(5))
    )
    await settle(harness)

    claimed = [summary for summary in summaries if summary is not None]
    assert len(claimed) == 1
    assert claimed[0].outcome is OrderStatus.FULFILLED
    assert len(claimed[0].jobs) == 2
    assert len(harness.transport.messages) == 1


@pytest.mark.asyncio
async def test_settlement_is_not_checked_while_jobs_are_generating() -> None:
    harness = build_harness(provider=FakeProvider(mode=SubmissionMode.WEBHOOK))
    order, _ = await create_paid_order(harness.store, ("a", "b"))
    result = await harness.aggregator.fan_out(order.id)

    await harness.aggregator.record_outcome(
        result.jobs[0].id, JobOutcome.completed("https://cdn/a.mp3")
    )

    assert await harness.aggregator.check_settlement(order.id) is None
    order_state = await harness.store.get_order(order.id)
    assert order_state.status is OrderStatus.PROCESSING
    assert order_state.settled_at is None
    assert harness.transport.messages == []
    await harness.aggregator.shutdown()


@pytest.mark.asyncio
async def test_polling_job_past_budget_fails_the_order() -> None:
    harness = build_harness(wait_budget=0.1, poll_interval=0.02)
    order, _ = await create_paid_order(harness.store, ("never finishes",))

    await harness.aggregator.fan_out(order.id)
    await settle(harness)

    (job,) = await harness.store.list_jobs(order.id)
    assert job.status is JobStatus.FAILED
    assert job.failure_reason is FailureReason.TIMEOUT
    assert "0.1s" in (job.error_detail or "")
    settled = await harness.store.get_order(order.id)
    assert settled.status is OrderStatus.FAILED
    assert [message.kind for message in harness.transport.messages] == [
        NotificationKind.GENERATION_FAILED
    ]
    assert len(harness.provider.status_calls) >= 2


@pytest.mark.asyncio
async def test_timed_out_job_does_not_hold_back_its_siblings() -> None:
    harness = build_harness(wait_budget=0.3, poll_interval=0.01)
    order, items = await create_paid_order(harness.store, ("fast", "stuck"))
    harness.provider.succeed(task_id_for(items[0].id))

    await harness.aggregator.fan_out(order.id)
    await settle(harness)

    fast, stuck = await harness.store.list_jobs(order.id)
    assert fast.status is JobStatus.COMPLETED
    assert stuck.status is JobStatus.FAILED
    assert stuck.failure_reason is FailureReason.TIMEOUT
    assert fast.completed_at is not None and stuck.completed_at is not None
    assert fast.completed_at < stuck.completed_at
    assert (await harness.store.get_order(order.id)).status is OrderStatus.PARTIALLY_FULFILLED
    assert len(harness.transport.messages) == 1


@pytest.mark.asyncio
async def test_mixed_modes_notify_only_after_both_jobs_settle() -> None:
    provider = FakeProvider(mode=SubmissionMode.POLLING)
    provider.modes["pushed"] = SubmissionMode.WEBHOOK
    harness = build_harness(provider=provider)
    order, items = await create_paid_order(harness.store, ("pushed", "polled"))
    provider.succeed(task_id_for(items[1].id), audio_url="https://cdn/polled.mp3")

    await harness.aggregator.fan_out(order.id)
    await settle(harness)

    pushed, polled = await harness.store.list_jobs(order.id)
    assert polled.status is JobStatus.COMPLETED
    assert pushed.status is JobStatus.GENERATING
    assert harness.transport.messages == []
    assert not (await harness.store.get_order(order.id)).is_settled

    await harness.ingest.handle(
        complete_callback(task_id_for(items[0].id), audio_url="https://cdn/pushed.mp3")
    )
    await settle(harness)

    assert len(harness.transport.messages) == 1
    message = harness.transport.messages[0]
    assert sorted(job.audio_url for job in message.completed) == [
        "https://cdn/polled.mp3",
        "https://cdn/pushed.mp3",
    ]
    assert (await harness.store.get_order(order.id)).status is OrderStatus.FULFILLED


@pytest.mark.asyncio
async def test_webhook_watchdog_polls_once_then_times_out() -> None:
    harness = build_harness(
        provider=FakeProvider(mode=SubmissionMode.WEBHOOK),
        webhook_grace=0.05,
    )
    order, items = await create_paid_order(harness.store, ("recovered", "silent"))
    harness.provider.succeed(task_id_for(items[0].id), audio_url="https://cdn/late.mp3")

    await harness.aggregator.fan_out(order.id)
    await settle(harness)

    recovered, silent = await harness.store.list_jobs(order.id)
    assert recovered.status is JobStatus.COMPLETED
    assert recovered.audio_url == "https://cdn/late.mp3"
    assert silent.status is JobStatus.FAILED
    assert silent.failure_reason is FailureReason.TIMEOUT
    assert "callback" in (silent.error_detail or "")
    assert len(harness.transport.messages) == 1


@pytest.mark.asyncio
async def test_job_metrics_are_recorded_on_terminalization() -> None:
    harness = build_harness(provider=FakeProvider(mode=SubmissionMode.WEBHOOK))
    order, _ = await create_paid_order(harness.store, ("one",))
    result = await harness.aggregator.fan_out(order.id)

    await harness.aggregator.record_outcome(result.jobs[0].id, JobOutcome.completed("https://a"))
    await settle(harness)

    assert sample_value(
        "songforge_jobs_terminal_total", {"status": "completed", "reason": "none"}
    ) == 1.0
    assert sample_value("songforge_job_wait_seconds_count") == 1.0
    assert sample_value(
        "songforge_notifications_total", {"kind": "ready", "result": "sent"}
    ) == 1.0

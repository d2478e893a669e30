import json

import httpx
import pytest

from songforge.integrations.provider_client import (
    GenerationProviderClient,
    ProviderHTTPStatusError,
    ProviderInvalidResponseError,
    ProviderSubmissionError,
    extract_task_ids,
    normalise_state,
    parse_callback,
    parse_status_payload,
)
from songforge.models import SubmissionMode, TaskState
from songforge.orchestrator.models import GenerationRequest


def _request(**overrides: object) -> GenerationRequest:
    values = {
        "job_id": 11,
        "order_id": 3,
        "order_item_id": 5,
        "lyrics": "Happy birthday to you",
        "style": "acoustic",
        "title": "For Ana",
    }
    values.update(overrides)
    return GenerationRequest(**values)  # type: ignore[arg-type]


def _client(handler, **overrides: object) -> GenerationProviderClient:  # type: ignore[no-untyped-def]
    values = {
        "base_url": "http://provider/api/v1",
        "api_key": "secret",
        "callback_url": "https://songs.example.com/webhooks/provider-callback",
        "transport": httpx.MockTransport(handler),
        "max_attempts": 3,
        "backoff_base_ms": 1,
        "jitter_pct": 0,
    }
    values.update(overrides)
    return GenerationProviderClient(**values)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_submit_offers_callback_and_reports_webhook_mode() -> None:
    captured: dict[str, object] = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"code": 200, "msg": "success", "data": {"taskId": "t-1"}})

    result = await _client(_handler).submit(_request())

    assert result.task_ids == ("t-1",)
    assert result.mode is SubmissionMode.WEBHOOK
    assert captured["url"] == "http://provider/api/v1/generate"
    assert captured["auth"] == "Bearer secret"
    assert captured["body"] == {
        "prompt": "Happy birthday to you",
        "style": "acoustic",
        "title": "For Ana",
        "customMode": True,
        "instrumental": False,
        "model": "V3_5",
        "callBackUrl": "https://songs.example.com/webhooks/provider-callback",
    }


@pytest.mark.asyncio
async def test_submit_without_callback_url_polls() -> None:
    bodies: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"code": 200, "data": {"taskId": "t-2"}})

    result = await _client(_handler, callback_url=None).submit(_request(style="", title=""))

    assert result.mode is SubmissionMode.POLLING
    assert "callBackUrl" not in bodies[0]
    assert bodies[0]["style"] == "pop"
    assert bodies[0]["title"] == "Personalized Song"


@pytest.mark.asyncio
async def test_submit_respects_explicit_callback_refusal() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"ids": ["v-1", "v-2"], "callbackAccepted": False}
        )

    result = await _client(_handler).submit(_request())

    assert result.task_ids == ("v-1", "v-2")
    assert result.mode is SubmissionMode.POLLING


@pytest.mark.asyncio
async def test_submit_rejection_codes_raise_submission_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": 400, "msg": "lyrics contain banned words"})

    with pytest.raises(ProviderSubmissionError, match="banned words"):
        await _client(_handler).submit(_request())


@pytest.mark.asyncio
async def test_submit_without_api_key_never_calls_the_provider() -> None:
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(ProviderSubmissionError):
        await _client(_handler, api_key=None).submit(_request())
    assert calls == []


@pytest.mark.asyncio
async def test_submit_is_not_retried_on_server_errors() -> None:
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, text="maintenance")

    with pytest.raises(ProviderHTTPStatusError) as excinfo:
        await _client(_handler).submit(_request())

    assert excinfo.value.status_code == 503
    assert excinfo.value.retryable is True
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_submit_without_task_id_is_invalid() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": 200, "data": {}})

    with pytest.raises(ProviderInvalidResponseError):
        await _client(_handler).submit(_request())


@pytest.mark.asyncio
async def test_status_polls_are_retried_until_the_provider_answers() -> None:
    attempts: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.params["taskId"])
        if len(attempts) < 3:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(
            200,
            json={
                "code": 200,
                "data": {
                    "taskId": "t-9",
                    "status": "SUCCESS",
                    "response": {
                        "sunoData": [
                            {
                                "id": "c1",
                                "audioUrl": "https://cdn/c1.mp3",
                                "imageUrl": "https://cdn/c1.jpg",
                            },
                            {"id": "c2", "audioUrl": "https://cdn/c2.mp3"},
                        ]
                    },
                },
            },
        )

    status = await _client(_handler).get_status("t-9")

    assert attempts == ["t-9", "t-9", "t-9"]
    assert status.state is TaskState.SUCCEEDED
    assert status.audio_url == "https://cdn/c1.mp3"
    assert status.image_url == "https://cdn/c1.jpg"


@pytest.mark.asyncio
async def test_status_client_errors_are_not_retried() -> None:
    attempts: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(404, text="unknown task")

    with pytest.raises(ProviderHTTPStatusError) as excinfo:
        await _client(_handler).get_status("missing")

    assert excinfo.value.status_code == 404
    assert len(attempts) == 1


def test_status_payload_reports_failures_and_pending_states() -> None:
    failed = parse_status_payload(
        {"code": 200, "data": {"status": "GENERATE_AUDIO_FAILED", "errorMessage": "quota"}},
        task_id="t-1",
    )
    pending = parse_status_payload({"status": "FIRST_SUCCESS"}, task_id="t-2")

    assert failed.state is TaskState.FAILED
    assert failed.error == "quota"
    assert failed.task_id == "t-1"
    assert pending.state is TaskState.PENDING
    assert pending.audio_url is None
    with pytest.raises(ProviderInvalidResponseError):
        parse_status_payload("nope", task_id="t-3")


def test_callback_envelopes_are_normalised() -> None:
    (complete,) = parse_callback(
        {
            "code": 200,
            "msg": "All generated successfully.",
            "data": {
                "callbackType": "complete",
                "task_id": "t-1",
                "data": [
                    {"id": "a", "audio_url": "https://cdn/a.mp3", "image_url": "https://cdn/a.jpg"}
                ],
            },
        }
    )
    (failed,) = parse_callback(
        {"code": 531, "msg": "Generation failed", "data": {"callbackType": "error", "task_id": "t-2"}}
    )
    (partial,) = parse_callback({"code": 200, "data": {"callbackType": "first", "task_id": "t-3"}})
    (flat,) = parse_callback({"taskId": "t-4", "state": "failed", "error": "timeout upstream"})

    assert (complete.state, complete.audio_url, complete.image_url) == (
        TaskState.SUCCEEDED,
        "https://cdn/a.mp3",
        "https://cdn/a.jpg",
    )
    assert (failed.state, failed.error) == (TaskState.FAILED, "Generation failed")
    assert partial.state is TaskState.PENDING
    assert (flat.task_id, flat.state, flat.error) == ("t-4", TaskState.FAILED, "timeout upstream")


def test_callback_without_task_id_is_invalid() -> None:
    with pytest.raises(ProviderInvalidResponseError):
        parse_callback({"state": "SUCCESS"})
    with pytest.raises(ProviderInvalidResponseError):
        parse_callback("not-json-object")


def test_task_id_extraction_accepts_known_shapes() -> None:
    assert extract_task_ids({"data": {"taskId": "a"}}) == ("a",)
    assert extract_task_ids({"data": [{"id": "b"}, {"id": "c"}]}) == ("b", "c")
    assert extract_task_ids([{"id": "d"}]) == ("d",)
    assert extract_task_ids({"clips": [{"id": "e"}]}) == ("e",)
    assert extract_task_ids({"data": None}) == ()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("SUCCESS", TaskState.SUCCEEDED),
        ("complete", TaskState.SUCCEEDED),
        ("CREATE_TASK_FAILED", TaskState.FAILED),
        ("callback exception", TaskState.FAILED),
        ("TEXT_SUCCESS", TaskState.PENDING),
        ("PENDING", TaskState.PENDING),
        ("", TaskState.PENDING),
    ],
)
def test_normalise_state(raw: str, expected: TaskState) -> None:
    assert normalise_state(raw) is expected

"""Async HTTP client for the song generation provider API."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from songforge.config import ProviderConfig
from songforge.logging import get_logger
from songforge.logging_events import log_event
from songforge.models import SubmissionMode, TaskState
from songforge.orchestrator.models import GenerationRequest, SubmissionResult, TaskStatus
from songforge.utils.retry import RetryDirective, with_retry

logger = get_logger(__name__)

_SUCCESS_STATES = frozenset({"SUCCESS", "COMPLETE", "COMPLETED", "SUCCEEDED", "DONE"})
_FAILURE_STATES = frozenset(
    {
        "FAILED",
        "ERROR",
        "CREATE_TASK_FAILED",
        "GENERATE_AUDIO_FAILED",
        "CALLBACK_EXCEPTION",
        "SENSITIVE_WORD_ERROR",
    }
)
_INTERMEDIATE_CALLBACKS = frozenset({"text", "first"})


class ProviderClientError(RuntimeError):
    """Base exception raised for provider client failures."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ProviderTimeoutError(ProviderClientError):
    def __init__(self, message: str = "provider request timed out") -> None:
        super().__init__(message, retryable=True)


class ProviderInvalidResponseError(ProviderClientError):
    """Raised when a provider payload cannot be understood."""


class ProviderSubmissionError(ProviderClientError):
    """Raised when the provider rejected a generation request."""


class ProviderHTTPStatusError(ProviderClientError):
    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        body: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code
        self.body = body


class ProviderRateLimitedError(ProviderHTTPStatusError):
    def __init__(self, *, retry_after_ms: int | None = None) -> None:
        super().__init__(429, "provider rate limited the request", retryable=True)
        self.retry_after_ms = retry_after_ms


@dataclass(slots=True)
class GenerationProviderClient:
    """HTTPX based client for submitting songs and reading task status.

    Submissions are sent once; a retried POST could start a second, billed
    generation. Status reads retry transient failures with backoff.
    """

    base_url: str
    api_key: str | None = None
    callback_url: str | None = None
    model: str = "V3_5"
    default_style: str = "pop"
    default_title: str = "Personalized Song"
    transport: httpx.AsyncBaseTransport | None = None
    timeout_ms: int = 15_000
    max_attempts: int = 3
    backoff_base_ms: int = 250
    jitter_pct: int = 20

    @classmethod
    def from_config(
        cls,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> GenerationProviderClient:
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            callback_url=config.callback_url,
            model=config.model,
            default_style=config.default_style,
            default_title=config.default_title,
            transport=transport,
            timeout_ms=config.timeout_ms,
            max_attempts=config.status_max_attempts,
            backoff_base_ms=config.backoff_base_ms,
            jitter_pct=config.jitter_pct,
        )

    async def submit(self, request: GenerationRequest) -> SubmissionResult:
        """Start a generation and report which channel will complete it."""

        if not self.api_key:
            raise ProviderSubmissionError("provider API key is not configured")

        payload: dict[str, Any] = {
            "prompt": request.lyrics,
            "style": request.style or self.default_style,
            "title": request.title or self.default_title,
            "customMode": True,
            "instrumental": False,
            "model": self.model,
        }
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url

        response = await self._request("POST", "/generate", json=payload, attempts=1)
        body = self._decode_json(response)
        if not isinstance(body, (Mapping, list)):
            raise ProviderInvalidResponseError("provider returned an unexpected payload")

        if isinstance(body, Mapping):
            code = body.get("code")
            if code is not None and _as_int(code) != 200:
                message = str(body.get("msg") or body.get("message") or "request rejected")
                raise ProviderSubmissionError(f"provider rejected the request: {message}")

        task_ids = extract_task_ids(body)
        if not task_ids:
            raise ProviderInvalidResponseError("provider response did not contain a task id")

        accepted = bool(self.callback_url) and _callback_accepted(body)
        mode = SubmissionMode.WEBHOOK if accepted else SubmissionMode.POLLING
        log_event(
            logger,
            "provider.submit",
            component="provider.client",
            entity_id=str(request.job_id),
            status="accepted",
            mode=mode.value,
            tasks=len(task_ids),
        )
        return SubmissionResult(task_ids=task_ids, mode=mode)

    async def get_status(self, task_id: str) -> TaskStatus:
        response = await self._request(
            "GET",
            "/generate/record-info",
            params={"taskId": task_id},
        )
        return parse_status_payload(self._decode_json(response), task_id=task_id)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        attempts: int | None = None,
    ) -> httpx.Response:
        base_url = self.base_url.rstrip("/")
        timeout = self._build_timeout(self.timeout_ms)
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async def _perform_request() -> httpx.Response:
            try:
                async with httpx.AsyncClient(
                    base_url=base_url,
                    timeout=timeout,
                    headers=headers,
                    transport=self.transport,
                ) as client:
                    response = await client.request(method, path, params=params, json=json)
            except httpx.TimeoutException as exc:
                raise ProviderTimeoutError() from exc
            except httpx.HTTPError as exc:
                raise ProviderClientError(
                    f"provider request failed: {exc}", retryable=True
                ) from exc

            if response.status_code == httpx.codes.OK:
                return response
            if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
                raise ProviderRateLimitedError(
                    retry_after_ms=_parse_retry_after_ms(response.headers)
                )
            body_preview = response.text[:200]
            if 500 <= response.status_code < 600:
                raise ProviderHTTPStatusError(
                    response.status_code,
                    "provider returned a server error",
                    body=body_preview,
                    retryable=True,
                )
            raise ProviderHTTPStatusError(
                response.status_code,
                "provider rejected the request",
                body=body_preview,
                retryable=False,
            )

        def _classify(error: Exception) -> RetryDirective:
            if isinstance(error, ProviderRateLimitedError):
                return RetryDirective(
                    retry=True,
                    delay_override_ms=error.retry_after_ms,
                    error=error,
                )
            if isinstance(error, ProviderClientError):
                return RetryDirective(retry=error.retryable, error=error)
            return RetryDirective(retry=False, error=error)

        return await with_retry(
            _perform_request,
            attempts=attempts if attempts is not None else max(1, int(self.max_attempts)),
            base_ms=max(1, int(self.backoff_base_ms)),
            jitter_pct=max(0, int(self.jitter_pct)),
            timeout_ms=self.timeout_ms,
            classify_err=_classify,
        )

    @staticmethod
    def _decode_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderInvalidResponseError("provider returned invalid JSON") from exc

    @staticmethod
    def _build_timeout(timeout_ms: int) -> httpx.Timeout:
        timeout_seconds = max(timeout_ms, 100) / 1000
        return httpx.Timeout(
            timeout_seconds,
            connect=min(timeout_seconds, 5.0),
            read=timeout_seconds,
            write=timeout_seconds,
        )


def extract_task_ids(body: Mapping[str, Any] | Sequence[Any]) -> tuple[str, ...]:
    """Collect task handles from any submission response shape the provider uses."""

    if isinstance(body, Sequence) and not isinstance(body, (str, bytes)):
        return _ids_from_entries(body)
    if not isinstance(body, Mapping):
        return ()

    data = body.get("data")
    if isinstance(data, Mapping):
        task_id = _first_str(data, "taskId", "task_id", "id")
        if task_id:
            return (task_id,)
    if isinstance(data, Sequence) and not isinstance(data, (str, bytes)):
        ids = _ids_from_entries(data)
        if ids:
            return ids

    raw_ids = body.get("ids")
    if isinstance(raw_ids, Sequence) and not isinstance(raw_ids, (str, bytes)):
        ids = tuple(str(value) for value in raw_ids if value)
        if ids:
            return ids

    single = _first_str(body, "taskId", "task_id", "id")
    if single:
        return (single,)

    clips = body.get("clips")
    if isinstance(clips, Sequence) and not isinstance(clips, (str, bytes)):
        return _ids_from_entries(clips)
    return ()


def parse_status_payload(payload: Any, *, task_id: str) -> TaskStatus:
    """Normalise a status response for ``task_id``."""

    if isinstance(payload, Sequence) and not isinstance(payload, (str, bytes)):
        entries = [entry for entry in payload if isinstance(entry, Mapping)]
        if not entries:
            raise ProviderInvalidResponseError("provider returned an empty status list")
        payload = entries[0]
    if not isinstance(payload, Mapping):
        raise ProviderInvalidResponseError("provider returned unexpected status payload")

    code = payload.get("code")
    if code is not None and _as_int(code) not in (None, 200):
        message = str(payload.get("msg") or "status request rejected")
        raise ProviderHTTPStatusError(_as_int(code) or 0, message, retryable=False)

    record = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
    raw_state = _first_str(record, "status", "state") or ""
    state = normalise_state(raw_state)

    clips: list[Mapping[str, Any]] = []
    response = record.get("response")
    if isinstance(response, Mapping):
        clips.extend(_mapping_entries(response.get("sunoData") or response.get("data")))
    clips.extend(_mapping_entries(record.get("clips")))
    clips.append(record)
    audio_url, image_url = _first_artifact(clips)

    error = None
    if state is TaskState.FAILED:
        error = (
            _first_str(record, "errorMessage", "error_message", "error")
            or raw_state
            or "provider reported failure"
        )
    return TaskStatus(
        task_id=_first_str(record, "taskId", "task_id") or task_id,
        state=state,
        audio_url=audio_url,
        image_url=image_url,
        error=error,
    )


def parse_callback(payload: Any) -> list[TaskStatus]:
    """Translate an inbound provider callback into task updates.

    Intermediate callbacks (lyrics ready, first variant ready) yield pending
    updates that callers ignore.
    """

    if not isinstance(payload, Mapping):
        raise ProviderInvalidResponseError("callback payload must be a JSON object")

    data = payload.get("data")
    if isinstance(data, Mapping) and (
        "callbackType" in data or "task_id" in data or "taskId" in data
    ):
        task_id = _first_str(data, "task_id", "taskId")
        if not task_id:
            raise ProviderInvalidResponseError("callback payload has no task id")
        callback_type = str(data.get("callbackType") or "").strip().lower()
        code = _as_int(payload.get("code"))
        if callback_type in _INTERMEDIATE_CALLBACKS:
            return [TaskStatus(task_id=task_id, state=TaskState.PENDING)]
        if callback_type == "error" or (code is not None and code != 200):
            message = str(payload.get("msg") or "provider reported failure")
            return [TaskStatus(task_id=task_id, state=TaskState.FAILED, error=message)]
        if callback_type == "complete":
            audio_url, image_url = _first_artifact(_mapping_entries(data.get("data")))
            return [
                TaskStatus(
                    task_id=task_id,
                    state=TaskState.SUCCEEDED,
                    audio_url=audio_url,
                    image_url=image_url,
                )
            ]
        return [TaskStatus(task_id=task_id, state=TaskState.PENDING)]

    task_id = _first_str(payload, "taskId", "task_id")
    if not task_id:
        raise ProviderInvalidResponseError("callback payload has no task id")
    raw_state = _first_str(payload, "state", "status") or ""
    state = normalise_state(raw_state)
    audio_url, image_url = _first_artifact([payload])
    error = None
    if state is TaskState.FAILED:
        error = _first_str(payload, "error", "errorMessage") or "provider reported failure"
    return [
        TaskStatus(
            task_id=task_id,
            state=state,
            audio_url=audio_url,
            image_url=image_url,
            error=error,
        )
    ]


def normalise_state(raw: str) -> TaskState:
    normalised = raw.strip().upper().replace(" ", "_")
    if normalised in _SUCCESS_STATES:
        return TaskState.SUCCEEDED
    if normalised in _FAILURE_STATES or normalised.endswith(("_FAILED", "_ERROR")):
        return TaskState.FAILED
    # FIRST_SUCCESS, TEXT_SUCCESS, PENDING and unknown states keep the task open
    return TaskState.PENDING


def _callback_accepted(body: Mapping[str, Any] | Sequence[Any]) -> bool:
    if not isinstance(body, Mapping):
        return False
    explicit = body.get("callbackAccepted")
    if isinstance(explicit, bool):
        return explicit
    data = body.get("data")
    return isinstance(data, Mapping) and bool(_first_str(data, "taskId", "task_id"))


def _first_artifact(entries: Sequence[Mapping[str, Any]]) -> tuple[str | None, str | None]:
    for entry in entries:
        audio_url = _first_str(entry, "audioUrl", "audio_url")
        if audio_url:
            return audio_url, _first_str(entry, "imageUrl", "image_url")
    return None, None


def _mapping_entries(value: Any) -> list[Mapping[str, Any]]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return [entry for entry in value if isinstance(entry, Mapping)]
    return []


def _ids_from_entries(entries: Sequence[Any]) -> tuple[str, ...]:
    ids: list[str] = []
    for entry in entries:
        if isinstance(entry, Mapping):
            value = _first_str(entry, "id", "taskId", "task_id")
            if value:
                ids.append(value)
        elif isinstance(entry, str) and entry.strip():
            ids.append(entry.strip())
    return tuple(ids)


def _first_str(payload: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            text = str(value).strip()
            if text:
                return text
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_retry_after_ms(headers: Mapping[str, Any]) -> int | None:
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        numeric = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return max(0, numeric * 1000)


__all__ = [
    "GenerationProviderClient",
    "ProviderClientError",
    "ProviderHTTPStatusError",
    "ProviderInvalidResponseError",
    "ProviderRateLimitedError",
    "ProviderSubmissionError",
    "ProviderTimeoutError",
    "extract_task_ids",
    "normalise_state",
    "parse_callback",
    "parse_status_payload",
]

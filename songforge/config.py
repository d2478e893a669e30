"""Application configuration utilities for SongForge."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

from songforge.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./songforge.db"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_PROVIDER_BASE_URL = "https://api.sunoapi.org/api/v1"
DEFAULT_PROVIDER_MODEL = "V3_5"
DEFAULT_PROVIDER_TIMEOUT_MS = 15_000
DEFAULT_PROVIDER_STATUS_MAX_ATTEMPTS = 3
DEFAULT_PROVIDER_BACKOFF_BASE_MS = 250
DEFAULT_PROVIDER_JITTER_PCT = 20
DEFAULT_STYLE = "pop"
DEFAULT_TITLE = "Personalized Song"
DEFAULT_POLL_INTERVAL_SEC = 10.0
DEFAULT_WAIT_BUDGET_SEC = 300.0
DEFAULT_WEBHOOK_GRACE_SEC = 900.0
DEFAULT_EMAIL_FROM = "onboarding@resend.dev"
DEFAULT_FRONTEND_URL = "http://localhost:5173"
DEFAULT_BACKEND_URL = "http://localhost:8080"
DEFAULT_RESEND_BASE_URL = "https://api.resend.com"

_RUNTIME_ENV_CACHE: dict[str, str] | None = None


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env_values[key.strip()] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Load runtime environment values applying .env before explicit environment."""

    env: dict[str, str] = {}
    source = dict(base_env or os.environ)

    path = Path(env_file) if env_file is not None else Path(".env")
    if path.exists() and path.is_file():
        env.update(_load_env_file(path))

    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def get_runtime_env() -> Mapping[str, str]:
    """Return the cached runtime environment mapping."""

    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Override the cached runtime environment (primarily for testing)."""

    global _RUNTIME_ENV_CACHE
    if runtime_env is None:
        _RUNTIME_ENV_CACHE = None
    else:
        _RUNTIME_ENV_CACHE = dict(runtime_env)


def get_env(name: str, default: str | None = None) -> str | None:
    """Return an environment variable honoring ENV > .env > defaults."""

    env = get_runtime_env()
    return env.get(name, default)


def _env_value(env: Mapping[str, Any], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    return str(value)


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _bounded_float(
    value: Any,
    *,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        resolved = default
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _optional_str(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(slots=True)
class LoggingConfig:
    level: str


@dataclass(slots=True)
class DatabaseConfig:
    url: str


@dataclass(slots=True)
class ProviderConfig:
    base_url: str
    api_key: str | None
    callback_url: str | None
    model: str
    timeout_ms: int
    status_max_attempts: int
    backoff_base_ms: int
    jitter_pct: int
    default_style: str
    default_title: str

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.callback_url)

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> ProviderConfig:
        return cls(
            base_url=(
                _optional_str(_env_value(env, "PROVIDER_BASE_URL"))
                or DEFAULT_PROVIDER_BASE_URL
            ),
            api_key=_optional_str(_env_value(env, "PROVIDER_API_KEY")),
            callback_url=_optional_str(_env_value(env, "PROVIDER_CALLBACK_URL")),
            model=_optional_str(_env_value(env, "PROVIDER_MODEL")) or DEFAULT_PROVIDER_MODEL,
            timeout_ms=_bounded_int(
                env.get("PROVIDER_TIMEOUT_MS"),
                default=DEFAULT_PROVIDER_TIMEOUT_MS,
                minimum=200,
            ),
            status_max_attempts=_bounded_int(
                env.get("PROVIDER_STATUS_MAX_ATTEMPTS"),
                default=DEFAULT_PROVIDER_STATUS_MAX_ATTEMPTS,
                minimum=1,
                maximum=10,
            ),
            backoff_base_ms=_bounded_int(
                env.get("PROVIDER_BACKOFF_BASE_MS"),
                default=DEFAULT_PROVIDER_BACKOFF_BASE_MS,
                minimum=1,
            ),
            jitter_pct=_bounded_int(
                env.get("PROVIDER_JITTER_PCT"),
                default=DEFAULT_PROVIDER_JITTER_PCT,
                minimum=0,
                maximum=100,
            ),
            default_style=(
                _optional_str(_env_value(env, "PROVIDER_DEFAULT_STYLE")) or DEFAULT_STYLE
            ),
            default_title=(
                _optional_str(_env_value(env, "PROVIDER_DEFAULT_TITLE")) or DEFAULT_TITLE
            ),
        )


@dataclass(slots=True)
class GenerationConfig:
    """Polling cadence and completion deadlines.

    ``webhook_grace_seconds`` bounds how long a webhook-mode job waits for its
    callback before the watchdog checks it. ``0`` turns the watchdog off, and a
    callback that never arrives then leaves the job generating.
    """

    poll_interval_seconds: float
    wait_budget_seconds: float
    webhook_grace_seconds: float

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> GenerationConfig:
        poll_interval = _bounded_float(
            env.get("GENERATION_POLL_INTERVAL_SEC"),
            default=DEFAULT_POLL_INTERVAL_SEC,
            minimum=0.01,
        )
        wait_budget = _bounded_float(
            env.get("GENERATION_WAIT_BUDGET_SEC"),
            default=DEFAULT_WAIT_BUDGET_SEC,
            minimum=poll_interval,
            maximum=3600.0,
        )
        return cls(
            poll_interval_seconds=poll_interval,
            wait_budget_seconds=wait_budget,
            webhook_grace_seconds=_bounded_float(
                env.get("GENERATION_WEBHOOK_GRACE_SEC"),
                default=DEFAULT_WEBHOOK_GRACE_SEC,
                minimum=0.0,
            ),
        )


@dataclass(slots=True)
class NotifierConfig:
    resend_api_key: str | None
    resend_base_url: str
    email_from: str
    frontend_url: str
    backend_url: str

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> NotifierConfig:
        return cls(
            resend_api_key=_optional_str(_env_value(env, "RESEND_API_KEY")),
            resend_base_url=(
                _optional_str(_env_value(env, "RESEND_BASE_URL")) or DEFAULT_RESEND_BASE_URL
            ),
            email_from=_optional_str(_env_value(env, "EMAIL_FROM")) or DEFAULT_EMAIL_FROM,
            frontend_url=(
                _optional_str(_env_value(env, "FRONTEND_URL")) or DEFAULT_FRONTEND_URL
            ).rstrip("/"),
            backend_url=(
                _optional_str(_env_value(env, "BACKEND_URL")) or DEFAULT_BACKEND_URL
            ).rstrip("/"),
        )


@dataclass(slots=True)
class AppConfig:
    database: DatabaseConfig
    logging: LoggingConfig
    provider: ProviderConfig
    generation: GenerationConfig
    notifier: NotifierConfig
    resume_on_startup: bool


def load_config(runtime_env: Mapping[str, Any] | None = None) -> AppConfig:
    """Build the application configuration from the runtime environment."""

    env = runtime_env if runtime_env is not None else get_runtime_env()

    database_url = _optional_str(_env_value(env, "DATABASE_URL")) or DEFAULT_DATABASE_URL
    log_level = (_optional_str(_env_value(env, "LOG_LEVEL")) or DEFAULT_LOG_LEVEL).upper()

    provider = ProviderConfig.from_env(env)
    if provider.api_key is None:
        logger.warning(
            "PROVIDER_API_KEY is not configured; generation submissions will be rejected",
            extra={"event": "config.provider_api_key_missing"},
        )

    return AppConfig(
        database=DatabaseConfig(url=database_url),
        logging=LoggingConfig(level=log_level),
        provider=provider,
        generation=GenerationConfig.from_env(env),
        notifier=NotifierConfig.from_env(env),
        resume_on_startup=_as_bool(
            _env_value(env, "GENERATION_RESUME_ON_STARTUP"), default=True
        ),
    )


__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "GenerationConfig",
    "LoggingConfig",
    "NotifierConfig",
    "ProviderConfig",
    "get_env",
    "get_runtime_env",
    "load_config",
    "load_runtime_env",
    "override_runtime_env",
]

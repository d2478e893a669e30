from __future__ import annotations

from pathlib import Path

import pytest

from songforge.config import (
    DEFAULT_PROVIDER_BASE_URL,
    get_env,
    load_config,
    load_runtime_env,
    override_runtime_env,
)


def test_defaults_when_environment_is_empty() -> None:
    config = load_config({})

    assert config.database.url == "sqlite:///./songforge.db"
    assert config.logging.level == "INFO"
    assert config.provider.base_url == DEFAULT_PROVIDER_BASE_URL
    assert config.provider.api_key is None
    assert config.provider.webhook_enabled is False
    assert config.provider.default_style == "pop"
    assert config.provider.default_title == "Personalized Song"
    assert config.generation.poll_interval_seconds == 10.0
    assert config.generation.wait_budget_seconds == 300.0
    assert config.generation.webhook_grace_seconds == 900.0
    assert config.notifier.resend_api_key is None
    assert config.resume_on_startup is True


def test_values_are_read_and_bounded() -> None:
    config = load_config(
        {
            "LOG_LEVEL": "debug",
            "PROVIDER_API_KEY": " key ",
            "PROVIDER_CALLBACK_URL": "https://songs.example.com/webhooks/provider-callback",
            "PROVIDER_STATUS_MAX_ATTEMPTS": "99",
            "PROVIDER_JITTER_PCT": "-5",
            "PROVIDER_TIMEOUT_MS": "not-a-number",
            "GENERATION_POLL_INTERVAL_SEC": "5",
            "GENERATION_WAIT_BUDGET_SEC": "2",
            "GENERATION_WEBHOOK_GRACE_SEC": "-1",
            "GENERATION_RESUME_ON_STARTUP": "off",
            "BACKEND_URL": "https://api.example.com/",
        }
    )

    assert config.logging.level == "DEBUG"
    assert config.provider.api_key == "key"
    assert config.provider.webhook_enabled is True
    assert config.provider.status_max_attempts == 10
    assert config.provider.jitter_pct == 0
    assert config.provider.timeout_ms == 15_000
    assert config.generation.poll_interval_seconds == 5.0
    # The wait budget never undercuts a single poll interval.
    assert config.generation.wait_budget_seconds == 5.0
    assert config.generation.webhook_grace_seconds == 0.0
    assert config.resume_on_startup is False
    assert config.notifier.backend_url == "https://api.example.com"


def test_env_file_is_overridden_by_process_environment(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# local settings\nPROVIDER_MODEL=V4\nEMAIL_FROM='songs@example.com'\nBROKEN_LINE\n",
        encoding="utf-8",
    )

    env = load_runtime_env(env_file=env_file, base_env={"PROVIDER_MODEL": "V4_5"})

    assert env["PROVIDER_MODEL"] == "V4_5"
    assert env["EMAIL_FROM"] == "songs@example.com"
    assert "BROKEN_LINE" not in env


def test_runtime_env_override_is_used_by_get_env(monkeypatch: pytest.MonkeyPatch) -> None:
    override_runtime_env({"PROVIDER_MODEL": "V4"})
    try:
        assert get_env("PROVIDER_MODEL") == "V4"
        assert get_env("MISSING", "fallback") == "fallback"
        assert load_config().provider.model == "V4"
    finally:
        override_runtime_env(None)

    monkeypatch.setenv("PROVIDER_MODEL", "V3_5")
    assert load_config().provider.model == "V3_5"

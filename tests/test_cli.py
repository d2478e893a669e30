from __future__ import annotations

import asyncio
import json

import pytest

from songforge import cli
from songforge.config import load_config
from songforge.orchestrator.runtime import OrchestratorRuntime, build_runtime
from tests.support.fakes import (
    FakeProvider,
    RecordingTransport,
    create_paid_order,
    task_id_for,
)


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def _runtime(
    provider: FakeProvider | None = None, transport: RecordingTransport | None = None
) -> OrchestratorRuntime:
    return build_runtime(
        load_config(),
        provider=provider or FakeProvider(),
        transport=transport or RecordingTransport(),
    )


def test_fulfill_waits_for_polling_jobs_and_notifies(capsys: pytest.CaptureFixture[str]) -> None:
    provider = FakeProvider()
    transport = RecordingTransport()
    runtime = _runtime(provider, transport)
    order, items = asyncio.run(create_paid_order(runtime.store, ("cli-1", "cli-2")))
    for item in items:
        provider.succeed(task_id_for(item.id))

    exit_code = cli._cli(["fulfill", str(order.id), "--wait"], runtime=runtime)

    assert exit_code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["order_id"] == order.id
    assert len(output["polling_job_ids"]) == 2
    assert len(transport.messages) == 1

    exit_code = cli._cli(["diagnose", str(order.id)], runtime=_runtime())

    assert exit_code == 0
    status = json.loads(capsys.readouterr().out)
    assert status["settled"] is True
    assert status["notified"] is True
    assert status["jobs_completed"] == 2
    assert status["order"]["status"] == "fulfilled"


def test_resend_reports_refusals_on_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    runtime = _runtime()
    order, _ = asyncio.run(create_paid_order(runtime.store, ("pending",)))

    exit_code = cli._cli(["resend-notification", str(order.id)], runtime=runtime)

    assert exit_code == 2
    error = json.loads(capsys.readouterr().err)
    assert error["ok"] is False
    assert "not settled" in error["error"]


def test_unknown_order_exits_with_error(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = cli._cli(["diagnose", "404"], runtime=_runtime())

    assert exit_code == 2
    assert "order 404 does not exist" in capsys.readouterr().err


def test_subcommand_is_required() -> None:
    with pytest.raises(SystemExit):
        cli._cli([])

from __future__ import annotations

import logging
from unittest.mock import Mock

import pytest

from songforge.logging import StructuredFormatter
from songforge.logging_events import log_event


def test_log_event_emits_expected_extra_fields() -> None:
    logger = Mock()

    log_event(
        logger,
        "orchestrator.job_terminal",
        component="orchestrator.aggregator",
        status="failed",
        entity_id="17",
        reason=None,
        meta={"tasks": ["t-1", "t-2"]},
    )

    logger.log.assert_called_once()
    args, kwargs = logger.log.call_args
    assert args == (logging.INFO, "orchestrator.job_terminal")
    assert kwargs["extra"] == {
        "event": "orchestrator.job_terminal",
        "component": "orchestrator.aggregator",
        "status": "failed",
        "entity_id": "17",
        "reason": None,
        "meta": {"tasks": ["t-1", "t-2"]},
    }


def test_log_event_uses_requested_level() -> None:
    logger = Mock()

    log_event(logger, "waiter.timeout", level=logging.WARNING, status="timeout")

    assert logger.log.call_args.args[0] == logging.WARNING


def test_log_event_rejects_empty_event() -> None:
    with pytest.raises(ValueError):
        log_event(Mock(), "")


def test_log_event_rejects_nested_fields_outside_meta() -> None:
    with pytest.raises(TypeError):
        log_event(Mock(), "sample", component="x", jobs=[1, 2])
    with pytest.raises(TypeError):
        log_event(Mock(), "sample", meta="oops")


def test_structured_formatter_appends_extra_fields() -> None:
    formatter = StructuredFormatter("%(levelname)s %(message)s")
    record = logging.LogRecord("songforge", logging.INFO, __file__, 1, "notifier.dispatch", (), None)
    record.event = "notifier.dispatch"
    record.status = "sent"

    rendered = formatter.format(record)

    assert rendered == 'INFO notifier.dispatch {"event": "notifier.dispatch", "status": "sent"}'

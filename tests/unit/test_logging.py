"""Unit tests for structured logging."""

from __future__ import annotations

import json
import logging
import sys
from decimal import Decimal

import pytest

from studio_automation.engine.logging import JsonFormatter, configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="studio_automation.engine.workflow.dispatcher",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Execution %s finished",
        args=("exec-1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_lifts_correlation_ids() -> None:
    record = _record(execution_id="exec-1", card_id="card-7", status="failed")

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "studio_automation.engine.workflow.dispatcher"
    assert payload["message"] == "Execution exec-1 finished"
    assert payload["execution_id"] == "exec-1"
    assert payload["card_id"] == "card-7"
    assert payload["extra"] == {"status": "failed"}


def test_json_formatter_serialises_unknown_values() -> None:
    payload = json.loads(JsonFormatter().format(_record(timeout=Decimal("0.5"))))

    assert payload["extra"] == {"timeout": "0.5"}


def test_json_formatter_without_extra() -> None:
    payload = json.loads(JsonFormatter().format(_record()))

    assert "extra" not in payload


def test_json_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("runner crashed")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: runner crashed" in payload["exception"]


def test_configure_logging_replaces_handlers(restore_root_logger: logging.Logger) -> None:
    configure_logging("warning")
    configure_logging("debug")

    assert len(restore_root_logger.handlers) == 1
    assert isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)
    assert restore_root_logger.level == logging.DEBUG
    assert logging.getLogger("urllib3").level == logging.WARNING

"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Records about one
execution, card or step carry its ids in ``extra``; those ids are lifted to
the top level of the JSON line so log queries can filter on them directly.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# Everything a bare LogRecord defines, plus what Formatter.format adds.
_RESERVED_LOG_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.makeLogRecord({}).__dict__
) | {"asctime", "message"}

CORRELATION_KEYS: tuple[str, ...] = (
    "execution_id",
    "template_id",
    "step_id",
    "card_id",
    "board_id",
)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, correlation ids first."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        }
        for key in CORRELATION_KEYS:
            if key in extra:
                payload[key] = extra.pop(key)
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    """Send JSON lines to stdout at ``level``, replacing existing root handlers."""

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    # Connection pool chatter from the HTTP runner is rarely useful.
    logging.getLogger("urllib3").setLevel(max(root.level, logging.WARNING))

"""Step execution tracking.

These helpers mutate a :class:`StepExecution` in place. They are only ever
applied to a working copy owned by the state machine, so a rejected change
never leaks into a published execution.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import JsonValue

from ..errors import InvalidTransition
from .models import StepError, StepExecution, StepExecutionStatus
from .transitions import is_legal_step_transition

_SS = StepExecutionStatus


def _move(record: StepExecution, to: StepExecutionStatus) -> None:
    if not is_legal_step_transition(record.status, to):
        raise InvalidTransition(
            f"Illegal step transition: {record.status.value} -> {to.value}",
            details={"step_id": record.step_id, "from": record.status.value, "to": to.value},
        )
    record.status = to


def _finish(record: StepExecution, now: datetime) -> None:
    record.completed_at = now
    if record.started_at is not None:
        record.duration_seconds = max((now - record.started_at).total_seconds(), 0.0)


def new_step_execution(step_id: str) -> StepExecution:
    return StepExecution(step_id=step_id)


def start_step(
    record: StepExecution,
    *,
    now: datetime,
    input: dict[str, JsonValue] | None = None,
) -> None:
    """Mark a step (or a retry attempt of it) running.

    ``started_at`` keeps the first attempt's timestamp so the step duration
    covers its retries.
    """

    _move(record, _SS.RUNNING)
    if record.started_at is None:
        record.started_at = now
    if input is not None:
        record.input = input


def complete_step(
    record: StepExecution,
    *,
    now: datetime,
    output: dict[str, JsonValue] | None = None,
) -> None:
    _move(record, _SS.COMPLETED)
    record.output = output
    record.error = None
    _finish(record, now)


def schedule_retry(record: StepExecution, *, error: StepError) -> None:
    _move(record, _SS.RETRYING)
    record.retry_count += 1
    record.error = error


def fail_step(record: StepExecution, *, now: datetime, error: StepError) -> None:
    _move(record, _SS.FAILED)
    record.error = error
    _finish(record, now)


def skip_step(record: StepExecution, *, now: datetime) -> None:
    _move(record, _SS.SKIPPED)
    _finish(record, now)

"""Execution state machine.

Module-level functions take an execution and return an updated deep copy.
A rejected call raises and leaves its input untouched, so an execution is
never observed half-mutated. :class:`ExecutionStateMachine` wraps those
functions around one execution and serialises access to it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from pydantic import JsonValue

from ..errors import ConfigurationError, InvalidTransition, StepFailed, UnknownStep
from . import steps as tracker
from .models import (
    ExecutionError,
    StepError,
    StepExecution,
    StepExecutionStatus,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStep,
    WorkflowTemplate,
    to_json_value,
    utc_now,
)
from .retry import BackoffPolicy, resolve_policy
from .transitions import (
    SUCCESSFUL_STEP_STATUSES,
    is_legal_transition,
    is_terminal,
    is_terminal_step,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_ES = WorkflowExecutionStatus
_SS = StepExecutionStatus


def _jsonable(details: dict[str, object] | None) -> dict[str, JsonValue] | None:
    if not details:
        return None
    converted = to_json_value(details)
    return converted if isinstance(converted, dict) else None


@dataclass(frozen=True, slots=True)
class StepOutcome:
    """What the step runner reported for one attempt of a step."""

    succeeded: bool
    output: dict[str, JsonValue] | None = None
    error: StepError | None = None
    external_execution_id: str | None = None

    @classmethod
    def success(
        cls,
        output: dict[str, JsonValue] | None = None,
        *,
        external_execution_id: str | None = None,
    ) -> StepOutcome:
        return cls(succeeded=True, output=output, external_execution_id=external_execution_id)

    @classmethod
    def failure(
        cls,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
        external_execution_id: str | None = None,
    ) -> StepOutcome:
        return cls(
            succeeded=False,
            error=StepError(message=message, code=code, details=_jsonable(details)),
            external_execution_id=external_execution_id,
        )


@dataclass(frozen=True, slots=True)
class StepApplication:
    """Result of applying a step outcome.

    ``retry_delay_seconds`` is set when the step was put into ``retrying``;
    the caller waits that long and then starts the step again.
    """

    execution: WorkflowExecution
    step: StepExecution
    retry_delay_seconds: float | None = None

    @property
    def will_retry(self) -> bool:
        return self.retry_delay_seconds is not None


def _stamp(execution: WorkflowExecution, to: WorkflowExecutionStatus, now: datetime) -> None:
    execution.status = to
    execution.updated_at = now
    if to is _ES.RUNNING and execution.started_at is None:
        execution.started_at = now
    if is_terminal(to):
        execution.completed_at = now
        if execution.started_at is not None:
            execution.duration_seconds = max((now - execution.started_at).total_seconds(), 0.0)


def _require_transition(execution: WorkflowExecution, to: WorkflowExecutionStatus) -> None:
    if not is_legal_transition(execution.status, to):
        raise InvalidTransition(
            f"Illegal transition: {execution.status.value} -> {to.value}",
            details={"execution_id": execution.id, "from": execution.status.value, "to": to.value},
        )


def _require_mutable(execution: WorkflowExecution) -> None:
    if is_terminal(execution.status):
        raise InvalidTransition(
            f"Execution {execution.id} is {execution.status.value} and can no longer change",
            details={"execution_id": execution.id, "status": execution.status.value},
        )


def _require_template(execution: WorkflowExecution, template: WorkflowTemplate) -> None:
    if execution.template_id != template.id:
        raise ConfigurationError(
            f"Execution {execution.id} belongs to template {execution.template_id}, "
            f"not {template.id}",
            details={"execution_id": execution.id, "template_id": template.id},
        )


def _step_definition(template: WorkflowTemplate, step_id: str) -> WorkflowStep:
    step = template.step(step_id)
    if step is None:
        raise UnknownStep(
            f"Step {step_id!r} is not declared by template {template.id}",
            details={"step_id": step_id, "template_id": template.id},
        )
    return step


def _next_unrecorded(execution: WorkflowExecution, template: WorkflowTemplate) -> str | None:
    recorded = {record.step_id for record in execution.step_executions}
    for step in template.steps:
        if step.id not in recorded:
            return step.id
    return None


def _locate_or_append(
    execution: WorkflowExecution, template: WorkflowTemplate, step_id: str
) -> StepExecution:
    _step_definition(template, step_id)
    record = execution.step_execution(step_id)
    if record is not None:
        return record

    # New records are only opened for the next step in template order.
    expected = _next_unrecorded(execution, template)
    if step_id != expected:
        raise UnknownStep(
            f"Step {step_id!r} is out of order; the next step is {expected!r}",
            details={"step_id": step_id, "expected": expected, "execution_id": execution.id},
        )
    record = tracker.new_step_execution(step_id)
    execution.step_executions.append(record)
    return record


def _tolerates_failure(template: WorkflowTemplate, step: WorkflowStep) -> bool:
    return step.error_handling.skippable or template.error_handling.continue_on_failure


def _record_output(
    execution: WorkflowExecution, step_id: str, output: dict[str, JsonValue] | None
) -> None:
    outputs = execution.context.get("steps")
    if not isinstance(outputs, dict):
        outputs = {}
    outputs[step_id] = output
    execution.context["steps"] = outputs


def _apply_branch(
    execution: WorkflowExecution,
    template: WorkflowTemplate,
    step: WorkflowStep,
    output: dict[str, JsonValue] | None,
    now: datetime,
) -> None:
    """Skip declared successors the completed step did not select."""

    if not step.next_steps or not output:
        return
    chosen = output.get("next_steps")
    if not isinstance(chosen, list):
        return

    selected = {str(item) for item in chosen}
    for candidate in step.next_steps:
        if candidate in selected:
            continue
        if template.step(candidate) is None or execution.step_execution(candidate) is not None:
            continue
        record = tracker.new_step_execution(candidate)
        tracker.skip_step(record, now=now)
        execution.step_executions.append(record)


def _settle(execution: WorkflowExecution, template: WorkflowTemplate, now: datetime) -> None:
    """Recompute the overall status of a running execution from its steps."""

    if execution.status is not _ES.RUNNING:
        return

    for record in execution.step_executions:
        if record.status is not _SS.FAILED:
            continue
        step = template.step(record.step_id)
        if step is not None and _tolerates_failure(template, step):
            continue
        reason = record.error.message if record.error is not None else "unknown error"
        execution.error = ExecutionError(
            message=f"Step {record.step_id!r} failed: {reason}",
            code=StepFailed.code,
            failed_step=record.step_id,
            details={
                "retry_count": record.retry_count,
                "step_error": record.error.model_dump(mode="json") if record.error else None,
            },
        )
        _stamp(execution, _ES.FAILED, now)
        return

    by_id = {record.step_id: record for record in execution.step_executions}
    for step in template.steps:
        record = by_id.get(step.id)
        if record is None or not is_terminal_step(record.status):
            return
        if record.status not in SUCCESSFUL_STEP_STATUSES and not _tolerates_failure(
            template, step
        ):
            return

    execution.result = {
        "outputs": {
            record.step_id: record.output
            for record in execution.step_executions
            if record.status is _SS.COMPLETED
        }
    }
    _stamp(execution, _ES.COMPLETED, now)


def transition(
    execution: WorkflowExecution,
    to: WorkflowExecutionStatus,
    *,
    now: datetime | None = None,
) -> WorkflowExecution:
    """Move ``execution`` to ``to`` if the transition table allows it.

    Repeating the current status is rejected like any other illegal move.
    """

    _require_transition(execution, to)
    updated = execution.model_copy(deep=True)
    _stamp(updated, to, now or utc_now())
    return updated


def next_step(execution: WorkflowExecution, template: WorkflowTemplate) -> WorkflowStep | None:
    """First declared step that has not reached a terminal step status."""

    by_id = {record.step_id: record for record in execution.step_executions}
    for step in template.steps:
        record = by_id.get(step.id)
        if record is None or not is_terminal_step(record.status):
            return step
    return None


def start_step(
    execution: WorkflowExecution,
    step_id: str,
    *,
    template: WorkflowTemplate,
    input: dict[str, JsonValue] | None = None,
    now: datetime | None = None,
) -> WorkflowExecution:
    _require_template(execution, template)
    _require_mutable(execution)
    if execution.status is not _ES.RUNNING:
        raise InvalidTransition(
            f"Cannot start step {step_id!r} while execution is {execution.status.value}",
            details={"execution_id": execution.id, "step_id": step_id},
        )

    current = now or utc_now()
    updated = execution.model_copy(deep=True)
    record = _locate_or_append(updated, template, step_id)
    tracker.start_step(record, now=current, input=input)
    updated.updated_at = current
    return updated


def apply_step_result(
    execution: WorkflowExecution,
    step_id: str,
    outcome: StepOutcome,
    *,
    template: WorkflowTemplate,
    defaults: BackoffPolicy | None = None,
    now: datetime | None = None,
) -> StepApplication:
    """Record one attempt's outcome and recompute the execution status.

    Results may arrive while the execution is running or paused. A paused
    execution only settles once it is resumed.
    """

    _require_template(execution, template)
    _require_mutable(execution)
    if execution.status is _ES.PENDING:
        raise InvalidTransition(
            f"Execution {execution.id} has not started",
            details={"execution_id": execution.id, "step_id": step_id},
        )

    current = now or utc_now()
    updated = execution.model_copy(deep=True)
    step = _step_definition(template, step_id)
    record = _locate_or_append(updated, template, step_id)

    if record.status in (_SS.PENDING, _SS.RETRYING):
        tracker.start_step(record, now=current)
    if outcome.external_execution_id:
        record.external_execution_id = outcome.external_execution_id

    retry_delay: float | None = None
    if outcome.succeeded:
        tracker.complete_step(record, now=current, output=outcome.output)
        _record_output(updated, step_id, outcome.output)
        _apply_branch(updated, template, step, outcome.output, current)
    else:
        error = outcome.error or StepError(message="Step failed")
        policy = resolve_policy(template=template, step=step, defaults=defaults)
        if policy.should_retry(record.retry_count):
            retry_delay = policy.delay_for(record.retry_count)
            tracker.schedule_retry(record, error=error)
        else:
            tracker.fail_step(record, now=current, error=error)

    updated.updated_at = current
    if retry_delay is None:
        _settle(updated, template, current)

    return StepApplication(
        execution=updated,
        step=record.model_copy(deep=True),
        retry_delay_seconds=retry_delay,
    )


def cancel(
    execution: WorkflowExecution, reason: str, *, now: datetime | None = None
) -> WorkflowExecution:
    """Cancel from pending, running or paused. Irreversible."""

    _require_transition(execution, _ES.CANCELLED)
    current = now or utc_now()
    updated = execution.model_copy(deep=True)
    for record in updated.step_executions:
        if not is_terminal_step(record.status):
            tracker.skip_step(record, now=current)
    updated.error = ExecutionError(message=reason or "Execution cancelled", code="cancelled")
    _stamp(updated, _ES.CANCELLED, current)
    return updated


def timeout(execution: WorkflowExecution, *, now: datetime | None = None) -> WorkflowExecution:
    """Apply an externally detected timeout. Only running executions time out."""

    if execution.status is not _ES.RUNNING:
        raise InvalidTransition(
            f"Only running executions can time out; execution is {execution.status.value}",
            details={"execution_id": execution.id, "status": execution.status.value},
        )

    current = now or utc_now()
    updated = execution.model_copy(deep=True)
    in_flight: str | None = None
    for record in updated.step_executions:
        if record.status is _SS.RUNNING:
            in_flight = record.step_id
            tracker.fail_step(
                record,
                now=current,
                error=StepError(message="Execution timed out", code="timeout"),
            )
        elif not is_terminal_step(record.status):
            tracker.skip_step(record, now=current)

    ceiling = f"{updated.timeout_seconds:g}s " if updated.timeout_seconds else ""
    updated.error = ExecutionError(
        message=f"Execution exceeded its {ceiling}time limit",
        code="timeout",
        failed_step=in_flight,
    )
    _stamp(updated, _ES.TIMEOUT, current)
    return updated


def fail(
    execution: WorkflowExecution, error: ExecutionError, *, now: datetime | None = None
) -> WorkflowExecution:
    """Fail a running execution directly (e.g. the runner is unreachable)."""

    _require_transition(execution, _ES.FAILED)
    current = now or utc_now()
    updated = execution.model_copy(deep=True)
    for record in updated.step_executions:
        if not is_terminal_step(record.status):
            tracker.skip_step(record, now=current)
    updated.error = error
    _stamp(updated, _ES.FAILED, current)
    return updated


def pause(execution: WorkflowExecution, *, now: datetime | None = None) -> WorkflowExecution:
    return transition(execution, _ES.PAUSED, now=now)


def resume(
    execution: WorkflowExecution,
    *,
    template: WorkflowTemplate,
    now: datetime | None = None,
) -> WorkflowExecution:
    """Resume a paused execution, settling steps that finished while paused."""

    _require_template(execution, template)
    if execution.status is not _ES.PAUSED:
        raise InvalidTransition(
            f"Only paused executions can be resumed; execution is {execution.status.value}",
            details={"execution_id": execution.id, "status": execution.status.value},
        )
    current = now or utc_now()
    updated = transition(execution, _ES.RUNNING, now=current)
    _settle(updated, template, current)
    return updated


class ExecutionStateMachine:
    """Owns one execution and serialises every change to it.

    Each operation holds a per-execution lock for its whole (synchronous)
    duration and publishes a new execution object only when it succeeds.
    Published executions are never mutated afterwards, so ``execution`` can be
    handed out freely.
    """

    def __init__(
        self,
        execution: WorkflowExecution,
        template: WorkflowTemplate,
        *,
        retry_defaults: BackoffPolicy | None = None,
        clock: Clock = utc_now,
    ) -> None:
        _require_template(execution, template)
        self._execution = execution
        self._template = template
        self._retry_defaults = retry_defaults
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def id(self) -> str:
        return self._execution.id

    @property
    def execution(self) -> WorkflowExecution:
        return self._execution

    @property
    def template(self) -> WorkflowTemplate:
        return self._template

    @property
    def status(self) -> WorkflowExecutionStatus:
        return self._execution.status

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self._execution.status)

    def next_step(self) -> WorkflowStep | None:
        with self._lock:
            return next_step(self._execution, self._template)

    def transition(self, to: WorkflowExecutionStatus) -> WorkflowExecution:
        with self._lock:
            previous = self._execution.status
            self._execution = transition(self._execution, to, now=self._clock())
            self._log_status(previous)
            return self._execution

    def start_step(
        self, step_id: str, *, input: dict[str, JsonValue] | None = None
    ) -> WorkflowExecution:
        with self._lock:
            self._execution = start_step(
                self._execution,
                step_id,
                template=self._template,
                input=input,
                now=self._clock(),
            )
            return self._execution

    def apply_step_result(self, step_id: str, outcome: StepOutcome) -> StepApplication:
        with self._lock:
            previous = self._execution.status
            application = apply_step_result(
                self._execution,
                step_id,
                outcome,
                template=self._template,
                defaults=self._retry_defaults,
                now=self._clock(),
            )
            self._execution = application.execution
            logger.debug(
                "Step result applied",
                extra={
                    "execution_id": self._execution.id,
                    "step_id": step_id,
                    "step_status": application.step.status.value,
                    "retry_count": application.step.retry_count,
                },
            )
            self._log_status(previous)
            return application

    def cancel(self, reason: str) -> WorkflowExecution:
        with self._lock:
            previous = self._execution.status
            self._execution = cancel(self._execution, reason, now=self._clock())
            self._log_status(previous)
            return self._execution

    def timeout(self) -> WorkflowExecution:
        with self._lock:
            previous = self._execution.status
            self._execution = timeout(self._execution, now=self._clock())
            self._log_status(previous)
            return self._execution

    def fail(self, error: ExecutionError) -> WorkflowExecution:
        with self._lock:
            previous = self._execution.status
            self._execution = fail(self._execution, error, now=self._clock())
            self._log_status(previous)
            return self._execution

    def pause(self) -> WorkflowExecution:
        with self._lock:
            previous = self._execution.status
            self._execution = pause(self._execution, now=self._clock())
            self._log_status(previous)
            return self._execution

    def resume(self) -> WorkflowExecution:
        with self._lock:
            previous = self._execution.status
            self._execution = resume(self._execution, template=self._template, now=self._clock())
            self._log_status(previous)
            return self._execution

    def mark_saved(self, version: int) -> None:
        """Adopt the record version assigned by the store."""

        with self._lock:
            self._execution = self._execution.model_copy(update={"version": version})

    def _log_status(self, previous: WorkflowExecutionStatus) -> None:
        current = self._execution.status
        if current is previous:
            return
        logger.info(
            "Execution status changed",
            extra={
                "execution_id": self._execution.id,
                "template_id": self._execution.template_id,
                "from": previous.value,
                "to": current.value,
            },
        )

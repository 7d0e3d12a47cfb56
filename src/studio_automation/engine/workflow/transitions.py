"""Legal status transitions for executions and their steps.

Both tables are process-wide constants. A status with no outgoing
transitions is terminal.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from .models import StepExecutionStatus, WorkflowExecutionStatus

_ES = WorkflowExecutionStatus
_SS = StepExecutionStatus

ALLOWED_TRANSITIONS: Mapping[WorkflowExecutionStatus, frozenset[WorkflowExecutionStatus]] = (
    MappingProxyType(
        {
            _ES.PENDING: frozenset({_ES.RUNNING, _ES.CANCELLED}),
            _ES.RUNNING: frozenset(
                {_ES.PAUSED, _ES.COMPLETED, _ES.FAILED, _ES.CANCELLED, _ES.TIMEOUT}
            ),
            _ES.PAUSED: frozenset({_ES.RUNNING, _ES.CANCELLED}),
            _ES.COMPLETED: frozenset(),
            _ES.FAILED: frozenset(),
            _ES.CANCELLED: frozenset(),
            _ES.TIMEOUT: frozenset(),
        }
    )
)

TERMINAL_STATUSES: frozenset[WorkflowExecutionStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

ALLOWED_STEP_TRANSITIONS: Mapping[StepExecutionStatus, frozenset[StepExecutionStatus]] = (
    MappingProxyType(
        {
            _SS.PENDING: frozenset({_SS.RUNNING, _SS.SKIPPED}),
            _SS.RUNNING: frozenset({_SS.COMPLETED, _SS.FAILED, _SS.RETRYING, _SS.SKIPPED}),
            _SS.RETRYING: frozenset({_SS.RUNNING, _SS.SKIPPED}),
            _SS.COMPLETED: frozenset(),
            _SS.FAILED: frozenset(),
            _SS.SKIPPED: frozenset(),
        }
    )
)

TERMINAL_STEP_STATUSES: frozenset[StepExecutionStatus] = frozenset(
    status for status, targets in ALLOWED_STEP_TRANSITIONS.items() if not targets
)

SUCCESSFUL_STEP_STATUSES: frozenset[StepExecutionStatus] = frozenset(
    {_SS.COMPLETED, _SS.SKIPPED}
)


def allowed_targets(status: WorkflowExecutionStatus) -> frozenset[WorkflowExecutionStatus]:
    return ALLOWED_TRANSITIONS.get(status, frozenset())


def is_legal_transition(current: WorkflowExecutionStatus, to: WorkflowExecutionStatus) -> bool:
    return to in allowed_targets(current)


def is_terminal(status: WorkflowExecutionStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_legal_step_transition(current: StepExecutionStatus, to: StepExecutionStatus) -> bool:
    return to in ALLOWED_STEP_TRANSITIONS.get(current, frozenset())


def is_terminal_step(status: StepExecutionStatus) -> bool:
    return status in TERMINAL_STEP_STATUSES

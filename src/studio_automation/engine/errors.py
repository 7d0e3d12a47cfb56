"""Error taxonomy for the automation core.

Invariant violations (bad transitions, unknown steps, rejected moves) are
caller errors and carry a 4xx ``http_status`` hint. Collaborator failures
(step runner, persistence conflicts) are retried or surfaced as a failed
execution; their hint is only used if they escape to an API layer.
"""

from __future__ import annotations


class AutomationError(Exception):
    """Base class for every error raised by the automation core."""

    code = "automation_error"
    http_status = 500

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, object] = dict(details or {})

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"message": self.message, "code": self.code}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class InvalidTransition(AutomationError):
    """An illegal status change was attempted on an execution or step."""

    code = "invalid_transition"
    http_status = 409


class UnknownStep(AutomationError):
    """A step id is not declared by the template, or arrived out of order."""

    code = "unknown_step"
    http_status = 422


class TemplateNotFound(AutomationError):
    code = "template_not_found"
    http_status = 404


class TemplateInactive(AutomationError):
    code = "template_inactive"
    http_status = 409


class ExecutionNotFound(AutomationError):
    code = "execution_not_found"
    http_status = 404


class DuplicateExecution(AutomationError):
    """A non-terminal execution already exists for the (card, template) pair."""

    code = "duplicate_execution"
    http_status = 409


class StepRunnerUnavailable(AutomationError):
    """The external step runner could not be reached."""

    code = "step_runner_unavailable"
    http_status = 502


class StepFailed(AutomationError):
    """A step ran but reported a failure."""

    code = "step_failed"
    http_status = 502


class ConfigurationError(AutomationError):
    """Malformed trigger or template configuration."""

    code = "configuration_error"
    http_status = 422


class CardNotFound(AutomationError):
    code = "card_not_found"
    http_status = 404


class StageNotFound(AutomationError):
    code = "stage_not_found"
    http_status = 404


class WipLimitExceeded(AutomationError):
    code = "wip_limit_exceeded"
    http_status = 409


class MoveRejected(AutomationError):
    """A card move violated a stage rule (e.g. prevent_move_back)."""

    code = "move_rejected"
    http_status = 409


class RecordNotFound(AutomationError):
    code = "record_not_found"
    http_status = 404


class ConcurrencyConflict(AutomationError):
    """A save was attempted with a stale record version."""

    code = "concurrency_conflict"
    http_status = 409

"""Boundary validation for templates, stages and board layout.

Pydantic already enforces field types and simple bounds when records are
parsed. The checks here cover rules that span fields or records, and report
every problem found rather than stopping at the first.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass

from pydantic import ValidationError

from .kanban.models import (
    AttributeChangeCondition,
    ComparisonOperator,
    KanbanCard,
    KanbanCardStatus,
    KanbanStage,
    StageAutomation,
)
from .kanban.triggers import as_number
from .workflow.models import WorkflowStep, WorkflowTemplate

_ORDERING = {
    ComparisonOperator.GT,
    ComparisonOperator.LT,
    ComparisonOperator.GTE,
    ComparisonOperator.LTE,
}

MAX_TEMPLATE_NAME_LENGTH = 200


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    path: str
    code: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"path": self.path, "code": self.code, "message": self.message}


def _validate_retry(path: str, step: WorkflowStep) -> list[ValidationIssue]:
    policy = step.error_handling.retry_policy
    if policy is None or policy.base_delay_seconds is None or policy.max_delay_seconds is None:
        return []
    if policy.max_delay_seconds < policy.base_delay_seconds:
        return [
            ValidationIssue(
                f"{path}.error_handling.retry_policy",
                "invalid_retry_policy",
                "max_delay_seconds must be >= base_delay_seconds",
            )
        ]
    return []


def _validate_loop(path: str, step: WorkflowStep) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    config = step.config

    iterate_over = config.get("iterate_over")
    if not isinstance(iterate_over, str) or not iterate_over.strip():
        issues.append(
            ValidationIssue(
                f"{path}.config.iterate_over",
                "loop_missing_source",
                "Loop steps need an iterate_over path",
            )
        )

    max_iterations = config.get("max_iterations")
    if max_iterations is not None and not _is_positive_int(max_iterations):
        issues.append(
            ValidationIssue(
                f"{path}.config.max_iterations",
                "loop_invalid_limit",
                "max_iterations must be a positive integer",
            )
        )

    parallel = config.get("parallel")
    if parallel is not None and not isinstance(parallel, bool):
        issues.append(
            ValidationIssue(
                f"{path}.config.parallel", "loop_invalid_parallel", "parallel must be a boolean"
            )
        )

    body = config.get("steps")
    if not isinstance(body, list) or not body:
        issues.append(
            ValidationIssue(
                f"{path}.config.steps",
                "loop_missing_steps",
                "Loop steps need a non-empty steps list",
            )
        )
        return issues

    for idx, raw in enumerate(body):
        sub_path = f"{path}.config.steps[{idx}]"
        try:
            sub = WorkflowStep.model_validate(raw)
        except ValidationError as e:
            issues.append(ValidationIssue(sub_path, "loop_invalid_step", str(e.errors()[0]["msg"])))
            continue
        if sub.is_loop:
            issues.append(
                ValidationIssue(sub_path, "loop_nested", "Loop steps cannot contain loop steps")
            )
    return issues


def validate_template(template: WorkflowTemplate) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    name = template.name.strip()
    if not name or len(name) > MAX_TEMPLATE_NAME_LENGTH:
        issues.append(
            ValidationIssue(
                "name",
                "invalid_name",
                f"Template name must be 1-{MAX_TEMPLATE_NAME_LENGTH} characters",
            )
        )

    if not template.steps:
        issues.append(ValidationIssue("steps", "no_steps", "Template declares no steps"))
        return issues

    positions: dict[str, int] = {}
    for idx, step in enumerate(template.steps):
        if step.id in positions:
            issues.append(
                ValidationIssue(
                    f"steps[{idx}].id", "duplicate_step_id", f"Step id {step.id!r} is repeated"
                )
            )
        else:
            positions[step.id] = idx

    for idx, step in enumerate(template.steps):
        path = f"steps[{idx}]"
        issues.extend(_validate_retry(path, step))
        if step.is_loop:
            issues.extend(_validate_loop(path, step))
        for target in step.next_steps or []:
            target_idx = positions.get(target)
            if target_idx is None:
                issues.append(
                    ValidationIssue(
                        f"{path}.next_steps",
                        "unknown_next_step",
                        f"next_steps references undeclared step {target!r}",
                    )
                )
            elif target_idx <= idx:
                issues.append(
                    ValidationIssue(
                        f"{path}.next_steps",
                        "backward_next_step",
                        f"next_steps may only reference later steps, not {target!r}",
                    )
                )

    return issues


def validate_stage(stage: KanbanStage) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    if stage.workflow_triggers and stage.automation is not StageAutomation.WORKFLOW_TRIGGER:
        issues.append(
            ValidationIssue(
                "automation",
                "triggers_ignored",
                f"workflow_triggers are ignored while automation is {stage.automation.value!r}",
            )
        )

    for t_idx, trigger in enumerate(stage.workflow_triggers):
        for c_idx, condition in enumerate(trigger.conditions):
            if not isinstance(condition, AttributeChangeCondition):
                continue
            if condition.operator in _ORDERING and as_number(condition.field_value) is None:
                issues.append(
                    ValidationIssue(
                        f"workflow_triggers[{t_idx}].conditions[{c_idx}].field_value",
                        "non_numeric_threshold",
                        f"Operator {condition.operator.value!r} needs a numeric field_value",
                    )
                )

    return issues


def _check_contiguous(scope: str, positions: list[int]) -> list[ValidationIssue]:
    ordered = sorted(positions)
    if ordered == list(range(len(ordered))):
        return []
    if len(set(ordered)) != len(ordered):
        return [ValidationIssue(scope, "duplicate_position", f"Duplicate positions: {ordered}")]
    return [
        ValidationIssue(
            scope, "position_gap", f"Positions must run 0..{len(ordered) - 1}: {ordered}"
        )
    ]


def validate_stage_positions(stages: Iterable[KanbanStage]) -> list[ValidationIssue]:
    """Stage positions within each board are unique and contiguous from 0."""

    by_board: dict[str, list[int]] = defaultdict(list)
    for stage in stages:
        by_board[stage.board_id].append(stage.position)

    issues: list[ValidationIssue] = []
    for board_id, positions in by_board.items():
        issues.extend(_check_contiguous(f"boards[{board_id}].stages", positions))
    return issues


def validate_card_positions(cards: Iterable[KanbanCard]) -> list[ValidationIssue]:
    """Active card positions within each stage are unique and contiguous from 0."""

    by_stage: dict[str, list[int]] = defaultdict(list)
    for card in cards:
        if card.status is KanbanCardStatus.ACTIVE:
            by_stage[card.stage_id].append(card.position)

    issues: list[ValidationIssue] = []
    for stage_id, positions in by_stage.items():
        issues.extend(_check_contiguous(f"stages[{stage_id}].cards", positions))
    return issues

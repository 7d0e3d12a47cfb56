"""Unit tests for template, stage and layout validation."""

from __future__ import annotations

from studio_automation.engine.kanban.models import (
    AttributeChangeCondition,
    ComparisonOperator,
    KanbanCard,
    KanbanCardStatus,
    KanbanStage,
    StageAutomation,
    StageWorkflowTrigger,
)
from studio_automation.engine.validation import (
    validate_card_positions,
    validate_stage,
    validate_stage_positions,
    validate_template,
)
from studio_automation.engine.workflow.models import (
    RetryPolicy,
    StepErrorHandling,
    WorkflowStep,
    WorkflowTemplate,
)


def _codes(issues: list) -> list[str]:
    return [issue.code for issue in issues]


def _template(*steps: WorkflowStep, name: str = "Launch") -> WorkflowTemplate:
    return WorkflowTemplate(studio_id="studio-1", name=name, steps=list(steps))


def test_valid_template(template: WorkflowTemplate) -> None:
    assert validate_template(template) == []


def test_template_without_steps() -> None:
    assert _codes(validate_template(_template(name=" "))) == ["invalid_name", "no_steps"]


def test_duplicate_step_ids() -> None:
    template = _template(
        WorkflowStep(id="a", action_type="echo"), WorkflowStep(id="a", action_type="echo")
    )

    issues = validate_template(template)

    assert _codes(issues) == ["duplicate_step_id"]
    assert issues[0].path == "steps[1].id"


def test_next_steps_must_point_forward() -> None:
    template = _template(
        WorkflowStep(id="a", action_type="echo"),
        WorkflowStep(id="b", action_type="echo", next_steps=["a", "zzz"]),
    )

    assert _codes(validate_template(template)) == ["backward_next_step", "unknown_next_step"]


def test_inverted_retry_delays() -> None:
    template = _template(
        WorkflowStep(
            id="a",
            action_type="echo",
            error_handling=StepErrorHandling(
                retry_policy=RetryPolicy(base_delay_seconds=10, max_delay_seconds=1)
            ),
        )
    )

    assert _codes(validate_template(template)) == ["invalid_retry_policy"]


def test_loop_configuration_problems() -> None:
    template = _template(
        WorkflowStep(
            id="loop",
            action_type="loop",
            config={
                "max_iterations": 0,
                "parallel": "yes",
                "steps": [{"id": "inner", "action_type": "loop"}, {"id": ""}],
            },
        )
    )

    assert _codes(validate_template(template)) == [
        "loop_missing_source",
        "loop_invalid_limit",
        "loop_invalid_parallel",
        "loop_nested",
        "loop_invalid_step",
    ]


def test_loop_without_body() -> None:
    template = _template(
        WorkflowStep(id="loop", action_type="loop", config={"iterate_over": "input.items"})
    )

    assert _codes(validate_template(template)) == ["loop_missing_steps"]


def test_stage_with_ignored_triggers() -> None:
    stage = KanbanStage(
        board_id="b",
        name="Review",
        automation=StageAutomation.NONE,
        workflow_triggers=[StageWorkflowTrigger(template_id="t")],
    )

    assert _codes(validate_stage(stage)) == ["triggers_ignored"]


def test_stage_with_text_threshold() -> None:
    stage = KanbanStage(
        board_id="b",
        name="Review",
        workflow_triggers=[
            StageWorkflowTrigger(
                template_id="t",
                conditions=[
                    AttributeChangeCondition(
                        field_name="budget", operator=ComparisonOperator.GTE, field_value="big"
                    ),
                    AttributeChangeCondition(
                        field_name="owner", operator=ComparisonOperator.EQ, field_value="ana"
                    ),
                ],
            )
        ],
    )

    issues = validate_stage(stage)

    assert _codes(issues) == ["non_numeric_threshold"]
    assert issues[0].path == "workflow_triggers[0].conditions[0].field_value"


def test_stage_positions_per_board() -> None:
    stages = [
        KanbanStage(board_id="b1", name="A", position=0),
        KanbanStage(board_id="b1", name="B", position=2),
        KanbanStage(board_id="b2", name="C", position=0),
        KanbanStage(board_id="b2", name="D", position=0),
    ]

    assert _codes(validate_stage_positions(stages)) == ["position_gap", "duplicate_position"]


def test_card_positions_ignore_inactive_cards() -> None:
    cards = [
        KanbanCard(board_id="b", stage_id="s", title="a", position=0),
        KanbanCard(board_id="b", stage_id="s", title="b", position=1),
        KanbanCard(
            board_id="b",
            stage_id="s",
            title="c",
            position=1,
            status=KanbanCardStatus.ARCHIVED,
        ),
    ]

    assert validate_card_positions(cards) == []

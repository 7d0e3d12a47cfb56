"""Unit tests for detail read models."""

from __future__ import annotations

from datetime import UTC, datetime

from studio_automation.engine.kanban.models import KanbanCard, KanbanStage
from studio_automation.engine.views import (
    card_with_details,
    execution_with_details,
    step_progress,
)
from studio_automation.engine.workflow import state_machine as sm
from studio_automation.engine.workflow.models import (
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowTemplate,
)
from studio_automation.engine.workflow.state_machine import StepOutcome

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def test_progress_counts_unrecorded_steps_as_pending(
    execution: WorkflowExecution, template: WorkflowTemplate
) -> None:
    current = sm.transition(execution, WorkflowExecutionStatus.RUNNING, now=T0)
    current = sm.start_step(current, "draft", template=template, now=T0)
    current = sm.apply_step_result(
        current, "draft", StepOutcome.success({}), template=template, now=T0
    ).execution
    current = sm.start_step(current, "review", template=template, now=T0)

    progress = step_progress(current, template)

    assert progress.total == 3
    assert progress.completed == 1
    assert progress.running == 1
    assert progress.pending == 1


def test_execution_with_details(execution: WorkflowExecution, template: WorkflowTemplate) -> None:
    details = execution_with_details(execution, template)

    assert details.template.name == "Product launch"
    assert details.template.trigger_type == "manual"
    assert details.progress.pending == 3

    bare = execution_with_details(execution)
    assert bare.template is None
    assert bare.progress.total == 0


def test_card_with_details(execution: WorkflowExecution, template: WorkflowTemplate) -> None:
    stages = {
        "todo": KanbanStage(id="todo", board_id="b", name="To do", color="#ccc"),
        "done": KanbanStage(id="done", board_id="b", name="Done"),
    }
    blocker = KanbanCard(id="c0", board_id="b", stage_id="done", title="Casting")
    unrelated = KanbanCard(id="c9", board_id="b", stage_id="todo", title="Other")
    card = KanbanCard(
        id="c1",
        board_id="b",
        stage_id="todo",
        title="Shoot",
        dependencies=["c0"],
        workflow_execution_id=execution.id,
    )

    details = card_with_details(
        card,
        stages=stages,
        dependencies=[blocker, unrelated],
        execution=execution,
        template=template,
    )

    assert details.stage.name == "To do"
    assert details.stage.color == "#ccc"
    assert [d.id for d in details.dependency_details] == ["c0"]
    assert details.dependency_details[0].stage_name == "Done"
    assert details.execution.template_name == "Product launch"
    assert details.execution.status is WorkflowExecutionStatus.PENDING


def test_card_with_details_without_related_records() -> None:
    card = KanbanCard(board_id="b", stage_id="gone", title="Shoot")

    details = card_with_details(card)

    assert details.stage is None
    assert details.dependency_details == []
    assert details.execution is None

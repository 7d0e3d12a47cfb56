"""Read models that embed a record alongside summaries of related records."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping

from pydantic import BaseModel, Field

from .kanban.models import KanbanCard, KanbanStage
from .workflow.models import (
    StepExecutionStatus,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowTemplate,
)


class TemplateSummary(BaseModel):
    id: str
    name: str
    description: str | None = None
    trigger_type: str


class StepProgress(BaseModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    retrying: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class WorkflowExecutionWithDetails(BaseModel):
    execution: WorkflowExecution
    template: TemplateSummary | None = None
    progress: StepProgress = Field(default_factory=StepProgress)


class StageSummary(BaseModel):
    id: str
    name: str
    stage_type: str
    color: str | None = None


class DependencySummary(BaseModel):
    id: str
    title: str
    status: str
    stage_name: str | None = None


class ExecutionSummary(BaseModel):
    id: str
    status: WorkflowExecutionStatus
    template_name: str | None = None


class KanbanCardWithDetails(BaseModel):
    card: KanbanCard
    stage: StageSummary | None = None
    dependency_details: list[DependencySummary] = Field(default_factory=list)
    execution: ExecutionSummary | None = None


def summarize_template(template: WorkflowTemplate) -> TemplateSummary:
    return TemplateSummary(
        id=template.id,
        name=template.name,
        description=template.description,
        trigger_type=template.trigger.type.value,
    )


def step_progress(
    execution: WorkflowExecution, template: WorkflowTemplate | None = None
) -> StepProgress:
    """Count step records by status; declared steps without a record are pending."""

    counts = Counter(record.status for record in execution.step_executions)
    total = len(template.steps) if template is not None else len(execution.step_executions)
    unrecorded = max(total - len(execution.step_executions), 0)
    return StepProgress(
        total=total,
        pending=counts[StepExecutionStatus.PENDING] + unrecorded,
        running=counts[StepExecutionStatus.RUNNING],
        retrying=counts[StepExecutionStatus.RETRYING],
        completed=counts[StepExecutionStatus.COMPLETED],
        failed=counts[StepExecutionStatus.FAILED],
        skipped=counts[StepExecutionStatus.SKIPPED],
    )


def execution_with_details(
    execution: WorkflowExecution, template: WorkflowTemplate | None = None
) -> WorkflowExecutionWithDetails:
    return WorkflowExecutionWithDetails(
        execution=execution,
        template=summarize_template(template) if template is not None else None,
        progress=step_progress(execution, template),
    )


def card_with_details(
    card: KanbanCard,
    *,
    stages: Mapping[str, KanbanStage] | None = None,
    dependencies: Iterable[KanbanCard] = (),
    execution: WorkflowExecution | None = None,
    template: WorkflowTemplate | None = None,
) -> KanbanCardWithDetails:
    stages = stages or {}
    stage = stages.get(card.stage_id)

    dependency_details = []
    for dep in dependencies:
        if dep.id not in card.dependencies:
            continue
        dep_stage = stages.get(dep.stage_id)
        dependency_details.append(
            DependencySummary(
                id=dep.id,
                title=dep.title,
                status=dep.status.value,
                stage_name=dep_stage.name if dep_stage else None,
            )
        )

    execution_summary = None
    if execution is not None:
        execution_summary = ExecutionSummary(
            id=execution.id,
            status=execution.status,
            template_name=template.name if template is not None else None,
        )

    return KanbanCardWithDetails(
        card=card,
        stage=(
            StageSummary(
                id=stage.id, name=stage.name, stage_type=stage.stage_type.value, color=stage.color
            )
            if stage is not None
            else None
        ),
        dependency_details=dependency_details,
        execution=execution_summary,
    )

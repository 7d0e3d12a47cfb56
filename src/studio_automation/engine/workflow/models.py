"""Persisted workflow records: templates, executions and step executions."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, JsonValue

LOOP_ACTION_TYPE = "loop"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def to_json_value(value: object) -> JsonValue:
    """Coerce arbitrary error details into plain JSON data."""

    converted: JsonValue = json.loads(json.dumps(value, default=str))
    return converted


class WorkflowExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class StepExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class WorkflowTemplateStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"
    DEPRECATED = "deprecated"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    FILE_UPLOAD = "file_upload"
    KANBAN_CARD_CREATE = "kanban_card_create"
    KANBAN_CARD_UPDATE = "kanban_card_update"
    KANBAN_STAGE_CHANGE = "kanban_stage_change"


class BackoffStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


class RetryPolicy(BaseModel):
    """Retry settings for a step. Unset fields fall back to broader defaults."""

    max_attempts: int | None = Field(default=None, ge=0)
    base_delay_seconds: float | None = Field(default=None, ge=0)
    max_delay_seconds: float | None = Field(default=None, ge=0)
    backoff_strategy: BackoffStrategy | None = None

    model_config = ConfigDict(extra="ignore")


class StepErrorHandling(BaseModel):
    retry_policy: RetryPolicy | None = None
    skippable: bool = Field(
        default=False,
        description="If true, exhausting retries fails the step but not the execution",
    )

    model_config = ConfigDict(extra="allow")


class TemplateErrorHandling(BaseModel):
    retry_policy: RetryPolicy | None = None
    continue_on_failure: bool = Field(
        default=False,
        description="If true, a step that exhausts its retries never fails the execution",
    )

    model_config = ConfigDict(extra="allow")


class WorkflowTrigger(BaseModel):
    type: TriggerType = TriggerType.MANUAL
    config: dict[str, JsonValue] = Field(default_factory=dict)
    conditions: dict[str, JsonValue] = Field(default_factory=dict)


class WorkflowStep(BaseModel):
    id: str = Field(min_length=1)
    action_type: str = Field(min_length=1)
    name: str = ""
    description: str | None = None
    config: dict[str, JsonValue] = Field(default_factory=dict)
    next_steps: list[str] | None = None
    error_handling: StepErrorHandling = Field(default_factory=StepErrorHandling)

    @property
    def is_loop(self) -> bool:
        return self.action_type == LOOP_ACTION_TYPE


class WorkflowTemplate(BaseModel):
    """A reusable definition of a workflow's trigger and ordered steps."""

    id: str = Field(default_factory=new_id)
    studio_id: str
    name: str
    description: str | None = None
    status: WorkflowTemplateStatus = WorkflowTemplateStatus.DRAFT
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    steps: list[WorkflowStep] = Field(default_factory=list)
    variables: dict[str, JsonValue] = Field(default_factory=dict)
    error_handling: TemplateErrorHandling = Field(default_factory=TemplateErrorHandling)
    tags: list[str] = Field(default_factory=list)
    is_public: bool = False
    created_by: str | None = None
    version: int = Field(default=0, ge=0)

    def step(self, step_id: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]


class StepError(BaseModel):
    message: str
    code: str | None = None
    details: dict[str, JsonValue] | None = None


class ExecutionError(BaseModel):
    message: str
    code: str | None = None
    failed_step: str | None = None
    details: dict[str, JsonValue] | None = None


class StepExecution(BaseModel):
    """One step's run within an execution. Owned by its WorkflowExecution."""

    step_id: str
    status: StepExecutionStatus = StepExecutionStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = Field(default=None, ge=0)
    input: dict[str, JsonValue] | None = None
    output: dict[str, JsonValue] | None = None
    error: StepError | None = None
    retry_count: int = Field(default=0, ge=0)
    external_execution_id: str | None = None


class WorkflowExecution(BaseModel):
    """One run of a template.

    ``status`` is owned by the state machine; callers never assign it
    directly.
    """

    id: str = Field(default_factory=new_id)
    template_id: str
    studio_id: str
    triggered_by: str
    status: WorkflowExecutionStatus = WorkflowExecutionStatus.PENDING
    card_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    trigger_data: dict[str, JsonValue] = Field(default_factory=dict)
    context: dict[str, JsonValue] = Field(default_factory=dict)
    step_executions: list[StepExecution] = Field(default_factory=list)
    result: dict[str, JsonValue] | None = None
    error: ExecutionError | None = None
    external_run_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=0, ge=0)

    def step_execution(self, step_id: str) -> StepExecution | None:
        for record in self.step_executions:
            if record.step_id == step_id:
                return record
        return None

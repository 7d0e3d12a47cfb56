"""Kanban board records and the trigger rules attached to stages."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, JsonValue, field_validator, model_validator

from ..workflow.models import WorkflowExecutionStatus, new_id, utc_now


class KanbanStageType(str, Enum):
    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    TESTING = "testing"
    DONE = "done"
    ARCHIVED = "archived"
    CUSTOM = "custom"


class StageAutomation(str, Enum):
    NONE = "none"
    AUTO_ASSIGN = "auto_assign"
    WORKFLOW_TRIGGER = "workflow_trigger"
    NOTIFICATION = "notification"
    TIME_TRACKING = "time_tracking"


class KanbanCardStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class KanbanCardPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class CardType(str, Enum):
    TASK = "task"
    BUG = "bug"
    FEATURE = "feature"
    STORY = "story"
    EPIC = "epic"
    SPIKE = "spike"
    IMPROVEMENT = "improvement"
    CUSTOM = "custom"


class ComparisonOperator(str, Enum):
    GT = ">"
    LT = "<"
    EQ = "="
    GTE = ">="
    LTE = "<="
    NE = "!="


class StageEntryCondition(BaseModel):
    type: Literal["stage_entry"] = "stage_entry"


class AttributeChangeCondition(BaseModel):
    type: Literal["attribute_change"] = "attribute_change"
    field_name: str = Field(min_length=1)
    operator: ComparisonOperator
    field_value: JsonValue = None


TriggerCondition = Annotated[
    StageEntryCondition | AttributeChangeCondition,
    Field(discriminator="type"),
]


class StageWorkflowTrigger(BaseModel):
    """Fires ``template_id`` when any of its conditions matches."""

    template_id: str = Field(min_length=1)
    conditions: list[TriggerCondition] = Field(default_factory=list)
    is_active: bool = True


class StageAutomationConfig(BaseModel):
    workflow_template_id: str | None = None
    auto_assign_user_id: str | None = None
    notification_users: list[str] = Field(default_factory=list)
    time_tracking_start: bool | None = None
    time_tracking_stop: bool | None = None
    custom_rules: dict[str, JsonValue] = Field(default_factory=dict)


class StageRules(BaseModel):
    require_assignee: bool = False
    require_due_date: bool = False
    require_description: bool = False
    require_tags: bool = False
    auto_archive_after_days: int | None = Field(default=None, ge=1)
    prevent_move_back: bool = False


class KanbanStage(BaseModel):
    id: str = Field(default_factory=new_id)
    board_id: str
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    stage_type: KanbanStageType = KanbanStageType.CUSTOM
    position: int = Field(default=0, ge=0)
    color: str | None = None
    wip_limit: int | None = Field(default=None, ge=1)
    is_collapsed: bool = False
    automation: StageAutomation = StageAutomation.NONE
    automation_config: StageAutomationConfig | None = None
    workflow_triggers: list[StageWorkflowTrigger] = Field(default_factory=list)
    rules: StageRules = Field(default_factory=StageRules)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _promote_automation(cls, data: Any) -> Any:
        # Stages created with triggers but no explicit automation consult them.
        if isinstance(data, dict) and data.get("workflow_triggers") and "automation" not in data:
            return {**data, "automation": StageAutomation.WORKFLOW_TRIGGER}
        return data

    def effective_triggers(self) -> list[StageWorkflowTrigger]:
        """Active triggers, including the legacy single-template wiring."""

        if self.automation is not StageAutomation.WORKFLOW_TRIGGER:
            return []
        triggers = [t for t in self.workflow_triggers if t.is_active]
        legacy = self.automation_config.workflow_template_id if self.automation_config else None
        if legacy and all(t.template_id != legacy for t in triggers):
            triggers.append(
                StageWorkflowTrigger(template_id=legacy, conditions=[StageEntryCondition()])
            )
        return triggers


class KanbanCard(BaseModel):
    id: str = Field(default_factory=new_id)
    board_id: str
    stage_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    card_type: CardType = CardType.TASK
    priority: KanbanCardPriority = KanbanCardPriority.MEDIUM
    status: KanbanCardStatus = KanbanCardStatus.ACTIVE
    position: int = Field(default=0, ge=0)
    assigned_to: str | None = None
    due_date: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, JsonValue] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    is_blocked: bool = False
    blocked_reason: str | None = None
    workflow_execution_id: str | None = None
    workflow_execution_status: WorkflowExecutionStatus | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    version: int = Field(default=0, ge=0)

    @field_validator("custom_fields", mode="before")
    @classmethod
    def _normalise_custom_fields(cls, value: Any) -> Any:
        # Accept the API's list form: [{field_name, field_type, field_value}].
        if isinstance(value, list):
            fields: dict[str, Any] = {}
            for item in value:
                if not isinstance(item, dict) or "field_name" not in item:
                    raise ValueError("custom_fields entries need a field_name")
                fields[str(item["field_name"])] = item.get("field_value")
            return fields
        return value

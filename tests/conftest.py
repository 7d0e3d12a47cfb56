"""Test configuration and fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from studio_automation.core.config import (
    EngineConfig,
    RetryConfig,
    RunnerConfig,
    SchedulerConfig,
    StoreConfig,
)
from studio_automation.engine.workflow.dispatcher import ExecutionDispatcher
from studio_automation.engine.workflow.models import (
    WorkflowExecution,
    WorkflowStep,
    WorkflowTemplate,
    WorkflowTemplateStatus,
)
from studio_automation.engine.workflow.runner import LocalStepRunner
from studio_automation.state.store import Stores


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def echo_handler(step: WorkflowStep, step_input: dict, context: dict) -> dict:
    return {"step": step.id, **step_input}


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def store_config(temp_state_dir: Path) -> StoreConfig:
    """Provide a test store configuration."""
    return StoreConfig(storage_path=temp_state_dir)


@pytest.fixture
def engine_config(store_config: StoreConfig) -> EngineConfig:
    """Provide a test engine configuration."""
    return EngineConfig(
        log_level="DEBUG",
        debug=True,
        retry=RetryConfig(max_attempts=2, base_delay_seconds=0.5, max_delay_seconds=4.0),
        runner=RunnerConfig(base_url="http://runner.test/api", step_timeout_seconds=5.0),
        scheduler=SchedulerConfig(
            execution_timeout_seconds=60.0, pending_stale_after_seconds=300.0
        ),
        store=store_config,
    )


@pytest.fixture
def stores(temp_state_dir: Path) -> Stores:
    return Stores.open(temp_state_dir)


@pytest.fixture
def template() -> WorkflowTemplate:
    """An active three-step template."""
    return WorkflowTemplate(
        id="tpl-launch",
        studio_id="studio-1",
        name="Product launch",
        status=WorkflowTemplateStatus.ACTIVE,
        steps=[
            WorkflowStep(id="draft", action_type="echo", config={"title": "Launch"}),
            WorkflowStep(id="review", action_type="echo"),
            WorkflowStep(id="publish", action_type="echo"),
        ],
    )


@pytest.fixture
def execution(template: WorkflowTemplate) -> WorkflowExecution:
    return WorkflowExecution(
        template_id=template.id,
        studio_id=template.studio_id,
        triggered_by="user-1",
    )


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def runner() -> LocalStepRunner:
    return LocalStepRunner({"echo": echo_handler})


@pytest.fixture
def dispatcher(
    stores: Stores, runner: LocalStepRunner, sleeps: RecordingSleep
) -> ExecutionDispatcher:
    return ExecutionDispatcher(
        templates=stores.templates,
        executions=stores.executions,
        runner=runner,
        step_timeout_seconds=5.0,
        execution_timeout_seconds=60.0,
        pending_stale_after_seconds=300.0,
        sleep=sleeps,
    )

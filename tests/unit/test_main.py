"""Unit tests for the command line entrypoint."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from studio_automation.core.config import EngineConfig
from studio_automation.engine import main as cli
from studio_automation.engine.workflow.dispatcher import ExecutionDispatcher
from studio_automation.engine.workflow.models import (
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowTemplate,
)
from studio_automation.engine.workflow.runner import LocalStepRunner
from studio_automation.state.store import Stores


@pytest.fixture
def cli_env(monkeypatch, tmp_path: Path) -> Path:
    """Point the CLI at a scratch store and keep it from reconfiguring logging."""

    state = tmp_path / "state"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STUDIO_AUTOMATION_STORE_STORAGE_PATH", str(state))
    monkeypatch.setattr(EngineConfig, "setup_logging", lambda self: None)

    from_config = ExecutionDispatcher.from_config.__func__

    def local_from_config(cls, config, stores, *, runner=None):
        echo = LocalStepRunner({"echo": lambda step, step_input, context: {"step": step.id}})
        return from_config(cls, config, stores, runner=runner or echo)

    monkeypatch.setattr(ExecutionDispatcher, "from_config", classmethod(local_from_config))
    return state


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_data_must_be_a_json_object() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["dispatch", "--template-id", "t", "--data", "[1]"])


def test_dispatch_runs_to_completion(
    cli_env: Path, template: WorkflowTemplate, capsys: pytest.CaptureFixture[str]
) -> None:
    Stores.open(cli_env).templates.save(template)

    code = cli.main(["dispatch", "--template-id", template.id, "--data", '{"budget": 5}'])

    assert code == cli.EXIT_OK
    printed = json.loads(capsys.readouterr().out)
    assert printed["status"] == "completed"
    assert printed["trigger_data"] == {"budget": 5}


def test_dispatch_wait_timeout_cancels_execution(
    cli_env: Path, monkeypatch, template: WorkflowTemplate, capsys: pytest.CaptureFixture[str]
) -> None:
    stores = Stores.open(cli_env)
    stores.templates.save(template)
    from_config = ExecutionDispatcher.from_config.__func__

    async def stall(step, step_input, context):
        await asyncio.sleep(10)
        return {}

    def stalling_from_config(cls, config, stores, *, runner=None):
        return from_config(cls, config, stores, runner=LocalStepRunner({"echo": stall}))

    monkeypatch.setattr(ExecutionDispatcher, "from_config", classmethod(stalling_from_config))

    code = cli.main(
        ["dispatch", "--template-id", template.id, "--card-id", "card-1", "--timeout", "0.05"]
    )

    assert code == cli.EXIT_FAILURE
    printed = json.loads(capsys.readouterr().out)
    assert printed["status"] == "cancelled"
    assert stores.executions.load(printed["id"]).status is WorkflowExecutionStatus.CANCELLED


def test_dispatch_unknown_template(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["dispatch", "--template-id", "missing"])

    assert code == cli.EXIT_REJECTED
    payload = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert payload["code"] == "template_not_found"


def test_show_and_cancel_execution(
    cli_env: Path,
    template: WorkflowTemplate,
    execution: WorkflowExecution,
    capsys: pytest.CaptureFixture[str],
) -> None:
    stores = Stores.open(cli_env)
    stores.templates.save(template)
    pending = stores.executions.save(execution)

    assert cli.main(["show-execution", pending.id, "--details"]) == cli.EXIT_OK
    details = json.loads(capsys.readouterr().out)
    assert details["progress"]["pending"] == 3
    assert details["template"]["name"] == template.name

    assert cli.main(["cancel", pending.id, "--reason", "not needed"]) == cli.EXIT_OK
    assert stores.executions.load(pending.id).status is WorkflowExecutionStatus.CANCELLED


def test_sweep_timeouts_reports_counts(
    cli_env: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["sweep-timeouts"]) == cli.EXIT_OK
    assert "Timed out 0 execution(s)" in capsys.readouterr().out


def test_validate_template_file(
    cli_env: Path, template: WorkflowTemplate, capsys: pytest.CaptureFixture[str]
) -> None:
    good = cli_env.parent / "good.json"
    good.write_text(template.model_dump_json(), encoding="utf-8")
    bad = cli_env.parent / "bad.json"
    bad.write_text(
        template.model_copy(update={"steps": []}).model_dump_json(), encoding="utf-8"
    )
    broken = cli_env.parent / "broken.json"
    broken.write_text('{"name": 1}', encoding="utf-8")

    assert cli.main(["validate-template", str(good)]) == cli.EXIT_OK
    assert cli.main(["validate-template", str(bad)]) == cli.EXIT_INVALID
    assert cli.main(["validate-template", str(broken)]) == cli.EXIT_INVALID
    assert "no_steps" in capsys.readouterr().out


def test_invalid_configuration(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STUDIO_AUTOMATION_DEBUG", "not-a-bool")

    assert cli.main(["sweep-timeouts"]) == cli.EXIT_CONFIG


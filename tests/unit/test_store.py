"""Unit tests for JSON record persistence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from studio_automation.engine.errors import ConcurrencyConflict, RecordNotFound
from studio_automation.engine.workflow.models import WorkflowExecution, WorkflowExecutionStatus
from studio_automation.state.store import JsonRecordStore, Stores


@pytest.fixture
def store(temp_state_dir: Path) -> JsonRecordStore[WorkflowExecution]:
    return JsonRecordStore(temp_state_dir / "executions.json", WorkflowExecution)


def _execution(**overrides: object) -> WorkflowExecution:
    return WorkflowExecution(
        template_id="tpl-1", studio_id="studio-1", triggered_by="u", **overrides
    )


def test_empty_store(store: JsonRecordStore[WorkflowExecution]) -> None:
    assert store.list() == []
    assert store.get("missing") is None
    with pytest.raises(RecordNotFound):
        store.load("missing")


def test_save_bumps_version_and_persists(
    store: JsonRecordStore[WorkflowExecution], temp_state_dir: Path
) -> None:
    execution = _execution()

    saved = store.save(execution)

    assert execution.version == 0
    assert saved.version == 1
    assert store.load(execution.id) == saved
    raw = json.loads((temp_state_dir / "executions.json").read_text(encoding="utf-8"))
    assert raw[0]["id"] == execution.id
    assert raw[0]["status"] == "pending"


def test_stale_version_is_rejected(store: JsonRecordStore[WorkflowExecution]) -> None:
    saved = store.save(_execution())
    store.save(saved.model_copy(update={"triggered_by": "first"}))

    with pytest.raises(ConcurrencyConflict) as exc_info:
        store.save(saved.model_copy(update={"triggered_by": "second"}))

    assert exc_info.value.details["stored_version"] == 2
    assert store.load(saved.id).triggered_by == "first"


def test_find_filters_records(store: JsonRecordStore[WorkflowExecution]) -> None:
    store.save(_execution(card_id="card-1"))
    store.save(_execution(card_id="card-2", status=WorkflowExecutionStatus.RUNNING))

    running = store.find(lambda e: e.status is WorkflowExecutionStatus.RUNNING)

    assert [e.card_id for e in running] == ["card-2"]


def test_unreadable_file_reads_as_empty(
    store: JsonRecordStore[WorkflowExecution], temp_state_dir: Path
) -> None:
    (temp_state_dir / "executions.json").write_text("{not json", encoding="utf-8")

    assert store.list() == []


def test_stores_open_uses_one_file_per_collection(temp_state_dir: Path) -> None:
    stores = Stores.open(temp_state_dir)

    assert stores.templates.path.name == "workflow_templates.json"
    assert stores.executions.path.name == "workflow_executions.json"
    assert stores.stages.path.name == "kanban_stages.json"
    assert stores.cards.path.name == "kanban_cards.json"
    assert stores.cards.kind == "KanbanCard"

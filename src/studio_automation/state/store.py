"""Persisted record collections.

Each collection is a single JSON file holding a list of records. Writes go
through an optimistic version check: a record must be saved with the version
it was loaded at, and the stored copy gets ``version + 1``.

This is deliberately small. It stands in for the platform's database behind
the same ``load`` / ``get`` / ``save`` seam.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel

from studio_automation.engine.errors import ConcurrencyConflict, RecordNotFound
from studio_automation.engine.kanban.models import KanbanCard, KanbanStage
from studio_automation.engine.workflow.models import WorkflowExecution, WorkflowTemplate

logger = logging.getLogger(__name__)


T = TypeVar("T", bound=BaseModel)


class JsonRecordStore(Generic[T]):
    def __init__(self, path: Path, model: type[T]) -> None:
        self.path = path
        self.model = model
        self._lock = threading.Lock()

    @property
    def kind(self) -> str:
        return self.model.__name__

    def _load_unlocked(self) -> list[T]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable record file", extra={"path": str(self.path)})
            return []
        if not isinstance(raw, list):
            return []
        return [self.model.model_validate(item) for item in raw]

    def _save_unlocked(self, records: list[T]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in records]
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    def list(self) -> list[T]:
        with self._lock:
            return self._load_unlocked()

    def get(self, record_id: str) -> T | None:
        with self._lock:
            for record in self._load_unlocked():
                if getattr(record, "id", None) == record_id:
                    return record
            return None

    def load(self, record_id: str) -> T:
        record = self.get(record_id)
        if record is None:
            raise RecordNotFound(
                f"{self.kind} {record_id} not found",
                details={"kind": self.kind, "id": record_id},
            )
        return record

    def find(self, predicate: Callable[[T], bool]) -> list[T]:
        with self._lock:
            return [record for record in self._load_unlocked() if predicate(record)]

    def save(self, record: T) -> T:
        """Insert or update ``record`` and return the stored copy.

        Raises ConcurrencyConflict when the stored version differs from the
        version ``record`` carries.
        """

        record_id = getattr(record, "id")
        version = getattr(record, "version")
        with self._lock:
            records = self._load_unlocked()
            for idx, existing in enumerate(records):
                if getattr(existing, "id") != record_id:
                    continue
                stored_version = getattr(existing, "version")
                if stored_version != version:
                    raise ConcurrencyConflict(
                        f"{self.kind} {record_id} was modified concurrently",
                        details={
                            "kind": self.kind,
                            "id": record_id,
                            "expected_version": version,
                            "stored_version": stored_version,
                        },
                    )
                saved = record.model_copy(update={"version": version + 1}, deep=True)
                records[idx] = saved
                self._save_unlocked(records)
                return saved

            saved = record.model_copy(update={"version": version + 1}, deep=True)
            records.append(saved)
            self._save_unlocked(records)
            return saved


@dataclass
class Stores:
    """The four collections the automation core reads and writes."""

    templates: JsonRecordStore[WorkflowTemplate]
    executions: JsonRecordStore[WorkflowExecution]
    stages: JsonRecordStore[KanbanStage]
    cards: JsonRecordStore[KanbanCard]

    @classmethod
    def open(cls, storage_path: Path) -> Stores:
        return cls(
            templates=JsonRecordStore(storage_path / "workflow_templates.json", WorkflowTemplate),
            executions=JsonRecordStore(
                storage_path / "workflow_executions.json", WorkflowExecution
            ),
            stages=JsonRecordStore(storage_path / "kanban_stages.json", KanbanStage),
            cards=JsonRecordStore(storage_path / "kanban_cards.json", KanbanCard),
        )

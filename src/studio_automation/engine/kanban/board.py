"""Card mutations on a kanban board and the automation they fire.

Every mutation that changes card placement runs under a per-board lock and
commits positions before any trigger is evaluated. Dispatching happens after
the lock is released; a trigger that cannot dispatch is reported in the
result rather than failing the mutation that fired it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import JsonValue

from ..errors import (
    CardNotFound,
    ConfigurationError,
    DuplicateExecution,
    MoveRejected,
    StageNotFound,
    TemplateInactive,
    TemplateNotFound,
    WipLimitExceeded,
)
from ..validation import validate_stage
from ..workflow.dispatcher import ExecutionDispatcher, TriggerContext
from ..workflow.models import WorkflowExecution, utc_now
from ..workflow.state_machine import Clock
from .models import KanbanCard, KanbanCardStatus, KanbanStage
from .triggers import AttributeChange, Mutation, StageEntry, evaluate_detailed

if TYPE_CHECKING:
    from studio_automation.state.store import JsonRecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SkippedTrigger:
    template_id: str
    code: str
    message: str


@dataclass(frozen=True, slots=True)
class CardMutationResult:
    card: KanbanCard
    executions: tuple[WorkflowExecution, ...] = ()
    skipped: tuple[SkippedTrigger, ...] = ()
    issues: tuple[ConfigurationError, ...] = ()


def _trigger_data(mutation: Mutation, card: KanbanCard) -> dict[str, JsonValue]:
    data: dict[str, JsonValue] = {
        "card_title": card.title,
        "custom_fields": dict(card.custom_fields),
    }
    if isinstance(mutation, StageEntry):
        data["mutation"] = "stage_entry"
        data["from_stage_id"] = mutation.from_stage_id
    else:
        data["mutation"] = "attribute_change"
        data["field_name"] = mutation.field_name
        data["old_value"] = mutation.old_value
        data["new_value"] = mutation.new_value
    return data


class BoardService:
    def __init__(
        self,
        *,
        stages: JsonRecordStore[KanbanStage],
        cards: JsonRecordStore[KanbanCard],
        dispatcher: ExecutionDispatcher,
        clock: Clock = utc_now,
    ) -> None:
        self._stages = stages
        self._cards = cards
        self._dispatcher = dispatcher
        self._clock = clock
        self._board_locks: dict[str, asyncio.Lock] = {}
        dispatcher.add_terminal_listener(self._on_execution_finished)

    def _lock(self, board_id: str) -> asyncio.Lock:
        return self._board_locks.setdefault(board_id, asyncio.Lock())

    def _stage(self, stage_id: str) -> KanbanStage:
        stage = self._stages.get(stage_id)
        if stage is None:
            raise StageNotFound(f"Stage {stage_id} not found", details={"stage_id": stage_id})
        return stage

    def _card(self, card_id: str) -> KanbanCard:
        card = self._cards.get(card_id)
        if card is None:
            raise CardNotFound(f"Card {card_id} not found", details={"card_id": card_id})
        return card

    def stage_cards(self, stage_id: str, *, exclude: str | None = None) -> list[KanbanCard]:
        """Active cards in a stage, in position order."""

        cards = self._cards.find(
            lambda c: c.stage_id == stage_id
            and c.status is KanbanCardStatus.ACTIVE
            and c.id != exclude
        )
        return sorted(cards, key=lambda c: (c.position, c.created_at))

    def _check_wip(self, stage: KanbanStage, occupants: list[KanbanCard]) -> None:
        if stage.wip_limit is not None and len(occupants) >= stage.wip_limit:
            raise WipLimitExceeded(
                f"Stage {stage.name!r} is at its WIP limit of {stage.wip_limit}",
                details={"stage_id": stage.id, "wip_limit": stage.wip_limit},
            )

    def _place(
        self,
        siblings: list[KanbanCard],
        card: KanbanCard,
        position: int | None,
        now: datetime,
    ) -> KanbanCard:
        """Insert ``card`` among ``siblings`` and save contiguous positions."""

        index = len(siblings) if position is None else max(0, min(position, len(siblings)))
        ordered = [*siblings[:index], card, *siblings[index:]]
        placed = card
        for pos, item in enumerate(ordered):
            if item.id == card.id:
                placed = self._cards.save(
                    item.model_copy(update={"position": pos, "updated_at": now})
                )
            elif item.position != pos:
                self._cards.save(item.model_copy(update={"position": pos, "updated_at": now}))
        return placed

    def _compact(self, stage_id: str, now: datetime) -> None:
        for pos, item in enumerate(self.stage_cards(stage_id)):
            if item.position != pos:
                self._cards.save(item.model_copy(update={"position": pos, "updated_at": now}))

    async def add_stage(self, stage: KanbanStage) -> KanbanStage:
        """Append ``stage`` to the end of its board after validating it."""

        issues = validate_stage(stage)
        if issues:
            raise ConfigurationError(
                f"Stage {stage.name!r} is misconfigured: {issues[0].message}",
                details={"issues": [issue.as_dict() for issue in issues]},
            )
        async with self._lock(stage.board_id):
            existing = self._stages.find(lambda s: s.board_id == stage.board_id)
            return self._stages.save(stage.model_copy(update={"position": len(existing)}))

    async def create_card(
        self,
        card: KanbanCard,
        *,
        triggered_by: str,
        position: int | None = None,
    ) -> CardMutationResult:
        """Place a new card in its stage (appended unless ``position`` is given)."""

        stage = self._stage(card.stage_id)
        if stage.board_id != card.board_id:
            raise ConfigurationError(
                f"Stage {stage.id} does not belong to board {card.board_id}",
                details={"stage_id": stage.id, "board_id": card.board_id},
            )

        async with self._lock(card.board_id):
            siblings = self.stage_cards(stage.id)
            self._check_wip(stage, siblings)
            placed = self._place(siblings, card, position, self._clock())

        logger.info(
            "Card created",
            extra={"card_id": placed.id, "stage_id": stage.id, "position": placed.position},
        )
        return await self._fire(stage, placed, StageEntry(), triggered_by)

    async def move_card(
        self,
        card_id: str,
        to_stage_id: str,
        *,
        triggered_by: str,
        position: int | None = None,
    ) -> CardMutationResult:
        """Move a card within or between stages and fire stage-entry triggers."""

        board_id = self._card(card_id).board_id
        async with self._lock(board_id):
            card = self._card(card_id)
            if card.status is not KanbanCardStatus.ACTIVE:
                raise MoveRejected(
                    f"Card {card_id} is {card.status.value} and cannot be moved",
                    details={"card_id": card_id, "status": card.status.value},
                )
            source = self._stage(card.stage_id)
            target = self._stage(to_stage_id)
            if target.board_id != card.board_id:
                raise MoveRejected(
                    f"Stage {target.id} is on a different board",
                    details={"card_id": card_id, "stage_id": target.id},
                )

            changes_stage = target.id != source.id
            moves_back = target.position < source.position
            if changes_stage and moves_back and source.rules.prevent_move_back:
                raise MoveRejected(
                    f"Stage {source.name!r} does not allow moving cards back",
                    details={"card_id": card_id, "from": source.id, "to": target.id},
                )

            siblings = self.stage_cards(target.id, exclude=card.id)
            if changes_stage:
                self._check_wip(target, siblings)

            now = self._clock()
            placed = self._place(
                siblings, card.model_copy(update={"stage_id": target.id}), position, now
            )
            if changes_stage:
                self._compact(source.id, now)

        logger.info(
            "Card moved",
            extra={
                "card_id": card_id,
                "from_stage_id": source.id,
                "to_stage_id": target.id,
                "position": placed.position,
            },
        )
        if not changes_stage:
            return CardMutationResult(card=placed)
        return await self._fire(target, placed, StageEntry(from_stage_id=source.id), triggered_by)

    async def update_card_field(
        self,
        card_id: str,
        field_name: str,
        value: JsonValue,
        *,
        triggered_by: str,
    ) -> CardMutationResult:
        """Set one custom field and fire matching attribute-change triggers."""

        board_id = self._card(card_id).board_id
        async with self._lock(board_id):
            card = self._card(card_id)
            old_value = card.custom_fields.get(field_name)
            updated = self._cards.save(
                card.model_copy(
                    update={
                        "custom_fields": {**card.custom_fields, field_name: value},
                        "updated_at": self._clock(),
                    }
                )
            )

        if old_value == value:
            return CardMutationResult(card=updated)
        stage = self._stage(updated.stage_id)
        mutation = AttributeChange(field_name=field_name, old_value=old_value, new_value=value)
        return await self._fire(stage, updated, mutation, triggered_by)

    async def _fire(
        self,
        stage: KanbanStage,
        card: KanbanCard,
        mutation: Mutation,
        triggered_by: str,
    ) -> CardMutationResult:
        evaluation = evaluate_detailed(stage, card, mutation)
        for error in evaluation.errors:
            logger.warning(
                "Skipping misconfigured trigger condition: %s",
                error.message,
                extra={"card_id": card.id, **error.details},
            )

        executions: list[WorkflowExecution] = []
        skipped: list[SkippedTrigger] = []
        for template_id in evaluation.template_ids:
            context = TriggerContext(
                triggered_by=triggered_by,
                card_id=card.id,
                board_id=card.board_id,
                stage_id=stage.id,
                trigger_data=_trigger_data(mutation, card),
            )
            try:
                execution = await self._dispatcher.dispatch(template_id, context)
            except (DuplicateExecution, TemplateNotFound, TemplateInactive) as e:
                logger.warning(
                    "Trigger did not dispatch: %s",
                    e.message,
                    extra={"card_id": card.id, "template_id": template_id, "code": e.code},
                )
                skipped.append(
                    SkippedTrigger(template_id=template_id, code=e.code, message=e.message)
                )
                continue
            executions.append(execution)
            card = self._link(card.id, execution)

        return CardMutationResult(
            card=card,
            executions=tuple(executions),
            skipped=tuple(skipped),
            issues=evaluation.errors,
        )

    def _link(self, card_id: str, execution: WorkflowExecution) -> KanbanCard:
        card = self._card(card_id)
        return self._cards.save(
            card.model_copy(
                update={
                    "workflow_execution_id": execution.id,
                    "workflow_execution_status": execution.status,
                    "updated_at": self._clock(),
                }
            )
        )

    def _on_execution_finished(self, execution: WorkflowExecution) -> None:
        if execution.card_id is None:
            return
        card = self._cards.get(execution.card_id)
        if card is None or card.workflow_execution_id != execution.id:
            return
        self._cards.save(
            card.model_copy(
                update={
                    "workflow_execution_status": execution.status,
                    "updated_at": self._clock(),
                }
            )
        )
        logger.debug(
            "Card execution status refreshed",
            extra={
                "card_id": card.id,
                "execution_id": execution.id,
                "status": execution.status.value,
            },
        )

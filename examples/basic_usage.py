#!/usr/bin/env python3
"""Programmatic board automation example.

This demonstrates using the engine components directly:

* load settings from `.env`
* register an active workflow template and a board with two stages
* move a card into a stage whose trigger fires the template
* wait for the execution and print the card's linked execution status

Steps run in-process through `LocalStepRunner`, so no external runner is
needed. State is written under the configured storage path.
"""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence

from studio_automation.core.config import EngineConfig
from studio_automation.engine.kanban.board import BoardService
from studio_automation.engine.kanban.models import KanbanCard, KanbanStage
from studio_automation.engine.workflow.dispatcher import ExecutionDispatcher
from studio_automation.engine.workflow.models import (
    WorkflowStep,
    WorkflowTemplate,
    WorkflowTemplateStatus,
)
from studio_automation.engine.workflow.runner import LocalStepRunner
from studio_automation.state.store import Stores


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Move a card and run the triggered workflow.")
    parser.add_argument("--budget", type=float, default=50000, help="Card budget custom field")
    return parser.parse_args(argv)


def _notify(step: WorkflowStep, step_input: dict, context: dict) -> dict:
    return {"notified": step_input.get("channel", "#general")}


async def _run(budget: float) -> int:
    config = EngineConfig()
    config.setup_logging()
    stores = Stores.open(config.store.storage_path)

    template = stores.templates.save(
        WorkflowTemplate(
            studio_id="studio-1",
            name="Budget approval",
            status=WorkflowTemplateStatus.ACTIVE,
            steps=[
                WorkflowStep(
                    id="notify",
                    action_type="notify",
                    config={
                        "channel": "#approvals",
                        "budget": "{{ trigger_data.custom_fields.budget }}",
                    },
                )
            ],
        )
    )

    runner = LocalStepRunner({"notify": _notify})
    dispatcher = ExecutionDispatcher.from_config(config, stores, runner=runner)
    board = BoardService(stages=stores.stages, cards=stores.cards, dispatcher=dispatcher)

    backlog = await board.add_stage(KanbanStage(board_id="board-1", name="Backlog"))
    approval = await board.add_stage(
        KanbanStage(
            board_id="board-1",
            name="Budget Approval",
            workflow_triggers=[
                {
                    "template_id": template.id,
                    "conditions": [
                        {
                            "type": "attribute_change",
                            "field_name": "budget",
                            "operator": ">",
                            "field_value": 25000,
                        }
                    ],
                }
            ],
        )
    )

    created = await board.create_card(
        KanbanCard(
            board_id="board-1",
            stage_id=backlog.id,
            title="Q4 Product Launch Campaign",
            custom_fields=[
                {"field_name": "budget", "field_type": "number", "field_value": budget},
            ],
        ),
        triggered_by="example",
    )

    moved = await board.move_card(created.card.id, approval.id, triggered_by="example")
    if not moved.executions:
        print("No workflow fired (budget at or below threshold)")
        return 0

    execution = await dispatcher.wait(moved.executions[0].id)
    card = stores.cards.load(created.card.id)
    print(f"Execution {execution.id}: {execution.status.value}")
    print(f"Card {card.id} workflow status: {card.workflow_execution_status}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    return asyncio.run(_run(args.budget))


if __name__ == "__main__":
    raise SystemExit(main())

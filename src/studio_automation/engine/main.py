"""CLI entrypoint for the automation engine.

Operates on the local JSON stores: dispatch a template, inspect or cancel an
execution, move a card, run the timeout sweep, or validate a template file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from pydantic import BaseModel, ValidationError

from studio_automation import __version__
from studio_automation.core.config import EngineConfig
from studio_automation.engine.errors import AutomationError
from studio_automation.engine.kanban.board import BoardService
from studio_automation.engine.validation import validate_template
from studio_automation.engine.views import execution_with_details
from studio_automation.engine.workflow.dispatcher import ExecutionDispatcher, TriggerContext
from studio_automation.engine.workflow.models import WorkflowExecutionStatus, WorkflowTemplate
from studio_automation.state.store import Stores

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_REJECTED = 3
EXIT_INVALID = 4


def _parse_json_object(value: str) -> dict[str, object]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return parsed


def _print_model(model: BaseModel) -> None:
    print(json.dumps(model.model_dump(mode="json"), indent=2, ensure_ascii=False))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="studio-automation",
        description="Workflow automation engine for studio kanban boards",
    )
    parser.add_argument(
        "--version", action="version", version=f"studio-automation {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    dispatch = subparsers.add_parser(
        "dispatch", help="Start an execution of a workflow template and wait for it to finish"
    )
    dispatch.add_argument("--template-id", required=True, help="Workflow template id")
    dispatch.add_argument("--triggered-by", default="cli", help="User or system id")
    dispatch.add_argument("--card-id", default=None, help="Card the execution is for")
    dispatch.add_argument(
        "--data",
        type=_parse_json_object,
        default={},
        help='Trigger data as a JSON object, e.g. \'{"budget": 50000}\'',
    )
    dispatch.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait before cancelling the execution (default: no limit)",
    )

    show = subparsers.add_parser("show-execution", help="Print an execution record")
    show.add_argument("execution_id")
    show.add_argument(
        "--details", action="store_true", help="Include template summary and step progress"
    )

    cancel = subparsers.add_parser("cancel", help="Cancel a non-terminal execution")
    cancel.add_argument("execution_id")
    cancel.add_argument("--reason", default="Cancelled from CLI")

    move = subparsers.add_parser("move-card", help="Move a card and fire stage triggers")
    move.add_argument("card_id")
    move.add_argument("--to", dest="stage_id", required=True, help="Destination stage id")
    move.add_argument("--position", type=int, default=None, help="Position in the stage")
    move.add_argument("--triggered-by", default="cli", help="User or system id")

    subparsers.add_parser(
        "sweep-timeouts",
        help="Time out overdue running executions and expire stale pending ones",
    )

    validate = subparsers.add_parser(
        "validate-template", help="Validate a workflow template JSON file"
    )
    validate.add_argument("path", type=Path)

    return parser


async def _run(args: argparse.Namespace, config: EngineConfig) -> int:
    stores = Stores.open(config.store.storage_path)
    dispatcher = ExecutionDispatcher.from_config(config, stores)

    if args.command == "dispatch":
        execution = await dispatcher.dispatch(
            args.template_id,
            TriggerContext(
                triggered_by=args.triggered_by,
                card_id=args.card_id,
                trigger_data=args.data,
            ),
        )
        try:
            execution = await dispatcher.wait(execution.id, timeout=args.timeout)
        except TimeoutError:
            logger.warning(
                "Gave up waiting for execution",
                extra={"execution_id": execution.id, "timeout": args.timeout},
            )
            execution = await dispatcher.cancel(
                execution.id, f"CLI wait timed out after {args.timeout}s"
            )
        _print_model(execution)
        return EXIT_OK if execution.status is WorkflowExecutionStatus.COMPLETED else EXIT_FAILURE

    if args.command == "show-execution":
        execution = dispatcher.get(args.execution_id)
        if args.details:
            _print_model(
                execution_with_details(execution, stores.templates.get(execution.template_id))
            )
        else:
            _print_model(execution)
        return EXIT_OK

    if args.command == "cancel":
        _print_model(await dispatcher.cancel(args.execution_id, args.reason))
        return EXIT_OK

    if args.command == "move-card":
        board = BoardService(stages=stores.stages, cards=stores.cards, dispatcher=dispatcher)
        result = await board.move_card(
            args.card_id,
            args.stage_id,
            triggered_by=args.triggered_by,
            position=args.position,
        )
        for skipped in result.skipped:
            print(f"Trigger {skipped.template_id} skipped: {skipped.message}", file=sys.stderr)
        for execution in result.executions:
            await dispatcher.wait(execution.id)
        _print_model(stores.cards.load(args.card_id))
        return EXIT_OK

    if args.command == "sweep-timeouts":
        timed_out = await dispatcher.sweep_timeouts()
        expired = await dispatcher.expire_stale_pending()
        print(f"Timed out {len(timed_out)} execution(s); expired {len(expired)} pending")
        return EXIT_OK

    logger.error("Unknown command", extra={"command": args.command})
    return EXIT_CONFIG


def _validate_template_file(path: Path) -> int:
    try:
        template = WorkflowTemplate.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as e:
        print(f"{path}: not a valid workflow template", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_INVALID

    issues = validate_template(template)
    for issue in issues:
        print(f"{path}: {issue.path}: {issue.message} [{issue.code}]")
    if issues:
        return EXIT_INVALID
    print(f"{path}: OK ({len(template.steps)} steps)")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = EngineConfig()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    config.setup_logging()

    try:
        if args.command == "validate-template":
            return _validate_template_file(args.path)
        return asyncio.run(_run(args, config))

    except AutomationError as e:
        logger.warning(e.message, extra={"code": e.code})
        print(json.dumps(e.to_payload(), default=str), file=sys.stderr)
        return EXIT_REJECTED

    except Exception:
        logger.exception("Command failed")
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())

"""Execution dispatcher.

Turns a fired trigger into a running execution and drives its steps through
the state machine, one asyncio task per execution. The dispatcher is the only
writer of execution records: every accepted state change is persisted before
the next await point.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import JsonValue, ValidationError

from ..errors import (
    AutomationError,
    DuplicateExecution,
    ExecutionNotFound,
    InvalidTransition,
    RecordNotFound,
    StepFailed,
    StepRunnerUnavailable,
    TemplateInactive,
    TemplateNotFound,
)
from ..validation import validate_template
from .models import (
    ExecutionError,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStep,
    WorkflowTemplate,
    WorkflowTemplateStatus,
    to_json_value,
    utc_now,
)
from .retry import BackoffPolicy
from .runner import HttpStepRunner, StepRunner
from .state_machine import Clock, ExecutionStateMachine, StepOutcome
from .templating import render_config, resolve_path
from .transitions import is_terminal

if TYPE_CHECKING:
    from studio_automation.core.config import EngineConfig
    from studio_automation.state.store import JsonRecordStore, Stores

logger = logging.getLogger(__name__)

_ES = WorkflowExecutionStatus

TerminalListener = Callable[[WorkflowExecution], Awaitable[None] | None]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class TriggerContext:
    """Who or what fired a dispatch, and the data it carries."""

    triggered_by: str
    card_id: str | None = None
    board_id: str | None = None
    stage_id: str | None = None
    trigger_data: dict[str, JsonValue] = field(default_factory=dict)
    context: dict[str, JsonValue] = field(default_factory=dict)
    timeout_seconds: float | None = None


class ExecutionDispatcher:
    def __init__(
        self,
        *,
        templates: JsonRecordStore[WorkflowTemplate],
        executions: JsonRecordStore[WorkflowExecution],
        runner: StepRunner,
        retry_defaults: BackoffPolicy | None = None,
        step_timeout_seconds: float | None = None,
        execution_timeout_seconds: float | None = None,
        pending_stale_after_seconds: float | None = None,
        loop_fan_out: int = 5,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if loop_fan_out < 1:
            raise ValueError("loop_fan_out must be >= 1")

        self._templates = templates
        self._executions = executions
        self._runner = runner
        self._retry_defaults = retry_defaults or BackoffPolicy()
        self._step_timeout = step_timeout_seconds
        self._execution_timeout = execution_timeout_seconds
        self._pending_stale_after = pending_stale_after_seconds
        self._loop_fan_out = loop_fan_out
        self._clock = clock
        self._sleep = sleep

        self._guard = asyncio.Lock()
        self._machines: dict[str, ExecutionStateMachine] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._in_flight: dict[tuple[str, str], str] = {}
        self._listeners: list[TerminalListener] = []

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        stores: Stores,
        *,
        runner: StepRunner | None = None,
    ) -> ExecutionDispatcher:
        if runner is None:
            runner = HttpStepRunner(
                base_url=config.runner.base_url,
                api_key=config.runner.api_key,
                timeout_seconds=config.runner.request_timeout_seconds,
            )
        return cls(
            templates=stores.templates,
            executions=stores.executions,
            runner=runner,
            retry_defaults=BackoffPolicy(
                max_attempts=config.retry.max_attempts,
                base_delay_seconds=config.retry.base_delay_seconds,
                max_delay_seconds=config.retry.max_delay_seconds,
            ),
            step_timeout_seconds=config.runner.step_timeout_seconds,
            execution_timeout_seconds=config.scheduler.execution_timeout_seconds,
            pending_stale_after_seconds=config.scheduler.pending_stale_after_seconds,
            loop_fan_out=config.runner.loop_fan_out,
        )

    @property
    def runner(self) -> StepRunner:
        return self._runner

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        """Call ``listener`` with every execution that reaches a terminal status."""

        self._listeners.append(listener)

    def active_execution_ids(self) -> list[str]:
        return list(self._machines)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _load_template(self, template_id: str) -> WorkflowTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFound(
                f"Workflow template {template_id} not found",
                details={"template_id": template_id},
            )
        if template.status is not WorkflowTemplateStatus.ACTIVE:
            raise TemplateInactive(
                f"Workflow template {template_id} is {template.status.value}, not active",
                details={"template_id": template_id, "status": template.status.value},
            )
        return template

    def _open_execution_id(self, card_id: str, template_id: str) -> str | None:
        in_memory = self._in_flight.get((card_id, template_id))
        if in_memory is not None:
            return in_memory
        stored = self._executions.find(
            lambda e: e.card_id == card_id
            and e.template_id == template_id
            and not is_terminal(e.status)
        )
        return stored[0].id if stored else None

    async def dispatch(self, template_id: str, trigger: TriggerContext) -> WorkflowExecution:
        """Create an execution for ``template_id`` and start running it.

        Returns the execution as it stands once it is running, or failed when
        it could not start. Step execution continues in the background; use
        :meth:`wait` to block until it is terminal.
        """

        template = self._load_template(template_id)

        async with self._guard:
            key = (trigger.card_id, template_id) if trigger.card_id else None
            if key is not None:
                existing = self._open_execution_id(*key)
                if existing is not None:
                    raise DuplicateExecution(
                        f"Execution {existing} is still in flight for card {trigger.card_id} "
                        f"and template {template_id}",
                        details={
                            "execution_id": existing,
                            "card_id": trigger.card_id,
                            "template_id": template_id,
                        },
                    )

            trigger_data: dict[str, JsonValue] = dict(trigger.trigger_data)
            for name, value in (
                ("card_id", trigger.card_id),
                ("board_id", trigger.board_id),
                ("stage_id", trigger.stage_id),
            ):
                if value is not None:
                    trigger_data.setdefault(name, value)

            now = self._clock()
            execution = WorkflowExecution(
                template_id=template.id,
                studio_id=template.studio_id,
                triggered_by=trigger.triggered_by,
                card_id=trigger.card_id,
                timeout_seconds=trigger.timeout_seconds or self._execution_timeout,
                trigger_data=trigger_data,
                context={"variables": dict(template.variables), **trigger.context},
                created_at=now,
                updated_at=now,
            )
            execution = self._executions.save(execution)
            machine = self._register(execution, template)
            if key is not None:
                self._in_flight[key] = execution.id

        logger.info(
            "Dispatching workflow execution",
            extra={
                "execution_id": execution.id,
                "template_id": template.id,
                "card_id": trigger.card_id,
                "triggered_by": trigger.triggered_by,
            },
        )

        machine.transition(_ES.RUNNING)
        self._persist(machine)

        problem = await self._startup_problem(template)
        if problem is not None and machine.status is _ES.RUNNING:
            logger.error(
                "Execution could not start: %s",
                problem.message,
                extra={"execution_id": machine.id, "code": problem.code},
            )
            machine.fail(problem)
            self._persist(machine)
            await self._finish(machine)
            return machine.execution

        if machine.status is _ES.RUNNING:
            self._spawn(machine)
        return machine.execution

    async def _startup_problem(self, template: WorkflowTemplate) -> ExecutionError | None:
        issues = validate_template(template)
        if issues:
            return ExecutionError(
                message=f"Workflow template {template.id} is malformed: {issues[0].message}",
                code="template_malformed",
                details={
                    "collaborator": "workflow_template",
                    "template_id": template.id,
                    "issues": [issue.as_dict() for issue in issues],
                },
            )

        try:
            await self._runner.check_available()
        except StepRunnerUnavailable as e:
            return ExecutionError(
                message=f"Step runner {self._runner.name!r} is unavailable: {e.message}",
                code="step_runner_unavailable",
                details={
                    "collaborator": "step_runner",
                    "runner": self._runner.name,
                    "cause": to_json_value(e.details),
                },
            )
        return None

    def _register(
        self, execution: WorkflowExecution, template: WorkflowTemplate
    ) -> ExecutionStateMachine:
        machine = ExecutionStateMachine(
            execution, template, retry_defaults=self._retry_defaults, clock=self._clock
        )
        if not machine.is_terminal:
            self._machines[execution.id] = machine
            self._done[execution.id] = asyncio.Event()
        return machine

    def _spawn(self, machine: ExecutionStateMachine) -> None:
        current = self._tasks.get(machine.id)
        if current is not None and not current.done():
            return
        self._tasks[machine.id] = asyncio.create_task(
            self._run(machine), name=f"workflow-execution-{machine.id}"
        )

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _run(self, machine: ExecutionStateMachine) -> None:
        try:
            await self._run_steps(machine)
        except asyncio.CancelledError:
            logger.info(
                "Execution task cancelled; any in-flight step result is discarded",
                extra={"execution_id": machine.id, "status": machine.status.value},
            )
            raise
        except Exception as e:
            logger.exception("Execution loop crashed", extra={"execution_id": machine.id})
            if machine.status is _ES.RUNNING:
                machine.fail(
                    ExecutionError(
                        message=f"Internal error while running execution: {e}",
                        code="internal_error",
                        details={"exception": type(e).__name__},
                    )
                )
                try:
                    self._persist(machine)
                except AutomationError:
                    logger.exception(
                        "Could not persist failed execution", extra={"execution_id": machine.id}
                    )
        finally:
            if self._tasks.get(machine.id) is asyncio.current_task():
                self._tasks.pop(machine.id, None)

        if machine.is_terminal:
            await self._finish(machine)

    async def _run_steps(self, machine: ExecutionStateMachine) -> None:
        while machine.status is _ES.RUNNING:
            step = machine.next_step()
            if step is None:
                return
            await self._run_step(machine, step)

    def _scope(self, execution: WorkflowExecution) -> dict[str, JsonValue]:
        return {
            **execution.context,
            "context": execution.context,
            "trigger_data": execution.trigger_data,
        }

    async def _run_step(self, machine: ExecutionStateMachine, step: WorkflowStep) -> None:
        while True:
            step_input = render_config(step.config, self._scope(machine.execution))
            try:
                machine.start_step(step.id, input=step_input)
            except InvalidTransition:
                # Paused or finished between steps.
                return
            self._persist(machine)

            outcome = await self._attempt(machine, step, step_input)

            if machine.is_terminal:
                logger.warning(
                    "Discarding step result for finished execution",
                    extra={
                        "execution_id": machine.id,
                        "step_id": step.id,
                        "status": machine.status.value,
                    },
                )
                return

            application = machine.apply_step_result(step.id, outcome)
            self._persist(machine)
            if application.retry_delay_seconds is None:
                return

            logger.info(
                "Retrying step",
                extra={
                    "execution_id": machine.id,
                    "step_id": step.id,
                    "retry_count": application.step.retry_count,
                    "delay_seconds": application.retry_delay_seconds,
                },
            )
            await self._sleep(application.retry_delay_seconds)
            if machine.status is not _ES.RUNNING:
                return

    async def _attempt(
        self,
        machine: ExecutionStateMachine,
        step: WorkflowStep,
        step_input: dict[str, JsonValue],
    ) -> StepOutcome:
        if step.is_loop:
            return await self._run_loop(machine, step, step_input)
        return await self._invoke(step, step_input, machine.execution.context)

    async def _invoke(
        self,
        step: WorkflowStep,
        step_input: dict[str, JsonValue],
        context: dict[str, JsonValue],
    ) -> StepOutcome:
        """Run one attempt and turn every failure mode into a StepOutcome."""

        try:
            call = self._runner.run(step, step_input, context)
            if self._step_timeout:
                result = await asyncio.wait_for(call, self._step_timeout)
            else:
                result = await call
        except TimeoutError:
            return StepOutcome.failure(
                f"Step {step.id!r} timed out",
                code="step_timeout",
                details={"timeout_seconds": self._step_timeout},
            )
        except AutomationError as e:
            return StepOutcome.failure(e.message, code=e.code, details=e.details)
        except Exception as e:
            logger.exception(
                "Step raised an unexpected error",
                extra={"step_id": step.id, "action_type": step.action_type},
            )
            return StepOutcome.failure(
                str(e) or type(e).__name__,
                code="step_error",
                details={"exception": type(e).__name__},
            )

        if result.ok:
            return StepOutcome.success(
                result.output, external_execution_id=result.external_execution_id
            )
        return StepOutcome.failure(
            result.error or f"Step {step.id!r} failed",
            code=result.code or StepFailed.code,
            external_execution_id=result.external_execution_id,
        )

    async def _run_loop(
        self,
        machine: ExecutionStateMachine,
        step: WorkflowStep,
        step_input: dict[str, JsonValue],
    ) -> StepOutcome:
        """Run the loop body once per item; parallel loops fan out then join."""

        config = step.config
        execution = machine.execution
        source = config.get("iterate_over")
        items = (
            resolve_path(source, {"input": step_input, **self._scope(execution)})
            if isinstance(source, str)
            else None
        )
        if not isinstance(items, list):
            return StepOutcome.failure(
                f"Loop step {step.id!r}: iterate_over {source!r} is not a list",
                code="loop_misconfigured",
            )

        limit = config.get("max_iterations")
        if isinstance(limit, int) and not isinstance(limit, bool) and limit >= 0:
            items = items[:limit]

        raw_body = config.get("steps")
        try:
            body = [WorkflowStep.model_validate(raw) for raw in raw_body or []]
        except ValidationError as e:
            return StepOutcome.failure(
                f"Loop step {step.id!r} has an invalid body: {e.errors()[0]['msg']}",
                code="loop_misconfigured",
            )

        parallel = config.get("parallel") is True
        semaphore = asyncio.Semaphore(self._loop_fan_out if parallel else 1)

        async def iteration(index: int, item: JsonValue) -> StepOutcome:
            async with semaphore:
                outputs: dict[str, JsonValue] = {}
                loop_scope: dict[str, JsonValue] = {
                    "index": index,
                    "item": item,
                    "outputs": outputs,
                }
                scope = {**self._scope(execution), "loop": loop_scope}
                for sub in body:
                    outcome = await self._invoke(sub, render_config(sub.config, scope), scope)
                    if not outcome.succeeded:
                        return outcome
                    outputs[sub.id] = outcome.output
                return StepOutcome.success(outputs)

        outcomes = await asyncio.gather(
            *(iteration(index, item) for index, item in enumerate(items))
        )

        failed = [index for index, outcome in enumerate(outcomes) if not outcome.succeeded]
        if failed:
            first = outcomes[failed[0]].error
            return StepOutcome.failure(
                f"{len(failed)} of {len(outcomes)} loop iterations failed",
                code="loop_iteration_failed",
                details={
                    "failed_iterations": failed,
                    "first_error": first.model_dump(mode="json") if first else None,
                },
            )
        return StepOutcome.success(
            {"count": len(outcomes), "iterations": [outcome.output for outcome in outcomes]}
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _machine(self, execution_id: str) -> ExecutionStateMachine:
        machine = self._machines.get(execution_id)
        if machine is not None:
            return machine

        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(
                f"Workflow execution {execution_id} not found",
                details={"execution_id": execution_id},
            )
        template = self._templates.get(execution.template_id)
        if template is None:
            raise TemplateNotFound(
                f"Workflow template {execution.template_id} not found",
                details={"template_id": execution.template_id, "execution_id": execution_id},
            )
        return self._register(execution, template)

    def get(self, execution_id: str) -> WorkflowExecution:
        machine = self._machines.get(execution_id)
        if machine is not None:
            return machine.execution
        try:
            return self._executions.load(execution_id)
        except RecordNotFound as e:
            raise ExecutionNotFound(e.message, details=e.details) from e

    async def wait(self, execution_id: str, timeout: float | None = None) -> WorkflowExecution:
        """Block until the execution is terminal (or ``timeout`` elapses)."""

        event = self._done.get(execution_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout)
        return self.get(execution_id)

    def _stop_task(self, execution_id: str) -> None:
        task = self._tasks.pop(execution_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def cancel(self, execution_id: str, reason: str = "Cancelled") -> WorkflowExecution:
        machine = self._machine(execution_id)
        machine.cancel(reason)
        self._persist(machine)
        self._stop_task(execution_id)
        logger.info(
            "Execution cancelled", extra={"execution_id": execution_id, "reason": reason}
        )
        await self._finish(machine)
        return machine.execution

    async def pause(self, execution_id: str) -> WorkflowExecution:
        machine = self._machine(execution_id)
        machine.pause()
        self._persist(machine)
        return machine.execution

    async def resume(self, execution_id: str) -> WorkflowExecution:
        machine = self._machine(execution_id)
        machine.resume()
        self._persist(machine)
        if machine.is_terminal:
            await self._finish(machine)
        else:
            self._spawn(machine)
        return machine.execution

    async def timeout(self, execution_id: str) -> WorkflowExecution:
        machine = self._machine(execution_id)
        machine.timeout()
        self._persist(machine)
        self._stop_task(execution_id)
        logger.warning("Execution timed out", extra={"execution_id": execution_id})
        await self._finish(machine)
        return machine.execution

    async def sweep_timeouts(self, now: datetime | None = None) -> list[WorkflowExecution]:
        """Time out running executions whose ceiling has elapsed.

        Intended to be called periodically by an external timer.
        """

        now = now or self._clock()
        expired: list[WorkflowExecution] = []
        for execution in self._executions.find(lambda e: e.status is _ES.RUNNING):
            ceiling = execution.timeout_seconds or self._execution_timeout
            if not ceiling or execution.started_at is None:
                continue
            if now - execution.started_at <= timedelta(seconds=ceiling):
                continue
            try:
                expired.append(await self.timeout(execution.id))
            except InvalidTransition:
                logger.debug(
                    "Execution left running state before timeout",
                    extra={"execution_id": execution.id},
                )
        return expired

    async def expire_stale_pending(self, now: datetime | None = None) -> list[WorkflowExecution]:
        """Cancel executions that never left ``pending``."""

        if not self._pending_stale_after:
            return []
        now = now or self._clock()
        cutoff = timedelta(seconds=self._pending_stale_after)
        expired: list[WorkflowExecution] = []
        for execution in self._executions.find(lambda e: e.status is _ES.PENDING):
            if now - execution.created_at <= cutoff:
                continue
            try:
                expired.append(
                    await self.cancel(execution.id, reason="Execution never started; expired")
                )
            except InvalidTransition:
                continue
        return expired

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _persist(self, machine: ExecutionStateMachine) -> None:
        saved = self._executions.save(machine.execution)
        machine.mark_saved(saved.version)

    async def _finish(self, machine: ExecutionStateMachine) -> None:
        if self._machines.pop(machine.id, None) is None:
            return

        execution = machine.execution
        if execution.card_id is not None:
            key = (execution.card_id, execution.template_id)
            if self._in_flight.get(key) == execution.id:
                del self._in_flight[key]

        logger.info(
            "Execution finished",
            extra={
                "execution_id": execution.id,
                "template_id": execution.template_id,
                "status": execution.status.value,
                "duration_seconds": execution.duration_seconds,
            },
        )

        for listener in list(self._listeners):
            try:
                result = listener(execution)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Terminal listener failed", extra={"execution_id": execution.id}
                )

        event = self._done.pop(execution.id, None)
        if event is not None:
            event.set()

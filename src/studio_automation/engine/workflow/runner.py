"""Step runners: the collaborators that actually perform a step's action.

The dispatcher only sees the :class:`StepRunner` protocol. Two
implementations ship here: an in-process registry of handlers keyed by
``action_type`` (used by tests and local tooling) and a REST client for an
external automation engine.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import requests
from pydantic import JsonValue

from ..errors import StepRunnerUnavailable
from .models import WorkflowStep

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepRunResult:
    ok: bool
    output: dict[str, JsonValue] | None = None
    error: str | None = None
    code: str | None = None
    external_execution_id: str | None = None


class StepRunner(Protocol):
    """Runs one attempt of a step.

    ``run`` returns a failed :class:`StepRunResult` when the step itself
    failed, and raises :class:`StepRunnerUnavailable` when the runner could
    not be reached at all.
    """

    name: str

    async def check_available(self) -> None: ...

    async def run(
        self,
        step: WorkflowStep,
        input: dict[str, JsonValue],
        context: dict[str, JsonValue],
    ) -> StepRunResult: ...


StepHandler = Callable[[WorkflowStep, dict[str, JsonValue], dict[str, JsonValue]], Any]


class LocalStepRunner:
    """Runs steps with in-process handlers registered per ``action_type``.

    A handler may be sync or async. It returns a :class:`StepRunResult`, or a
    plain mapping (taken as a successful output), or ``None``. Exceptions
    propagate to the dispatcher, which records them as a failed attempt.
    """

    name = "local"

    def __init__(self, handlers: Mapping[str, StepHandler] | None = None) -> None:
        self._handlers: dict[str, StepHandler] = dict(handlers or {})

    def register(self, action_type: str, handler: StepHandler) -> None:
        self._handlers[action_type] = handler

    def handles(self, action_type: str) -> bool:
        return action_type in self._handlers

    async def check_available(self) -> None:
        return None

    async def run(
        self,
        step: WorkflowStep,
        input: dict[str, JsonValue],
        context: dict[str, JsonValue],
    ) -> StepRunResult:
        handler = self._handlers.get(step.action_type)
        if handler is None:
            raise StepRunnerUnavailable(
                f"No handler registered for action type {step.action_type!r}",
                details={"runner": self.name, "action_type": step.action_type},
            )

        result = handler(step, input, context)
        if inspect.isawaitable(result):
            result = await result

        if isinstance(result, StepRunResult):
            return result
        return StepRunResult(ok=True, output=dict(result) if result else {})


class HttpStepRunner:
    """Runs steps through an external automation engine's REST API.

    ``requests`` is blocking, so every call is pushed onto a worker thread
    with :func:`asyncio.to_thread`. Sessions are not shared between threads:
    each worker thread lazily opens its own from ``session_factory``.
    """

    name = "http"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        if not base_url:
            raise ValueError("Runner base_url is required")

        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session_factory = session_factory
        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()
        headers = {
            "Accept": "application/json",
            "User-Agent": "studio-automation",
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._headers = headers

    @property
    def base_url(self) -> str:
        return self._base_url

    def _session(self) -> requests.Session:
        session: requests.Session | None = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            session.headers.update(self._headers)
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _unavailable(self, message: str, **details: object) -> StepRunnerUnavailable:
        return StepRunnerUnavailable(
            message, details={"runner": self.name, "base_url": self._base_url, **details}
        )

    def _health_sync(self) -> None:
        try:
            resp = self._session().get(self._url("health"), timeout=self._timeout)
        except requests.RequestException as e:
            raise self._unavailable(f"Step runner is unreachable: {e}") from e
        if resp.status_code >= 400:
            raise self._unavailable(
                f"Step runner health check failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

    def _run_sync(
        self,
        step: WorkflowStep,
        input: dict[str, JsonValue],
        context: dict[str, JsonValue],
    ) -> StepRunResult:
        url = self._url(f"v1/steps/{step.action_type}/runs")
        payload = {
            "step_id": step.id,
            "action_type": step.action_type,
            "config": step.config,
            "input": input,
            "context": context,
        }
        try:
            resp = self._session().post(url, json=payload, timeout=self._timeout)
        except requests.Timeout as e:
            raise self._unavailable(
                f"Step runner timed out after {self._timeout:g}s", step_id=step.id
            ) from e
        except requests.RequestException as e:
            raise self._unavailable(f"Step runner is unreachable: {e}", step_id=step.id) from e

        if resp.status_code >= 500:
            raise self._unavailable(
                f"Step runner returned HTTP {resp.status_code}",
                step_id=step.id,
                status_code=resp.status_code,
            )

        data = _json_body(resp)
        if resp.status_code >= 400 or data.get("status") == "failed":
            error = data.get("error")
            return StepRunResult(
                ok=False,
                error=str(error or f"Step rejected with HTTP {resp.status_code}"),
                code=str(data.get("code") or f"http_{resp.status_code}"),
                external_execution_id=_optional_str(data.get("id")),
            )

        output = data.get("output")
        return StepRunResult(
            ok=True,
            output=output if isinstance(output, dict) else {},
            external_execution_id=_optional_str(data.get("id")),
        )

    async def check_available(self) -> None:
        await asyncio.to_thread(self._health_sync)

    async def run(
        self,
        step: WorkflowStep,
        input: dict[str, JsonValue],
        context: dict[str, JsonValue],
    ) -> StepRunResult:
        logger.debug(
            "Submitting step to runner",
            extra={"step_id": step.id, "action_type": step.action_type, "runner": self.name},
        )
        return await asyncio.to_thread(self._run_sync, step, input, context)

    def close(self) -> None:
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()


def _json_body(resp: requests.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)

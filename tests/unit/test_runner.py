"""Unit tests for the step runners."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import requests

from studio_automation.engine.errors import StepRunnerUnavailable
from studio_automation.engine.workflow.models import WorkflowStep
from studio_automation.engine.workflow.runner import HttpStepRunner, LocalStepRunner, StepRunResult


class FakeResponse:
    def __init__(self, status_code: int, body: Any = None) -> None:
        self.status_code = status_code
        self._body = body

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSession:
    def __init__(
        self, response: FakeResponse | None = None, error: Exception | None = None
    ) -> None:
        self.headers: dict[str, str] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self._response = response
        self._error = error
        self.closed = False

    def _reply(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        if self._error is not None:
            raise self._error
        assert self._response is not None
        return self._response

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._reply("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._reply("POST", url, **kwargs)

    def close(self) -> None:
        self.closed = True


STEP = WorkflowStep(id="notify", action_type="send_email", config={"to": "{{ owner }}"})


def _runner(session: FakeSession) -> HttpStepRunner:
    return HttpStepRunner(
        base_url="http://runner.test/api/",
        api_key="secret",
        timeout_seconds=3.0,
        session_factory=lambda: session,  # type: ignore[arg-type,return-value]
    )


@pytest.mark.asyncio
async def test_local_runner_wraps_mapping_results() -> None:
    runner = LocalStepRunner({"send_email": lambda step, step_input, context: {"sent": 1}})

    result = await runner.run(STEP, {"to": "ana"}, {})

    assert result == StepRunResult(ok=True, output={"sent": 1})


@pytest.mark.asyncio
async def test_local_runner_awaits_async_handlers() -> None:
    async def handler(step: WorkflowStep, step_input: dict, context: dict) -> StepRunResult:
        return StepRunResult(ok=False, error="bounced", code="smtp")

    runner = LocalStepRunner()
    runner.register("send_email", handler)

    result = await runner.run(STEP, {}, {})

    assert runner.handles("send_email")
    assert result.error == "bounced"


@pytest.mark.asyncio
async def test_local_runner_without_handler() -> None:
    with pytest.raises(StepRunnerUnavailable):
        await LocalStepRunner().run(STEP, {}, {})


@pytest.mark.asyncio
async def test_http_runner_sets_headers() -> None:
    session = FakeSession(FakeResponse(200, {"status": "ok"}))

    runner = _runner(session)
    await runner.check_available()

    assert runner.base_url == "http://runner.test/api"
    assert session.headers["Authorization"] == "Bearer secret"


def test_http_runner_requires_base_url() -> None:
    with pytest.raises(ValueError):
        HttpStepRunner(base_url="")


@pytest.mark.asyncio
async def test_http_run_posts_step() -> None:
    session = FakeSession(
        FakeResponse(200, {"id": 99, "status": "completed", "output": {"message_id": "m-1"}})
    )

    result = await _runner(session).run(STEP, {"to": "ana"}, {"card_id": "c1"})

    assert result.ok
    assert result.output == {"message_id": "m-1"}
    assert result.external_execution_id == "99"
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "http://runner.test/api/v1/steps/send_email/runs")
    assert kwargs["json"]["input"] == {"to": "ana"}
    assert kwargs["json"]["step_id"] == "notify"
    assert kwargs["timeout"] == 3.0


@pytest.mark.asyncio
async def test_http_run_reports_step_failure() -> None:
    session = FakeSession(FakeResponse(200, {"status": "failed", "error": "bounced"}))

    result = await _runner(session).run(STEP, {}, {})

    assert not result.ok
    assert result.error == "bounced"
    assert result.code == "http_200"


@pytest.mark.asyncio
async def test_http_run_client_error_is_a_failed_step() -> None:
    session = FakeSession(FakeResponse(422))

    result = await _runner(session).run(STEP, {}, {})

    assert not result.ok
    assert result.code == "http_422"


@pytest.mark.asyncio
async def test_http_run_server_error_means_unavailable() -> None:
    session = FakeSession(FakeResponse(503))

    with pytest.raises(StepRunnerUnavailable) as exc_info:
        await _runner(session).run(STEP, {}, {})

    assert exc_info.value.details["status_code"] == 503


@pytest.mark.asyncio
async def test_http_run_connection_error_means_unavailable() -> None:
    session = FakeSession(error=requests.ConnectionError("refused"))

    with pytest.raises(StepRunnerUnavailable):
        await _runner(session).run(STEP, {}, {})


@pytest.mark.asyncio
async def test_http_health_check() -> None:
    healthy = FakeSession(FakeResponse(200, {"status": "ok"}))
    await _runner(healthy).check_available()
    assert healthy.calls[0][:2] == ("GET", "http://runner.test/api/health")

    unhealthy = FakeSession(FakeResponse(500))
    with pytest.raises(StepRunnerUnavailable):
        await _runner(unhealthy).check_available()


def test_http_runner_opens_one_session_per_thread() -> None:
    opened: list[FakeSession] = []

    def factory() -> FakeSession:
        opened.append(FakeSession(FakeResponse(200, {"status": "ok"})))
        return opened[-1]

    runner = HttpStepRunner(
        base_url="http://runner.test", session_factory=factory  # type: ignore[arg-type]
    )

    # Each event loop gets a fresh default executor, so a fresh worker thread.
    asyncio.run(runner.check_available())
    asyncio.run(runner.check_available())
    runner.close()

    assert len(opened) == 2
    assert all(session.closed for session in opened)
    assert all(len(session.calls) == 1 for session in opened)

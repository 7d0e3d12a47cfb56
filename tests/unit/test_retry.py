"""Unit tests for retry policy resolution and backoff."""

from __future__ import annotations

from studio_automation.engine.workflow.models import (
    BackoffStrategy,
    RetryPolicy,
    StepErrorHandling,
    TemplateErrorHandling,
    WorkflowStep,
    WorkflowTemplate,
)
from studio_automation.engine.workflow.retry import BackoffPolicy, resolve_policy


def test_delay_doubles_and_caps() -> None:
    policy = BackoffPolicy(max_attempts=5, base_delay_seconds=1.0, max_delay_seconds=5.0)

    assert [policy.delay_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_max_attempts_counts_retries() -> None:
    policy = BackoffPolicy(max_attempts=2)

    assert policy.should_retry(0)
    assert policy.should_retry(1)
    assert not policy.should_retry(2)


def test_zero_attempts_never_retries() -> None:
    assert not BackoffPolicy(max_attempts=0).should_retry(0)


def test_step_policy_overrides_template_overrides_defaults() -> None:
    template = WorkflowTemplate(
        studio_id="studio-1",
        name="t",
        error_handling=TemplateErrorHandling(
            retry_policy=RetryPolicy(max_attempts=4, base_delay_seconds=3.0)
        ),
    )
    step = WorkflowStep(
        id="s",
        action_type="echo",
        error_handling=StepErrorHandling(retry_policy=RetryPolicy(max_attempts=1)),
    )
    defaults = BackoffPolicy(max_attempts=9, base_delay_seconds=0.1, max_delay_seconds=30.0)

    policy = resolve_policy(template=template, step=step, defaults=defaults)

    assert policy.max_attempts == 1
    assert policy.base_delay_seconds == 3.0
    assert policy.max_delay_seconds == 30.0


def test_no_policies_uses_defaults() -> None:
    template = WorkflowTemplate(studio_id="studio-1", name="t")
    step = WorkflowStep(id="s", action_type="echo")

    assert resolve_policy(template=template, step=step) == BackoffPolicy()


def test_fixed_and_linear_strategies() -> None:
    fixed = BackoffPolicy(base_delay_seconds=1.0, strategy=BackoffStrategy.FIXED)
    linear = BackoffPolicy(
        base_delay_seconds=2.0, max_delay_seconds=5.0, strategy=BackoffStrategy.LINEAR
    )

    assert [fixed.delay_for(n) for n in range(3)] == [1.0, 1.0, 1.0]
    assert [linear.delay_for(n) for n in range(4)] == [2.0, 4.0, 5.0, 5.0]


def test_strategy_layers_like_other_fields() -> None:
    template = WorkflowTemplate(
        studio_id="studio-1",
        name="t",
        error_handling=TemplateErrorHandling(retry_policy=RetryPolicy(backoff_strategy="fixed")),
    )
    step = WorkflowStep(
        id="s",
        action_type="echo",
        error_handling=StepErrorHandling(retry_policy=RetryPolicy(max_attempts=1)),
    )

    policy = resolve_policy(template=template, step=step)

    assert policy.strategy is BackoffStrategy.FIXED
    assert policy.max_attempts == 1

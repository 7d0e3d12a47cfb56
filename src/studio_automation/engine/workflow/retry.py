"""Step retry policy with capped backoff.

Delay before the retry following ``n`` earlier retries, capped at max_delay:

* exponential: base_delay * 2 ** n
* linear: base_delay * (n + 1)
* fixed: base_delay

A step with ``retry_count < max_attempts`` is retried; ``max_attempts`` counts
retries, not the initial attempt.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import BackoffStrategy, RetryPolicy, WorkflowStep, WorkflowTemplate


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    multiplier: float = 2.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_attempts

    def delay_for(self, retry_count: int) -> float:
        """Delay before the retry that follows ``retry_count`` earlier retries."""

        if self.strategy is BackoffStrategy.FIXED:
            delay = self.base_delay_seconds
        elif self.strategy is BackoffStrategy.LINEAR:
            delay = self.base_delay_seconds * (retry_count + 1)
        else:
            delay = self.base_delay_seconds * (self.multiplier**retry_count)
        return min(delay, self.max_delay_seconds)

    def overlay(self, policy: RetryPolicy | None) -> BackoffPolicy:
        """Return a copy with the fields ``policy`` sets explicitly."""

        if policy is None:
            return self
        return BackoffPolicy(
            max_attempts=(
                policy.max_attempts if policy.max_attempts is not None else self.max_attempts
            ),
            base_delay_seconds=(
                policy.base_delay_seconds
                if policy.base_delay_seconds is not None
                else self.base_delay_seconds
            ),
            max_delay_seconds=(
                policy.max_delay_seconds
                if policy.max_delay_seconds is not None
                else self.max_delay_seconds
            ),
            multiplier=self.multiplier,
            strategy=(
                policy.backoff_strategy
                if policy.backoff_strategy is not None
                else self.strategy
            ),
        )


def resolve_policy(
    *,
    template: WorkflowTemplate,
    step: WorkflowStep,
    defaults: BackoffPolicy | None = None,
) -> BackoffPolicy:
    """Layer step policy over template policy over engine defaults."""

    base = defaults or BackoffPolicy()
    return base.overlay(template.error_handling.retry_policy).overlay(
        step.error_handling.retry_policy
    )

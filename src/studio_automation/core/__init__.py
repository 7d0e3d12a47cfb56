"""Core package initialization."""

from studio_automation.core.config import (
    EngineConfig,
    RetryConfig,
    RunnerConfig,
    SchedulerConfig,
    StoreConfig,
)

__all__ = [
    "EngineConfig",
    "RetryConfig",
    "RunnerConfig",
    "SchedulerConfig",
    "StoreConfig",
]

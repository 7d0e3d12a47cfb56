"""Core configuration for the automation engine."""

import logging
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from studio_automation.engine.logging import configure_logging


class RetryConfig(BaseSettings):
    """Default retry policy applied to steps that do not declare their own."""

    max_attempts: int = Field(
        default=3,
        ge=0,
        description="Retries allowed for a failing step before it is marked failed",
    )
    base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Backoff delay before the first retry",
    )
    max_delay_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Upper bound for the exponential backoff delay",
    )

    model_config = SettingsConfigDict(
        env_prefix="STUDIO_AUTOMATION_RETRY_",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> "RetryConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class RunnerConfig(BaseSettings):
    """Configuration for the external step runner."""

    base_url: str = Field(
        default="http://localhost:8080/api",
        description="Base URL of the automation engine REST API",
    )
    api_key: str | None = Field(
        default=None,
        description="API key sent as a bearer token to the automation engine",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="HTTP timeout for a single runner request",
    )
    step_timeout_seconds: float | None = Field(
        default=300.0,
        description="Ceiling for one step attempt (None = no ceiling)",
    )
    loop_fan_out: int = Field(
        default=5,
        ge=1,
        description="Maximum concurrent iterations of a parallel loop step",
    )

    model_config = SettingsConfigDict(
        env_prefix="STUDIO_AUTOMATION_RUNNER_",
        env_file=".env",
        extra="ignore",
    )


class SchedulerConfig(BaseSettings):
    """Configuration for execution scheduling and timers."""

    execution_timeout_seconds: float | None = Field(
        default=3600.0,
        description="Wall-clock ceiling for a running execution (None = no ceiling)",
    )
    pending_stale_after_seconds: float | None = Field(
        default=900.0,
        description="Age after which a never-started execution is cancelled as stale",
    )

    model_config = SettingsConfigDict(
        env_prefix="STUDIO_AUTOMATION_SCHEDULER_",
        env_file=".env",
        extra="ignore",
    )


class StoreConfig(BaseSettings):
    """Configuration for local persistence."""

    storage_path: Path = Field(
        default=Path(".state"),
        description="Directory holding the JSON record collections",
    )

    model_config = SettingsConfigDict(
        env_prefix="STUDIO_AUTOMATION_STORE_",
        env_file=".env",
        extra="ignore",
    )


class EngineConfig(BaseSettings):
    """Main configuration for the automation engine."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Retry configuration",
    )
    runner: RunnerConfig = Field(
        default_factory=RunnerConfig,
        description="Step runner configuration",
    )
    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig,
        description="Scheduler configuration",
    )
    store: StoreConfig = Field(
        default_factory=StoreConfig,
        description="Store configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="STUDIO_AUTOMATION_",
        env_file=".env",
        extra="ignore",
    )

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        configure_logging(self.log_level)

        if self.debug:
            logging.getLogger("studio_automation").setLevel(logging.DEBUG)

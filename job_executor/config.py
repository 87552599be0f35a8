"""Configuration settings for the job executor.

Hierarchical configuration built on pydantic-settings. Every subsystem has its
own settings class with an environment prefix; ``ExecutorSettings`` aggregates
them. Settings are frozen: they are loaded once at process start and passed
explicitly into the services that need them.

Environment examples:
    EXECUTOR_LOG_LEVEL=DEBUG
    AGENT_CLIENT_MAX_RETRIES=4
    DISTRIBUTION_MAX_AGENTS_PER_JOB=5
    EXECUTOR_DISTRIBUTION__SELECTION_STRATEGY=best_scored
"""

from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .schemas.models import SelectionStrategy


class AgentClientSettings(BaseSettings):
    """Remote agent call configuration.

    Timeouts are per HTTP attempt; retries use exponential backoff starting
    at ``base_retry_delay`` seconds.
    """

    model_config = SettingsConfigDict(env_prefix="AGENT_CLIENT_", frozen=True)

    request_timeout_seconds: float = Field(
        30.0, gt=0, le=600, description="Timeout for a single agent call attempt"
    )
    health_check_timeout_seconds: float = Field(
        5.0, gt=0, le=60, description="Timeout for a health probe"
    )
    max_retries: int = Field(
        2, ge=0, le=10, description="Retries after the first failed attempt"
    )
    base_retry_delay: float = Field(
        1.0, ge=0.0, le=60.0, description="Delay before the first retry (seconds)"
    )
    backoff_multiplier: float = Field(
        2.0, ge=1.0, le=10.0, description="Multiplier applied to each delay"
    )
    user_agent: str = Field("JobExecutor/1.0", description="User-Agent header")


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", frozen=True)

    url: str = Field("sqlite:///job_executor.db", description="SQLAlchemy URL")
    echo_sql: bool = Field(False, description="Enable SQL query logging")


class DistributionSettings(BaseSettings):
    """Agent fan-out and result selection configuration."""

    model_config = SettingsConfigDict(env_prefix="DISTRIBUTION_", frozen=True)

    max_agents_per_job: int = Field(
        3, ge=1, le=50, description="Maximum agents a job is offered to"
    )
    selection_strategy: SelectionStrategy = Field(
        SelectionStrategy.FIRST_COMPLETED,
        description="Strategy used to pick the winning agent",
    )
    distribution_timeout_seconds: int = Field(
        3600, ge=1, description="Time a distribution may stay unresolved"
    )
    cancel_losers_remotely: bool = Field(
        False, description="Notify losing agents through their cancel endpoint"
    )


class SchedulerSettings(BaseSettings):
    """Scheduled processing loop configuration."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", frozen=True)

    poll_interval_seconds: float = Field(
        30.0, gt=0, le=3600, description="Interval between processing cycles"
    )
    batch_size: int = Field(10, ge=1, le=100, description="Jobs fetched per cycle")
    dispatch_workers: int = Field(
        4, ge=1, le=32, description="Concurrent distribution dispatch workers"
    )


class ExecutorSettings(BaseSettings):
    """Root configuration combining all subsystem settings."""

    agent_client: AgentClientSettings = Field(default_factory=AgentClientSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    distribution: DistributionSettings = Field(default_factory=DistributionSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    log_level: str = Field(
        "INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        env_prefix="EXECUTOR_",
        extra="ignore",
        validate_default=True,
        case_sensitive=False,
        frozen=True,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the logging level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_configuration(self) -> "ExecutorSettings":
        """Cross-field consistency checks."""
        if (
            self.distribution.distribution_timeout_seconds
            < self.agent_client.request_timeout_seconds
        ):
            raise ValueError(
                "Distribution timeout must be >= the agent request timeout"
            )
        return self

    def summary(self) -> dict[str, Any]:
        """Flat view of the effective settings for display."""
        return {
            "database_url": self.database.url,
            "max_agents_per_job": self.distribution.max_agents_per_job,
            "selection_strategy": self.distribution.selection_strategy.value,
            "distribution_timeout_seconds": (
                self.distribution.distribution_timeout_seconds
            ),
            "request_timeout_seconds": self.agent_client.request_timeout_seconds,
            "max_retries": self.agent_client.max_retries,
            "poll_interval_seconds": self.scheduler.poll_interval_seconds,
            "log_level": self.log_level,
        }


@lru_cache(maxsize=1)
def get_settings() -> ExecutorSettings:
    """Load settings once for the process entry point.

    Services never call this themselves; they receive settings through their
    constructors.
    """
    return ExecutorSettings()


__all__ = [
    "AgentClientSettings",
    "DatabaseSettings",
    "DistributionSettings",
    "ExecutorSettings",
    "SchedulerSettings",
    "get_settings",
]

"""Tests for configuration loading, validation and environment overrides."""

from unittest.mock import patch

import pytest
from pydantic import ValidationError

from job_executor.config import (
    AgentClientSettings,
    DatabaseSettings,
    DistributionSettings,
    ExecutorSettings,
    SchedulerSettings,
    get_settings,
)
from job_executor.schemas.models import SelectionStrategy


class TestAgentClientSettings:
    """Test remote agent client configuration."""

    def test_default_values(self):
        """Test defaults match the agent call contract."""
        settings = AgentClientSettings()

        assert settings.request_timeout_seconds == 30.0
        assert settings.health_check_timeout_seconds == 5.0
        assert settings.max_retries == 2
        assert settings.base_retry_delay == 1.0
        assert settings.backoff_multiplier == 2.0

    def test_validation_bounds(self):
        """Test out-of-range values are rejected."""
        with pytest.raises(ValidationError):
            AgentClientSettings(request_timeout_seconds=0)

        with pytest.raises(ValidationError):
            AgentClientSettings(max_retries=-1)

        with pytest.raises(ValidationError):
            AgentClientSettings(backoff_multiplier=0.5)

    def test_environment_override(self):
        """Test the AGENT_CLIENT_ prefix is honoured."""
        with patch.dict(
            "os.environ",
            {"AGENT_CLIENT_MAX_RETRIES": "5", "AGENT_CLIENT_BASE_RETRY_DELAY": "0.25"},
        ):
            settings = AgentClientSettings()

        assert settings.max_retries == 5
        assert settings.base_retry_delay == 0.25

    def test_settings_are_frozen(self):
        """Test settings cannot be mutated after loading."""
        settings = AgentClientSettings()

        with pytest.raises(ValidationError):
            settings.max_retries = 9


class TestDistributionSettings:
    """Test fan-out and selection configuration."""

    def test_default_values(self):
        """Test default cap, strategy and timeout."""
        settings = DistributionSettings()

        assert settings.max_agents_per_job == 3
        assert settings.selection_strategy == SelectionStrategy.FIRST_COMPLETED
        assert settings.distribution_timeout_seconds == 3600
        assert settings.cancel_losers_remotely is False

    def test_strategy_from_environment(self):
        """Test strategy parsing from its string value."""
        with patch.dict(
            "os.environ", {"DISTRIBUTION_SELECTION_STRATEGY": "best_scored"}
        ):
            settings = DistributionSettings()

        assert settings.selection_strategy == SelectionStrategy.BEST_SCORED

    def test_unknown_strategy_rejected(self):
        """Test an unknown strategy fails validation."""
        with pytest.raises(ValidationError):
            DistributionSettings(selection_strategy="random")


class TestExecutorSettings:
    """Test the root settings object."""

    def test_nested_defaults(self):
        """Test subsystem settings are created by default."""
        settings = ExecutorSettings()

        assert isinstance(settings.agent_client, AgentClientSettings)
        assert isinstance(settings.database, DatabaseSettings)
        assert isinstance(settings.distribution, DistributionSettings)
        assert isinstance(settings.scheduler, SchedulerSettings)
        assert settings.scheduler.batch_size == 10

    def test_log_level_normalised(self):
        """Test log level is upper-cased."""
        settings = ExecutorSettings(log_level="debug")

        assert settings.log_level == "DEBUG"

    def test_invalid_log_level(self):
        """Test unknown log levels are rejected."""
        with pytest.raises(ValidationError, match="Unknown log level"):
            ExecutorSettings(log_level="chatty")

    def test_distribution_timeout_must_cover_request_timeout(self):
        """Test cross-field validation of timeouts."""
        with pytest.raises(ValidationError, match="Distribution timeout"):
            ExecutorSettings(
                agent_client=AgentClientSettings(request_timeout_seconds=120),
                distribution=DistributionSettings(distribution_timeout_seconds=60),
            )

    def test_summary(self):
        """Test the flat summary exposes key values."""
        summary = ExecutorSettings().summary()

        assert summary["max_agents_per_job"] == 3
        assert summary["selection_strategy"] == "first_completed"
        assert "database_url" in summary

    def test_get_settings_is_cached(self):
        """Test the entry point loads settings once."""
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()

"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from src.conveyor.config import ConveyorSettings, get_settings


@pytest.fixture
def required_env(monkeypatch):
    """Set the required CONVEYOR_ environment variables."""
    monkeypatch.setenv("CONVEYOR_GITHUB_WEBHOOK_SECRET", "test-secret")
    monkeypatch.setenv("CONVEYOR_EXECUTOR_URL", "http://executor:9000")
    for name in (
        "CONVEYOR_DATABASE_URL",
        "CONVEYOR_NOTIFIER_WEBHOOK_URL",
        "CONVEYOR_ARTIFACT_BUCKET",
        "CONVEYOR_PORT",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConveyorSettings:
    """Tests for ConveyorSettings."""

    def test_defaults(self, required_env):
        """Test that default values are used when optional env vars are not set."""
        settings = get_settings()

        assert settings.github_webhook_secret == "test-secret"
        assert settings.executor_url == "http://executor:9000"
        assert settings.executor_timeout_seconds == 1800.0
        assert settings.executor_max_retries == 3
        assert settings.stale_grace_seconds == 300.0
        assert settings.database_url is None
        assert settings.notifier_webhook_url is None
        assert settings.host == "0.0.0.0"
        assert settings.port == 8080

    def test_load_from_env(self, required_env):
        """Test that optional values load from environment variables."""
        required_env.setenv("CONVEYOR_DATABASE_URL", "postgresql://conveyor:pw@db:5432/conveyor")
        required_env.setenv("CONVEYOR_NOTIFIER_WEBHOOK_URL", "https://chat.example.com/hook")
        required_env.setenv("CONVEYOR_EXECUTOR_MAX_RETRIES", "0")
        required_env.setenv("CONVEYOR_ARTIFACT_BUCKET", "builds")

        settings = get_settings()

        assert settings.database_url == "postgresql://conveyor:pw@db:5432/conveyor"
        assert settings.notifier_webhook_url == "https://chat.example.com/hook"
        assert settings.executor_max_retries == 0
        assert settings.artifact_bucket == "builds"

    def test_blank_database_url_means_in_memory(self, required_env):
        required_env.setenv("CONVEYOR_DATABASE_URL", "  ")

        assert get_settings().database_url is None

    def test_missing_required_fields(self, monkeypatch):
        """Test that missing required values raise a validation error."""
        monkeypatch.delenv("CONVEYOR_GITHUB_WEBHOOK_SECRET", raising=False)
        monkeypatch.delenv("CONVEYOR_EXECUTOR_URL", raising=False)

        with pytest.raises(ValidationError):
            ConveyorSettings()

    @pytest.mark.parametrize(
        "name,value",
        [
            ("CONVEYOR_GITHUB_WEBHOOK_SECRET", "   "),
            ("CONVEYOR_EXECUTOR_URL", "executor:9000"),
            ("CONVEYOR_NOTIFIER_WEBHOOK_URL", "ftp://chat.example.com"),
            ("CONVEYOR_DATABASE_URL", "mysql://db/conveyor"),
            ("CONVEYOR_EXECUTOR_TIMEOUT_SECONDS", "0"),
            ("CONVEYOR_EXECUTOR_MAX_RETRIES", "-1"),
            ("CONVEYOR_STALE_GRACE_SECONDS", "-5"),
            ("CONVEYOR_PORT", "70000"),
        ],
    )
    def test_invalid_values_are_rejected(self, required_env, name, value):
        required_env.setenv(name, value)

        with pytest.raises(ValidationError):
            get_settings()

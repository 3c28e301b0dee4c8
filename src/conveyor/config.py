"""Orchestrator configuration using pydantic-settings.

This module defines the ConveyorSettings class that reads configuration
from environment variables with the CONVEYOR_ prefix.
"""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConveyorSettings(BaseSettings):
    """Deployment orchestrator configuration from environment variables.

    All environment variables are prefixed with CONVEYOR_ (e.g.,
    CONVEYOR_EXECUTOR_URL).

    Required fields (must be set via environment variables):
    - github_webhook_secret: Secret for validating GitHub webhook signatures
    - executor_url: Base URL of the build/deploy executor service

    Without database_url the service keeps state in memory, which is only
    suitable for local development.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONVEYOR_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    # Secret for validating X-Hub-Signature-256 on inbound webhooks
    github_webhook_secret: str

    # -------------------------------------------------------------------------
    # Executor Configuration
    # -------------------------------------------------------------------------
    executor_url: str

    # A stage execution exceeding this is recorded as failed (executor_timeout)
    executor_timeout_seconds: float = 1800.0

    # Retries for transient executor errors
    executor_max_retries: int = 3

    executor_backoff_base_seconds: float = 1.0
    executor_backoff_max_seconds: float = 60.0

    # Extra time, beyond the longest possible execution, before an in-flight
    # record is considered abandoned and reclaimed
    stale_grace_seconds: float = 300.0

    # Bucket handed to the executor for build outputs
    artifact_bucket: Optional[str] = None

    # -------------------------------------------------------------------------
    # Notifier Configuration
    # -------------------------------------------------------------------------
    # Chat integration endpoint; notifications are only logged when unset
    notifier_webhook_url: Optional[str] = None

    notifier_timeout_seconds: float = 10.0

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; in-memory state when unset
    database_url: Optional[str] = None

    database_min_pool_size: int = 2
    database_max_pool_size: int = 10

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: str) -> str:
        """Validate that webhook secret is not empty."""
        if not v or not v.strip():
            raise ValueError("github_webhook_secret cannot be empty")
        return v

    @field_validator("executor_url", "notifier_webhook_url")
    @classmethod
    def validate_http_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that service URLs use http or https."""
        if v is None:
            return v
        if not v.strip():
            raise ValueError("URL cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database URL format when one is given."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator(
        "executor_timeout_seconds",
        "executor_backoff_base_seconds",
        "executor_backoff_max_seconds",
        "notifier_timeout_seconds",
        "stale_grace_seconds",
    )
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("executor_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("executor_max_retries cannot be negative")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> ConveyorSettings:
    """Create a ConveyorSettings instance from the environment.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return ConveyorSettings()

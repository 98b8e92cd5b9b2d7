"""Pipeline configuration using pydantic-settings.

This module defines the PipelineSettings class that reads configuration
from environment variables with the INFRAGATE_ prefix. Every field has a
default so the engine can start against in-memory stores for local use;
production deployments set the database URL and the definition paths.

It also defines ConfigurationError, raised by every loader of operator
supplied files (pipeline definition, policy ruleset). A configuration error
fails a run immediately and is never retried.
"""

from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when operator supplied configuration is malformed.

    Attributes:
        source: File path or component name the error originates from.
        message: Human-readable error message.
    """

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        self.message = message
        prefix = f"{source}: " if source else ""
        super().__init__(f"{prefix}{message}")


class LockWaitMode(str, Enum):
    """Behavior when the Apply lock is held by another run.

    Attributes:
        FAIL_FAST: Fail the run immediately with AlreadyLocked.
        QUEUE: Poll for the lock until lock_wait_timeout_seconds elapses.
    """

    FAIL_FAST = "fail_fast"
    QUEUE = "queue"


class PipelineSettings(BaseSettings):
    """Pipeline engine configuration from environment variables.

    All environment variables are prefixed with INFRAGATE_
    (e.g., INFRAGATE_LEASE_SECONDS).
    """

    model_config = SettingsConfigDict(
        env_prefix="INFRAGATE_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; in-memory stores are used when unset
    database_url: Optional[str] = None

    # Directory for write-once artifact files; in-memory when unset
    artifact_dir: Optional[str] = None

    # -------------------------------------------------------------------------
    # Pipeline definition
    # -------------------------------------------------------------------------
    # YAML file describing the stage adapters
    pipeline_definition_path: Optional[str] = None

    # YAML file describing the policy ruleset
    ruleset_path: Optional[str] = None

    # Default wall-clock timeout for a single stage attempt
    stage_timeout_seconds: int = 900

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------
    # Lease duration for the Apply lock; size generously relative to apply time
    lease_seconds: int = 600

    # Renewal interval for the lease keeper during Apply
    lease_renew_interval_seconds: int = 60

    lock_wait_mode: LockWaitMode = LockWaitMode.FAIL_FAST

    # Upper bound on queueing for the lock in QUEUE mode
    lock_wait_timeout_seconds: int = 1800

    # Poll interval while queued for the lock
    lock_poll_interval_seconds: float = 5.0

    # -------------------------------------------------------------------------
    # Retry policy for execution errors
    # -------------------------------------------------------------------------
    max_attempts: int = 3
    retry_initial_delay_seconds: float = 2.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_seconds: float = 60.0

    # -------------------------------------------------------------------------
    # Approval
    # -------------------------------------------------------------------------
    approval_required: bool = True

    # Runs waiting longer than this are aborted; no timeout when unset
    approval_timeout_seconds: Optional[int] = None

    # Interval of the background sweep expiring overdue approvals
    approval_sweep_interval_seconds: int = 60

    # On shutdown, wait this long for in-flight applies to finish
    shutdown_grace_seconds: int = 300

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    # Comma separated sink names: logging, metrics
    event_sinks: str = "logging,metrics"

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the database URL, when set, is a PostgreSQL URL."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("artifact_dir")
    @classmethod
    def validate_artifact_dir(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the artifact directory is an absolute path."""
        if v is None or not v.strip():
            return None
        if not Path(v).is_absolute():
            raise ValueError("artifact_dir must be an absolute path")
        return v

    @field_validator(
        "stage_timeout_seconds",
        "lease_seconds",
        "lease_renew_interval_seconds",
        "lock_wait_timeout_seconds",
        "max_attempts",
        "approval_sweep_interval_seconds",
        "shutdown_grace_seconds",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that counts and durations are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("approval_timeout_seconds")
    @classmethod
    def validate_approval_timeout(cls, v: Optional[int]) -> Optional[int]:
        """Validate that the approval timeout, when set, is positive."""
        if v is not None and v < 1:
            raise ValueError("approval_timeout_seconds must be at least 1")
        return v

    @field_validator("lock_poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        """Validate that the lock poll interval is positive."""
        if v <= 0:
            raise ValueError("lock_poll_interval_seconds must be positive")
        return v

    @field_validator("retry_backoff_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        """Validate that backoff never shrinks between attempts."""
        if v < 1.0:
            raise ValueError("retry_backoff_multiplier must be at least 1.0")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    def sink_names(self) -> List[str]:
        """Return the configured event sink names, normalized."""
        return [
            name.strip().lower()
            for name in self.event_sinks.split(",")
            if name.strip()
        ]


def get_settings() -> PipelineSettings:
    """Create and return PipelineSettings instance.

    Returns:
        PipelineSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If a value is missing or invalid.
    """
    return PipelineSettings()

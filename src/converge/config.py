"""Engine configuration with validation.

Configuration is read once from the environment and validated at construction
time so that a bad value fails the command before any backend call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class BackendType(str, Enum):
    """Supported provisioning backends."""

    LOCAL = "local"
    AZURE = "azure"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    TEXT = "text"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_APPLY_CONCURRENCY = 4
DEFAULT_VALIDATION_CONCURRENCY = 8
MAX_CONCURRENCY = 32

DEFAULT_STEP_TIMEOUT_SECONDS = 1800
MIN_STEP_TIMEOUT_SECONDS = 1
MAX_STEP_TIMEOUT_SECONDS = 7200

DEFAULT_MAX_STEP_RETRIES = 3
MAX_STEP_RETRIES_LIMIT = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 5.0

DEFAULT_REGISTRATION_PROPAGATION_SECONDS = 60
REGISTRATION_POLL_INTERVAL_SECONDS = 2.0

DEFAULT_SOFT_DELETE_RETENTION_DAYS = 90
MIN_SOFT_DELETE_RETENTION_DAYS = 7
MAX_SOFT_DELETE_RETENTION_DAYS = 90

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max declared-state file
MAX_RESOURCES_PER_PLAN = 800

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    backend: BackendType = BackendType.LOCAL
    local_state_file: Path | None = None

    # Azure backend
    subscription_id: str | None = None
    location: str = "eastus2"

    # Concurrency
    apply_concurrency: int = DEFAULT_APPLY_CONCURRENCY
    validation_concurrency: int = DEFAULT_VALIDATION_CONCURRENCY

    # Timing and retries
    step_timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS
    max_step_retries: int = DEFAULT_MAX_STEP_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    registration_propagation_seconds: float = DEFAULT_REGISTRATION_PROPAGATION_SECONDS
    registration_poll_interval_seconds: float = REGISTRATION_POLL_INTERVAL_SECONDS

    # Local backend behaviour
    soft_delete_retention_days: int = DEFAULT_SOFT_DELETE_RETENTION_DAYS

    # Logging
    log_format: LogFormat = LogFormat.JSON
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.backend == BackendType.AZURE:
            if not self.subscription_id:
                errors.append("AZURE_SUBSCRIPTION_ID is required when BACKEND is azure")
            elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
                errors.append(
                    f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}"
                )

        if not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid region name: {self.location}")

        if not (1 <= self.apply_concurrency <= MAX_CONCURRENCY):
            errors.append(f"APPLY_CONCURRENCY must be between 1 and {MAX_CONCURRENCY}")

        if not (1 <= self.validation_concurrency <= MAX_CONCURRENCY):
            errors.append(f"VALIDATION_CONCURRENCY must be between 1 and {MAX_CONCURRENCY}")

        if not (MIN_STEP_TIMEOUT_SECONDS <= self.step_timeout_seconds <= MAX_STEP_TIMEOUT_SECONDS):
            errors.append(
                f"STEP_TIMEOUT_SECONDS must be between {MIN_STEP_TIMEOUT_SECONDS} "
                f"and {MAX_STEP_TIMEOUT_SECONDS}"
            )

        if not (0 <= self.max_step_retries <= MAX_STEP_RETRIES_LIMIT):
            errors.append(f"MAX_STEP_RETRIES must be between 0 and {MAX_STEP_RETRIES_LIMIT}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if self.registration_propagation_seconds < 0:
            errors.append("REGISTRATION_PROPAGATION_SECONDS cannot be negative")

        if not (
            MIN_SOFT_DELETE_RETENTION_DAYS
            <= self.soft_delete_retention_days
            <= MAX_SOFT_DELETE_RETENTION_DAYS
        ):
            errors.append(
                f"SOFT_DELETE_RETENTION_DAYS must be between {MIN_SOFT_DELETE_RETENTION_DAYS} "
                f"and {MAX_SOFT_DELETE_RETENTION_DAYS}"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def max_attempts(self) -> int:
        """Total attempts per step (first try plus retries)."""
        return self.max_step_retries + 1

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            BACKEND: local or azure (default: local)
            LOCAL_STATE_FILE: JSON file the local backend persists to (optional)
            AZURE_SUBSCRIPTION_ID: Target subscription (required for azure)
            AZURE_LOCATION: Default location for created resources (default: eastus2)
            APPLY_CONCURRENCY: Parallel apply steps (default: 4)
            VALIDATION_CONCURRENCY: Parallel read-only checks (default: 8)
            STEP_TIMEOUT_SECONDS: Per-step timeout (default: 1800)
            MAX_STEP_RETRIES: Retries for transient backend errors (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: Exponential backoff base (default: 5)
            REGISTRATION_PROPAGATION_SECONDS: Wait for record visibility (default: 60)
            SOFT_DELETE_RETENTION_DAYS: Local backend retention window (default: 90)
            LOG_FORMAT: json or text (default: json)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value.lower())
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        state_file = os.environ.get("LOCAL_STATE_FILE")

        return cls(
            backend=get_enum("BACKEND", BackendType, BackendType.LOCAL),  # type: ignore[arg-type]
            local_state_file=Path(state_file) if state_file else None,
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            location=os.environ.get("AZURE_LOCATION", "eastus2"),
            apply_concurrency=get_int("APPLY_CONCURRENCY", DEFAULT_APPLY_CONCURRENCY),
            validation_concurrency=get_int(
                "VALIDATION_CONCURRENCY", DEFAULT_VALIDATION_CONCURRENCY
            ),
            step_timeout_seconds=get_float("STEP_TIMEOUT_SECONDS", DEFAULT_STEP_TIMEOUT_SECONDS),
            max_step_retries=get_int("MAX_STEP_RETRIES", DEFAULT_MAX_STEP_RETRIES),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            registration_propagation_seconds=get_float(
                "REGISTRATION_PROPAGATION_SECONDS", DEFAULT_REGISTRATION_PROPAGATION_SECONDS
            ),
            soft_delete_retention_days=get_int(
                "SOFT_DELETE_RETENTION_DAYS", DEFAULT_SOFT_DELETE_RETENTION_DAYS
            ),
            log_format=get_enum("LOG_FORMAT", LogFormat, LogFormat.JSON),  # type: ignore[arg-type]
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

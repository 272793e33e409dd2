"""Engine configuration with validation.

Bounds are enforced at configuration load time so that a misconfigured
engine fails before it touches any state or provider.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_WORKERS = 10
MIN_MAX_WORKERS = 1
MAX_MAX_WORKERS = 256

DEFAULT_MAX_ATTEMPTS = 3
MAX_MAX_ATTEMPTS = 20

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 60.0
RETRY_JITTER_RATIO = 0.2

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800.0
MAX_OPERATION_TIMEOUT_SECONDS = 6 * 3600.0

# Loader limits
MAX_DOCUMENT_SIZE_BYTES = 5 * 1024 * 1024  # 5MB max desired-state document
MAX_RESOURCES_PER_DOCUMENT = 10_000


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Size of the worker pool used within a single stage
    max_workers: int = DEFAULT_MAX_WORKERS

    # Total provider attempts per operation (1 = no retries)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    # Exponential backoff: base * 2 ** (attempt - 1), capped at backoff_max
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS

    # Deadline for each provider.execute call
    operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Optional local state file used by FileStateStore
    state_file: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_MAX_WORKERS <= self.max_workers <= MAX_MAX_WORKERS):
            errors.append(
                f"max_workers must be between {MIN_MAX_WORKERS} and {MAX_MAX_WORKERS}"
            )

        if not (1 <= self.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(f"max_attempts must be between 1 and {MAX_MAX_ATTEMPTS}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("retry_backoff_base_seconds cannot be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("retry_backoff_max_seconds must be >= retry_backoff_base_seconds")

        if not (0 < self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"operation_timeout_seconds must be in (0, {MAX_OPERATION_TIMEOUT_SECONDS}]"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def backoff_seconds(self, attempt: int) -> float:
        """Base backoff (without jitter) after the given failed attempt."""
        backoff = self.retry_backoff_base_seconds * (2 ** (attempt - 1))
        return min(backoff, self.retry_backoff_max_seconds)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            PROVISIONER_MAX_WORKERS: Worker pool size per stage (default: 10)
            PROVISIONER_MAX_ATTEMPTS: Attempts per operation (default: 3)
            PROVISIONER_RETRY_BACKOFF_BASE: Backoff base in seconds (default: 1)
            PROVISIONER_RETRY_BACKOFF_MAX: Backoff ceiling in seconds (default: 60)
            PROVISIONER_OPERATION_TIMEOUT: Per-operation deadline (default: 1800)
            PROVISIONER_STATE_FILE: Path to a local YAML state file (optional)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        state_file = os.environ.get("PROVISIONER_STATE_FILE")

        return cls(
            max_workers=get_int("PROVISIONER_MAX_WORKERS", DEFAULT_MAX_WORKERS),
            max_attempts=get_int("PROVISIONER_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "PROVISIONER_RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "PROVISIONER_RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            operation_timeout_seconds=get_float(
                "PROVISIONER_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            state_file=Path(state_file) if state_file else None,
        )

"""Configuration management with validation.

Bounds are enforced at load time so that a misconfigured operator fails
before it issues a single remote call.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .wait import Backoff


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

# WaitAssociated deadline; EKS associations usually settle within a few minutes
DEFAULT_WAIT_TIMEOUT_SECONDS = 600
MAX_WAIT_TIMEOUT_SECONDS = 3600

DEFAULT_BACKOFF_INITIAL_SECONDS = 1.0
DEFAULT_BACKOFF_FACTOR = 1.5
DEFAULT_BACKOFF_STEPS = 40

# Requeue delay for passes deferred on an in-flight remote transition
DEFAULT_DEFER_REQUEUE_SECONDS = 30

DEFAULT_AWS_CONNECT_TIMEOUT_SECONDS = 10
DEFAULT_AWS_READ_TIMEOUT_SECONDS = 30

# Security constraints
MAX_SPEC_FILE_SIZE_BYTES = 256 * 1024  # 256KB max cluster spec
MAX_CLUSTER_NAME_LENGTH = 100

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d$"
VALID_CLUSTER_NAME_PATTERN = r"^[0-9A-Za-z][A-Za-z0-9\-_]*$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    region: str

    specs_dir: Path = field(default_factory=lambda: Path("/specs"))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    wait_timeout_seconds: int = DEFAULT_WAIT_TIMEOUT_SECONDS
    defer_requeue_seconds: int = DEFAULT_DEFER_REQUEUE_SECONDS

    # Backoff schedule for eventual-consistency polling
    backoff_initial_seconds: float = DEFAULT_BACKOFF_INITIAL_SECONDS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    backoff_steps: int = DEFAULT_BACKOFF_STEPS

    # AWS client timeouts
    aws_connect_timeout_seconds: int = DEFAULT_AWS_CONNECT_TIMEOUT_SECONDS
    aws_read_timeout_seconds: int = DEFAULT_AWS_READ_TIMEOUT_SECONDS

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (1 <= self.wait_timeout_seconds <= MAX_WAIT_TIMEOUT_SECONDS):
            errors.append(
                f"WAIT_TIMEOUT must be between 1 and {MAX_WAIT_TIMEOUT_SECONDS} seconds"
            )

        if self.defer_requeue_seconds < 1:
            errors.append("DEFER_REQUEUE_SECONDS must be at least 1")

        if self.backoff_initial_seconds <= 0:
            errors.append("BACKOFF_INITIAL must be positive")
        if self.backoff_factor < 1.0:
            errors.append("BACKOFF_FACTOR must be at least 1.0")
        if self.backoff_steps < 1:
            errors.append("BACKOFF_STEPS must be at least 1")

        if self.aws_connect_timeout_seconds < 1 or self.aws_read_timeout_seconds < 1:
            errors.append("AWS_CONNECT_TIMEOUT and AWS_READ_TIMEOUT must be at least 1")

        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def backoff(self) -> Backoff:
        """Build the polling backoff schedule from this configuration."""
        return Backoff(
            initial_seconds=self.backoff_initial_seconds,
            factor=self.backoff_factor,
            steps=self.backoff_steps,
            max_elapsed_seconds=float(self.wait_timeout_seconds),
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AWS_REGION: Region of the managed clusters (AWS_DEFAULT_REGION is a fallback)
            SPECS_DIR: Path to cluster YAML specs (default: /specs)
            RECONCILE_INTERVAL: Seconds between reconciliation loops (default: 300)
            WAIT_TIMEOUT: Deadline for association polling in seconds (default: 600)
            DEFER_REQUEUE_SECONDS: Requeue delay for deferred passes (default: 30)
            BACKOFF_INITIAL: First poll delay in seconds (default: 1.0)
            BACKOFF_FACTOR: Multiplier between poll delays (default: 1.5)
            BACKOFF_STEPS: Maximum number of polls (default: 40)
            AWS_CONNECT_TIMEOUT: botocore connect timeout in seconds (default: 10)
            AWS_READ_TIMEOUT: botocore read timeout in seconds (default: 30)
            DRY_RUN: If "true", plan only without issuing mutations (default: false)

        Keyword overrides that are not None replace the environment value of
        the matching field.
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

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        values: dict[str, Any] = dict(
            region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION", ""),
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            wait_timeout_seconds=get_int("WAIT_TIMEOUT", DEFAULT_WAIT_TIMEOUT_SECONDS),
            defer_requeue_seconds=get_int("DEFER_REQUEUE_SECONDS", DEFAULT_DEFER_REQUEUE_SECONDS),
            backoff_initial_seconds=get_float("BACKOFF_INITIAL", DEFAULT_BACKOFF_INITIAL_SECONDS),
            backoff_factor=get_float("BACKOFF_FACTOR", DEFAULT_BACKOFF_FACTOR),
            backoff_steps=get_int("BACKOFF_STEPS", DEFAULT_BACKOFF_STEPS),
            aws_connect_timeout_seconds=get_int(
                "AWS_CONNECT_TIMEOUT", DEFAULT_AWS_CONNECT_TIMEOUT_SECONDS
            ),
            aws_read_timeout_seconds=get_int("AWS_READ_TIMEOUT", DEFAULT_AWS_READ_TIMEOUT_SECONDS),
            dry_run=get_bool("DRY_RUN", False),
        )
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

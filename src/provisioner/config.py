"""Configuration management with validation.

Limits are enforced at configuration load time so a misconfigured
reconciler fails before it touches any cloud API.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_WORKERS = 4
MIN_MAX_WORKERS = 1
MAX_MAX_WORKERS = 64

DEFAULT_MAX_ATTEMPTS = 5
MAX_MAX_ATTEMPTS = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800

DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_MAX_CHANGES_PER_PASS = 100

DEFAULT_STATE_DIR = ".provisioner/state"

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_STATE_RECORD_SIZE_BYTES = 4 * 1024 * 1024


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for transient provider errors.

    Backoff for attempt N is ``base * 2 ** (N - 1)`` capped at ``max``.
    The scheduler adds up to 20% jitter on top.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS

    def backoff_for(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (1-based)."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Paths
    spec_file: Path | None = None
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    ignore_rules_file: Path | None = None

    # Scheduling
    max_workers: int = DEFAULT_MAX_WORKERS
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Control loop
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    max_changes_per_pass: int = DEFAULT_MAX_CHANGES_PER_PASS

    # Behavior
    dry_run: bool = False

    # Cloud targeting (credentials come from each SDK's default chain)
    azure_subscription_id: str | None = None
    azure_resource_group: str | None = None
    gcp_project: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_MAX_WORKERS <= self.max_workers <= MAX_MAX_WORKERS):
            errors.append(
                f"MAX_WORKERS must be between {MIN_MAX_WORKERS} and {MAX_MAX_WORKERS}"
            )

        if not (1 <= self.retry.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_MAX_ATTEMPTS}")

        if self.retry.backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE cannot be negative")

        if self.retry.backoff_max_seconds < self.retry.backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must be >= RETRY_BACKOFF_BASE")

        if self.operation_timeout_seconds < 1:
            errors.append("OPERATION_TIMEOUT must be at least 1 second")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.max_changes_per_pass < 1:
            errors.append("MAX_CHANGES_PER_PASS must be at least 1")

        if self.spec_file is not None and not self.spec_file.is_file():
            errors.append(f"Spec file does not exist: {self.spec_file}")

        if self.ignore_rules_file is not None and not self.ignore_rules_file.is_file():
            errors.append(f"Ignore rules file does not exist: {self.ignore_rules_file}")

        if self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"State path is not a directory: {self.state_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            PROVISIONER_SPEC_FILE: Path to the ClusterSpec YAML document
            PROVISIONER_STATE_DIR: Directory for the state store (default: .provisioner/state)
            IGNORE_RULES_FILE: YAML file with extra diff ignore rules
            MAX_WORKERS: Concurrent provider operations (default: 4)
            MAX_ATTEMPTS: Attempts per operation for transient errors (default: 5)
            RETRY_BACKOFF_BASE: Base backoff in seconds (default: 2)
            RETRY_BACKOFF_MAX: Backoff cap in seconds (default: 60)
            OPERATION_TIMEOUT: Timeout for a single provider operation (default: 1800)
            RECONCILE_INTERVAL: Seconds between passes in loop mode (default: 300)
            MAX_CHANGES_PER_PASS: Abort a pass planning more changes (default: 100)
            DRY_RUN: If "true", plan only and never apply (default: false)
            AZURE_SUBSCRIPTION_ID / AZURE_RESOURCE_GROUP: Azure target
            GCP_PROJECT: GCP target project
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

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        return cls(
            spec_file=get_path("PROVISIONER_SPEC_FILE"),
            state_dir=Path(os.environ.get("PROVISIONER_STATE_DIR", DEFAULT_STATE_DIR)),
            ignore_rules_file=get_path("IGNORE_RULES_FILE"),
            max_workers=get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            retry=RetryPolicy(
                max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                backoff_base_seconds=get_float(
                    "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
                ),
                backoff_max_seconds=get_float(
                    "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
                ),
            ),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            max_changes_per_pass=get_int("MAX_CHANGES_PER_PASS", DEFAULT_MAX_CHANGES_PER_PASS),
            dry_run=get_bool("DRY_RUN", False),
            azure_subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            azure_resource_group=os.environ.get("AZURE_RESOURCE_GROUP") or None,
            gcp_project=os.environ.get("GCP_PROJECT") or None,
        )

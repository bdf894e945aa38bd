"""Configuration management with validation.

Bounds are enforced at configuration load time so a misconfigured
controller fails before it touches the provider.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class DriftPolicy(str, Enum):
    """How out-of-band drift on a managed resource is handled."""

    FAIL = "fail"  # Surface a DriftConflict, never overwrite
    REVERT = "revert"  # Plan an Update/Replace back to the declared value


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 30
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_APPLY_TIMEOUT_SECONDS = 600
DEFAULT_FETCH_TIMEOUT_SECONDS = 60

DEFAULT_PARALLELISM = 4
MAX_PARALLELISM = 64

DEFAULT_MAX_APPLY_ATTEMPTS = 3
MAX_APPLY_ATTEMPTS = 10
DEFAULT_FETCH_ATTEMPTS = 3
RETRY_BACKOFF_BASE_SECONDS = 2.0
RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_MAX_DESTRUCTIVE_CHANGES = 10

# Input limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max topology file
MAX_STATE_RECORD_SIZE_BYTES = 256 * 1024
MAX_RESOURCES_PER_TOPOLOGY = 500

# Resource names follow cloud naming rules (RFC1035 label)
VALID_RESOURCE_NAME_PATTERN = r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$"
VALID_PROVIDER_PATH_PATTERN = r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$"


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pass.
    """

    topology_file: Path = field(default_factory=lambda: Path("/topology/topology.yaml"))
    state_dir: Path = field(default_factory=lambda: Path("/var/lib/vmseries-topology"))
    provider: str | None = None

    # Execution
    parallelism: int = DEFAULT_PARALLELISM
    max_apply_attempts: int = DEFAULT_MAX_APPLY_ATTEMPTS
    fetch_attempts: int = DEFAULT_FETCH_ATTEMPTS
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    apply_timeout_seconds: float = DEFAULT_APPLY_TIMEOUT_SECONDS
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS

    # Behavior
    dry_run: bool = False
    drift_policy: DriftPolicy = DriftPolicy.FAIL

    # Guardrails
    kill_switch: bool = False
    max_destructive_changes: int = DEFAULT_MAX_DESTRUCTIVE_CHANGES

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if self.provider is not None and not re.match(
            VALID_PROVIDER_PATH_PATTERN, self.provider
        ):
            errors.append(f"PROVIDER must be a 'module:attribute' import path: {self.provider}")

        if not (1 <= self.parallelism <= MAX_PARALLELISM):
            errors.append(f"PARALLELISM must be between 1 and {MAX_PARALLELISM}")

        if not (1 <= self.max_apply_attempts <= MAX_APPLY_ATTEMPTS):
            errors.append(f"MAX_APPLY_ATTEMPTS must be between 1 and {MAX_APPLY_ATTEMPTS}")

        if self.fetch_attempts < 1:
            errors.append("FETCH_ATTEMPTS must be at least 1")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX_SECONDS must be >= RETRY_BACKOFF_BASE_SECONDS")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.apply_timeout_seconds <= 0:
            errors.append("APPLY_TIMEOUT must be positive")

        if self.fetch_timeout_seconds <= 0:
            errors.append("FETCH_TIMEOUT must be positive")

        if self.max_destructive_changes < 0:
            errors.append("MAX_DESTRUCTIVE_CHANGES cannot be negative")

        if self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"STATE_DIR is not a directory: {self.state_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TOPOLOGY_FILE: Path to the declared topology YAML
            STATE_DIR: Directory for durable state records
            PROVIDER: Provider adapter factory as 'module:attribute'
            PARALLELISM: Max concurrent provider applies (default: 4)
            MAX_APPLY_ATTEMPTS: Attempts per node for retryable errors (default: 3)
            FETCH_ATTEMPTS: Attempts per live-state fetch (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: First retry delay (default: 2)
            RETRY_BACKOFF_MAX_SECONDS: Retry delay cap (default: 60)
            RECONCILE_INTERVAL: Seconds between passes (default: 300)
            APPLY_TIMEOUT: Per-call apply timeout in seconds (default: 600)
            FETCH_TIMEOUT: Per-call fetch timeout in seconds (default: 60)
            DRY_RUN: If "true", plan without applying (default: false)
            DRIFT_POLICY: "fail" or "revert" (default: fail)

        Guardrail Variables:
            KILL_SWITCH: If "true", block all mutation (default: false)
            MAX_DESTRUCTIVE_CHANGES: Max deletes + replaces per pass (default: 10)
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

        def get_drift_policy(value: str | None) -> DriftPolicy:
            if not value:
                return DriftPolicy.FAIL
            try:
                return DriftPolicy(value.lower())
            except ValueError as e:
                valid = [p.value for p in DriftPolicy]
                raise ConfigurationError(f"DRIFT_POLICY must be one of {valid}: {value}") from e

        return cls(
            topology_file=Path(os.environ.get("TOPOLOGY_FILE", "/topology/topology.yaml")),
            state_dir=Path(os.environ.get("STATE_DIR", "/var/lib/vmseries-topology")),
            provider=os.environ.get("PROVIDER") or None,
            parallelism=get_int("PARALLELISM", DEFAULT_PARALLELISM),
            max_apply_attempts=get_int("MAX_APPLY_ATTEMPTS", DEFAULT_MAX_APPLY_ATTEMPTS),
            fetch_attempts=get_int("FETCH_ATTEMPTS", DEFAULT_FETCH_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX_SECONDS", RETRY_BACKOFF_MAX_SECONDS
            ),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            apply_timeout_seconds=get_float("APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT_SECONDS),
            fetch_timeout_seconds=get_float("FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT_SECONDS),
            dry_run=get_bool("DRY_RUN", False),
            drift_policy=get_drift_policy(os.environ.get("DRIFT_POLICY")),
            kill_switch=get_bool("KILL_SWITCH", False),
            max_destructive_changes=get_int(
                "MAX_DESTRUCTIVE_CHANGES", DEFAULT_MAX_DESTRUCTIVE_CHANGES
            ),
        )

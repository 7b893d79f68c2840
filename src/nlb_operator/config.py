"""Configuration management with validation.

All settings are read from the environment once at start-up and validated
at construction time so the operator never starts half-configured.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENT_RECONCILES = 5
MIN_MAX_CONCURRENT_RECONCILES = 1
MAX_MAX_CONCURRENT_RECONCILES = 64

DEFAULT_RESYNC_INTERVAL_SECONDS = 300
MIN_RESYNC_INTERVAL_SECONDS = 60
MAX_RESYNC_INTERVAL_SECONDS = 3600

# Retry directives returned by the controller
DEFAULT_ERROR_REQUEUE_SECONDS = 30
DEFAULT_STEADY_REQUEUE_SECONDS = 300

# Job Waiter policy: listener/load-balancer jobs and the "wait until active" check
DEFAULT_JOB_POLL_INTERVAL_SECONDS = 3.0
DEFAULT_JOB_TIMEOUT_SECONDS = 180.0
DEFAULT_ACTIVE_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_ACTIVE_TIMEOUT_SECONDS = 300.0

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
MAX_REQUEST_TIMEOUT_SECONDS = 300

# Security constraints - enforced limits to prevent abuse
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}-[a-z0-9-]+$"
VALID_ENDPOINT_PATTERN = r"^[A-Za-z0-9.-]+(:[0-9]{1,5})?$"
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    region_id: str

    # Provider endpoint, derived from the region when empty
    endpoint: str = ""

    # Empty namespace watches the whole cluster
    namespace: str = ""

    # Dispatcher
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS

    # Retry directives
    error_requeue_seconds: int = DEFAULT_ERROR_REQUEUE_SECONDS
    steady_requeue_seconds: int = DEFAULT_STEADY_REQUEUE_SECONDS

    # Job Waiter
    job_poll_interval_seconds: float = DEFAULT_JOB_POLL_INTERVAL_SECONDS
    job_timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS
    active_poll_interval_seconds: float = DEFAULT_ACTIVE_POLL_INTERVAL_SECONDS
    active_timeout_seconds: float = DEFAULT_ACTIVE_TIMEOUT_SECONDS

    # Provider SDK client
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Structured audit record per reconciliation pass
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not self.region_id:
            errors.append("REGION_ID is required")
        elif not re.match(VALID_REGION_PATTERN, self.region_id):
            errors.append(f"REGION_ID must match pattern {VALID_REGION_PATTERN}: {self.region_id}")

        if self.endpoint and not re.match(VALID_ENDPOINT_PATTERN, self.endpoint):
            errors.append(f"NLB_ENDPOINT must be a host name without scheme: {self.endpoint}")

        if self.namespace and not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"WATCH_NAMESPACE is not a valid namespace name: {self.namespace}")

        if not (
            MIN_MAX_CONCURRENT_RECONCILES
            <= self.max_concurrent_reconciles
            <= MAX_MAX_CONCURRENT_RECONCILES
        ):
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between {MIN_MAX_CONCURRENT_RECONCILES} "
                f"and {MAX_MAX_CONCURRENT_RECONCILES}"
            )

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if not 1 <= self.error_requeue_seconds <= 3600:
            errors.append("ERROR_REQUEUE_SECONDS must be between 1 and 3600")

        if not 10 <= self.steady_requeue_seconds <= 86400:
            errors.append("STEADY_REQUEUE_SECONDS must be between 10 and 86400")

        # Poll ceilings must leave room for at least one poll
        if self.job_poll_interval_seconds <= 0:
            errors.append("JOB_POLL_INTERVAL must be positive")
        elif self.job_timeout_seconds <= self.job_poll_interval_seconds:
            errors.append("JOB_TIMEOUT must be greater than JOB_POLL_INTERVAL")

        if self.active_poll_interval_seconds <= 0:
            errors.append("ACTIVE_POLL_INTERVAL must be positive")
        elif self.active_timeout_seconds <= self.active_poll_interval_seconds:
            errors.append("ACTIVE_TIMEOUT must be greater than ACTIVE_POLL_INTERVAL")

        if not 1 <= self.request_timeout_seconds <= MAX_REQUEST_TIMEOUT_SECONDS:
            errors.append(f"REQUEST_TIMEOUT must be between 1 and {MAX_REQUEST_TIMEOUT_SECONDS}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def resolved_endpoint(self) -> str:
        """Provider endpoint, falling back to the regional public endpoint."""
        return self.endpoint or f"nlb.{self.region_id}.aliyuncs.com"

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Keyword overrides (e.g. from command line flags) replace the
        corresponding environment values before validation.

        Environment Variables:
            REGION_ID: Provider region (e.g. cn-hangzhou). Required.
            NLB_ENDPOINT: API host override (default: nlb.<region>.aliyuncs.com)
            WATCH_NAMESPACE: Namespace to watch (default: all namespaces)
            MAX_CONCURRENT_RECONCILES: Parallel reconciliations (default: 5)
            RESYNC_INTERVAL: Seconds between full resyncs (default: 300)
            ERROR_REQUEUE_SECONDS: Requeue delay after a failed pass (default: 30)
            STEADY_REQUEUE_SECONDS: Requeue delay after a successful pass (default: 300)
            JOB_POLL_INTERVAL / JOB_TIMEOUT: Async job polling (default: 3 / 180)
            ACTIVE_POLL_INTERVAL / ACTIVE_TIMEOUT: Wait-until-active polling (default: 10 / 300)
            REQUEST_TIMEOUT: Per-request HTTP timeout in seconds (default: 30)
            ENABLE_AUDIT_LOGGING: Emit one audit record per pass (default: true)

        Credentials are read separately by security.load_credential().
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

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        values: dict[str, Any] = dict(
            region_id=os.environ.get("REGION_ID", os.environ.get("ALIBABA_CLOUD_REGION_ID", "")),
            endpoint=os.environ.get("NLB_ENDPOINT", ""),
            namespace=os.environ.get("WATCH_NAMESPACE", ""),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            error_requeue_seconds=get_int("ERROR_REQUEUE_SECONDS", DEFAULT_ERROR_REQUEUE_SECONDS),
            steady_requeue_seconds=get_int(
                "STEADY_REQUEUE_SECONDS", DEFAULT_STEADY_REQUEUE_SECONDS
            ),
            job_poll_interval_seconds=get_float(
                "JOB_POLL_INTERVAL", DEFAULT_JOB_POLL_INTERVAL_SECONDS
            ),
            job_timeout_seconds=get_float("JOB_TIMEOUT", DEFAULT_JOB_TIMEOUT_SECONDS),
            active_poll_interval_seconds=get_float(
                "ACTIVE_POLL_INTERVAL", DEFAULT_ACTIVE_POLL_INTERVAL_SECONDS
            ),
            active_timeout_seconds=get_float("ACTIVE_TIMEOUT", DEFAULT_ACTIVE_TIMEOUT_SECONDS),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )
        values.update(overrides)
        return cls(**values)

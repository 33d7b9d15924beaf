"""Configuration management with validation.

All settings come from environment variables and are validated once at
startup; an invalid value stops the operator before any controller runs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class StoreBackend(str, Enum):
    """Where records live."""

    MEMORY = "memory"
    KUBERNETES = "kubernetes"


class LogFormat(str, Enum):
    JSON = "json"
    TEXT = "text"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_TASK_TTL_SECONDS = 30 * 24 * 60 * 60
DEFAULT_CFTASK_MEMORY_MB = 500
DEFAULT_CFTASK_DISK_QUOTA_MB = 1024

DEFAULT_WORKERS = 4
MAX_WORKERS = 64

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 0.5
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 300.0

DEFAULT_STORE_TIMEOUT_SECONDS = 30.0

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Tasks
    task_ttl_seconds: int = DEFAULT_TASK_TTL_SECONDS
    cftask_default_memory_mb: int = DEFAULT_CFTASK_MEMORY_MB
    cftask_default_disk_quota_mb: int = DEFAULT_CFTASK_DISK_QUOTA_MB

    # Scheduling
    workers: int = DEFAULT_WORKERS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS

    # Store
    store_backend: StoreBackend = StoreBackend.MEMORY
    manifests_dir: Path | None = None
    store_timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS

    # Logging
    log_format: LogFormat = LogFormat.JSON
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.task_ttl_seconds < 0:
            errors.append("TASK_TTL cannot be negative")

        if self.cftask_default_memory_mb < 1:
            errors.append("CFTASK_DEFAULT_MEMORY_MB must be at least 1")

        if self.cftask_default_disk_quota_mb < 1:
            errors.append("CFTASK_DEFAULT_DISK_QUOTA_MB must be at least 1")

        if not (1 <= self.workers <= MAX_WORKERS):
            errors.append(f"WORKERS must be between 1 and {MAX_WORKERS}")

        if self.retry_backoff_base_seconds <= 0:
            errors.append("RETRY_BACKOFF_BASE must be positive")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must not be less than RETRY_BACKOFF_BASE")

        if self.store_timeout_seconds <= 0:
            errors.append("STORE_TIMEOUT must be positive")

        if self.manifests_dir is not None:
            if self.store_backend != StoreBackend.MEMORY:
                errors.append("MANIFESTS_DIR is only supported with the memory store backend")
            elif not self.manifests_dir.is_dir():
                errors.append(f"Manifests directory does not exist: {self.manifests_dir}")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TASK_TTL: Seconds a completed task is kept (default: 2592000, 30 days)
            CFTASK_DEFAULT_MEMORY_MB: Task memory quota default (default: 500)
            CFTASK_DEFAULT_DISK_QUOTA_MB: Task disk quota default (default: 1024)
            WORKERS: Concurrent reconcile workers per controller (default: 4)
            RETRY_BACKOFF_BASE: First retry delay in seconds (default: 0.5)
            RETRY_BACKOFF_MAX: Retry delay cap in seconds (default: 300)
            STORE_BACKEND: "memory" or "kubernetes" (default: memory)
            MANIFESTS_DIR: YAML records seeded into the memory store (optional)
            STORE_TIMEOUT: Seconds per Kubernetes API call (default: 30)
            LOG_FORMAT: "json" or "text" (default: json)
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
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            try:
                return enum_cls(value)
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        manifests_dir = os.environ.get("MANIFESTS_DIR")

        return cls(
            task_ttl_seconds=get_int("TASK_TTL", DEFAULT_TASK_TTL_SECONDS),
            cftask_default_memory_mb=get_int("CFTASK_DEFAULT_MEMORY_MB", DEFAULT_CFTASK_MEMORY_MB),
            cftask_default_disk_quota_mb=get_int(
                "CFTASK_DEFAULT_DISK_QUOTA_MB", DEFAULT_CFTASK_DISK_QUOTA_MB
            ),
            workers=get_int("WORKERS", DEFAULT_WORKERS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            store_backend=get_enum("STORE_BACKEND", StoreBackend, StoreBackend.MEMORY),  # type: ignore[arg-type]
            manifests_dir=Path(manifests_dir) if manifests_dir else None,
            store_timeout_seconds=get_float("STORE_TIMEOUT", DEFAULT_STORE_TIMEOUT_SECONDS),
            log_format=get_enum("LOG_FORMAT", LogFormat, LogFormat.JSON),  # type: ignore[arg-type]
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

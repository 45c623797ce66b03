"""
Configuration management for PosSync SDK.

All configuration can be supplied via environment variables (prefix
POSSYNC_) or by constructing the dataclasses directly. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() and the dataclass defaults in agreement
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from .queue.base import MEMORY_PATH

logger = logging.getLogger(__name__)

ENV_PREFIX = "POSSYNC_"

DEFAULT_QUEUE_PATH = "/var/lib/possync/queue.db"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name, default)


@dataclass(frozen=True)
class ApiConfig:
    """Backend API configuration.

    Attributes:
        base_url: Inventory API base URL
        request_timeout_seconds: Per-request timeout
        location_id: Location this device sells from
        api_token: Bearer token sent with every request (never logged)
    """

    base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 10.0
    location_id: Optional[str] = None
    api_token: Optional[str] = None

    @classmethod
    def from_env(cls) -> ApiConfig:
        """Load configuration from environment variables."""
        return cls(
            base_url=_env("API_BASE_URL", "http://localhost:8000"),
            request_timeout_seconds=float(_env("REQUEST_TIMEOUT_SECONDS", "10")),
            location_id=_env("LOCATION_ID"),
            api_token=_env("API_TOKEN"),
        )


@dataclass(frozen=True)
class BreakerConfig:
    """Circuit breaker configuration.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit
        cooldown_ms: Open duration before a probe is admitted
    """

    failure_threshold: int = 5
    cooldown_ms: int = 30_000

    @classmethod
    def from_env(cls) -> BreakerConfig:
        """Load configuration from environment variables."""
        return cls(
            failure_threshold=int(_env("BREAKER_FAILURE_THRESHOLD", "5")),
            cooldown_ms=int(_env("BREAKER_COOLDOWN_MS", "30000")),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy configuration.

    Attributes:
        max_retries: Retries after the first attempt
        initial_backoff_ms: Delay before the first retry
        max_backoff_ms: Cap of the exponential delay
        jitter_ms: Maximum random jitter per delay
    """

    max_retries: int = 3
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 10_000
    jitter_ms: int = 500

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(_env("RETRY_MAX_RETRIES", "3")),
            initial_backoff_ms=int(_env("RETRY_INITIAL_BACKOFF_MS", "1000")),
            max_backoff_ms=int(_env("RETRY_MAX_BACKOFF_MS", "10000")),
            jitter_ms=int(_env("RETRY_JITTER_MS", "500")),
        )


@dataclass(frozen=True)
class QueueConfig:
    """Offline queue configuration.

    Attributes:
        db_path: SQLite file for the durable queue (":memory:" or None keeps
            it in memory, for tests)
        max_attempts: Transient failures before a mutation fails permanently
        max_pending: Soft limit that triggers the degraded warning
    """

    db_path: Optional[str] = DEFAULT_QUEUE_PATH
    max_attempts: int = 5
    max_pending: int = 5000

    @classmethod
    def from_env(cls) -> QueueConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=_env("QUEUE_DB_PATH", DEFAULT_QUEUE_PATH),
            max_attempts=int(_env("QUEUE_MAX_ATTEMPTS", "5")),
            max_pending=int(_env("QUEUE_MAX_PENDING", "5000")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Reconciler configuration.

    Attributes:
        interval_seconds: Period between scheduled passes
        fanout: Entities drained concurrently
        max_backoff_seconds: Cap of the deferral after transient failures
    """

    interval_seconds: float = 30.0
    fanout: int = 4
    max_backoff_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            interval_seconds=float(_env("SYNC_INTERVAL_SECONDS", "30")),
            fanout=int(_env("SYNC_FANOUT", "4")),
            max_backoff_seconds=float(_env("SYNC_MAX_BACKOFF_SECONDS", "300")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=_env("LOG_LEVEL", "INFO"),
            log_format=_env("LOG_FORMAT", "json"),
        )


@dataclass
class ClientConfig:
    """Complete client configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        api: Backend API configuration
        breaker: Circuit breaker configuration
        retry: Retry policy configuration
        queue: Offline queue configuration
        sync: Reconciler configuration
        observability: Logging configuration
    """

    api: ApiConfig = field(default_factory=ApiConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            api=ApiConfig.from_env(),
            breaker=BreakerConfig.from_env(),
            retry=RetryConfig.from_env(),
            queue=QueueConfig.from_env(),
            sync=SyncConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.api.base_url:
            raise ValueError("POSSYNC_API_BASE_URL is required")
        if self.api.request_timeout_seconds <= 0:
            raise ValueError("POSSYNC_REQUEST_TIMEOUT_SECONDS must be positive")
        if self.breaker.failure_threshold < 1:
            raise ValueError("POSSYNC_BREAKER_FAILURE_THRESHOLD must be >= 1")
        if self.breaker.cooldown_ms < 0:
            raise ValueError("POSSYNC_BREAKER_COOLDOWN_MS must be >= 0")
        if self.retry.max_retries < 0:
            raise ValueError("POSSYNC_RETRY_MAX_RETRIES must be >= 0")
        if self.retry.initial_backoff_ms > self.retry.max_backoff_ms:
            raise ValueError(
                "POSSYNC_RETRY_INITIAL_BACKOFF_MS must not exceed POSSYNC_RETRY_MAX_BACKOFF_MS"
            )
        if self.queue.max_attempts < 1:
            raise ValueError("POSSYNC_QUEUE_MAX_ATTEMPTS must be >= 1")
        if self.sync.fanout < 1:
            raise ValueError("POSSYNC_SYNC_FANOUT must be >= 1")
        if self.sync.interval_seconds <= 0:
            raise ValueError("POSSYNC_SYNC_INTERVAL_SECONDS must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("POSSYNC_LOG_FORMAT must be 'json' or 'text'")

        if self.queue.db_path in (None, "", MEMORY_PATH):
            logger.warning(
                "POSSYNC_QUEUE_DB_PATH selects the memory queue. Offline changes "
                "are lost on restart."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Client configuration loaded",
            extra={
                "api_base_url": self.api.base_url,
                "location_id": self.api.location_id,
                "api_token_set": self.api.api_token is not None,
                "breaker_failure_threshold": self.breaker.failure_threshold,
                "breaker_cooldown_ms": self.breaker.cooldown_ms,
                "retry_max_retries": self.retry.max_retries,
                "queue_db_path": self.queue.db_path,
                "sync_interval_seconds": self.sync.interval_seconds,
                "sync_fanout": self.sync.fanout,
                "log_level": self.observability.log_level,
            },
        )

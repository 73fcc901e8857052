"""
Configuration management for the AuditStream server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set SECRETS_ENCRYPTION_KEY explicitly
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
    - Keep from_env() and the dataclass defaults in sync
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

DEV_ENCRYPTION_KEY = "auditstream-dev-key"


class StorageBackend(Enum):
    """Supported stores for stream destinations and dead letters."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class IngestBackend(Enum):
    """Supported audit event sources besides the HTTP ingest endpoint."""

    NONE = "none"
    KAFKA = "kafka"


class OverflowPolicy(Enum):
    """What EventBuffer does when a project's queue is full."""

    REJECT = "reject"
    DROP_OLDEST = "drop_oldest"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Address to bind the HTTP server
        port: Port for the HTTP server
    """

    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
        )


@dataclass(frozen=True)
class BufferConfig:
    """EventBuffer configuration.

    Attributes:
        capacity: Maximum buffered events per project (pending + in flight)
        overflow_policy: Reject the newest event or evict the oldest one
    """

    capacity: int = 10_000
    overflow_policy: OverflowPolicy = OverflowPolicy.REJECT

    @classmethod
    def from_env(cls) -> BufferConfig:
        """Load configuration from environment variables."""
        policy = os.getenv("BUFFER_OVERFLOW_POLICY", "reject").lower()
        try:
            overflow_policy = OverflowPolicy(policy)
        except ValueError:
            raise ValueError(
                f"Invalid BUFFER_OVERFLOW_POLICY '{policy}'. Must be one of: reject, drop_oldest"
            )
        return cls(
            capacity=int(os.getenv("BUFFER_CAPACITY", "10000")),
            overflow_policy=overflow_policy,
        )


@dataclass(frozen=True)
class DeliveryConfig:
    """DeliveryWorker HTTP and retry configuration.

    Attributes:
        timeout_seconds: Bound on a single HTTP attempt
        max_attempts: Attempts per (event, destination) before dead-lettering
        base_delay_seconds: First retry delay
        max_delay_seconds: Upper bound on any retry delay
        jitter: Randomize retry delays
        max_response_excerpt: Response body characters kept in failure reasons
    """

    timeout_seconds: float = 10.0
    max_attempts: int = 10
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    jitter: bool = True
    max_response_excerpt: int = 200

    @classmethod
    def from_env(cls) -> DeliveryConfig:
        """Load configuration from environment variables."""
        return cls(
            timeout_seconds=float(os.getenv("DELIVERY_TIMEOUT_SECONDS", "10")),
            max_attempts=int(os.getenv("DELIVERY_MAX_ATTEMPTS", "10")),
            base_delay_seconds=float(os.getenv("DELIVERY_BASE_DELAY_SECONDS", "1")),
            max_delay_seconds=float(os.getenv("DELIVERY_MAX_DELAY_SECONDS", "300")),
            jitter=_env_bool("DELIVERY_JITTER", "true"),
            max_response_excerpt=int(os.getenv("DELIVERY_MAX_RESPONSE_EXCERPT", "200")),
        )


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Per-destination circuit breaker configuration.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit
        failure_window_seconds: Failures older than this are forgotten
        cool_down_seconds: Time the circuit stays open before a trial
    """

    failure_threshold: int = 5
    failure_window_seconds: float = 60.0
    cool_down_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> CircuitBreakerConfig:
        """Load configuration from environment variables."""
        return cls(
            failure_threshold=int(os.getenv("BREAKER_FAILURE_THRESHOLD", "5")),
            failure_window_seconds=float(os.getenv("BREAKER_FAILURE_WINDOW_SECONDS", "60")),
            cool_down_seconds=float(os.getenv("BREAKER_COOL_DOWN_SECONDS", "30")),
        )


@dataclass(frozen=True)
class SchedulerConfig:
    """DeliveryScheduler configuration.

    Attributes:
        max_concurrency: Global cap on concurrent delivery attempts
        per_project_concurrency: Cap on concurrent attempts for one project
        batch_size: Maximum events dequeued per project per dispatch cycle
        max_outstanding_events: Leased events per project before dequeue pauses
        idle_interval_seconds: Dispatch loop wake-up interval when idle
    """

    max_concurrency: int = 64
    per_project_concurrency: int = 8
    batch_size: int = 100
    max_outstanding_events: int = 500
    idle_interval_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        """Load configuration from environment variables."""
        return cls(
            max_concurrency=int(os.getenv("SCHEDULER_MAX_CONCURRENCY", "64")),
            per_project_concurrency=int(os.getenv("SCHEDULER_PER_PROJECT_CONCURRENCY", "8")),
            batch_size=int(os.getenv("SCHEDULER_BATCH_SIZE", "100")),
            max_outstanding_events=int(os.getenv("SCHEDULER_MAX_OUTSTANDING_EVENTS", "500")),
            idle_interval_seconds=float(os.getenv("SCHEDULER_IDLE_INTERVAL_SECONDS", "1")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        backend: sqlite (durable) or memory (tests, local development)
        data_dir: Directory for SQLite databases
        registry_db: File name of the stream destination database
        dead_letter_db: File name of the dead-letter database
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StorageBackend = StorageBackend.SQLITE
    data_dir: str = "/var/lib/auditstream"
    registry_db: str = "streams.db"
    dead_letter_db: str = "dead_letters.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORAGE_BACKEND", "sqlite").lower()
        try:
            backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORAGE_BACKEND '{backend_str}'. Must be one of: sqlite, memory"
            )
        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/auditstream"),
            registry_db=os.getenv("REGISTRY_DB", "streams.db"),
            dead_letter_db=os.getenv("DEAD_LETTER_DB", "dead_letters.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class SecretsConfig:
    """Encryption-at-rest configuration for tokens and dead-letter payloads.

    Attributes:
        encryption_key: Passphrase the Fernet key is derived from
    """

    encryption_key: str = DEV_ENCRYPTION_KEY

    @classmethod
    def from_env(cls) -> SecretsConfig:
        """Load configuration from environment variables."""
        return cls(encryption_key=os.getenv("SECRETS_ENCRYPTION_KEY", DEV_ENCRYPTION_KEY))


@dataclass(frozen=True)
class IngestConfig:
    """Kafka ingestion configuration.

    Attributes:
        backend: Event source besides HTTP ingest (none or kafka)
        brokers: Comma-separated list of broker addresses
        topic: Topic carrying produced audit events
        consumer_group: Consumer group ID for the ingest consumer
        security_protocol: Kafka security protocol
        sasl_mechanism: SASL authentication mechanism
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        auto_offset_reset: Where a new consumer group starts
    """

    backend: IngestBackend = IngestBackend.NONE
    brokers: str = "localhost:9092"
    topic: str = "audit-events"
    consumer_group: str = "auditstream-ingest"
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    auto_offset_reset: str = "earliest"

    @classmethod
    def from_env(cls) -> IngestConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("INGEST_BACKEND", "none").lower()
        try:
            backend = IngestBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid INGEST_BACKEND '{backend_str}'. Must be one of: none, kafka")
        return cls(
            backend=backend,
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic=os.getenv("KAFKA_TOPIC", "audit-events"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "auditstream-ingest"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
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
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        http: HTTP API configuration
        buffer: EventBuffer configuration
        delivery: DeliveryWorker configuration
        breaker: Circuit breaker configuration
        scheduler: DeliveryScheduler configuration
        storage: Local storage configuration
        secrets: Encryption-at-rest configuration
        ingest: Kafka ingestion configuration
        observability: Logging configuration
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            http=HttpConfig.from_env(),
            buffer=BufferConfig.from_env(),
            delivery=DeliveryConfig.from_env(),
            breaker=CircuitBreakerConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
            storage=StorageConfig.from_env(),
            secrets=SecretsConfig.from_env(),
            ingest=IngestConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.buffer.capacity < 1:
            raise ValueError("BUFFER_CAPACITY must be at least 1")
        if self.delivery.max_attempts < 1:
            raise ValueError("DELIVERY_MAX_ATTEMPTS must be at least 1")
        if self.delivery.timeout_seconds <= 0:
            raise ValueError("DELIVERY_TIMEOUT_SECONDS must be positive")
        if self.delivery.base_delay_seconds > self.delivery.max_delay_seconds:
            raise ValueError(
                "DELIVERY_BASE_DELAY_SECONDS must not exceed DELIVERY_MAX_DELAY_SECONDS"
            )
        if self.breaker.failure_threshold < 1:
            raise ValueError("BREAKER_FAILURE_THRESHOLD must be at least 1")
        if self.scheduler.max_concurrency < 1 or self.scheduler.per_project_concurrency < 1:
            raise ValueError("Scheduler concurrency limits must be at least 1")
        if self.scheduler.per_project_concurrency > self.scheduler.max_concurrency:
            raise ValueError(
                "SCHEDULER_PER_PROJECT_CONCURRENCY must not exceed SCHEDULER_MAX_CONCURRENCY"
            )

        if self.ingest.backend == IngestBackend.KAFKA:
            if not self.ingest.brokers:
                raise ValueError("KAFKA_BROKERS is required when INGEST_BACKEND=kafka")
            if not self.ingest.topic:
                raise ValueError("KAFKA_TOPIC is required when INGEST_BACKEND=kafka")

        if self.secrets.encryption_key == DEV_ENCRYPTION_KEY:
            logger.warning(
                "SECRETS_ENCRYPTION_KEY is not set; using the development key. "
                "Stream tokens stored with it are not protected."
            )

        if self.storage.backend == StorageBackend.SQLITE and not os.path.exists(
            self.storage.data_dir
        ):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "http_bind": f"{self.http.host}:{self.http.port}",
                "buffer_capacity": self.buffer.capacity,
                "overflow_policy": self.buffer.overflow_policy.value,
                "max_attempts": self.delivery.max_attempts,
                "request_timeout": self.delivery.timeout_seconds,
                "max_concurrency": self.scheduler.max_concurrency,
                "per_project_concurrency": self.scheduler.per_project_concurrency,
                "storage_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir,
                "ingest_backend": self.ingest.backend.value,
                "kafka_topic": self.ingest.topic
                if self.ingest.backend == IngestBackend.KAFKA
                else None,
                "log_level": self.observability.log_level,
            },
        )

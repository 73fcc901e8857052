"""
Base protocol and types for audit event sources.

An EventSource is a durable, ordered feed of produced audit events (a Kafka
topic in production) that the IngestConsumer drains into the EventBuffer.
HTTP ingest does not go through this layer.

Invariants:
    - SourcePosition uniquely identifies a record in the source
    - Records with the same key (project_id) are consumed in order
    - A record is only committed after the consumer has handled it

How to change safely:
    - Protocol changes require updating all implementations
    - Keep commit() idempotent; the consumer may commit the same record twice
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import AuditStreamError

if TYPE_CHECKING:
    from ..config import IngestConfig

logger = logging.getLogger(__name__)


class IngestError(AuditStreamError):
    """Base exception for event source operations."""

    def __init__(self, message: str, code: str = "INGEST_ERROR") -> None:
        super().__init__(message, code=code)


class IngestConnectionError(IngestError):
    """Connection to the event source failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INGEST_CONNECTION_ERROR")


class IngestSerializationError(IngestError):
    """A source record could not be decoded into an audit event."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INGEST_SERIALIZATION_ERROR")


@dataclass(frozen=True)
class SourcePosition:
    """Position of a record in the source.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within the partition
        timestamp_ms: When the record was produced (milliseconds)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class SourceRecord:
    """A record read from an event source.

    Attributes:
        key: Partition key (the project_id)
        value: JSON-encoded audit event
        position: Where the record was read from
        headers: Optional record headers
    """

    key: str
    value: bytes
    position: SourcePosition
    headers: dict[str, bytes] = field(default_factory=dict)

    def value_json(self) -> Any:
        """Parse value as JSON.

        Raises:
            IngestSerializationError: If value is not valid UTF-8 JSON
        """
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise IngestSerializationError(f"Failed to parse record value as JSON: {e}") from e

    def __str__(self) -> str:
        return f"SourceRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class EventSource(Protocol):
    """Protocol for audit event sources.

    Example:
        >>> source = KafkaEventSource(config.ingest)
        >>> await source.connect()
        >>> async for record in source.subscribe("audit-events", "auditstream-ingest"):
        ...     handle(record)
        ...     await source.commit(record)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the source.

        Raises:
            IngestConnectionError: If the connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...

    @abstractmethod
    def subscribe(self, topic: str, group_id: str) -> AsyncIterator[SourceRecord]:
        """Yield records in order within partitions, resuming after the
        last committed position of group_id.

        Raises:
            IngestConnectionError: If the subscription fails
        """
        ...

    @abstractmethod
    async def commit(self, record: SourceRecord) -> None:
        """Acknowledge a handled record.

        Raises:
            IngestError: If the commit fails
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...


def create_event_source(config: IngestConfig) -> EventSource:
    """Factory function to create an EventSource from configuration.

    Raises:
        ValueError: If the backend has no event source
    """
    from ..config import IngestBackend

    if config.backend == IngestBackend.KAFKA:
        from .kafka import KafkaEventSource

        return KafkaEventSource(config)
    raise ValueError(f"No event source for ingest backend: {config.backend.value}")

"""
Audit event ingestion for AuditStream.

This module handles:
- The EventSource protocol for durable upstream feeds
- In-memory (tests) and Kafka implementations
- The IngestConsumer loop that feeds the EventBuffer

Invariants:
    - Source records are committed only after the buffer has them
"""

from .base import (
    EventSource,
    IngestConnectionError,
    IngestError,
    IngestSerializationError,
    SourcePosition,
    SourceRecord,
    create_event_source,
)
from .consumer import IngestConsumer, IngestResult
from .memory import InMemoryEventSource

__all__ = [
    "EventSource",
    "SourceRecord",
    "SourcePosition",
    "IngestError",
    "IngestConnectionError",
    "IngestSerializationError",
    "IngestConsumer",
    "IngestResult",
    "InMemoryEventSource",
    "create_event_source",
]

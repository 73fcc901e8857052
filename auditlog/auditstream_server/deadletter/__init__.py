"""
Dead-letter handling for AuditStream.

This module handles:
- Durable records of (event, destination) pairs that failed permanently
- Operator listing, replay and purge
- Pluggable persistence (in-memory, SQLite with encrypted payloads)

Invariants:
    - Entries are only removed by a successful replay or an explicit purge
    - Replay targets the original destination only
"""

from .base import DeadLetterEntry, DeadLetterStatus, DeadLetterStore
from .memory import InMemoryDeadLetterStore
from .sink import DeadLetterSink
from .sqlite import SqliteDeadLetterStore

__all__ = [
    "DeadLetterEntry",
    "DeadLetterStatus",
    "DeadLetterStore",
    "DeadLetterSink",
    "InMemoryDeadLetterStore",
    "SqliteDeadLetterStore",
]

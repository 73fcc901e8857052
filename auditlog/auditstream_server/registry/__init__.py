"""
Stream destination registry for AuditStream.

This module handles:
- The StreamDestination record {id, project_id, url, token?, enabled}
- Validation of url and token at the registry boundary
- Pluggable persistence (in-memory, SQLite with encrypted tokens)
- Change notification for delivery cancellation

Invariants:
    - Invalid configuration is rejected before any write
    - Tokens never appear in repr(), to_dict() or logs
"""

from .base import DestinationStore
from .memory import InMemoryDestinationStore
from .models import StreamDestination
from .registry import DestinationChange, DestinationListener, StreamRegistry
from .sqlite import SqliteDestinationStore
from .validation import validate_token, validate_url

__all__ = [
    "StreamDestination",
    "DestinationStore",
    "InMemoryDestinationStore",
    "SqliteDestinationStore",
    "StreamRegistry",
    "DestinationChange",
    "DestinationListener",
    "validate_url",
    "validate_token",
]

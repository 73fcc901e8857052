"""
Dead-letter entries and the storage protocol behind DeadLetterSink.

A DeadLetterEntry is created when an (event, destination) pair exhausted its
retries or failed fatally. It persists until an operator replays it
successfully or purges it.

Invariants:
    - One entry per failed (event, destination) pair
    - failure_history holds attempt records only; no tokens, no headers
    - list() is ordered by created_at_ms, then entry_id
"""

from __future__ import annotations

import time
import uuid
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ..buffer.event_buffer import AuditEvent
from ..delivery.outcome import DeliveryAttempt


class DeadLetterStatus(Enum):
    PENDING = "pending"
    REPLAYING = "replaying"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class DeadLetterEntry:
    """An event that permanently failed against one destination.

    Attributes:
        project_id: Owning project
        destination_id: Destination the event failed against
        event: The original audit event (needed for replay)
        failure_history: Attempts made before giving up
        final_failure_reason: Last error
        entry_id: Unique entry identifier (UUID)
        status: PENDING or REPLAYING
        replay_count: Replays attempted so far
        created_at_ms: When the entry was recorded (Unix ms)
        updated_at_ms: Last status change (Unix ms)
    """

    project_id: str
    destination_id: str
    event: AuditEvent
    failure_history: list[DeliveryAttempt]
    final_failure_reason: str
    entry_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    replay_count: int = 0
    created_at_ms: int = field(default_factory=_now_ms)
    updated_at_ms: int = field(default_factory=_now_ms)

    def touch(self) -> None:
        self.updated_at_ms = _now_ms()

    def to_dict(self, include_payload: bool = False) -> dict[str, Any]:
        """Convert for the operator API; the payload is redacted by default."""
        event = self.event.to_dict()
        if not include_payload:
            event["payload"] = "[redacted]"
        return {
            "entry_id": self.entry_id,
            "project_id": self.project_id,
            "destination_id": self.destination_id,
            "event": event,
            "failure_history": [a.to_dict() for a in self.failure_history],
            "final_failure_reason": self.final_failure_reason,
            "status": self.status.value,
            "replay_count": self.replay_count,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
        }


@runtime_checkable
class DeadLetterStore(Protocol):
    """Protocol for durable dead-letter persistence."""

    @abstractmethod
    async def add(self, entry: DeadLetterEntry) -> None:
        ...

    @abstractmethod
    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        ...

    @abstractmethod
    async def update(self, entry: DeadLetterEntry) -> None:
        """Persist status, history and replay counters of an existing entry."""
        ...

    @abstractmethod
    async def delete(self, entry_id: str) -> bool:
        ...

    @abstractmethod
    async def list(
        self, project_id: str, destination_id: str | None = None
    ) -> list[DeadLetterEntry]:
        ...

    @abstractmethod
    async def purge(self, project_id: str, destination_id: str | None = None) -> int:
        """Delete matching entries; returns how many were removed."""
        ...

    @abstractmethod
    async def list_by_status(self, status: DeadLetterStatus) -> list[DeadLetterEntry]:
        ...

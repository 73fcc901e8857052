"""
EventBuffer - bounded, ordered, per-project queue of audit events.

The buffer decouples the rate at which producers emit audit events from the
rate at which destinations absorb them. Events stay in the buffer until the
DeliveryScheduler acknowledges that every (event, destination) pair reached a
terminal state, so a slow destination holds buffer capacity and backpressure
surfaces at enqueue time.

Lease model (at-least-once toward the scheduler):
    enqueue -> pending -> dequeue_batch -> leased -> ack     -> removed
                                                   -> release -> pending

Overflow policy (explicit, from BufferConfig):
    REJECT       the new event is rejected with DropReason.QUEUE_FULL
    DROP_OLDEST  the oldest pending (not leased) event is evicted to make room;
                 if every buffered event is leased the new event is rejected

Every rejection or eviction is logged and reported to backpressure listeners.
Nothing leaves the buffer silently.

Invariants:
    - Per project, events are accepted in strictly increasing sequence_number
    - An event_id is buffered at most once per project; a second event with
      the same id is rejected with DropReason.DUPLICATE_EVENT
    - dequeue_batch returns pending events in FIFO order and leases them
    - depth(project) never exceeds capacity
    - Each project has its own lock; no lock spans projects

How to change safely:
    - Keep ack/release idempotent; the scheduler may call them on shutdown
    - Any new drop path must produce an EnqueueResult and a BackpressureSignal
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from ..config import OverflowPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """An already-produced audit event awaiting delivery.

    Attributes:
        project_id: Project the event belongs to
        payload: Opaque structured record, sent as the JSON request body
        sequence_number: Monotonic per project (assigned by the buffer if None)
        timestamp_ms: Production timestamp (Unix ms)
        event_id: Unique identifier (UUID)

    Example:
        {
            "project_id": "proj_42",
            "sequence_number": 17,
            "timestamp_ms": 1730000000000,
            "payload": {"actor": "user:7", "action": "secret.read"}
        }
    """

    project_id: str
    payload: dict[str, Any]
    sequence_number: int | None = None
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "project_id": self.project_id,
            "sequence_number": self.sequence_number,
            "timestamp_ms": self.timestamp_ms,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        """Create from dictionary representation.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        missing = [f for f in ("project_id", "payload") if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")
        if not isinstance(data["payload"], dict):
            raise ValueError("payload must be a JSON object")

        sequence_number = data.get("sequence_number")
        if sequence_number is not None and (
            not isinstance(sequence_number, int) or isinstance(sequence_number, bool)
        ):
            raise ValueError("sequence_number must be an integer")

        kwargs: dict[str, Any] = {
            "project_id": str(data["project_id"]),
            "payload": data["payload"],
            "sequence_number": sequence_number,
        }
        if data.get("timestamp_ms") is not None:
            kwargs["timestamp_ms"] = int(data["timestamp_ms"])
        if data.get("event_id"):
            kwargs["event_id"] = str(data["event_id"])
        return cls(**kwargs)


@dataclass(frozen=True)
class BufferedEvent:
    """An event held by the buffer plus its routing.

    Attributes:
        event: The audit event
        destination_ids: Restrict delivery to these destinations (None = all active)
        replay_of: Dead-letter entry this copy replays, if any
    """

    event: AuditEvent
    destination_ids: frozenset[str] | None = None
    replay_of: str | None = None

    @property
    def key(self) -> str:
        """Buffer key; a replay copy never collides with the original."""
        if self.replay_of:
            return f"{self.event.event_id}:replay:{self.replay_of}"
        return self.event.event_id


class EnqueueStatus(Enum):
    ACCEPTED = "accepted"
    DROPPED = "dropped"


class DropReason(Enum):
    """Why an event was not (or is no longer) buffered."""

    QUEUE_FULL = "queue_full"
    EVICTED = "evicted"
    STALE_SEQUENCE = "stale_sequence"
    DUPLICATE_EVENT = "duplicate_event"


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of EventBuffer.enqueue().

    Attributes:
        status: ACCEPTED or DROPPED
        event: The event as buffered (sequence number assigned) or as rejected
        reason: Why the event was dropped
        evicted: Event evicted to make room (DROP_OLDEST policy only)
    """

    status: EnqueueStatus
    event: AuditEvent
    reason: DropReason | None = None
    evicted: AuditEvent | None = None

    @property
    def accepted(self) -> bool:
        return self.status == EnqueueStatus.ACCEPTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "event_id": self.event.event_id,
            "sequence_number": self.event.sequence_number,
            "reason": self.reason.value if self.reason else None,
            "evicted_event_id": self.evicted.event_id if self.evicted else None,
        }


@dataclass(frozen=True)
class BackpressureSignal:
    """Emitted whenever an event is rejected or evicted.

    Attributes:
        project_id: Project whose queue overflowed
        reason: Why the event was lost (a DropReason)
        event: The event that was lost
        depth: Queue depth when the signal was raised
        capacity: Configured per-project capacity
    """

    project_id: str
    reason: DropReason
    event: AuditEvent
    depth: int
    capacity: int


BackpressureListener = Callable[[BackpressureSignal], None]


@dataclass
class _ProjectQueue:
    entries: OrderedDict[str, BufferedEvent] = field(default_factory=OrderedDict)
    leased: set[str] = field(default_factory=set)
    last_sequence: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def pending(self) -> int:
        return len(self.entries) - len(self.leased)


class EventBuffer:
    """Bounded per-project event queues with lease/ack semantics.

    Thread safety:
        Designed for a single asyncio event loop. Producers (HTTP ingest,
        Kafka consumer) and the scheduler may interleave freely; each project
        queue is guarded by its own asyncio.Lock.

    Example:
        >>> buffer = EventBuffer(capacity=10_000)
        >>> result = await buffer.enqueue(AuditEvent("proj_1", {"action": "login"}))
        >>> batch = await buffer.dequeue_batch("proj_1", 100)
        >>> await buffer.ack("proj_1", [b.key for b in batch])
    """

    def __init__(
        self,
        capacity: int = 10_000,
        overflow_policy: OverflowPolicy = OverflowPolicy.REJECT,
    ) -> None:
        """Initialize the buffer.

        Args:
            capacity: Maximum buffered events per project (pending + leased)
            overflow_policy: REJECT or DROP_OLDEST
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.overflow_policy = overflow_policy
        self._queues: dict[str, _ProjectQueue] = {}
        self._listeners: list[BackpressureListener] = []
        self._wakeup = asyncio.Event()
        self._accepted_count = 0
        self._dropped_count = 0
        self._evicted_count = 0

    def add_listener(self, listener: BackpressureListener) -> None:
        """Register a callback for backpressure signals."""
        self._listeners.append(listener)

    def _queue(self, project_id: str) -> _ProjectQueue:
        queue = self._queues.get(project_id)
        if queue is None:
            queue = self._queues[project_id] = _ProjectQueue()
        return queue

    def _signal(self, signal: BackpressureSignal) -> None:
        logger.warning(
            "Audit event dropped by buffer",
            extra={
                "project_id": signal.project_id,
                "event_id": signal.event.event_id,
                "sequence_number": signal.event.sequence_number,
                "reason": signal.reason.value,
                "depth": signal.depth,
                "capacity": signal.capacity,
            },
        )
        for listener in self._listeners:
            try:
                listener(signal)
            except Exception as e:
                logger.error(f"Backpressure listener failed: {e}", exc_info=True)

    async def enqueue(self, event: AuditEvent) -> EnqueueResult:
        """Buffer an event for delivery.

        Args:
            event: Event to buffer

        Returns:
            EnqueueResult; DROPPED results are also reported as backpressure
        """
        queue = self._queue(event.project_id)
        signals: list[BackpressureSignal] = []

        async with queue.lock:
            if event.sequence_number is None:
                event = replace(event, sequence_number=queue.last_sequence + 1)
            elif event.sequence_number <= queue.last_sequence:
                self._dropped_count += 1
                result = EnqueueResult(EnqueueStatus.DROPPED, event, DropReason.STALE_SEQUENCE)
                signals.append(
                    BackpressureSignal(
                        event.project_id,
                        DropReason.STALE_SEQUENCE,
                        event,
                        len(queue.entries),
                        self.capacity,
                    )
                )
                self._emit(signals)
                return result

            if event.event_id in queue.entries:
                self._dropped_count += 1
                signals.append(
                    BackpressureSignal(
                        event.project_id,
                        DropReason.DUPLICATE_EVENT,
                        event,
                        len(queue.entries),
                        self.capacity,
                    )
                )
                self._emit(signals)
                return EnqueueResult(EnqueueStatus.DROPPED, event, DropReason.DUPLICATE_EVENT)

            evicted: BufferedEvent | None = None
            if len(queue.entries) >= self.capacity:
                if self.overflow_policy == OverflowPolicy.DROP_OLDEST:
                    evicted = self._evict_oldest_pending(queue)
                if evicted is None:
                    self._dropped_count += 1
                    signals.append(
                        BackpressureSignal(
                            event.project_id,
                            DropReason.QUEUE_FULL,
                            event,
                            len(queue.entries),
                            self.capacity,
                        )
                    )
                    self._emit(signals)
                    return EnqueueResult(EnqueueStatus.DROPPED, event, DropReason.QUEUE_FULL)

                self._evicted_count += 1
                signals.append(
                    BackpressureSignal(
                        event.project_id,
                        DropReason.EVICTED,
                        evicted.event,
                        len(queue.entries),
                        self.capacity,
                    )
                )

            buffered = BufferedEvent(event)
            queue.entries[buffered.key] = buffered
            queue.last_sequence = event.sequence_number
            self._accepted_count += 1

        self._wakeup.set()
        self._emit(signals)
        return EnqueueResult(
            EnqueueStatus.ACCEPTED,
            event,
            DropReason.EVICTED if evicted else None,
            evicted.event if evicted else None,
        )

    def _emit(self, signals: list[BackpressureSignal]) -> None:
        for signal in signals:
            self._signal(signal)

    @staticmethod
    def _evict_oldest_pending(queue: _ProjectQueue) -> BufferedEvent | None:
        for key in queue.entries:
            if key not in queue.leased:
                return queue.entries.pop(key)
        return None

    async def requeue(
        self,
        event: AuditEvent,
        destination_id: str,
        replay_of: str,
    ) -> BufferedEvent:
        """Buffer a replay copy of an event for a single destination.

        Replays bypass the sequence check and the capacity limit; they are
        operator-triggered and bounded by the dead-letter backlog.
        """
        queue = self._queue(event.project_id)
        buffered = BufferedEvent(event, frozenset({destination_id}), replay_of)
        async with queue.lock:
            queue.entries[buffered.key] = buffered
        self._wakeup.set()
        logger.info(
            "Replay queued",
            extra={
                "project_id": event.project_id,
                "event_id": event.event_id,
                "destination_id": destination_id,
                "entry_id": replay_of,
            },
        )
        return buffered

    async def dequeue_batch(self, project_id: str, max_n: int) -> list[BufferedEvent]:
        """Lease up to max_n pending events, oldest first.

        Leased events stay buffered until ack() or release().
        """
        queue = self._queues.get(project_id)
        if queue is None or max_n <= 0:
            return []

        batch: list[BufferedEvent] = []
        async with queue.lock:
            for key, buffered in queue.entries.items():
                if len(batch) >= max_n:
                    break
                if key in queue.leased:
                    continue
                queue.leased.add(key)
                batch.append(buffered)
        return batch

    async def ack(self, project_id: str, keys: Iterable[str]) -> None:
        """Remove leased events after successful handoff."""
        queue = self._queues.get(project_id)
        if queue is None:
            return
        async with queue.lock:
            for key in keys:
                queue.entries.pop(key, None)
                queue.leased.discard(key)

    async def release(self, project_id: str, keys: Iterable[str]) -> None:
        """Return leased events to pending so they are dequeued again."""
        queue = self._queues.get(project_id)
        if queue is None:
            return
        async with queue.lock:
            for key in keys:
                queue.leased.discard(key)
        self._wakeup.set()

    def projects_with_pending(self) -> list[str]:
        """Projects that have at least one pending (not leased) event."""
        return [pid for pid, q in self._queues.items() if q.pending > 0]

    def depth(self, project_id: str) -> int:
        """Buffered events for a project, pending and leased."""
        queue = self._queues.get(project_id)
        return len(queue.entries) if queue else 0

    def pending(self, project_id: str) -> int:
        queue = self._queues.get(project_id)
        return queue.pending if queue else 0

    def leased(self, project_id: str) -> int:
        queue = self._queues.get(project_id)
        return len(queue.leased) if queue else 0

    def total_depth(self) -> int:
        return sum(len(q.entries) for q in self._queues.values())

    async def wait_for_pending(self, timeout: float) -> None:
        """Block until something is enqueued/released or timeout elapses."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    def notify(self) -> None:
        """Wake a waiting consumer without enqueueing."""
        self._wakeup.set()

    @property
    def stats(self) -> dict[str, Any]:
        """Get buffer statistics."""
        return {
            "capacity": self.capacity,
            "overflow_policy": self.overflow_policy.value,
            "accepted_count": self._accepted_count,
            "dropped_count": self._dropped_count,
            "evicted_count": self._evicted_count,
            "projects": {
                pid: {"depth": len(q.entries), "leased": len(q.leased)}
                for pid, q in self._queues.items()
            },
        }

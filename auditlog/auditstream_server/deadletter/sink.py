"""
DeadLetterSink - durable record and operator replay of failed deliveries.

Lifecycle of an entry:

    record() ──▶ PENDING ──replay()──▶ REPLAYING ──resolve()──▶ (deleted)
                    ▲                      │
                    └──reject_replay()─────┤  replay failed again
                    └──cancel_replay()─────┘  destination gone / shutdown

Replay is operator-triggered only. It re-enqueues the original event into
the EventBuffer routed to the original destination alone.

Invariants:
    - An entry is never deleted by a failed replay
    - At most one replay per entry is in flight
    - Listings redact the payload unless include_payload is requested

How to change safely:
    - Anything that ends a replay must call resolve, reject_replay or cancel_replay
"""

from __future__ import annotations

import logging
from typing import Any

from ..buffer.event_buffer import EventBuffer
from ..delivery.outcome import DeliveryAttempt
from ..delivery.task import DeliveryTask
from ..errors import NotFoundError, ReplayInProgressError
from .base import DeadLetterEntry, DeadLetterStatus, DeadLetterStore

logger = logging.getLogger(__name__)


class DeadLetterSink:
    """Operator-facing dead-letter API over a DeadLetterStore.

    Example:
        >>> sink = DeadLetterSink(InMemoryDeadLetterStore(), buffer)
        >>> entries = await sink.list("proj_1")
        >>> await sink.replay(entries[0].entry_id)
    """

    def __init__(self, store: DeadLetterStore, buffer: EventBuffer) -> None:
        self.store = store
        self.buffer = buffer
        self._recorded_count = 0
        self._resolved_count = 0

    async def record(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        """Durably append an entry."""
        await self.store.add(entry)
        self._recorded_count += 1
        logger.warning(
            "Event dead-lettered",
            extra={
                "entry_id": entry.entry_id,
                "project_id": entry.project_id,
                "destination_id": entry.destination_id,
                "event_id": entry.event.event_id,
                "attempts": len(entry.failure_history),
                "reason": entry.final_failure_reason,
            },
        )
        return entry

    async def record_task(self, task: DeliveryTask, reason: str) -> DeadLetterEntry:
        """Create and record the entry for a task that failed permanently."""
        entry = DeadLetterEntry(
            project_id=task.project_id,
            destination_id=task.destination_id,
            event=task.event,
            failure_history=list(task.attempts),
            final_failure_reason=reason,
        )
        return await self.record(entry)

    async def get(self, entry_id: str) -> DeadLetterEntry:
        """Fetch an entry.

        Raises:
            NotFoundError: If the entry does not exist
        """
        entry = await self.store.get(entry_id)
        if entry is None:
            raise NotFoundError("dead_letter", entry_id)
        return entry

    async def list(
        self, project_id: str, destination_id: str | None = None
    ) -> list[DeadLetterEntry]:
        """Entries of a project (optionally one destination), oldest first."""
        return await self.store.list(project_id, destination_id)

    async def replay(self, entry_id: str) -> DeadLetterEntry:
        """Re-enqueue the entry's event for its original destination only.

        The entry stays until the replayed delivery succeeds.

        Raises:
            NotFoundError: If the entry does not exist
            ReplayInProgressError: If a replay of this entry is still running
        """
        entry = await self.get(entry_id)
        if entry.status == DeadLetterStatus.REPLAYING:
            raise ReplayInProgressError(entry_id)

        entry.status = DeadLetterStatus.REPLAYING
        entry.replay_count += 1
        entry.touch()
        await self.store.update(entry)
        await self.buffer.requeue(entry.event, entry.destination_id, entry.entry_id)

        logger.info(
            "Dead-letter replay requested",
            extra={
                "entry_id": entry_id,
                "project_id": entry.project_id,
                "destination_id": entry.destination_id,
                "replay_count": entry.replay_count,
            },
        )
        return entry

    async def resolve(self, entry_id: str) -> bool:
        """Remove an entry after its replay was delivered."""
        removed = await self.store.delete(entry_id)
        if removed:
            self._resolved_count += 1
            logger.info("Dead-letter entry resolved by replay", extra={"entry_id": entry_id})
        return removed

    async def reject_replay(
        self,
        entry_id: str,
        attempts: list[DeliveryAttempt],
        reason: str,
    ) -> DeadLetterEntry | None:
        """Return an entry to PENDING after its replay failed again."""
        entry = await self.store.get(entry_id)
        if entry is None:
            # Purged while the replay was running
            return None
        entry.failure_history.extend(attempts)
        entry.final_failure_reason = reason
        entry.status = DeadLetterStatus.PENDING
        entry.touch()
        await self.store.update(entry)
        logger.warning(
            "Dead-letter replay failed",
            extra={"entry_id": entry_id, "attempts": len(attempts), "reason": reason},
        )
        return entry

    async def cancel_replay(self, entry_id: str) -> DeadLetterEntry | None:
        """Return an entry to PENDING without recording a failure."""
        entry = await self.store.get(entry_id)
        if entry is None or entry.status != DeadLetterStatus.REPLAYING:
            return entry
        entry.status = DeadLetterStatus.PENDING
        entry.touch()
        await self.store.update(entry)
        logger.info("Dead-letter replay cancelled", extra={"entry_id": entry_id})
        return entry

    async def recover(self) -> int:
        """Reset entries left REPLAYING by a previous process.

        Replays live in the in-memory buffer, so after a restart nothing
        will finish them.
        """
        stuck = await self.store.list_by_status(DeadLetterStatus.REPLAYING)
        for entry in stuck:
            entry.status = DeadLetterStatus.PENDING
            entry.touch()
            await self.store.update(entry)
        if stuck:
            logger.info("Reset interrupted dead-letter replays", extra={"count": len(stuck)})
        return len(stuck)

    async def purge(self, project_id: str, destination_id: str | None = None) -> int:
        """Delete all entries of a project (optionally one destination)."""
        count = await self.store.purge(project_id, destination_id)
        logger.info(
            "Dead-letter entries purged",
            extra={"project_id": project_id, "destination_id": destination_id, "count": count},
        )
        return count

    async def purge_entry(self, entry_id: str) -> None:
        """Delete one entry.

        Raises:
            NotFoundError: If the entry does not exist
        """
        if not await self.store.delete(entry_id):
            raise NotFoundError("dead_letter", entry_id)
        logger.info("Dead-letter entry purged", extra={"entry_id": entry_id})

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "recorded_count": self._recorded_count,
            "resolved_count": self._resolved_count,
        }

"""
In-memory dead-letter store for testing.

All data is lost on process exit.
"""

from __future__ import annotations

import asyncio
import copy

from .base import DeadLetterEntry, DeadLetterStatus


class InMemoryDeadLetterStore:
    """Dictionary-backed implementation of DeadLetterStore.

    Entries are copied on the way in and out so callers cannot mutate the
    stored state without update().
    """

    def __init__(self) -> None:
        self._entries: dict[str, DeadLetterEntry] = {}
        self._lock = asyncio.Lock()

    async def add(self, entry: DeadLetterEntry) -> None:
        async with self._lock:
            self._entries[entry.entry_id] = copy.deepcopy(entry)

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        entry = self._entries.get(entry_id)
        return copy.deepcopy(entry) if entry else None

    async def update(self, entry: DeadLetterEntry) -> None:
        async with self._lock:
            if entry.entry_id in self._entries:
                self._entries[entry.entry_id] = copy.deepcopy(entry)

    async def delete(self, entry_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(entry_id, None) is not None

    async def list(
        self, project_id: str, destination_id: str | None = None
    ) -> list[DeadLetterEntry]:
        matches = [
            e
            for e in self._entries.values()
            if e.project_id == project_id
            and (destination_id is None or e.destination_id == destination_id)
        ]
        matches.sort(key=lambda e: (e.created_at_ms, e.entry_id))
        return [copy.deepcopy(e) for e in matches]

    async def purge(self, project_id: str, destination_id: str | None = None) -> int:
        async with self._lock:
            doomed = [
                entry_id
                for entry_id, e in self._entries.items()
                if e.project_id == project_id
                and (destination_id is None or e.destination_id == destination_id)
            ]
            for entry_id in doomed:
                del self._entries[entry_id]
            return len(doomed)

    async def list_by_status(self, status: DeadLetterStatus) -> list[DeadLetterEntry]:
        return [copy.deepcopy(e) for e in self._entries.values() if e.status == status]

    def __len__(self) -> int:
        return len(self._entries)

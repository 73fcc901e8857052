"""
In-memory stream destination store for testing.

All data is lost on process exit.
"""

from __future__ import annotations

import asyncio

from .base import sort_destinations
from .models import StreamDestination


class InMemoryDestinationStore:
    """Dictionary-backed implementation of DestinationStore."""

    def __init__(self) -> None:
        self._destinations: dict[str, StreamDestination] = {}
        self._lock = asyncio.Lock()

    async def get(self, destination_id: str) -> StreamDestination | None:
        return self._destinations.get(destination_id)

    async def put(self, destination: StreamDestination) -> None:
        async with self._lock:
            self._destinations[destination.id] = destination

    async def delete(self, destination_id: str) -> bool:
        async with self._lock:
            return self._destinations.pop(destination_id, None) is not None

    async def list_for_project(self, project_id: str) -> list[StreamDestination]:
        return sort_destinations(
            [d for d in self._destinations.values() if d.project_id == project_id]
        )

    def __len__(self) -> int:
        return len(self._destinations)

"""
Storage protocol for stream destinations.

The registry is a thin layer over a DestinationStore. Backends:
- InMemoryDestinationStore (tests, local development)
- SqliteDestinationStore (durable, tokens encrypted at rest)

Invariants:
    - put() replaces the whole record for an id
    - list_for_project() is ordered by created_at, then id
    - Stores never validate; StreamRegistry does before calling put()
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Protocol, runtime_checkable

from .models import StreamDestination


@runtime_checkable
class DestinationStore(Protocol):
    """Protocol for stream destination persistence."""

    @abstractmethod
    async def get(self, destination_id: str) -> StreamDestination | None:
        """Fetch one destination, or None if it does not exist."""
        ...

    @abstractmethod
    async def put(self, destination: StreamDestination) -> None:
        """Insert or replace a destination."""
        ...

    @abstractmethod
    async def delete(self, destination_id: str) -> bool:
        """Remove a destination. Returns False if it did not exist."""
        ...

    @abstractmethod
    async def list_for_project(self, project_id: str) -> list[StreamDestination]:
        """All destinations of a project, enabled or not."""
        ...


def sort_destinations(destinations: list[StreamDestination]) -> list[StreamDestination]:
    return sorted(destinations, key=lambda d: (d.created_at, d.id))

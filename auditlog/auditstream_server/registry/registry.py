"""
StreamRegistry - configured stream destinations per project.

The registry is the data access layer the configuration API and the
DeliveryScheduler share. It validates every write before it reaches the
store and notifies listeners of changes so in-flight deliveries to a
disabled or deleted destination can be abandoned.

Invariants:
    - A failed validation never mutates the store
    - A destination never moves to another project
    - list_active() returns only enabled destinations, oldest first
    - Listeners are called after the store write succeeded
    - Delivery code only reads; it never mutates destinations

How to change safely:
    - New change kinds must be handled by DeliveryScheduler._on_destination_change
    - Keep token semantics of update() stable; the UI relies on them
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from enum import Enum

from ..errors import NotFoundError, ValidationError
from .base import DestinationStore
from .models import StreamDestination
from .validation import validate_project_id, validate_token, validate_url

logger = logging.getLogger(__name__)


class DestinationChange(Enum):
    """Kinds of registry change reported to listeners."""

    CREATED = "created"
    UPDATED = "updated"
    DISABLED = "disabled"
    DELETED = "deleted"


DestinationListener = Callable[[StreamDestination, DestinationChange], None]


class StreamRegistry:
    """Validating registry over a DestinationStore.

    Example:
        >>> registry = StreamRegistry(InMemoryDestinationStore())
        >>> dest = await registry.create("proj_1", "https://siem.example.com/ingest", "tok")
        >>> [d.id for d in await registry.list_active("proj_1")] == [dest.id]
        True
    """

    def __init__(self, store: DestinationStore) -> None:
        self.store = store
        self._listeners: list[DestinationListener] = []

    def add_listener(self, listener: DestinationListener) -> None:
        """Register a callback for destination changes."""
        self._listeners.append(listener)

    def _notify(self, destination: StreamDestination, change: DestinationChange) -> None:
        for listener in self._listeners:
            try:
                listener(destination, change)
            except Exception as e:
                logger.error(
                    f"Destination listener failed: {e}",
                    exc_info=True,
                    extra={"destination_id": destination.id, "change": change.value},
                )

    async def get(self, destination_id: str) -> StreamDestination:
        """Fetch a destination by id.

        Raises:
            NotFoundError: If no destination has this id
        """
        destination = await self.store.get(destination_id)
        if destination is None:
            raise NotFoundError("stream", destination_id)
        return destination

    async def list(self, project_id: str) -> list[StreamDestination]:
        """All destinations of a project."""
        return await self.store.list_for_project(project_id)

    async def list_active(self, project_id: str) -> list[StreamDestination]:
        """Enabled destinations of a project, oldest first."""
        return [d for d in await self.store.list_for_project(project_id) if d.enabled]

    async def upsert(self, destination: StreamDestination) -> StreamDestination:
        """Validate and persist a complete destination record.

        Args:
            destination: Record to insert or replace

        Returns:
            The stored destination (url normalized)

        Raises:
            ValidationError: If project_id, url or token is malformed, or
                project_id differs from the stored record
        """
        validate_project_id(destination.project_id)
        url = validate_url(destination.url)
        validate_token(destination.token)
        if not destination.id:
            raise ValidationError("id", "is required")

        previous = await self.store.get(destination.id)
        if previous is not None and previous.project_id != destination.project_id:
            raise ValidationError("project_id", "cannot change for an existing destination")
        if url != destination.url:
            destination = destination.with_changes(url=url, updated_at=destination.updated_at)
        await self.store.put(destination)

        if previous is None:
            change = DestinationChange.CREATED
        elif previous.enabled and not destination.enabled:
            change = DestinationChange.DISABLED
        else:
            change = DestinationChange.UPDATED

        logger.info(
            "Stream destination saved",
            extra={
                "destination_id": destination.id,
                "project_id": destination.project_id,
                "change": change.value,
                "enabled": destination.enabled,
            },
        )
        self._notify(destination, change)
        return destination

    async def create(
        self,
        project_id: str,
        url: str,
        token: str | None = None,
    ) -> StreamDestination:
        """Create a new enabled destination for a project.

        Raises:
            ValidationError: If project_id, url or token is malformed
        """
        destination = StreamDestination(
            id=str(uuid.uuid4()),
            project_id=project_id,
            url=url,
            token=token,
            enabled=True,
        )
        return await self.upsert(destination)

    async def update(
        self,
        destination_id: str,
        project_id: str,
        url: str,
        token: str | None = None,
        enabled: bool | None = None,
    ) -> StreamDestination:
        """Edit an existing destination.

        A token of None keeps the stored token; an enabled of None keeps the
        current flag.

        Raises:
            NotFoundError: If the id is unknown or belongs to another project
            ValidationError: If url or token is malformed
        """
        existing = await self.store.get(destination_id)
        if existing is None or existing.project_id != project_id:
            raise NotFoundError("stream", destination_id)

        updated = existing.with_changes(
            url=url,
            token=existing.token if token is None else token,
            enabled=existing.enabled if enabled is None else enabled,
        )
        return await self.upsert(updated)

    async def set_enabled(self, destination_id: str, enabled: bool) -> StreamDestination:
        """Enable or disable a destination."""
        existing = await self.get(destination_id)
        if existing.enabled == enabled:
            return existing
        return await self.upsert(existing.with_changes(enabled=enabled))

    async def delete(self, destination_id: str) -> StreamDestination:
        """Delete a destination.

        Raises:
            NotFoundError: If no destination has this id
        """
        existing = await self.get(destination_id)
        await self.store.delete(destination_id)
        logger.info(
            "Stream destination deleted",
            extra={"destination_id": destination_id, "project_id": existing.project_id},
        )
        self._notify(existing, DestinationChange.DELETED)
        return existing

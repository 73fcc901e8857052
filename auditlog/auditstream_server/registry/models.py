"""
Data model for stream destinations.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StreamDestination:
    """An external HTTP endpoint receiving a project's audit events.

    Attributes:
        id: Unique destination identifier (UUID)
        project_id: Owning project
        url: Absolute http(s) URL events are POSTed to
        token: Optional bearer token sent in the Authorization header
        enabled: Whether new events are delivered to this destination
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)

    The token is excluded from repr() and to_dict() so a destination can be
    logged or returned by the API without leaking it.
    """

    id: str
    project_id: str
    url: str
    token: str | None = field(default=None, repr=False)
    enabled: bool = True
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    @property
    def has_token(self) -> bool:
        return self.token is not None

    def with_changes(self, **changes: Any) -> StreamDestination:
        """Return a copy with the given fields replaced and updated_at bumped."""
        changes.setdefault("updated_at", _now_ms())
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for the API (token redacted)."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "url": self.url,
            "has_token": self.has_token,
            "enabled": self.enabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def equivalent_to(self, other: StreamDestination) -> bool:
        """Compare the configured fields, ignoring timestamps."""
        return (
            self.id == other.id
            and self.project_id == other.project_id
            and self.url == other.url
            and self.token == other.token
            and self.enabled == other.enabled
        )

"""
Error types for the AuditStream server.

This module defines the exceptions raised across component boundaries:
- AuditStreamError: Base exception
- ValidationError: Malformed stream configuration (bad url/token)
- NotFoundError: Unknown stream destination or dead-letter entry
- ReplayInProgressError: Dead-letter entry is already being replayed
- InvalidTransitionError: Illegal delivery state machine transition

Delivery failures are not exceptions. They are returned as outcome values
(see delivery/outcome.py) and end up in the DeadLetterSink.

Invariants:
    - All errors inherit from AuditStreamError
    - Error details never contain bearer tokens or event payloads
    - Every error carries a stable code for the HTTP layer
"""

from __future__ import annotations

from typing import Any


class AuditStreamError(Exception):
    """Base exception for all AuditStream errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "AUDITSTREAM_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON error body used by the HTTP API."""
        return {"error": self.message, "error_code": self.code, **self.details}


class ValidationError(AuditStreamError):
    """Stream destination configuration is invalid.

    Raised when:
    - url is missing, relative, or not http(s)
    - token is present but empty or contains whitespace
    - project_id is missing
    """

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(
            f"Invalid {field}: {reason}",
            code="VALIDATION_ERROR",
            details={"field": field, "reason": reason},
        )
        self.field = field
        self.reason = reason


class NotFoundError(AuditStreamError):
    """Resource not found.

    Raised when:
    - Stream destination doesn't exist (or belongs to another project)
    - Dead-letter entry doesn't exist
    """

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            code="NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ReplayInProgressError(AuditStreamError):
    """A replay for this dead-letter entry has not finished yet."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(
            f"Dead-letter entry is already being replayed: {entry_id}",
            code="REPLAY_IN_PROGRESS",
            details={"entry_id": entry_id},
        )
        self.entry_id = entry_id


class InvalidTransitionError(AuditStreamError):
    """A delivery task attempted an illegal state transition."""

    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(
            f"Illegal delivery state transition: {from_state} -> {to_state}",
            code="INVALID_TRANSITION",
            details={"from_state": from_state, "to_state": to_state},
        )
        self.from_state = from_state
        self.to_state = to_state

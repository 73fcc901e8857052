"""
Delivery outcomes and attempt records.

A single HTTP attempt produces exactly one outcome value:
    Delivered   HTTP 2xx
    Retryable   HTTP 5xx, HTTP 429, timeout, transport error
    Fatal       any other HTTP 4xx, unexpected status, unusable request

Outcomes are values, never exceptions, so one failing destination can never
unwind the scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class OutcomeKind(Enum):
    DELIVERED = "delivered"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class Delivered:
    status_code: int

    kind = OutcomeKind.DELIVERED

    @property
    def reason(self) -> str:
        return f"HTTP {self.status_code}"


@dataclass(frozen=True)
class Retryable:
    """Transient failure; retried after backoff.

    Attributes:
        reason: Human-readable failure description (never contains the token)
        status_code: HTTP status, None for timeouts and transport errors
        retry_after: Seconds requested by a Retry-After header
    """

    reason: str
    status_code: int | None = None
    retry_after: float | None = None

    kind = OutcomeKind.RETRYABLE


@dataclass(frozen=True)
class Fatal:
    """Permanent failure; the destination is likely misconfigured."""

    reason: str
    status_code: int | None = None

    kind = OutcomeKind.FATAL


DeliveryOutcome = Union[Delivered, Retryable, Fatal]


@dataclass(frozen=True)
class DeliveryAttempt:
    """Record of one delivery attempt for an (event, destination) pair.

    Lives in scheduler memory; persisted only inside a DeadLetterEntry's
    failure history.

    Attributes:
        event_id: Event that was attempted
        destination_id: Destination it was attempted against
        attempt_number: 1-based attempt counter
        outcome: What happened
        reason: Failure description or HTTP status
        status_code: HTTP status, if a response was received
        attempted_at_ms: When the attempt finished (Unix ms)
        next_retry_at_ms: When the next attempt is due, if one is scheduled
    """

    event_id: str
    destination_id: str
    attempt_number: int
    outcome: OutcomeKind
    reason: str
    status_code: int | None = None
    attempted_at_ms: int = 0
    next_retry_at_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "destination_id": self.destination_id,
            "attempt_number": self.attempt_number,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "status_code": self.status_code,
            "attempted_at_ms": self.attempted_at_ms,
            "next_retry_at_ms": self.next_retry_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeliveryAttempt:
        return cls(
            event_id=data["event_id"],
            destination_id=data["destination_id"],
            attempt_number=data["attempt_number"],
            outcome=OutcomeKind(data["outcome"]),
            reason=data["reason"],
            status_code=data.get("status_code"),
            attempted_at_ms=data.get("attempted_at_ms", 0),
            next_retry_at_ms=data.get("next_retry_at_ms"),
        )

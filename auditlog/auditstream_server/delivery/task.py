"""
Delivery tasks and the per-(event, destination) state machine.

    IDLE ──▶ DISPATCHING ──▶ DELIVERED
                  │  ▲   ──▶ DEAD_LETTERED
                  ▼  │
           RETRY_SCHEDULED

    any non-terminal state ──▶ ABANDONED  (destination disabled or deleted)

Invariants:
    - Terminal states (DELIVERED, DEAD_LETTERED, ABANDONED) are final
    - Only the attempts in DeliveryTask.attempts count toward max_attempts;
      short-circuited dispatches are tracked separately
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..buffer.event_buffer import AuditEvent, BufferedEvent
from ..errors import InvalidTransitionError
from .outcome import DeliveryAttempt


class PairState(Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    RETRY_SCHEDULED = "retry_scheduled"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({PairState.DELIVERED, PairState.DEAD_LETTERED, PairState.ABANDONED})

ALLOWED_TRANSITIONS: dict[PairState, frozenset[PairState]] = {
    PairState.IDLE: frozenset({PairState.DISPATCHING, PairState.ABANDONED}),
    PairState.DISPATCHING: frozenset(
        {
            PairState.DELIVERED,
            PairState.RETRY_SCHEDULED,
            PairState.DEAD_LETTERED,
            PairState.ABANDONED,
        }
    ),
    PairState.RETRY_SCHEDULED: frozenset({PairState.DISPATCHING, PairState.ABANDONED}),
    PairState.DELIVERED: frozenset(),
    PairState.DEAD_LETTERED: frozenset(),
    PairState.ABANDONED: frozenset(),
}


@dataclass(eq=False)
class DeliveryTask:
    """Delivery of one buffered event to one destination.

    Attributes:
        buffered: The buffered event (carries replay routing)
        destination_id: Target destination
        state: Current state machine position
        attempts: HTTP attempts made so far
        short_circuits: Dispatches skipped by an open circuit
        next_retry_at: Loop time of the scheduled retry, if any
        final_reason: Why the task ended, for dead-lettered or abandoned tasks
        abandon_requested: The destination was disabled or deleted
        finished: The terminal state has been reported
    """

    buffered: BufferedEvent
    destination_id: str
    state: PairState = PairState.IDLE
    attempts: list[DeliveryAttempt] = field(default_factory=list)
    short_circuits: int = 0
    next_retry_at: float | None = None
    final_reason: str | None = None
    abandon_requested: bool = False
    finished: bool = False

    @property
    def event(self) -> AuditEvent:
        return self.buffered.event

    @property
    def project_id(self) -> str:
        return self.buffered.event.project_id

    @property
    def replay_of(self) -> str | None:
        return self.buffered.replay_of

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def retry_count(self) -> int:
        """Attempts beyond the first."""
        return max(len(self.attempts) - 1, 0)

    def transition(self, new_state: PairState) -> None:
        """Move to new_state.

        Raises:
            InvalidTransitionError: If the move is not allowed
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state.value, new_state.value)
        self.state = new_state

    def record(self, attempt: DeliveryAttempt) -> None:
        self.attempts.append(attempt)


@dataclass(frozen=True)
class DeliveryResult:
    """Terminal report for one (event, destination) pair.

    Attributes:
        task: The finished task
        state: DELIVERED, DEAD_LETTERED or ABANDONED
        finished_at_ms: Completion timestamp (Unix ms)
    """

    task: DeliveryTask
    state: PairState
    finished_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def event_id(self) -> str:
        return self.task.event.event_id

    @property
    def destination_id(self) -> str:
        return self.task.destination_id

    @property
    def retry_count(self) -> int:
        return self.task.retry_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "project_id": self.task.project_id,
            "destination_id": self.destination_id,
            "state": self.state.value,
            "attempts": len(self.task.attempts),
            "retries": self.retry_count,
            "reason": self.task.final_reason,
        }

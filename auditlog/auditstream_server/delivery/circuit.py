"""
Per-destination circuit breaker.

State machine:

    CLOSED ──(failure_threshold consecutive failures within window)──▶ OPEN
    OPEN ──(cool_down elapsed, next acquire)──▶ HALF_OPEN (one trial admitted)
    HALF_OPEN ──trial succeeds──▶ CLOSED
    HALF_OPEN ──trial fails──▶ OPEN

While OPEN (and while a HALF_OPEN trial is in flight) acquire() returns False
and the caller reschedules the delivery for retry_after() seconds later
without issuing an HTTP request.

Invariants:
    - At most one trial is in flight in HALF_OPEN
    - Every transition happens under the breaker's asyncio.Lock
    - A success from any state closes the circuit and clears failures

How to change safely:
    - Callers that acquire() must call exactly one of record_success(),
      record_failure() or release()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..config import CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure isolation for one destination.

    Attributes:
        destination_id: Destination this breaker guards
        failure_threshold: Consecutive failures that open the circuit
        failure_window: Seconds a failure counts toward the threshold
        cool_down: Seconds the circuit stays open before a trial
    """

    def __init__(
        self,
        destination_id: str,
        failure_threshold: int = 5,
        failure_window: float = 60.0,
        cool_down: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.destination_id = destination_id
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.cool_down = cool_down
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()
        self._short_circuit_count = 0
        self._open_count = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    async def acquire(self) -> bool:
        """Ask permission to issue a delivery attempt."""
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                assert self._opened_at is not None
                if self._clock() - self._opened_at >= self.cool_down:
                    self._transition(CircuitState.HALF_OPEN)
                    self._trial_in_flight = True
                    return True
                self._short_circuit_count += 1
                return False

            # HALF_OPEN
            if self._trial_in_flight:
                self._short_circuit_count += 1
                return False
            self._trial_in_flight = True
            return True

    async def record_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            self._trial_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._opened_at = None
                self._transition(CircuitState.CLOSED)

    async def record_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._open(now)
                return
            if self._state == CircuitState.OPEN:
                # Attempt admitted before the circuit opened
                return

            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.failure_window:
                self._failures.popleft()
            if len(self._failures) >= self.failure_threshold:
                self._open(now)

    async def release(self) -> None:
        """Give back an admitted attempt that never completed."""
        async with self._lock:
            self._trial_in_flight = False

    def retry_after(self) -> float:
        """Seconds until this breaker may admit another attempt."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            return max(self._opened_at + self.cool_down - self._clock(), 0.0)
        if self._state == CircuitState.HALF_OPEN:
            return self.cool_down
        return 0.0

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._failures.clear()
        self._open_count += 1
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit breaker transition",
            extra={
                "destination_id": self.destination_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "consecutive_failures": len(self._failures),
            "short_circuit_count": self._short_circuit_count,
            "open_count": self._open_count,
        }


class CircuitBreakerRegistry:
    """One CircuitBreaker per destination, created on first use."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, destination_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(destination_id)
        if breaker is None:
            breaker = self._breakers[destination_id] = CircuitBreaker(
                destination_id,
                failure_threshold=self.config.failure_threshold,
                failure_window=self.config.failure_window_seconds,
                cool_down=self.config.cool_down_seconds,
                clock=self._clock,
            )
        return breaker

    def remove(self, destination_id: str) -> None:
        self._breakers.pop(destination_id, None)

    def __contains__(self, destination_id: object) -> bool:
        return destination_id in self._breakers

    @property
    def stats(self) -> dict[str, Any]:
        return {dest_id: b.stats for dest_id, b in self._breakers.items()}

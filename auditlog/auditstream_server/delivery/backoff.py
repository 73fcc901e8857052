"""
Retry policy: exponential backoff with jitter.

    delay(n) = min(max_delay, base_delay * 2 ** (n - 1))

With jitter enabled the delay is drawn uniformly from [delay / 2, delay],
which keeps retries spread out while preserving the growth rate. A
Retry-After value sent by the destination replaces the computed delay but is
still capped at max_delay.

Invariants:
    - delay_for() is never negative and never exceeds max_delay
    - exhausted(n) is True once n attempts were made and n >= max_attempts
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from ..config import DeliveryConfig


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one (event, destination) pair.

    Attributes:
        base_delay: Delay before the first retry (seconds)
        max_delay: Cap on any single delay (seconds)
        max_attempts: Total attempts before the pair is dead-lettered
        jitter: Randomize delays in [d/2, d]
    """

    base_delay: float = 1.0
    max_delay: float = 300.0
    max_attempts: int = 10
    jitter: bool = True

    @classmethod
    def from_config(cls, config: DeliveryConfig) -> RetryPolicy:
        return cls(
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            max_attempts=config.max_attempts,
            jitter=config.jitter,
        )

    def delay_for(
        self,
        attempt_number: int,
        retry_after: float | None = None,
        rng: random.Random | None = None,
    ) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_delay)

        exponent = max(attempt_number - 1, 0)
        # Cap the exponent so huge attempt counts cannot overflow
        delay = min(self.max_delay, self.base_delay * (2 ** min(exponent, 32)))
        if self.jitter:
            delay = (rng or random).uniform(delay / 2, delay)
        return delay

    def exhausted(self, attempts_made: int) -> bool:
        return attempts_made >= self.max_attempts


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date).

    Returns:
        Seconds to wait, or None if the header is absent or unparseable
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)

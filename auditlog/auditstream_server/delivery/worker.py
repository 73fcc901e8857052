"""
DeliveryWorker - HTTP delivery of audit events to stream destinations.

The worker owns the three per-attempt concerns:
1. The HTTP POST itself (deliver), with a bounded request timeout
2. Outcome classification (2xx / 429 / 4xx / 5xx / timeout / transport)
3. Retry and circuit-breaker decisions (attempt)

Wire protocol:
    POST <destination.url>
    Content-Type: application/json
    Authorization: Bearer <token>        (only when the destination has one)
    X-Audit-Event-Id / X-Audit-Project-Id / X-Audit-Sequence
    body: the event payload as JSON

Invariants:
    - Bearer tokens never appear in logs, reasons or attempt records
    - deliver() never raises for HTTP or network failures; it returns an outcome
    - attempt() turns any other error from deliver() into a retryable failure
    - A short-circuited attempt issues no HTTP request and consumes no attempt
    - Every admitted breaker permit is settled (success, failure or release)

How to change safely:
    - New status classifications need tests in tests/unit/test_delivery_worker.py
    - Keep the request timeout distinct from the retry backoff
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from .._version import __version__
from ..buffer.event_buffer import AuditEvent
from ..config import CircuitBreakerConfig, DeliveryConfig
from ..registry.models import StreamDestination
from .backoff import RetryPolicy, parse_retry_after
from .circuit import CircuitBreakerRegistry
from .outcome import Delivered, DeliveryAttempt, DeliveryOutcome, Fatal, OutcomeKind, Retryable
from .task import DeliveryTask

logger = logging.getLogger(__name__)


class DecisionKind(Enum):
    DELIVERED = "delivered"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class AttemptDecision:
    """What the scheduler should do after one dispatch of a task.

    Attributes:
        kind: DELIVERED, RETRY or DEAD_LETTER
        delay: Seconds until the retry (RETRY only)
        reason: Failure reason (RETRY and DEAD_LETTER)
        short_circuited: The circuit was open and no request was made
    """

    kind: DecisionKind
    delay: float | None = None
    reason: str | None = None
    short_circuited: bool = False


def classify_response(response: httpx.Response, excerpt_limit: int = 200) -> DeliveryOutcome:
    """Map an HTTP response to a delivery outcome."""
    status = response.status_code
    if 200 <= status < 300:
        return Delivered(status)

    excerpt = _excerpt(response, excerpt_limit)
    reason = f"HTTP {status}" + (f": {excerpt}" if excerpt else "")

    if status == 429:
        return Retryable(
            reason,
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        return Retryable(reason, status_code=status)
    # 4xx other than 429, and anything unexpected (1xx, 3xx)
    return Fatal(reason, status_code=status)


def _excerpt(response: httpx.Response, limit: int) -> str:
    try:
        text = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
    text = " ".join(text.split())
    return text[:limit]


class DeliveryWorker:
    """Performs delivery attempts for (event, destination) pairs.

    Attributes:
        config: HTTP and retry configuration
        retry_policy: Backoff parameters derived from config
        breakers: Per-destination circuit breakers

    Example:
        >>> worker = DeliveryWorker(DeliveryConfig())
        >>> outcome = await worker.deliver(event, destination)
        >>> await worker.close()
    """

    def __init__(
        self,
        config: DeliveryConfig | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            config: HTTP timeout and retry configuration
            breaker_config: Circuit breaker thresholds
            client: Shared httpx client (created if not provided)
            retry_policy: Override the policy derived from config
            breakers: Override the breaker registry
            rng: Random source for jitter
        """
        self.config = config or DeliveryConfig()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.breakers = breakers or CircuitBreakerRegistry(breaker_config)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self.config.timeout_seconds,
            follow_redirects=False,
        )
        self._rng = rng or random.Random()
        self._delivered_count = 0
        self._retryable_count = 0
        self._fatal_count = 0
        self._short_circuit_count = 0

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, event: AuditEvent, destination: StreamDestination) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"auditstream/{__version__}",
            "X-Audit-Event-Id": event.event_id,
            "X-Audit-Project-Id": event.project_id,
            "X-Audit-Sequence": str(event.sequence_number),
        }
        if destination.token:
            headers["Authorization"] = f"Bearer {destination.token}"
        return headers

    def _redact(self, text: str, destination: StreamDestination) -> str:
        if destination.token and destination.token in text:
            return text.replace(destination.token, "***")
        return text

    async def deliver(self, event: AuditEvent, destination: StreamDestination) -> DeliveryOutcome:
        """Make one HTTP POST attempt.

        Args:
            event: Event whose payload is sent
            destination: Where to send it

        Returns:
            Delivered, Retryable or Fatal
        """
        try:
            body = json.dumps(event.payload, separators=(",", ":"), allow_nan=False)
        except (TypeError, ValueError) as e:
            return Fatal(f"payload is not JSON serializable: {e}")

        try:
            response = await self._client.post(
                destination.url,
                content=body.encode("utf-8"),
                headers=self._headers(event, destination),
                timeout=self.config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            outcome: DeliveryOutcome = Retryable(f"timeout ({type(e).__name__})")
        except httpx.UnsupportedProtocol as e:
            outcome = Fatal(f"unsupported protocol ({type(e).__name__})")
        except httpx.TransportError as e:
            outcome = Retryable(f"transport error ({type(e).__name__})")
        except httpx.InvalidURL as e:
            outcome = Fatal(f"invalid url ({e})")
        except httpx.HTTPError as e:
            outcome = Retryable(f"http error ({type(e).__name__})")
        else:
            outcome = classify_response(response, self.config.max_response_excerpt)

        if not isinstance(outcome, Delivered):
            outcome = _with_reason(outcome, self._redact(outcome.reason, destination))
        return outcome

    async def attempt(self, task: DeliveryTask, destination: StreamDestination) -> AttemptDecision:
        """Dispatch one attempt for a task, honoring breaker and retry policy.

        Appends a DeliveryAttempt to task.attempts for every HTTP request made.

        Returns:
            AttemptDecision for the scheduler
        """
        breaker = self.breakers.get(destination.id)
        if not await breaker.acquire():
            self._short_circuit_count += 1
            task.short_circuits += 1
            delay = breaker.retry_after() + self._rng.uniform(0, 0.1 * breaker.cool_down)
            logger.debug(
                "Delivery short-circuited by open circuit",
                extra={
                    "event_id": task.event.event_id,
                    "destination_id": destination.id,
                    "retry_in": round(delay, 3),
                },
            )
            return AttemptDecision(
                DecisionKind.RETRY, delay=delay, reason="circuit open", short_circuited=True
            )

        try:
            outcome = await self.deliver(task.event, destination)
        except asyncio.CancelledError:
            await breaker.release()
            raise
        except Exception as e:
            # Exception text may embed request headers; log the type only
            logger.error(
                f"Unexpected delivery error: {type(e).__name__}",
                extra={"event_id": task.event.event_id, "destination_id": destination.id},
            )
            outcome = Retryable(f"unexpected error ({type(e).__name__})")

        if isinstance(outcome, Delivered):
            await breaker.record_success()
        else:
            await breaker.record_failure()

        attempt_number = task.attempt_count + 1
        now_ms = int(time.time() * 1000)

        if isinstance(outcome, Delivered):
            self._delivered_count += 1
            task.record(
                DeliveryAttempt(
                    event_id=task.event.event_id,
                    destination_id=destination.id,
                    attempt_number=attempt_number,
                    outcome=OutcomeKind.DELIVERED,
                    reason=outcome.reason,
                    status_code=outcome.status_code,
                    attempted_at_ms=now_ms,
                )
            )
            return AttemptDecision(DecisionKind.DELIVERED)

        if isinstance(outcome, Fatal):
            self._fatal_count += 1
            task.record(
                DeliveryAttempt(
                    event_id=task.event.event_id,
                    destination_id=destination.id,
                    attempt_number=attempt_number,
                    outcome=OutcomeKind.FATAL,
                    reason=outcome.reason,
                    status_code=outcome.status_code,
                    attempted_at_ms=now_ms,
                )
            )
            logger.warning(
                "Fatal delivery failure, destination likely misconfigured",
                extra={
                    "event_id": task.event.event_id,
                    "project_id": task.project_id,
                    "destination_id": destination.id,
                    "status_code": outcome.status_code,
                    "reason": outcome.reason,
                },
            )
            return AttemptDecision(DecisionKind.DEAD_LETTER, reason=outcome.reason)

        self._retryable_count += 1
        if self.retry_policy.exhausted(attempt_number):
            task.record(
                DeliveryAttempt(
                    event_id=task.event.event_id,
                    destination_id=destination.id,
                    attempt_number=attempt_number,
                    outcome=OutcomeKind.RETRYABLE,
                    reason=outcome.reason,
                    status_code=outcome.status_code,
                    attempted_at_ms=now_ms,
                )
            )
            logger.warning(
                "Delivery retries exhausted",
                extra={
                    "event_id": task.event.event_id,
                    "project_id": task.project_id,
                    "destination_id": destination.id,
                    "attempts": attempt_number,
                    "reason": outcome.reason,
                },
            )
            return AttemptDecision(DecisionKind.DEAD_LETTER, reason=outcome.reason)

        delay = self.retry_policy.delay_for(attempt_number, outcome.retry_after, self._rng)
        task.record(
            DeliveryAttempt(
                event_id=task.event.event_id,
                destination_id=destination.id,
                attempt_number=attempt_number,
                outcome=OutcomeKind.RETRYABLE,
                reason=outcome.reason,
                status_code=outcome.status_code,
                attempted_at_ms=now_ms,
                next_retry_at_ms=now_ms + int(delay * 1000),
            )
        )
        logger.info(
            "Delivery failed, retry scheduled",
            extra={
                "event_id": task.event.event_id,
                "destination_id": destination.id,
                "attempt": attempt_number,
                "retry_in": round(delay, 3),
                "reason": outcome.reason,
            },
        )
        return AttemptDecision(DecisionKind.RETRY, delay=delay, reason=outcome.reason)

    @property
    def stats(self) -> dict[str, Any]:
        """Get worker statistics."""
        return {
            "delivered_count": self._delivered_count,
            "retryable_count": self._retryable_count,
            "fatal_count": self._fatal_count,
            "short_circuit_count": self._short_circuit_count,
            "breakers": self.breakers.stats,
        }


def _with_reason(outcome: DeliveryOutcome, reason: str) -> DeliveryOutcome:
    if isinstance(outcome, Retryable):
        return Retryable(reason, outcome.status_code, outcome.retry_after)
    if isinstance(outcome, Fatal):
        return Fatal(reason, outcome.status_code)
    return outcome

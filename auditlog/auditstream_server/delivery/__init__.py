"""
Delivery of audit events to stream destinations.

This module handles:
- HTTP POST attempts and outcome classification
- Exponential backoff with jitter, honoring Retry-After
- Per-destination circuit breaking
- The per-(event, destination) delivery state machine

Invariants:
    - 2xx delivered; 5xx/429/timeout/transport retried; other 4xx fatal
    - Fatal outcomes are dead-lettered without retry
    - Retryable outcomes are dead-lettered after max_attempts
"""

from .backoff import RetryPolicy, parse_retry_after
from .circuit import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .outcome import Delivered, DeliveryAttempt, DeliveryOutcome, Fatal, OutcomeKind, Retryable
from .task import DeliveryResult, DeliveryTask, PairState
from .worker import AttemptDecision, DecisionKind, DeliveryWorker, classify_response

__all__ = [
    "DeliveryWorker",
    "AttemptDecision",
    "DecisionKind",
    "classify_response",
    "Delivered",
    "Retryable",
    "Fatal",
    "DeliveryOutcome",
    "OutcomeKind",
    "DeliveryAttempt",
    "RetryPolicy",
    "parse_retry_after",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "DeliveryTask",
    "DeliveryResult",
    "PairState",
]

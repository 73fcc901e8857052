"""
Event buffering for AuditStream.

Bounded per-project queues between event producers and the delivery
scheduler, with lease/ack semantics and explicit backpressure.
"""

from .event_buffer import (
    AuditEvent,
    BackpressureListener,
    BackpressureSignal,
    BufferedEvent,
    DropReason,
    EnqueueResult,
    EnqueueStatus,
    EventBuffer,
)

__all__ = [
    "AuditEvent",
    "BufferedEvent",
    "EventBuffer",
    "EnqueueResult",
    "EnqueueStatus",
    "DropReason",
    "BackpressureSignal",
    "BackpressureListener",
]

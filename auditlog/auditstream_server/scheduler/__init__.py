"""
Delivery scheduling for AuditStream.

Pulls batches from the EventBuffer, fans events out to active destinations
and runs DeliveryWorker attempts under global and per-project concurrency
limits.
"""

from .scheduler import DeliveryScheduler, ResultListener

__all__ = ["DeliveryScheduler", "ResultListener"]

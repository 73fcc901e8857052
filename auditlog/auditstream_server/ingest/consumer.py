"""
IngestConsumer - drains an EventSource into the EventBuffer.

Each record is decoded as an AuditEvent, enqueued, and only then committed.
A full project queue pauses consumption: the consumer keeps retrying the
same record, so the backlog stays in the durable source instead of being
dropped.

Invariants:
    - A record is committed only after it was accepted, or rejected for good
      (malformed, a stale sequence number, or an event_id already buffered)
    - Records are handled one at a time, in source order

How to change safely:
    - Keep QUEUE_FULL non-terminal; committing it would lose events
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from ..buffer.event_buffer import AuditEvent, DropReason, EnqueueResult, EventBuffer
from .base import EventSource, IngestSerializationError, SourcePosition, SourceRecord

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of handling one source record.

    Attributes:
        record: The source record
        enqueue: Buffer result, None if the record was malformed
        error: Decode error message, if any
    """

    record: SourceRecord
    enqueue: EnqueueResult | None = None
    error: str | None = None

    @property
    def accepted(self) -> bool:
        return self.enqueue is not None and self.enqueue.accepted


class IngestConsumer:
    """Consumes audit events from an EventSource into an EventBuffer.

    Attributes:
        source: Event source to consume
        buffer: Destination buffer
        topic: Topic to subscribe to
        group_id: Consumer group ID
        retry_interval: Seconds between enqueue retries while a queue is full
    """

    def __init__(
        self,
        source: EventSource,
        buffer: EventBuffer,
        topic: str,
        group_id: str,
        retry_interval: float = 0.5,
    ) -> None:
        self.source = source
        self.buffer = buffer
        self.topic = topic
        self.group_id = group_id
        self.retry_interval = retry_interval

        self._running = False
        self._accepted_count = 0
        self._malformed_count = 0
        self._stale_count = 0
        self._duplicate_count = 0
        self._last_position: SourcePosition | None = None

    async def start(self) -> None:
        """Run the consume loop until stop() is called."""
        if self._running:
            logger.warning("Ingest consumer already running")
            return

        self._running = True
        logger.info(
            "Starting ingest consumer", extra={"topic": self.topic, "group_id": self.group_id}
        )

        try:
            async for record in self.source.subscribe(self.topic, self.group_id):
                if not self._running:
                    break

                result = await self.handle_record(record)
                if result is None:
                    # Stopped while waiting for buffer space; leave uncommitted
                    break

                await self.source.commit(record)
                self._last_position = record.position

        except asyncio.CancelledError:
            logger.info("Ingest consumer cancelled")
        except Exception as e:
            logger.error(f"Ingest consumer error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the consume loop."""
        self._running = False
        logger.info("Stopping ingest consumer")

    def decode(self, record: SourceRecord) -> AuditEvent:
        """Decode a record into an AuditEvent.

        Raises:
            IngestSerializationError: If the record is not a valid audit event
        """
        data: Any = record.value_json()
        if not isinstance(data, dict):
            raise IngestSerializationError("Record value must be a JSON object")
        if "project_id" not in data and record.key:
            data["project_id"] = record.key
        try:
            return AuditEvent.from_dict(data)
        except (ValueError, TypeError) as e:
            raise IngestSerializationError(f"Invalid audit event: {e}") from e

    async def handle_record(self, record: SourceRecord) -> IngestResult | None:
        """Decode and enqueue one record.

        Returns:
            IngestResult, or None if the consumer stopped while the project
            queue was full
        """
        try:
            event = self.decode(record)
        except IngestSerializationError as e:
            self._malformed_count += 1
            logger.error(
                "Skipping malformed audit event record",
                extra={"position": str(record.position), "error": e.message},
            )
            return IngestResult(record, error=e.message)

        while True:
            result = await self.buffer.enqueue(event)
            if result.accepted:
                self._accepted_count += 1
                return IngestResult(record, enqueue=result)
            if result.reason == DropReason.STALE_SEQUENCE:
                self._stale_count += 1
                return IngestResult(record, enqueue=result)
            if result.reason == DropReason.DUPLICATE_EVENT:
                self._duplicate_count += 1
                return IngestResult(record, enqueue=result)

            if not self._running:
                return None
            await asyncio.sleep(self.retry_interval)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "accepted_count": self._accepted_count,
            "malformed_count": self._malformed_count,
            "stale_count": self._stale_count,
            "duplicate_count": self._duplicate_count,
            "last_position": str(self._last_position) if self._last_position else None,
        }

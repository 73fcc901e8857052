"""
In-memory event source for tests and local development.

Invariants:
    - All data is lost on process exit
    - Records with the same key land in the same partition, in append order
    - Committed offsets are tracked per consumer group
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .base import IngestConnectionError, SourcePosition, SourceRecord

logger = logging.getLogger(__name__)


@dataclass
class _Partition:
    records: list[SourceRecord] = field(default_factory=list)


class InMemoryEventSource:
    """In-memory implementation of EventSource.

    Example:
        >>> source = InMemoryEventSource()
        >>> await source.connect()
        >>> await source.append("audit-events", "proj_1", b'{"project_id": "proj_1", ...}')
    """

    def __init__(self, num_partitions: int = 4) -> None:
        self.num_partitions = num_partitions
        self._topics: dict[str, dict[int, _Partition]] = defaultdict(
            lambda: {i: _Partition() for i in range(self.num_partitions)}
        )
        self._committed: dict[str, dict[int, int]] = defaultdict(lambda: defaultdict(int))
        self._record_groups: dict[int, str] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_records: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._subscribers: set[str] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryEventSource connected")

    async def close(self) -> None:
        self._connected = False
        self._subscribers.clear()
        logger.debug("InMemoryEventSource closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> SourcePosition:
        """Produce a record (testing helper)."""
        if not self._connected:
            raise IngestConnectionError("Not connected")

        partition = self._partition_for_key(key)
        async with self._lock:
            part = self._topics[topic][partition]
            position = SourcePosition(
                topic=topic,
                partition=partition,
                offset=len(part.records),
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(
                SourceRecord(key=key, value=value, position=position, headers=headers or {})
            )
            self._new_records[topic].set()
        return position

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[SourceRecord]:
        if not self._connected:
            raise IngestConnectionError("Not connected")

        consumer_key = f"{topic}:{group_id}"
        self._subscribers.add(consumer_key)
        positions = {
            p: self._committed[f"{topic}:{group_id}"][p] for p in range(self.num_partitions)
        }

        try:
            while consumer_key in self._subscribers:
                batch: list[SourceRecord] = []
                async with self._lock:
                    self._new_records[topic].clear()
                    for partition, part in self._topics[topic].items():
                        while positions[partition] < len(part.records):
                            batch.append(part.records[positions[partition]])
                            positions[partition] += 1

                if not batch:
                    try:
                        await asyncio.wait_for(self._new_records[topic].wait(), timeout=1.0)
                    except asyncio.TimeoutError:
                        pass
                    continue

                for record in batch:
                    self._record_groups[id(record)] = consumer_key
                    yield record
        finally:
            self._subscribers.discard(consumer_key)

    async def commit(self, record: SourceRecord) -> None:
        consumer_key = self._record_groups.pop(id(record), None)
        if consumer_key is None:
            return
        committed = self._committed[consumer_key]
        partition = record.position.partition
        committed[partition] = max(committed[partition], record.position.offset + 1)

    def committed_offset(self, topic: str, group_id: str, partition: int) -> int:
        """Next offset group_id will read from partition (testing helper)."""
        return self._committed[f"{topic}:{group_id}"][partition]

    def _partition_for_key(self, key: str) -> int:
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(hash_bytes[:4], "big") % self.num_partitions

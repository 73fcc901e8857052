"""
Kafka/Redpanda event source.

Consumes audit events that other services produce onto a Kafka topic,
keyed by project_id so per-project order is preserved within a partition.

Invariants:
    - Auto-commit is disabled; offsets are committed per handled record
    - A restart resumes after the last committed record (at-least-once)

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Keep commit() committing offset + 1 (the next record to read)
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from ..config import IngestConfig
from .base import IngestConnectionError, IngestError, SourcePosition, SourceRecord

logger = logging.getLogger(__name__)

# Try to import aiokafka, provide helpful message if not installed
try:
    from aiokafka import AIOKafkaConsumer
    from aiokafka.errors import KafkaConnectionError, KafkaError
    from aiokafka.structs import OffsetAndMetadata, TopicPartition

    KAFKA_AVAILABLE = True
except ImportError:
    KAFKA_AVAILABLE = False
    AIOKafkaConsumer = None


class KafkaEventSource:
    """Kafka implementation of EventSource using aiokafka.

    Example:
        >>> source = KafkaEventSource(IngestConfig(brokers="localhost:9092"))
        >>> await source.connect()
        >>> async for record in source.subscribe("audit-events", "auditstream-ingest"):
        ...     ...
    """

    def __init__(self, config: IngestConfig) -> None:
        """Initialize the source.

        Raises:
            ImportError: If aiokafka is not installed
        """
        if not KAFKA_AVAILABLE:
            raise ImportError(
                "aiokafka is required for Kafka ingest. Install with: pip install aiokafka"
            )
        self.config = config
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        # The consumer is created by subscribe(); group membership needs the topic
        self._connected = True
        logger.info("Kafka event source ready", extra={"brokers": self.config.brokers})

    async def close(self) -> None:
        if self._consumer:
            try:
                await self._consumer.stop()
            except Exception as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None
        self._connected = False
        logger.info("Kafka event source closed")

    def _consumer_config(self, group_id: str) -> dict[str, Any]:
        consumer_config: dict[str, Any] = {
            "bootstrap_servers": self.config.brokers,
            "group_id": group_id,
            "auto_offset_reset": self.config.auto_offset_reset,
            "enable_auto_commit": False,
            "max_poll_records": 100,
            "session_timeout_ms": 30000,
            "heartbeat_interval_ms": 10000,
        }
        if self.config.security_protocol != "PLAINTEXT":
            consumer_config["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            consumer_config["sasl_mechanism"] = self.config.sasl_mechanism
            consumer_config["sasl_plain_username"] = self.config.sasl_username
            consumer_config["sasl_plain_password"] = self.config.sasl_password
        return consumer_config

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[SourceRecord]:
        try:
            if self._consumer:
                await self._consumer.stop()

            self._consumer = AIOKafkaConsumer(topic, **self._consumer_config(group_id))
            await self._consumer.start()
            logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

            async for msg in self._consumer:
                yield SourceRecord(
                    key=msg.key.decode("utf-8") if msg.key else "",
                    value=msg.value,
                    position=SourcePosition(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        timestamp_ms=msg.timestamp or int(time.time() * 1000),
                    ),
                    headers=dict(msg.headers) if msg.headers else {},
                )

        except KafkaConnectionError as e:
            raise IngestConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            raise IngestError(f"Consumer error: {e}") from e

    async def commit(self, record: SourceRecord) -> None:
        if not self._consumer:
            raise IngestError("No active consumer to commit")

        try:
            offsets = {
                TopicPartition(record.position.topic, record.position.partition): OffsetAndMetadata(
                    record.position.offset + 1, ""
                )
            }
            await self._consumer.commit(offsets)
        except KafkaError as e:
            raise IngestError(f"Failed to commit: {e}") from e

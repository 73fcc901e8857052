"""
Shared fixtures for AuditStream tests.
"""

import httpx
import pytest

from auditlog.auditstream_server.buffer import EventBuffer
from auditlog.auditstream_server.config import (
    CircuitBreakerConfig,
    DeliveryConfig,
    SchedulerConfig,
)
from auditlog.auditstream_server.deadletter import DeadLetterSink, InMemoryDeadLetterStore
from auditlog.auditstream_server.delivery import DeliveryWorker
from auditlog.auditstream_server.registry import InMemoryDestinationStore, StreamRegistry
from auditlog.auditstream_server.scheduler import DeliveryScheduler

from tests.helpers import DestinationRouter, Engine, fast_delivery_config


@pytest.fixture
async def make_engine():
    """Factory for wired engines; every engine is stopped at teardown."""
    engines: list[Engine] = []

    def factory(
        delivery: DeliveryConfig | None = None,
        breaker: CircuitBreakerConfig | None = None,
        scheduler: SchedulerConfig | None = None,
        capacity: int = 1000,
    ) -> Engine:
        router = DestinationRouter()
        client = httpx.AsyncClient(transport=httpx.MockTransport(router))
        buffer = EventBuffer(capacity=capacity)
        registry = StreamRegistry(InMemoryDestinationStore())
        dead_letters = DeadLetterSink(InMemoryDeadLetterStore(), buffer)
        worker = DeliveryWorker(
            delivery or fast_delivery_config(),
            breaker or CircuitBreakerConfig(failure_threshold=1000),
            client=client,
        )
        sched = DeliveryScheduler(
            buffer,
            registry,
            worker,
            dead_letters,
            scheduler or SchedulerConfig(idle_interval_seconds=0.05),
        )
        engine = Engine(router, buffer, registry, dead_letters, worker, sched, client)
        sched.add_result_listener(engine.results.append)
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.stop()

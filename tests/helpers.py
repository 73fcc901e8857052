"""
Test helpers for AuditStream.

Destinations are simulated with httpx.MockTransport: each host maps to a
ScriptedDestination that records requests and answers with scripted
status codes.
"""

import asyncio
import time
from dataclasses import dataclass, field

import httpx

from auditlog.auditstream_server.buffer import EventBuffer
from auditlog.auditstream_server.config import DeliveryConfig
from auditlog.auditstream_server.deadletter import DeadLetterSink
from auditlog.auditstream_server.delivery import DeliveryResult, DeliveryWorker
from auditlog.auditstream_server.registry import StreamRegistry
from auditlog.auditstream_server.scheduler import DeliveryScheduler


class ScriptedDestination:
    """Answers with scripted statuses, then with a default status."""

    def __init__(self, statuses=None, default=200, headers=None, body=""):
        self.statuses = list(statuses or [])
        self.default = default
        self.headers = headers or {}
        self.body = body
        self.requests: list[httpx.Request] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            status = self.statuses.pop(0) if self.statuses else self.default
            return httpx.Response(status, headers=self.headers, text=self.body)
        finally:
            self.in_flight -= 1


class DestinationRouter:
    """MockTransport handler dispatching on the request host."""

    def __init__(self):
        self.hosts: dict[str, ScriptedDestination] = {}
        self.in_flight = 0
        self.peak_in_flight = 0

    def add(self, host: str, destination: ScriptedDestination) -> str:
        self.hosts[host] = destination
        return f"https://{host}/ingest"

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        destination = self.hosts.get(request.url.host)
        if destination is None:
            return httpx.Response(404, text="unknown host")
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            return await destination(request)
        finally:
            self.in_flight -= 1

    @property
    def total_requests(self) -> int:
        return sum(len(d.requests) for d in self.hosts.values())


@dataclass
class Engine:
    """A fully wired delivery engine with in-memory stores."""

    router: DestinationRouter
    buffer: EventBuffer
    registry: StreamRegistry
    dead_letters: DeadLetterSink
    worker: DeliveryWorker
    scheduler: DeliveryScheduler
    client: httpx.AsyncClient
    results: list[DeliveryResult] = field(default_factory=list)
    loop_task: asyncio.Task | None = None
    stopped: bool = False

    def start(self) -> None:
        self.loop_task = asyncio.create_task(self.scheduler.start())

    async def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        await self.scheduler.stop()
        if self.loop_task is not None:
            self.loop_task.cancel()
            await asyncio.gather(self.loop_task, return_exceptions=True)
        await self.client.aclose()


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is truthy or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


def fast_delivery_config(**overrides) -> DeliveryConfig:
    values = dict(
        timeout_seconds=2.0,
        max_attempts=3,
        base_delay_seconds=0.01,
        max_delay_seconds=0.05,
        jitter=False,
    )
    values.update(overrides)
    return DeliveryConfig(**values)

"""
Integration tests for DeliveryScheduler with in-memory stores.

Tests cover:
- Retry, dead-letter and delivery outcomes end to end
- Unexpected client and worker errors still reach a terminal state
- Duplicate event ids at enqueue
- Circuit breaker short-circuiting
- Cancellation on disable/delete
- Dead-letter replay
- Concurrency limits and backpressure
"""

import asyncio

import httpx
import pytest

from auditlog.auditstream_server.buffer import AuditEvent, DropReason
from auditlog.auditstream_server.config import CircuitBreakerConfig, SchedulerConfig
from auditlog.auditstream_server.deadletter import DeadLetterStatus
from auditlog.auditstream_server.delivery import CircuitState, PairState
from auditlog.auditstream_server.errors import NotFoundError
from auditlog.auditstream_server.registry import StreamDestination

from tests.helpers import ScriptedDestination, fast_delivery_config, wait_until


def event(project_id: str = "proj_1", **payload) -> AuditEvent:
    return AuditEvent(project_id, payload or {"action": "secret.read"})


class TestDeliveryOutcomes:
    """Retry and dead-letter behaviour per destination response."""

    @pytest.mark.asyncio
    async def test_always_500_dead_letters_every_event(self, make_engine):
        """N events against an always-500 destination all end up dead-lettered."""
        engine = make_engine(delivery=fast_delivery_config(max_attempts=3))
        siem = ScriptedDestination(default=500)
        dest = await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        for i in range(5):
            await engine.buffer.enqueue(event(n=i))

        assert await engine.scheduler.drain(timeout=5)

        entries = await engine.dead_letters.list("proj_1")
        assert len(entries) == 5
        assert all(e.destination_id == dest.id for e in entries)
        assert all(len(e.failure_history) == 3 for e in entries)
        assert all(e.final_failure_reason.startswith("HTTP 500") for e in entries)
        assert len(siem.requests) == 15
        assert engine.buffer.total_depth() == 0

    @pytest.mark.asyncio
    async def test_404_dead_letters_without_retry(self, make_engine):
        """A 404 is fatal: one attempt, zero retries."""
        engine = make_engine(delivery=fast_delivery_config(max_attempts=10))
        siem = ScriptedDestination(default=404)
        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)

        assert len(siem.requests) == 1
        assert len(engine.results) == 1
        assert engine.results[0].state == PairState.DEAD_LETTERED
        assert engine.results[0].retry_count == 0

        entries = await engine.dead_letters.list("proj_1")
        assert len(entries) == 1
        assert entries[0].failure_history[0].status_code == 404

    @pytest.mark.asyncio
    async def test_three_500s_then_200_delivers_with_three_retries(self, make_engine):
        """500, 500, 500, 200 -> Delivered with exactly 3 retries."""
        engine = make_engine(delivery=fast_delivery_config(max_attempts=10))
        siem = ScriptedDestination(statuses=[500, 500, 500], default=200)
        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)

        assert len(siem.requests) == 4
        assert len(engine.results) == 1
        assert engine.results[0].state == PairState.DELIVERED
        assert engine.results[0].retry_count == 3
        assert await engine.dead_letters.list("proj_1") == []

    @pytest.mark.asyncio
    async def test_429_is_retried(self, make_engine):
        """Rate limiting is transient."""
        engine = make_engine(delivery=fast_delivery_config(max_attempts=5))
        siem = ScriptedDestination(statuses=[429], default=204)
        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)

        assert engine.results[0].state == PairState.DELIVERED
        assert engine.results[0].retry_count == 1

    @pytest.mark.asyncio
    async def test_fan_out_isolates_destinations(self, make_engine):
        """One failing destination does not affect another."""
        engine = make_engine()
        good = ScriptedDestination(default=200)
        bad = ScriptedDestination(default=400)
        good_dest = await engine.registry.create("proj_1", engine.router.add("good.example.com", good))
        bad_dest = await engine.registry.create("proj_1", engine.router.add("bad.example.com", bad))
        engine.start()

        for i in range(3):
            await engine.buffer.enqueue(event(n=i))
        assert await engine.scheduler.drain(timeout=5)

        assert len(good.requests) == 3
        entries = await engine.dead_letters.list("proj_1")
        assert {e.destination_id for e in entries} == {bad_dest.id}
        assert len(entries) == 3

        delivered = [r for r in engine.results if r.state == PairState.DELIVERED]
        assert {r.destination_id for r in delivered} == {good_dest.id}

    @pytest.mark.asyncio
    async def test_request_carries_payload_and_headers(self, make_engine):
        """The event payload is the JSON body; the token is a bearer header."""
        engine = make_engine()
        siem = ScriptedDestination(default=200)
        await engine.registry.create(
            "proj_1", engine.router.add("siem.example.com", siem), token="tok_abc"
        )
        engine.start()

        result = await engine.buffer.enqueue(event(actor="user:7"))
        assert await engine.scheduler.drain(timeout=5)

        request = siem.requests[0]
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer tok_abc"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["X-Audit-Event-Id"] == result.event.event_id
        assert request.headers["X-Audit-Sequence"] == "1"
        assert request.content == b'{"actor":"user:7"}'

    @pytest.mark.asyncio
    async def test_events_without_destinations_are_acked(self, make_engine):
        """Events of a project with no active destination leave the buffer."""
        engine = make_engine()
        engine.start()

        await engine.buffer.enqueue(event("proj_empty"))
        assert await engine.scheduler.drain(timeout=5)
        assert engine.results == []

    @pytest.mark.asyncio
    async def test_undecodable_error_response_is_retried(self, make_engine):
        """A 502 whose body fails gzip decoding is retried, not stranded."""
        engine = make_engine(delivery=fast_delivery_config(max_attempts=5))
        requests = []

        async def siem(request):
            requests.append(request)
            if len(requests) == 1:
                return httpx.Response(
                    502,
                    headers={"Content-Encoding": "gzip"},
                    stream=httpx.ByteStream(b"not gzip"),
                )
            return httpx.Response(200)

        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)

        assert len(requests) == 2
        assert engine.results[0].state == PairState.DELIVERED
        assert engine.results[0].task.attempts[0].reason == "http error (DecodingError)"
        assert engine.buffer.total_depth() == 0
        assert engine.scheduler.stats["outstanding_events"] == 0

    @pytest.mark.asyncio
    async def test_unencodable_token_dead_letters(self, make_engine):
        """A stored token httpx cannot put in a header ends in the dead-letter sink."""
        engine = make_engine(delivery=fast_delivery_config(max_attempts=2))
        siem = ScriptedDestination(default=200)
        # Bypasses registry validation
        await engine.registry.store.put(
            StreamDestination(
                id="dst_legacy",
                project_id="proj_1",
                url=engine.router.add("siem.example.com", siem),
                token="tök",
            )
        )
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)

        assert siem.requests == []
        assert engine.results[0].state == PairState.DEAD_LETTERED
        [entry] = await engine.dead_letters.list("proj_1")
        assert entry.final_failure_reason == "unexpected error (UnicodeEncodeError)"
        assert len(entry.failure_history) == 2
        assert engine.buffer.total_depth() == 0
        assert engine.scheduler.stats["outstanding_events"] == 0

    @pytest.mark.asyncio
    async def test_dispatch_error_counts_as_failed_attempt(self, make_engine, monkeypatch):
        """An error escaping the worker still retries, then dead-letters the pair."""
        engine = make_engine(delivery=fast_delivery_config(max_attempts=2))
        dest = await engine.registry.create(
            "proj_1", engine.router.add("siem.example.com", ScriptedDestination())
        )

        async def broken_attempt(task, destination):
            raise RuntimeError("worker bug")

        monkeypatch.setattr(engine.worker, "attempt", broken_attempt)
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)

        assert engine.results[0].state == PairState.DEAD_LETTERED
        [entry] = await engine.dead_letters.list("proj_1")
        assert entry.destination_id == dest.id
        assert [a.attempt_number for a in entry.failure_history] == [1, 2]
        assert entry.final_failure_reason == "unexpected error (RuntimeError)"
        assert engine.scheduler.stats["projects"]["proj_1"]["outstanding_events"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_event_id_is_rejected_not_overwritten(self, make_engine):
        """A second event reusing a buffered event_id is reported, and the first is delivered."""
        engine = make_engine()
        siem = ScriptedDestination(default=200)
        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))

        first = await engine.buffer.enqueue(AuditEvent("proj_1", {"n": 1}, event_id="abc"))
        second = await engine.buffer.enqueue(AuditEvent("proj_1", {"n": 2}, event_id="abc"))
        engine.start()
        assert await engine.scheduler.drain(timeout=5)

        assert first.accepted is True
        assert second.accepted is False
        assert second.reason == DropReason.DUPLICATE_EVENT
        assert [r.content for r in siem.requests] == [b'{"n":1}']
        assert engine.buffer.stats["accepted_count"] == 1
        assert engine.buffer.stats["dropped_count"] == 1


class TestCircuitBreaking:
    """Breaker integration."""

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits_without_http(self, make_engine):
        """After the threshold, attempts are skipped without HTTP calls."""
        engine = make_engine(
            delivery=fast_delivery_config(max_attempts=10),
            breaker=CircuitBreakerConfig(
                failure_threshold=3, failure_window_seconds=60, cool_down_seconds=60
            ),
        )
        siem = ScriptedDestination(default=503)
        dest = await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())

        assert await wait_until(lambda: engine.worker.stats["short_circuit_count"] >= 1)
        await asyncio.sleep(0.2)

        assert len(siem.requests) == 3
        assert engine.worker.breakers.get(dest.id).state == CircuitState.OPEN
        assert await engine.dead_letters.list("proj_1") == []

    @pytest.mark.asyncio
    async def test_short_circuits_do_not_consume_attempts(self, make_engine):
        """A pair held back by the breaker keeps its attempt budget."""
        engine = make_engine(
            delivery=fast_delivery_config(max_attempts=2),
            breaker=CircuitBreakerConfig(
                failure_threshold=1, failure_window_seconds=60, cool_down_seconds=0.1
            ),
        )
        siem = ScriptedDestination(statuses=[500], default=200)
        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)

        assert engine.results[0].state == PairState.DELIVERED
        assert engine.results[0].task.attempt_count == 2
        assert engine.results[0].task.short_circuits >= 1


class TestCancellation:
    """Disabling or deleting a destination stops its work."""

    @pytest.mark.asyncio
    async def test_disable_mid_retry_halts_without_dead_letter(self, make_engine):
        """Disabling a destination mid-retry halts attempts, no dead-letter."""
        engine = make_engine(
            delivery=fast_delivery_config(
                max_attempts=10, base_delay_seconds=0.3, max_delay_seconds=0.3
            )
        )
        siem = ScriptedDestination(default=500)
        dest = await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await wait_until(lambda: len(siem.requests) == 1)
        assert await wait_until(lambda: engine.scheduler.stats["scheduled_retries"] == 1)

        await engine.registry.set_enabled(dest.id, False)
        assert await engine.scheduler.drain(timeout=2)
        await asyncio.sleep(0.5)

        assert len(siem.requests) == 1
        assert await engine.dead_letters.list("proj_1") == []
        assert [r.state for r in engine.results] == [PairState.ABANDONED]

    @pytest.mark.asyncio
    async def test_delete_cancels_in_flight_attempt(self, make_engine):
        """Deleting a destination cancels a request that is still waiting."""
        engine = make_engine()
        siem = ScriptedDestination(default=200)
        siem.gate = asyncio.Event()
        dest = await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await wait_until(lambda: siem.in_flight == 1)

        await engine.registry.delete(dest.id)
        assert await engine.scheduler.drain(timeout=2)

        assert [r.state for r in engine.results] == [PairState.ABANDONED]
        assert dest.id not in engine.worker.breakers
        assert await engine.dead_letters.list("proj_1") == []

    @pytest.mark.asyncio
    async def test_disabled_destination_receives_no_new_events(self, make_engine):
        """New events skip a disabled destination; re-enabling resumes delivery."""
        engine = make_engine()
        siem = ScriptedDestination(default=200)
        dest = await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        await engine.registry.set_enabled(dest.id, False)
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)
        assert siem.requests == []

        await engine.registry.set_enabled(dest.id, True)
        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)
        assert len(siem.requests) == 1


class TestReplay:
    """Operator replay through the scheduler."""

    @pytest.mark.asyncio
    async def test_replay_against_healthy_destination_removes_entry(self, make_engine):
        """Replay delivers the original event and removes the entry."""
        engine = make_engine()
        siem = ScriptedDestination(statuses=[404], default=200)
        other = ScriptedDestination(default=200)
        dest = await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        await engine.registry.create("proj_1", engine.router.add("other.example.com", other))
        engine.start()

        original = await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)
        [entry] = await engine.dead_letters.list("proj_1")
        assert entry.destination_id == dest.id

        await engine.dead_letters.replay(entry.entry_id)
        assert await engine.scheduler.drain(timeout=5)

        with pytest.raises(NotFoundError):
            await engine.dead_letters.get(entry.entry_id)
        assert len(siem.requests) == 2
        assert siem.requests[1].headers["X-Audit-Event-Id"] == original.event.event_id
        # Replay goes to the original destination only
        assert len(other.requests) == 1

    @pytest.mark.asyncio
    async def test_failed_replay_keeps_entry_pending(self, make_engine):
        """A replay that fails again extends the history and stays listed."""
        engine = make_engine(delivery=fast_delivery_config(max_attempts=2))
        siem = ScriptedDestination(default=500)
        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)
        [entry] = await engine.dead_letters.list("proj_1")

        await engine.dead_letters.replay(entry.entry_id)
        assert await engine.scheduler.drain(timeout=5)

        reloaded = await engine.dead_letters.get(entry.entry_id)
        assert reloaded.status == DeadLetterStatus.PENDING
        assert reloaded.replay_count == 1
        assert len(reloaded.failure_history) == 4
        assert len(await engine.dead_letters.list("proj_1")) == 1

    @pytest.mark.asyncio
    async def test_replay_for_deleted_destination_is_cancelled(self, make_engine):
        """Replaying to a destination that no longer exists resets the entry."""
        engine = make_engine()
        siem = ScriptedDestination(default=400)
        dest = await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await engine.scheduler.drain(timeout=5)
        [entry] = await engine.dead_letters.list("proj_1")

        await engine.registry.delete(dest.id)
        await engine.dead_letters.replay(entry.entry_id)
        assert await engine.scheduler.drain(timeout=5)

        reloaded = await engine.dead_letters.get(entry.entry_id)
        assert reloaded.status == DeadLetterStatus.PENDING
        assert len(siem.requests) == 1


class TestConcurrencyAndBackpressure:
    """Global and per-project limits."""

    @pytest.mark.asyncio
    async def test_global_concurrency_cap(self, make_engine):
        """No more than max_concurrency attempts are in flight."""
        engine = make_engine(
            scheduler=SchedulerConfig(
                max_concurrency=3, per_project_concurrency=3, idle_interval_seconds=0.05
            )
        )
        siem = ScriptedDestination(default=200)
        siem.gate = asyncio.Event()
        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        for i in range(10):
            await engine.buffer.enqueue(event(n=i))

        assert await wait_until(lambda: siem.in_flight == 3)
        await asyncio.sleep(0.1)
        assert siem.in_flight == 3

        siem.gate.set()
        assert await engine.scheduler.drain(timeout=5)
        assert siem.peak_in_flight == 3
        assert len(siem.requests) == 10

    @pytest.mark.asyncio
    async def test_busy_project_does_not_starve_others(self, make_engine):
        """A project at its per-project limit leaves global slots for others."""
        engine = make_engine(
            scheduler=SchedulerConfig(
                max_concurrency=4, per_project_concurrency=2, idle_interval_seconds=0.05
            )
        )
        slow = ScriptedDestination(default=200)
        slow.gate = asyncio.Event()
        fast = ScriptedDestination(default=200)
        await engine.registry.create("proj_busy", engine.router.add("slow.example.com", slow))
        await engine.registry.create("proj_quiet", engine.router.add("fast.example.com", fast))
        engine.start()

        for i in range(20):
            await engine.buffer.enqueue(event("proj_busy", n=i))
        assert await wait_until(lambda: slow.in_flight == 2)

        await engine.buffer.enqueue(event("proj_quiet"))
        assert await wait_until(lambda: len(fast.requests) == 1, timeout=2)
        assert slow.peak_in_flight == 2

        slow.gate.set()
        assert await engine.scheduler.drain(timeout=5)

    @pytest.mark.asyncio
    async def test_outstanding_limit_holds_events_in_buffer(self, make_engine):
        """A stalled destination caps leased events; the rest stay pending."""
        engine = make_engine(
            scheduler=SchedulerConfig(max_outstanding_events=2, idle_interval_seconds=0.05),
            capacity=5,
        )
        siem = ScriptedDestination(default=200)
        siem.gate = asyncio.Event()
        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        for i in range(5):
            assert (await engine.buffer.enqueue(event(n=i))).accepted
        assert await wait_until(lambda: engine.buffer.leased("proj_1") == 2)
        await asyncio.sleep(0.1)

        assert engine.buffer.leased("proj_1") == 2
        assert engine.buffer.pending("proj_1") == 3
        # The buffer is full: the producer sees backpressure
        assert not (await engine.buffer.enqueue(event(n=99))).accepted

        siem.gate.set()
        assert await engine.scheduler.drain(timeout=5)
        assert len(siem.requests) == 5

    @pytest.mark.asyncio
    async def test_stop_releases_leases(self, make_engine):
        """Stopping returns unfinished events to pending."""
        engine = make_engine()
        siem = ScriptedDestination(default=200)
        siem.gate = asyncio.Event()
        await engine.registry.create("proj_1", engine.router.add("siem.example.com", siem))
        engine.start()

        await engine.buffer.enqueue(event())
        assert await wait_until(lambda: siem.in_flight == 1)

        await engine.stop()

        assert engine.buffer.leased("proj_1") == 0
        assert engine.buffer.pending("proj_1") == 1

"""
DeliveryScheduler - fair, bounded fan-out of buffered events to destinations.

The scheduler is the consumer side of the EventBuffer:

    EventBuffer ──dequeue_batch──▶ fan-out per active destination
                                        │
                                        ▼
                      DeliveryTask ──▶ DeliveryWorker.attempt()
                          ▲                   │
                          │ retry timer       ├─ DELIVERED ──────▶ done
                          └───────────────────┤─ RETRY
                                              └─ DEAD_LETTER ───▶ DeadLetterSink

An event stays leased in the buffer until every one of its (event,
destination) pairs is terminal, and dequeue pauses for a project whose
leased events reach max_outstanding_events. A slow or failing destination
therefore fills the buffer and surfaces as enqueue backpressure.

Fairness:
    Projects are visited round-robin, starting one place later every cycle,
    and each project has its own concurrency slots in addition to the global
    ones. A project with a deep backlog cannot take more than
    per_project_concurrency of the global slots.

Invariants:
    - Each (event, destination) pair reaches exactly one terminal state
    - At most max_concurrency attempts are in flight
    - First attempts for one destination start in dequeue order
    - Disabling or deleting a destination abandons its pairs without
      dead-lettering them and cancels their retry timers

How to change safely:
    - Every task must end in _finish(); it owns acking the buffer
    - An unexpected error in _dispatch() counts as a failed attempt, so the
      task still retries or dead-letters
    - Only _dispatch() may be cancelled by a destination change, and only
      while it is waiting for a slot or inside worker.attempt()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..buffer.event_buffer import BufferedEvent, EventBuffer
from ..config import SchedulerConfig
from ..deadletter.sink import DeadLetterSink
from ..delivery.outcome import DeliveryAttempt, OutcomeKind
from ..delivery.task import DeliveryResult, DeliveryTask, PairState
from ..delivery.worker import AttemptDecision, DecisionKind, DeliveryWorker
from ..registry.models import StreamDestination
from ..registry.registry import DestinationChange, StreamRegistry

logger = logging.getLogger(__name__)


ResultListener = Callable[[DeliveryResult], None]

# Attempts to write a dead-letter entry before giving up on the pair
DEAD_LETTER_WRITE_ATTEMPTS = 3


@dataclass
class _EventTracker:
    buffered: BufferedEvent
    remaining: int


@dataclass
class _ProjectSlots:
    semaphore: asyncio.Semaphore
    outstanding_events: int = 0
    in_flight: int = 0
    tasks: set[DeliveryTask] = field(default_factory=set)


class DeliveryScheduler:
    """Dispatches buffered events to destinations with bounded concurrency.

    Attributes:
        buffer: Source of events
        registry: Destination lookup and change notifications
        worker: Performs attempts and decides retries
        dead_letters: Receives pairs that failed permanently
        config: Concurrency and batching limits

    Example:
        >>> scheduler = DeliveryScheduler(buffer, registry, worker, sink)
        >>> loop_task = asyncio.create_task(scheduler.start())
        >>> ...
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        buffer: EventBuffer,
        registry: StreamRegistry,
        worker: DeliveryWorker,
        dead_letters: DeadLetterSink,
        config: SchedulerConfig | None = None,
    ) -> None:
        self.buffer = buffer
        self.registry = registry
        self.worker = worker
        self.dead_letters = dead_letters
        self.config = config or SchedulerConfig()

        self._global_slots = asyncio.Semaphore(self.config.max_concurrency)
        self._projects: dict[str, _ProjectSlots] = {}
        self._trackers: dict[tuple[str, str], _EventTracker] = {}
        self._by_destination: dict[str, set[DeliveryTask]] = defaultdict(set)
        self._destinations: dict[str, StreamDestination] = {}
        self._inactive: set[str] = set()

        self._timers: dict[DeliveryTask, asyncio.TimerHandle] = {}
        self._cancellable: dict[DeliveryTask, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._result_listeners: list[ResultListener] = []

        self._running = False
        self._cycle = 0
        self._in_flight = 0
        self._dispatched_count = 0
        self._delivered_count = 0
        self._dead_lettered_count = 0
        self._abandoned_count = 0

        registry.add_listener(self._on_destination_change)

    def add_result_listener(self, listener: ResultListener) -> None:
        """Register a callback for pairs reaching a terminal state."""
        self._result_listeners.append(listener)

    def _slots(self, project_id: str) -> _ProjectSlots:
        slots = self._projects.get(project_id)
        if slots is None:
            slots = self._projects[project_id] = _ProjectSlots(
                asyncio.Semaphore(self.config.per_project_concurrency)
            )
        return slots

    # ── Loop ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Run the dispatch loop until stop() is called."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        logger.info(
            "Starting delivery scheduler",
            extra={
                "max_concurrency": self.config.max_concurrency,
                "per_project_concurrency": self.config.per_project_concurrency,
            },
        )

        try:
            while self._running:
                dispatched = await self.dispatch_cycle()
                if dispatched == 0 and self._running:
                    await self.buffer.wait_for_pending(self.config.idle_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled")
        except Exception as e:
            logger.error(f"Scheduler error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop dispatching and cancel all outstanding work.

        Leased events whose pairs did not finish go back to pending, and
        replays still in flight return their dead-letter entry to PENDING.
        """
        self._running = False
        self.buffer.notify()
        logger.info("Stopping delivery scheduler", extra={"outstanding": len(self._trackers)})

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        pending = [t for t in self._background if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        replays = {tr.buffered.replay_of for tr in self._trackers.values() if tr.buffered.replay_of}
        for (project_id, key), _tracker in list(self._trackers.items()):
            await self.buffer.release(project_id, [key])
        for entry_id in replays:
            await self.dead_letters.cancel_replay(entry_id)

        self._trackers.clear()
        self._by_destination.clear()
        self._cancellable.clear()
        for slots in self._projects.values():
            slots.outstanding_events = 0
            slots.tasks.clear()

    async def drain(self, timeout: float = 30.0) -> bool:
        """Wait until the buffer is empty and no pair is outstanding.

        Returns:
            True if drained within timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.buffer.total_depth() > 0 or self._trackers:
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.01)
        return True

    async def dispatch_cycle(self) -> int:
        """Lease and fan out one batch per project.

        Returns:
            Number of events dequeued
        """
        projects = self.buffer.projects_with_pending()
        if not projects:
            return 0

        offset = self._cycle % len(projects)
        self._cycle += 1
        ordered = projects[offset:] + projects[:offset]

        dispatched = 0
        for project_id in ordered:
            slots = self._slots(project_id)
            room = self.config.max_outstanding_events - slots.outstanding_events
            if room <= 0:
                continue

            batch = await self.buffer.dequeue_batch(
                project_id, min(self.config.batch_size, room)
            )
            if not batch:
                continue

            try:
                destinations = await self.registry.list_active(project_id)
            except Exception as e:
                logger.error(
                    f"Failed to load destinations: {e}",
                    exc_info=True,
                    extra={"project_id": project_id},
                )
                await self.buffer.release(project_id, [b.key for b in batch])
                continue

            for buffered in batch:
                await self._fan_out(buffered, destinations)
            dispatched += len(batch)

        return dispatched

    async def _fan_out(
        self, buffered: BufferedEvent, destinations: list[StreamDestination]
    ) -> None:
        project_id = buffered.event.project_id
        targets = [
            d
            for d in destinations
            if d.id not in self._inactive
            and (buffered.destination_ids is None or d.id in buffered.destination_ids)
        ]

        if not targets:
            logger.debug(
                "No active destination for event",
                extra={"project_id": project_id, "event_id": buffered.event.event_id},
            )
            await self.buffer.ack(project_id, [buffered.key])
            if buffered.replay_of:
                await self.dead_letters.cancel_replay(buffered.replay_of)
            return

        slots = self._slots(project_id)
        slots.outstanding_events += 1
        self._trackers[(project_id, buffered.key)] = _EventTracker(buffered, len(targets))

        for destination in targets:
            self._destinations[destination.id] = destination
            task = DeliveryTask(buffered, destination.id)
            self._by_destination[destination.id].add(task)
            slots.tasks.add(task)
            self._spawn(task)

    def _spawn(self, task: DeliveryTask) -> None:
        runner = asyncio.get_running_loop().create_task(self._dispatch(task))
        self._cancellable[task] = runner
        self._track(runner)

    def _track(self, runner: asyncio.Task[None]) -> None:
        self._background.add(runner)
        runner.add_done_callback(self._background.discard)

    # ── Per-pair execution ────────────────────────────────────────────

    async def _dispatch(self, task: DeliveryTask) -> None:
        slots = self._slots(task.project_id)
        decision: AttemptDecision | None = None

        try:
            # Project slot first: a saturated project must not hold global slots
            async with slots.semaphore, self._global_slots:
                destination = self._destinations.get(task.destination_id)
                if destination is None:
                    task.abandon_requested = True
                elif not task.abandon_requested:
                    task.transition(PairState.DISPATCHING)
                    self._dispatched_count += 1
                    self._in_flight += 1
                    slots.in_flight += 1
                    try:
                        decision = await self.worker.attempt(task, destination)
                    finally:
                        self._in_flight -= 1
                        slots.in_flight -= 1
        except asyncio.CancelledError:
            if not task.abandon_requested:
                raise
        except Exception as e:
            logger.error(
                f"Delivery dispatch failed: {type(e).__name__}",
                extra={
                    "event_id": task.event.event_id,
                    "project_id": task.project_id,
                    "destination_id": task.destination_id,
                },
            )
            decision = self._decision_after_error(task, e)
        finally:
            self._cancellable.pop(task, None)

        if task.abandon_requested and (
            decision is None or decision.kind != DecisionKind.DELIVERED
        ):
            await self._finish(task, PairState.ABANDONED, "destination disabled or deleted")
            return

        assert decision is not None
        await self._apply(task, decision)

    def _decision_after_error(self, task: DeliveryTask, error: Exception) -> AttemptDecision:
        """Count an unexpected dispatch error as a failed attempt."""
        if task.state != PairState.DISPATCHING:
            task.transition(PairState.DISPATCHING)

        reason = f"unexpected error ({type(error).__name__})"
        policy = self.worker.retry_policy
        attempt_number = task.attempt_count + 1
        exhausted = policy.exhausted(attempt_number)
        delay = None if exhausted else policy.delay_for(attempt_number)
        now_ms = int(time.time() * 1000)
        task.record(
            DeliveryAttempt(
                event_id=task.event.event_id,
                destination_id=task.destination_id,
                attempt_number=attempt_number,
                outcome=OutcomeKind.RETRYABLE,
                reason=reason,
                attempted_at_ms=now_ms,
                next_retry_at_ms=None if delay is None else now_ms + int(delay * 1000),
            )
        )
        if exhausted:
            return AttemptDecision(DecisionKind.DEAD_LETTER, reason=reason)
        return AttemptDecision(DecisionKind.RETRY, delay=delay, reason=reason)

    async def _apply(self, task: DeliveryTask, decision: AttemptDecision) -> None:
        if decision.kind == DecisionKind.DELIVERED:
            await self._finish(task, PairState.DELIVERED)
            return

        if decision.kind == DecisionKind.RETRY:
            assert decision.delay is not None
            task.transition(PairState.RETRY_SCHEDULED)
            loop = asyncio.get_running_loop()
            task.next_retry_at = loop.time() + decision.delay
            self._timers[task] = loop.call_later(decision.delay, self._fire_retry, task)
            return

        reason = decision.reason or "delivery failed"
        await self._dead_letter(task, reason)
        await self._finish(task, PairState.DEAD_LETTERED, reason)

    def _fire_retry(self, task: DeliveryTask) -> None:
        self._timers.pop(task, None)
        task.next_retry_at = None
        if task.abandon_requested or task.finished:
            return
        self._spawn(task)

    async def _dead_letter(self, task: DeliveryTask, reason: str) -> None:
        for attempt in range(1, DEAD_LETTER_WRITE_ATTEMPTS + 1):
            try:
                if task.replay_of:
                    await self.dead_letters.reject_replay(task.replay_of, task.attempts, reason)
                else:
                    await self.dead_letters.record_task(task, reason)
                return
            except Exception as e:
                logger.error(
                    f"Failed to write dead-letter entry: {e}",
                    exc_info=True,
                    extra={
                        "event_id": task.event.event_id,
                        "destination_id": task.destination_id,
                        "attempt": attempt,
                    },
                )
                await asyncio.sleep(0.1 * attempt)
        logger.critical(
            "Dead-letter entry lost",
            extra={
                "event_id": task.event.event_id,
                "project_id": task.project_id,
                "destination_id": task.destination_id,
                "reason": reason,
            },
        )

    async def _finish(
        self, task: DeliveryTask, state: PairState, reason: str | None = None
    ) -> None:
        if task.finished:
            return
        task.finished = True
        task.transition(state)
        task.final_reason = reason

        if task.replay_of:
            if state == PairState.DELIVERED:
                await self.dead_letters.resolve(task.replay_of)
            elif state == PairState.ABANDONED:
                await self.dead_letters.cancel_replay(task.replay_of)

        if state == PairState.DELIVERED:
            self._delivered_count += 1
        elif state == PairState.DEAD_LETTERED:
            self._dead_lettered_count += 1
        else:
            self._abandoned_count += 1

        self._by_destination[task.destination_id].discard(task)
        slots = self._slots(task.project_id)
        slots.tasks.discard(task)

        result = DeliveryResult(task, state)
        logger.debug("Delivery finished", extra=result.to_dict())
        for listener in self._result_listeners:
            try:
                listener(result)
            except Exception as e:
                logger.error(f"Result listener failed: {e}", exc_info=True)

        tracker_key = (task.project_id, task.buffered.key)
        tracker = self._trackers.get(tracker_key)
        if tracker is None:
            return
        tracker.remaining -= 1
        if tracker.remaining == 0:
            del self._trackers[tracker_key]
            slots.outstanding_events -= 1
            await self.buffer.ack(task.project_id, [task.buffered.key])
            self.buffer.notify()

    # ── Destination changes ───────────────────────────────────────────

    def _on_destination_change(
        self, destination: StreamDestination, change: DestinationChange
    ) -> None:
        if change == DestinationChange.DELETED or not destination.enabled:
            self._inactive.add(destination.id)
            self._destinations.pop(destination.id, None)
            self._abandon_destination(destination.id, change)
            if change == DestinationChange.DELETED:
                self.worker.breakers.remove(destination.id)
            return

        self._inactive.discard(destination.id)
        if destination.id in self._destinations:
            # Retries pick up url and token edits
            self._destinations[destination.id] = destination

    def _abandon_destination(self, destination_id: str, change: DestinationChange) -> None:
        tasks = [t for t in self._by_destination.get(destination_id, ()) if not t.finished]
        if not tasks:
            return

        logger.info(
            "Abandoning deliveries for destination",
            extra={"destination_id": destination_id, "change": change.value, "count": len(tasks)},
        )
        loop = asyncio.get_running_loop()
        for task in tasks:
            if task.abandon_requested:
                continue
            task.abandon_requested = True

            handle = self._timers.pop(task, None)
            if handle is not None:
                handle.cancel()
                self._track(
                    loop.create_task(
                        self._finish(task, PairState.ABANDONED, f"destination {change.value}")
                    )
                )
                continue

            runner = self._cancellable.get(task)
            if runner is not None:
                runner.cancel()
            # Otherwise the attempt already returned; _dispatch sees the flag

    @property
    def stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "running": self._running,
            "in_flight": self._in_flight,
            "outstanding_events": len(self._trackers),
            "scheduled_retries": len(self._timers),
            "dispatched_count": self._dispatched_count,
            "delivered_count": self._delivered_count,
            "dead_lettered_count": self._dead_lettered_count,
            "abandoned_count": self._abandoned_count,
            "projects": {
                pid: {
                    "outstanding_events": s.outstanding_events,
                    "in_flight": s.in_flight,
                    "pairs": len(s.tasks),
                }
                for pid, s in self._projects.items()
            },
        }

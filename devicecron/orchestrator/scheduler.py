"""Devicecron scheduler: the due-task loop and its continuous driver.

:class:`Scheduler` owns the queue of :class:`~devicecron.core.models.ScheduledTask`
entries and dispatches whatever is due each time :meth:`Scheduler.tick` runs.
:func:`run_continuous` is the process-level timer that calls ``tick()`` on a
fixed interval.

Tick
~~~~
1. Populate the registry on first use (cold start, or after a population
   failure on a previous tick).
2. Extract every entry whose ``next_run`` is at or before *now*, in
   ascending ``next_run`` order.
3. Hand each one to its own :class:`asyncio.Task` and return immediately.

Dispatch
~~~~~~~~
Each dispatch claims the shared session, runs the unit's ``execute``,
releases the session, then reinserts the entry with a ``next_run`` computed
from the clock at that moment.  The reinsert sits in a ``finally`` block, so
a unit that raises, times out or is cancelled is still rescheduled exactly
once.  Every dispatch produces one
:class:`~devicecron.core.models.DispatchOutcome`, which is logged and
recorded into :class:`~devicecron.orchestrator.metrics.LifetimeStats`.
Nothing a unit does can propagate into ``tick()``.

Concurrency
~~~~~~~~~~~
The queue is guarded by a :class:`threading.Lock` held only around
synchronous heap operations (never across an ``await``), so reinsertion
cannot be interrupted half-way and :meth:`Scheduler.status` may be called
from another thread.  Registry population is serialised by an
:class:`asyncio.Lock` so overlapping cold ticks populate once.

Typical usage::

    import asyncio
    from devicecron.orchestrator.scheduler import run_continuous

    asyncio.run(run_continuous())
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import signal
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NoReturn

from devicecron.core import events
from devicecron.core.exceptions import SchedulerError, TaskExecutionError
from devicecron.core.logging_config import TICK_ID_CTX
from devicecron.core.models import (
    DispatchOutcome,
    OutcomeKind,
    ScheduledTask,
    TaskResult,
    ms_to_iso,
)
from devicecron.core.recurrence import next_run_for, now_ms
from devicecron.core.settings import Settings
from devicecron.orchestrator.heap import MinHeap
from devicecron.orchestrator.metrics import LifetimeStats, write_stats_file
from devicecron.orchestrator.registry import TaskRegistry
from devicecron.session.capabilities import SessionCapabilities

if TYPE_CHECKING:
    from devicecron.session.manager import SessionManager

__all__ = [
    "HEARTBEAT_STALE_AFTER_S",
    "SHUTDOWN_GRACE_S",
    "Scheduler",
    "SchedulerStatus",
    "TickReport",
    "run_continuous",
]

logger = logging.getLogger(__name__)

#: Threshold for the container health check: the heartbeat is rewritten
#: after every tick, so a file older than this means the loop is stuck.
HEARTBEAT_STALE_AFTER_S: int = 600

#: How long shutdown waits for running dispatches before cancelling them.
SHUTDOWN_GRACE_S: float = 30.0


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass
class TickReport:
    """What one tick did.

    Attributes:
        tick_id: Correlation id carried by every log line of the tick and of
            the dispatches it started.
        dispatched: Names of the entries handed off, in dispatch order.
        next_due_in_s: Seconds until the earliest remaining entry is due,
            ``None`` when the queue is empty.
        queue_size: Entries left in the queue after extraction.
    """

    tick_id: str
    dispatched: list[str] = field(default_factory=list)
    next_due_in_s: float | None = None
    queue_size: int = 0


@dataclass
class SchedulerStatus:
    """Snapshot returned by :meth:`Scheduler.status`."""

    initialized: bool
    queue_size: int
    in_flight: list[str]
    tasks: list[dict[str, Any]]

    def as_dict(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "queueSize": self.queue_size,
            "inFlight": list(self.in_flight),
            "tasks": list(self.tasks),
        }


def _coerce_result(task: str, raw: object) -> TaskResult:
    if isinstance(raw, TaskResult):
        return raw
    if isinstance(raw, Mapping):
        try:
            return TaskResult.model_validate(dict(raw))
        except ValueError as exc:
            raise TaskExecutionError(task, f"malformed result: {exc}") from exc
    raise TaskExecutionError(task, f"execute returned {type(raw).__name__}, expected TaskResult")


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class Scheduler:
    """Owner of the task queue and the dispatches started from it.

    Args:
        registry: Loader that fills the queue on first tick.
        sessions: Shared session manager used by every dispatch.
        task_timeout_s: Upper bound on one dispatch, session setup included.
        clock: Returns the current time in epoch milliseconds.
        rng: Random source for rescheduling jitter.
        stats: Outcome sink; a fresh :class:`LifetimeStats` by default.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        sessions: SessionManager,
        *,
        task_timeout_s: float = 1800.0,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
        stats: LifetimeStats | None = None,
    ) -> None:
        self._registry = registry
        self._sessions = sessions
        self._task_timeout_s = task_timeout_s
        self._clock = clock
        self._rng = rng
        self.stats = stats if stats is not None else LifetimeStats()

        self._heap: MinHeap[ScheduledTask] = MinHeap()
        self._heap_lock = threading.Lock()
        self._populate_lock = asyncio.Lock()
        # Strong references keep fire-and-forget tasks alive until they finish.
        self._in_flight: dict[asyncio.Task[DispatchOutcome], str] = {}
        self._ticks: set[asyncio.Task[TickReport | None]] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._registry.is_initialized

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    def snapshot(self) -> list[ScheduledTask]:
        """Queued entries in ascending ``next_run`` order."""
        with self._heap_lock:
            entries = self._heap.snapshot()
        return sorted(entries, key=lambda e: e.next_run)

    def status(self) -> SchedulerStatus:
        """Return the queue contents without touching it.

        Safe to call from any thread.
        """
        with self._heap_lock:
            entries = self._heap.snapshot()
            tasks = [e.as_status() for e in sorted(entries, key=lambda e: e.next_run)]
            in_flight = sorted(self._in_flight.values())
        return SchedulerStatus(
            initialized=self.initialized,
            queue_size=len(entries),
            in_flight=in_flight,
            tasks=tasks,
        )

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    async def ensure_initialized(self) -> None:
        """Populate the registry once.

        Raises:
            SchedulerError: Population failed; the next call retries.
        """
        if self._registry.is_initialized:
            return
        async with self._populate_lock:
            if self._registry.is_initialized:
                return
            try:
                self._registry.populate(self._heap, self._heap_lock)
            except Exception as exc:
                logger.error(
                    "Task registry population failed: %s",
                    exc,
                    exc_info=True,
                    extra={"event": events.REGISTRY_POPULATE_FAILED},
                )
                raise SchedulerError(f"registry population failed: {exc}") from exc

    async def tick(self) -> TickReport:
        """Dispatch every due entry and return without waiting for them.

        Raises:
            SchedulerError: Registry population failed.  Nothing was
                dispatched; the next tick retries population.
        """
        tick_id = uuid.uuid4().hex[:8]
        token = TICK_ID_CTX.set(tick_id)
        try:
            return await self._tick(tick_id)
        finally:
            TICK_ID_CTX.reset(token)

    def trigger(self) -> asyncio.Task[TickReport | None]:
        """Start a tick in the background.

        The returned task resolves to the :class:`TickReport`, or to
        ``None`` if the tick failed (the failure is logged).
        """
        task = asyncio.create_task(self._safe_tick(), name="devicecron-tick")
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for running ticks and dispatches to finish.

        Args:
            timeout: Overall limit in seconds; ``None`` waits indefinitely.

        Returns:
            ``True`` if nothing is left running.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._ticks or self._in_flight:
            pending: set[asyncio.Task[Any]] = set(self._ticks)
            with self._heap_lock:
                pending.update(self._in_flight)
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            _, still_pending = await asyncio.wait(pending, timeout=remaining)
            if still_pending and remaining is not None:
                return False
        return True

    async def cancel_in_flight(self) -> None:
        """Cancel running dispatches and wait for their cleanup.

        Cancelled entries are still reinserted into the queue.
        """
        with self._heap_lock:
            tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self, grace_s: float = SHUTDOWN_GRACE_S) -> None:
        """Drain (up to *grace_s*), cancel leftovers, close the session."""
        if not await self.drain(timeout=grace_s):
            logger.warning(
                "Dispatches still running after %.0f s; cancelling.",
                grace_s,
            )
            await self.cancel_in_flight()
        await self._sessions.close()
        await self._sessions.driver.close()

    # ------------------------------------------------------------------
    # Internal: tick
    # ------------------------------------------------------------------

    async def _safe_tick(self) -> TickReport | None:
        try:
            return await self.tick()
        except Exception:
            logger.error(
                "Scheduler tick failed; the next trigger starts fresh.",
                exc_info=True,
                extra={"event": events.TICK_ERROR},
            )
            return None

    async def _tick(self, tick_id: str) -> TickReport:
        logger.debug("Checking for due tasks", extra={"event": events.TICK_START})
        await self.ensure_initialized()

        now = self._clock()
        due: list[ScheduledTask] = []
        with self._heap_lock:
            while (head := self._heap.peek_min()) is not None and head.next_run <= now:
                self._heap.extract_min()
                due.append(head)
            queue_size = len(self._heap)
            head = self._heap.peek_min()
            for entry in due:
                self._spawn(entry)

        report = TickReport(
            tick_id=tick_id,
            dispatched=[e.name for e in due],
            next_due_in_s=(head.next_run - now) / 1000 if head is not None else None,
            queue_size=queue_size,
        )
        if not due:
            if head is None:
                logger.info("No tasks scheduled", extra={"event": events.TICK_IDLE})
            else:
                logger.info(
                    "No tasks due. Next task %s in %d seconds",
                    head.name,
                    round(report.next_due_in_s or 0),
                    extra={"event": events.TICK_IDLE},
                )
        return report

    def _spawn(self, entry: ScheduledTask) -> None:
        """Start the dispatch for *entry*.  Heap lock held."""
        task = asyncio.create_task(self._dispatch(entry), name=f"devicecron-task:{entry.name}")
        self._in_flight[task] = entry.name
        task.add_done_callback(self._forget)
        logger.info(
            "Executing task: %s",
            entry.name,
            extra={"event": events.TASK_DISPATCHED},
        )

    def _forget(self, task: asyncio.Task[Any]) -> None:
        with self._heap_lock:
            self._in_flight.pop(task, None)

    # ------------------------------------------------------------------
    # Internal: dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, entry: ScheduledTask) -> DispatchOutcome:
        started_at_ms = self._clock()
        t0 = time.monotonic()
        error: BaseException | None = None
        try:
            try:
                kind, message, error = await asyncio.wait_for(
                    self._execute(entry),
                    timeout=self._task_timeout_s,
                )
            except TimeoutError as exc:
                kind = OutcomeKind.TIMEOUT
                message = f"timed out after {self._task_timeout_s:.0f}s"
                error = exc
        finally:
            next_run = self._reschedule(entry)

        outcome = DispatchOutcome(
            task=entry.name,
            kind=kind,
            message=message,
            started_at_ms=started_at_ms,
            duration_s=time.monotonic() - t0,
            next_run=next_run,
            error=error,
        )
        self._record(outcome)
        return outcome

    async def _execute(
        self, entry: ScheduledTask
    ) -> tuple[OutcomeKind, str, BaseException | None]:
        try:
            await self._sessions.acquire()
        except Exception as exc:
            return OutcomeKind.SESSION_UNAVAILABLE, f"session unavailable: {exc}", exc

        try:
            raw = await entry.unit.execute(SessionCapabilities(self._sessions))
            result = _coerce_result(entry.name, raw)
        except Exception as exc:
            return OutcomeKind.ERROR, str(exc) or type(exc).__name__, exc
        finally:
            await self._sessions.release()

        kind = OutcomeKind.SUCCEEDED if result.success else OutcomeKind.FAILED
        return kind, result.message, None

    def _reschedule(self, entry: ScheduledTask) -> int:
        entry.next_run = next_run_for(entry.recurrence, self._clock(), rng=self._rng)
        with self._heap_lock:
            self._heap.insert(entry)
        logger.info(
            "Rescheduled %s for %s",
            entry.name,
            ms_to_iso(entry.next_run),
            extra={"event": events.TASK_RESCHEDULED},
        )
        return entry.next_run

    def _record(self, outcome: DispatchOutcome) -> None:
        """Single sink for dispatch outcomes: log, then count."""
        if outcome.succeeded:
            logger.info(
                "Task %s completed successfully in %.1f s: %s",
                outcome.task,
                outcome.duration_s,
                outcome.message,
                extra={"event": events.TASK_SUCCEEDED},
            )
        elif outcome.kind is OutcomeKind.ERROR:
            logger.error(
                "Error executing task %s: %s",
                outcome.task,
                outcome.message,
                exc_info=outcome.error,
                extra={"event": events.TASK_FAILED},
            )
        else:
            logger.warning(
                "Task %s %s: %s",
                outcome.task,
                "failed" if outcome.kind is OutcomeKind.FAILED else str(outcome.kind),
                outcome.message,
                extra={"event": events.TASK_FAILED},
            )
        self.stats.record(outcome)


# ---------------------------------------------------------------------------
# Health-check heartbeat
# ---------------------------------------------------------------------------


def _write_heartbeat(path: str) -> None:
    """Write the current epoch timestamp to the heartbeat file.

    Called after every tick (success *and* failure) so a container health
    check can tell a live-but-failing process from a hung one.  An empty
    *path* disables it; write errors are logged and never propagated.
    """
    if not path:
        return
    try:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(str(time.time()))
    except OSError:
        logger.warning("Failed to write heartbeat file '%s'.", path, exc_info=True)


# ---------------------------------------------------------------------------
# Continuous driver
# ---------------------------------------------------------------------------


async def _tick_loop(scheduler: Scheduler, settings: Settings) -> NoReturn:
    """Tick forever, every ``tick_interval_s`` seconds.

    A failed tick is logged and the loop carries on; the heartbeat and stats
    file are written either way.
    """
    logger.info(
        "Scheduler loop started, ticking every %.0f s.",
        settings.tick_interval_s,
    )
    while True:
        try:
            await scheduler.tick()
        except Exception:
            logger.exception(
                "Unhandled exception in scheduler tick; will retry after interval.",
                extra={"event": events.TICK_ERROR},
            )

        _write_heartbeat(settings.heartbeat_path)
        write_stats_file(scheduler.stats, settings.stats_path)
        if scheduler.stats.dispatches:
            logger.debug("%s", scheduler.stats.format_summary())

        await asyncio.sleep(settings.tick_interval_s)


async def run_continuous(
    settings: Settings | None = None,
    scheduler: Scheduler | None = None,
) -> NoReturn:
    """Run the scheduler until the process is stopped.

    A ``SIGTERM`` handler is registered on the running loop.  On ``SIGTERM``
    (e.g. ``docker stop``) the tick loop is cancelled, running dispatches
    get :data:`SHUTDOWN_GRACE_S` to finish, and the session is closed.
    ``SIGINT`` follows the default asyncio behaviour.

    Args:
        settings: Application settings.  Loaded from environment if ``None``.
        scheduler: Pre-built scheduler; built from *settings* if ``None``.

    Raises:
        asyncio.CancelledError: On shutdown, after cleanup.
    """
    if settings is None:
        settings = Settings()
    if scheduler is None:
        from devicecron.orchestrator.runner import build_scheduler  # noqa: PLC0415

        scheduler = build_scheduler(settings)

    loop_task = asyncio.create_task(
        _tick_loop(scheduler, settings),
        name="devicecron-tick-loop",
    )

    loop = asyncio.get_running_loop()
    # One-element mutable cell so the inner closure can write to it.
    _shutdown_signal: list[str] = []

    def _request_graceful_shutdown(signame: str) -> None:
        if not _shutdown_signal:
            _shutdown_signal.append(signame)
            logger.info(
                "Received %s; graceful shutdown requested, cancelling tick loop.",
                signame,
            )
        loop_task.cancel()

    loop.add_signal_handler(signal.SIGTERM, lambda: _request_graceful_shutdown("SIGTERM"))

    try:
        await loop_task
    except (asyncio.CancelledError, KeyboardInterrupt):
        loop_task.cancel()
        await asyncio.gather(loop_task, return_exceptions=True)
        await scheduler.shutdown()
        if _shutdown_signal:
            logger.info("Graceful shutdown complete (signal: %s).", _shutdown_signal[0])
        else:
            logger.info("Continuous loop cancelled; scheduler stopped.")
        raise
    finally:
        with contextlib.suppress(Exception):
            loop.remove_signal_handler(signal.SIGTERM)

    # The tick loop never returns; the except block always re-raises.
    raise RuntimeError("run_continuous exited unexpectedly")

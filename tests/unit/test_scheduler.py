"""Unit tests for the scheduler loop, dispatch supervision and the runners.

Tests cover:
- ``Scheduler.tick`` on a cold scheduler, with nothing due, and with due
  entries; concurrent ticks; population failure.
- Dispatch outcomes: success, reported failure, exception, bad return
  value, no session, timeout, cancellation.  Every one must leave the
  entry back in the queue exactly once.
- ``status`` / ``drain`` / ``shutdown`` / ``trigger``.
- ``run_once``, ``build_scheduler``, ``_tick_loop`` and ``run_continuous``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from devicecron.core import events
from devicecron.core.exceptions import SchedulerError, SessionCommandError
from devicecron.core.logging_config import TICK_ID_CTX
from devicecron.core.models import OutcomeKind, Recurrence, TaskResult
from devicecron.core.settings import Settings
from devicecron.orchestrator.metrics import LifetimeStats
from devicecron.orchestrator.registry import TaskRegistry
from devicecron.orchestrator.runner import build_scheduler, run_once
from devicecron.orchestrator.scheduler import (
    Scheduler,
    _tick_loop,
    _write_heartbeat,
    run_continuous,
)
from devicecron.session.capabilities import SessionCapabilities
from devicecron.session.manager import SessionManager, SessionState
from devicecron.tasks.base import BaseTask

DAY = 86_400
HOUR = 3_600

Execute = Callable[[SessionCapabilities], Awaitable[Any]]


def _unit(
    name: str, execute: Execute, *, period: int = HOUR, position: int = 0
) -> type[BaseTask]:
    async def _execute(self: BaseTask, session: SessionCapabilities) -> Any:
        return await execute(session)

    namespace = {
        "name": name,
        "schedule": Recurrence(period=period, position=position),
        "execute": _execute,
    }
    return type(BaseTask)(f"Unit_{name}", (BaseTask,), namespace)


async def _ok(session: SessionCapabilities) -> TaskResult:
    return TaskResult.ok("done")


@pytest.fixture()
def make_scheduler(clock: Any, manager: SessionManager) -> Callable[..., Scheduler]:
    def _make(*units: type[BaseTask], **kwargs: Any) -> Scheduler:
        registry = TaskRegistry([], units=units, clock=clock)
        return Scheduler(registry, manager, clock=clock, **kwargs)

    return _make


def _names(scheduler: Scheduler) -> list[str]:
    return [e.name for e in scheduler.snapshot()]


# ---------------------------------------------------------------------------
# Tick
# ---------------------------------------------------------------------------


class TestTick:
    async def test_cold_tick_populates_and_reports_next_due(
        self, make_scheduler: Callable[..., Scheduler]
    ) -> None:
        scheduler = make_scheduler(
            _unit("midnight", _ok, period=DAY, position=0),
            _unit("noon", _ok, period=DAY, position=12 * HOUR),
            _unit("one_am", _ok, period=DAY, position=HOUR),
        )
        assert scheduler.initialized is False

        report = await scheduler.tick()

        assert scheduler.initialized is True
        assert report.dispatched == []
        assert report.queue_size == 3
        assert report.next_due_in_s == 3_600.0
        assert _names(scheduler) == ["one_am", "noon", "midnight"]
        assert [e.next_run for e in scheduler.snapshot()] == [3_600_000, 43_200_000, 86_400_000]

    async def test_empty_queue(self, make_scheduler: Callable[..., Scheduler]) -> None:
        report = await make_scheduler().tick()
        assert report.next_due_in_s is None
        assert report.queue_size == 0

    async def test_due_task_dispatched_and_rescheduled(
        self,
        make_scheduler: Callable[..., Scheduler],
        clock: Any,
        fake_driver: Any,
        manager: SessionManager,
    ) -> None:
        scheduler = make_scheduler(
            _unit("one_am", _ok, period=DAY, position=HOUR),
            _unit("noon", _ok, period=DAY, position=12 * HOUR),
        )
        await scheduler.ensure_initialized()
        clock.advance(HOUR)

        report = await scheduler.tick()
        assert report.dispatched == ["one_am"]
        assert report.queue_size == 1

        assert await scheduler.drain() is True
        entries = {e.name: e for e in scheduler.snapshot()}
        assert entries["one_am"].next_run == (DAY + HOUR) * 1000
        assert scheduler.stats.tasks["one_am"].succeeded == 1
        # One session per execution: opened before, closed after.
        assert fake_driver.disconnected == ["session-1"]
        assert manager.state is SessionState.ABSENT

    async def test_due_tasks_dispatched_in_next_run_order(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        scheduler = make_scheduler(
            _unit("c", _ok, position=30),
            _unit("a", _ok, position=10),
            _unit("b", _ok, position=20),
        )
        await scheduler.ensure_initialized()
        clock.advance(100)
        report = await scheduler.tick()
        assert report.dispatched == ["a", "b", "c"]
        await scheduler.drain()

    async def test_tick_does_not_wait_for_dispatch(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        release = asyncio.Event()

        async def slow(session: SessionCapabilities) -> TaskResult:
            await release.wait()
            return TaskResult.ok()

        scheduler = make_scheduler(_unit("slow", slow, position=10))
        await scheduler.ensure_initialized()
        clock.advance(10)

        report = await scheduler.tick()
        assert report.dispatched == ["slow"]
        status = scheduler.status()
        assert status.in_flight == ["slow"]
        assert status.queue_size == 0

        release.set()
        assert await scheduler.drain() is True
        assert scheduler.status().in_flight == []
        assert _names(scheduler) == ["slow"]

    async def test_concurrent_ticks_dispatch_once(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        scheduler = make_scheduler(_unit("once", _ok, position=10))
        reports = await asyncio.gather(*(scheduler.tick() for _ in range(5)))
        assert all(r.dispatched == [] for r in reports)

        clock.advance(10)
        reports = await asyncio.gather(*(scheduler.tick() for _ in range(5)))
        assert sum(len(r.dispatched) for r in reports) == 1
        await scheduler.drain()
        assert _names(scheduler) == ["once"]

    async def test_dispatch_inherits_tick_id(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        seen: list[str] = []

        async def record(session: SessionCapabilities) -> TaskResult:
            seen.append(TICK_ID_CTX.get())
            return TaskResult.ok()

        scheduler = make_scheduler(_unit("rec", record, position=10))
        await scheduler.ensure_initialized()
        clock.advance(10)
        report = await scheduler.tick()
        await scheduler.drain()
        assert seen == [report.tick_id]
        assert TICK_ID_CTX.get() == "-"

    async def test_population_failure_retried_next_tick(
        self, make_scheduler: Callable[..., Scheduler], caplog: pytest.LogCaptureFixture
    ) -> None:
        scheduler = make_scheduler(_unit("a", _ok, position=10))
        with (
            patch.object(
                scheduler.registry, "_iter_units", side_effect=RuntimeError("disk gone")
            ),
            caplog.at_level(logging.ERROR),
            pytest.raises(SchedulerError, match="disk gone"),
        ):
            await scheduler.tick()

        assert scheduler.initialized is False
        assert any(
            getattr(r, "event", None) == events.REGISTRY_POPULATE_FAILED for r in caplog.records
        )

        report = await scheduler.tick()
        assert scheduler.initialized is True
        assert report.queue_size == 1


# ---------------------------------------------------------------------------
# Dispatch outcomes
# ---------------------------------------------------------------------------


class TestDispatchOutcomes:
    async def _run_due(self, scheduler: Scheduler, clock: Any, at: int = 60) -> None:
        await scheduler.ensure_initialized()
        clock.advance(at)
        await scheduler.tick()
        assert await scheduler.drain(timeout=5) is True

    async def test_throwing_task_rescheduled_and_next_tick_safe(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        async def boom(session: SessionCapabilities) -> TaskResult:
            raise RuntimeError("script crashed")

        scheduler = make_scheduler(_unit("boom", boom, period=60, position=0))
        await self._run_due(scheduler, clock)

        entries = scheduler.snapshot()
        assert [e.name for e in entries] == ["boom"]
        assert entries[0].next_run > 60_000
        stats = scheduler.stats.tasks["boom"]
        assert stats.errors == 1
        assert stats.last_outcome is OutcomeKind.ERROR
        assert "script crashed" in stats.last_message

        await scheduler.tick()

    async def test_reported_failure(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        async def fail(session: SessionCapabilities) -> TaskResult:
            return TaskResult.failed("button not found")

        scheduler = make_scheduler(_unit("fail", fail, period=60))
        await self._run_due(scheduler, clock)
        assert scheduler.stats.tasks["fail"].failed == 1
        assert scheduler.stats.tasks["fail"].last_message == "button not found"
        assert _names(scheduler) == ["fail"]

    async def test_mapping_result_accepted(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        async def mapping(session: SessionCapabilities) -> dict[str, Any]:
            return {"success": True, "message": "ok", "data": {"n": 3}}

        scheduler = make_scheduler(_unit("mapping", mapping, period=60))
        await self._run_due(scheduler, clock)
        assert scheduler.stats.tasks["mapping"].succeeded == 1

    async def test_bad_return_value_is_error(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        async def junk(session: SessionCapabilities) -> int:
            return 42

        scheduler = make_scheduler(_unit("junk", junk, period=60))
        await self._run_due(scheduler, clock)
        stats = scheduler.stats.tasks["junk"]
        assert stats.errors == 1
        assert "expected TaskResult" in stats.last_message

    async def test_session_unavailable(
        self, make_scheduler: Callable[..., Scheduler], clock: Any, fake_driver: Any
    ) -> None:
        ran: list[bool] = []

        async def never(session: SessionCapabilities) -> TaskResult:
            ran.append(True)
            return TaskResult.ok()

        fake_driver.connect_error = RuntimeError("connection refused")
        scheduler = make_scheduler(_unit("needs_device", never, period=60))
        await self._run_due(scheduler, clock)

        assert ran == []
        assert scheduler.stats.tasks["needs_device"].session_unavailable == 1
        assert _names(scheduler) == ["needs_device"]

    async def test_timeout_rescheduled_and_session_released(
        self,
        make_scheduler: Callable[..., Scheduler],
        clock: Any,
        manager: SessionManager,
        fake_driver: Any,
    ) -> None:
        async def hang(session: SessionCapabilities) -> TaskResult:
            await asyncio.sleep(10)
            return TaskResult.ok()

        scheduler = make_scheduler(_unit("hang", hang, period=60), task_timeout_s=0.05)
        await self._run_due(scheduler, clock)

        assert scheduler.stats.tasks["hang"].timeouts == 1
        assert _names(scheduler) == ["hang"]
        assert manager.users == 0
        assert fake_driver.disconnected == ["session-1"]

    async def test_session_crash_recovered_inside_task(
        self, make_scheduler: Callable[..., Scheduler], clock: Any, fake_driver: Any
    ) -> None:
        async def read(session: SessionCapabilities) -> TaskResult:
            source = await session.page_source()
            return TaskResult.ok(f"{len(source)} chars")

        fake_driver.scripts["page_source"] = [
            SessionCommandError("page_source", "instrumentation process is not running"),
            "<hierarchy/>",
        ]
        scheduler = make_scheduler(_unit("read", read, period=60))
        await self._run_due(scheduler, clock)

        assert scheduler.stats.tasks["read"].succeeded == 1
        assert fake_driver.connect_calls == 2

    async def test_overlapping_tasks_share_one_session(
        self, make_scheduler: Callable[..., Scheduler], clock: Any, fake_driver: Any
    ) -> None:
        gate = asyncio.Event()

        async def wait(session: SessionCapabilities) -> TaskResult:
            await gate.wait()
            return TaskResult.ok()

        scheduler = make_scheduler(
            _unit("first", wait, period=60), _unit("second", wait, period=60)
        )
        await scheduler.ensure_initialized()
        clock.advance(60)
        await scheduler.tick()
        await asyncio.sleep(0.01)
        gate.set()
        await scheduler.drain()

        assert fake_driver.connect_calls == 1
        assert fake_driver.disconnected == ["session-1"]

    async def test_cancelled_dispatch_still_rescheduled(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        async def hang(session: SessionCapabilities) -> TaskResult:
            await asyncio.sleep(10)
            return TaskResult.ok()

        scheduler = make_scheduler(_unit("hang", hang, period=60))
        await scheduler.ensure_initialized()
        clock.advance(60)
        await scheduler.tick()
        await asyncio.sleep(0.01)

        await scheduler.cancel_in_flight()
        assert _names(scheduler) == ["hang"]
        assert scheduler.stats.dispatches == 0


# ---------------------------------------------------------------------------
# Status / drain / trigger / shutdown
# ---------------------------------------------------------------------------


class TestControl:
    async def test_status_dict(self, make_scheduler: Callable[..., Scheduler]) -> None:
        scheduler = make_scheduler(_unit("a", _ok, period=DAY, position=HOUR))
        assert scheduler.status().as_dict() == {
            "initialized": False,
            "queueSize": 0,
            "inFlight": [],
            "tasks": [],
        }
        await scheduler.ensure_initialized()
        status = (await asyncio.to_thread(scheduler.status)).as_dict()
        assert status["initialized"] is True
        assert status["queueSize"] == 1
        assert status["tasks"][0]["name"] == "a"
        assert status["tasks"][0]["nextRun"] == "1970-01-01T01:00:00.000+00:00"

    async def test_drain_timeout(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        async def hang(session: SessionCapabilities) -> TaskResult:
            await asyncio.sleep(10)
            return TaskResult.ok()

        scheduler = make_scheduler(_unit("hang", hang, period=60))
        await scheduler.ensure_initialized()
        clock.advance(60)
        await scheduler.tick()
        assert await scheduler.drain(timeout=0.02) is False
        await scheduler.cancel_in_flight()

    async def test_trigger_swallows_failures(
        self, make_scheduler: Callable[..., Scheduler], caplog: pytest.LogCaptureFixture
    ) -> None:
        scheduler = make_scheduler()
        with (
            patch.object(scheduler.registry, "_iter_units", side_effect=RuntimeError("boom")),
            caplog.at_level(logging.ERROR),
        ):
            result = await scheduler.trigger()
        assert result is None
        assert any(getattr(r, "event", None) == events.TICK_ERROR for r in caplog.records)

    async def test_trigger_returns_report(
        self, make_scheduler: Callable[..., Scheduler], clock: Any
    ) -> None:
        scheduler = make_scheduler(_unit("a", _ok, period=60))
        await scheduler.ensure_initialized()
        clock.advance(60)
        report = await scheduler.trigger()
        assert report is not None
        assert report.dispatched == ["a"]
        assert await scheduler.drain() is True

    async def test_shutdown_cancels_and_closes(
        self,
        make_scheduler: Callable[..., Scheduler],
        clock: Any,
        fake_driver: Any,
        manager: SessionManager,
    ) -> None:
        async def hang(session: SessionCapabilities) -> TaskResult:
            await asyncio.sleep(10)
            return TaskResult.ok()

        scheduler = make_scheduler(_unit("hang", hang, period=60))
        await scheduler.ensure_initialized()
        clock.advance(60)
        await scheduler.tick()
        await asyncio.sleep(0.01)

        await scheduler.shutdown(grace_s=0.02)
        assert scheduler.status().in_flight == []
        assert manager.state is SessionState.ABSENT
        assert fake_driver.closed is True


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class TestRunner:
    def test_build_scheduler(self, clean_env: None, fake_driver: Any) -> None:
        settings = Settings(task_modules="devicecron.tasks", task_timeout_s=600)
        scheduler = build_scheduler(settings, driver=fake_driver)
        assert isinstance(scheduler, Scheduler)
        assert scheduler.sessions.driver is fake_driver
        assert scheduler.initialized is False

    async def test_run_once(
        self,
        clean_env: None,
        make_scheduler: Callable[..., Scheduler],
        clock: Any,
        fake_driver: Any,
    ) -> None:
        scheduler = make_scheduler(_unit("a", _ok, period=60), _unit("b", _ok, period=DAY))
        await scheduler.ensure_initialized()
        clock.advance(60)

        report = await run_once(settings=Settings(), scheduler=scheduler)

        assert report.dispatched == ["a"]
        assert scheduler.stats.dispatches == 1
        assert fake_driver.closed is True


# ---------------------------------------------------------------------------
# Continuous driver
# ---------------------------------------------------------------------------


@pytest.fixture()
def loop_settings(tmp_path: Path) -> MagicMock:
    s = MagicMock(spec=Settings)
    s.tick_interval_s = 5.0
    s.heartbeat_path = str(tmp_path / "heartbeat")
    s.stats_path = str(tmp_path / "stats.json")
    return s


class TestContinuous:
    def test_heartbeat_written(self, tmp_path: Path) -> None:
        path = tmp_path / "hb"
        _write_heartbeat(str(path))
        assert float(path.read_text()) > 0

    def test_heartbeat_disabled_and_errors_swallowed(self, tmp_path: Path) -> None:
        _write_heartbeat("")
        _write_heartbeat(str(tmp_path))  # a directory: OSError is logged, not raised

    async def test_tick_loop_survives_tick_errors(self, loop_settings: MagicMock) -> None:
        scheduler = MagicMock()
        scheduler.tick = AsyncMock(side_effect=RuntimeError("tick failed"))
        scheduler.stats = LifetimeStats()
        sleeps: list[float] = []

        async def fake_sleep(interval: float) -> None:
            sleeps.append(interval)
            raise asyncio.CancelledError

        with (
            patch("asyncio.sleep", side_effect=fake_sleep),
            pytest.raises(asyncio.CancelledError),
        ):
            await _tick_loop(scheduler, loop_settings)

        assert sleeps == [5.0]
        scheduler.tick.assert_awaited_once()
        assert Path(loop_settings.heartbeat_path).exists()
        stats = json.loads(Path(loop_settings.stats_path).read_text())
        assert stats["dispatches"] == 0

    async def test_sigterm_shuts_down(self, loop_settings: MagicMock) -> None:
        scheduler = MagicMock()
        scheduler.shutdown = AsyncMock()
        handlers: dict[int, Callable[[], None]] = {}

        async def forever(scheduler: Any, settings: Any) -> None:
            await asyncio.Event().wait()

        loop = asyncio.get_running_loop()
        with (
            patch("devicecron.orchestrator.scheduler._tick_loop", side_effect=forever),
            patch.object(
                loop,
                "add_signal_handler",
                side_effect=lambda sig, cb: handlers.__setitem__(sig, cb),
            ),
            patch.object(loop, "remove_signal_handler") as remove,
        ):
            task = asyncio.create_task(
                run_continuous(settings=loop_settings, scheduler=scheduler)
            )
            await asyncio.sleep(0.01)
            handlers[signal.SIGTERM]()
            with pytest.raises(asyncio.CancelledError):
                await task

        scheduler.shutdown.assert_awaited_once()
        remove.assert_called_once_with(signal.SIGTERM)

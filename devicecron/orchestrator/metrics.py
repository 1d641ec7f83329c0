"""Cumulative dispatch statistics for the Devicecron scheduler.

Every dispatch outcome is recorded into one :class:`LifetimeStats` instance
owned by the scheduler.  Two output paths:

1. **Log summary**: :meth:`LifetimeStats.format_summary` returns a
   human-readable string suitable for a single ``logger.info()`` call.
2. **JSON stats file**: :func:`write_stats_file` serialises
   :meth:`LifetimeStats.as_dict` to ``STATS_PATH`` (default
   ``/tmp/devicecron_stats.json``).  Operators can inspect it with
   ``docker exec <container> cat /tmp/devicecron_stats.json``.

The stats file is rewritten after every tick in continuous mode.  Write
errors are logged at WARNING level and never propagated.

Typical usage::

    from devicecron.orchestrator.metrics import LifetimeStats, write_stats_file

    stats = LifetimeStats()
    stats.record(outcome)
    write_stats_file(stats, settings.stats_path)
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

from devicecron.core.models import DispatchOutcome, OutcomeKind, ms_to_iso

__all__ = [
    "TaskLifetimeStats",
    "LifetimeStats",
    "write_stats_file",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class TaskLifetimeStats:
    """Accumulated counters for a single unit.

    Attributes:
        task: Unit name.
        runs: Completed dispatches of any kind.
        succeeded: Dispatches where the unit reported success.
        failed: Dispatches where the unit reported ``success=False``.
        errors: Dispatches where ``execute`` raised.
        timeouts: Dispatches cut off by ``task_timeout_s``.
        session_unavailable: Dispatches that never got a session.
        last_outcome: Kind of the most recent dispatch.
        last_message: Message of the most recent dispatch.
        last_started_at_ms: Start time of the most recent dispatch.
        last_duration_s: Duration of the most recent dispatch.
        total_duration_s: Sum of all dispatch durations.
    """

    task: str
    runs: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: int = 0
    timeouts: int = 0
    session_unavailable: int = 0
    last_outcome: OutcomeKind | None = None
    last_message: str = ""
    last_started_at_ms: int | None = None
    last_duration_s: float = 0.0
    total_duration_s: float = 0.0

    @property
    def unsuccessful(self) -> int:
        return self.runs - self.succeeded

    def as_dict(self) -> dict[str, object]:
        return {
            "runs": self.runs,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": self.errors,
            "timeouts": self.timeouts,
            "session_unavailable": self.session_unavailable,
            "last_outcome": str(self.last_outcome) if self.last_outcome else None,
            "last_message": self.last_message,
            "last_started_at": (
                ms_to_iso(self.last_started_at_ms) if self.last_started_at_ms is not None else None
            ),
            "last_duration_s": round(self.last_duration_s, 3),
            "total_duration_s": round(self.total_duration_s, 3),
        }


_COUNTER_BY_KIND: dict[OutcomeKind, str] = {
    OutcomeKind.SUCCEEDED: "succeeded",
    OutcomeKind.FAILED: "failed",
    OutcomeKind.ERROR: "errors",
    OutcomeKind.TIMEOUT: "timeouts",
    OutcomeKind.SESSION_UNAVAILABLE: "session_unavailable",
}


@dataclass
class LifetimeStats:
    """Cumulative statistics across every dispatch since startup.

    Attributes:
        dispatches: Total completed dispatches.
        succeeded: Dispatches that reported success.
        unsuccessful: Dispatches that ended any other way.
    """

    dispatches: int = 0
    succeeded: int = 0
    unsuccessful: int = 0

    # --- private (excluded from repr for brevity) ---
    _start_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _started_at: datetime = field(
        default_factory=lambda: datetime.now(UTC),
        repr=False,
    )
    _tasks: dict[str, TaskLifetimeStats] = field(
        default_factory=dict,
        repr=False,
    )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def uptime_s(self) -> float:
        """Seconds since this :class:`LifetimeStats` instance was created."""
        return time.monotonic() - self._start_monotonic

    @property
    def tasks(self) -> dict[str, TaskLifetimeStats]:
        """Per-unit lifetime stats, keyed by unit name."""
        return self._tasks

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def record(self, outcome: DispatchOutcome) -> None:
        """Accumulate one dispatch outcome."""
        self.dispatches += 1
        if outcome.succeeded:
            self.succeeded += 1
        else:
            self.unsuccessful += 1

        t = self._tasks.get(outcome.task)
        if t is None:
            t = self._tasks[outcome.task] = TaskLifetimeStats(task=outcome.task)
        t.runs += 1
        counter = _COUNTER_BY_KIND[outcome.kind]
        setattr(t, counter, getattr(t, counter) + 1)
        t.last_outcome = outcome.kind
        t.last_message = outcome.message
        t.last_started_at_ms = outcome.started_at_ms
        t.last_duration_s = outcome.duration_s
        t.total_duration_s += outcome.duration_s

    # ------------------------------------------------------------------
    # Serialisation / formatting
    # ------------------------------------------------------------------

    def format_summary(self) -> str:
        """Return a human-readable multi-line lifetime summary for logging.

        Example output::

            lifetime stats | uptime: 2h05m10s | dispatches=14 succeeded=12 unsuccessful=2
              lock_guard: runs=3 ok=3
              screen_probe: runs=11 ok=9 failed=1 errors=1 last=error
        """
        hours, rem = divmod(int(self.uptime_s), 3600)
        minutes, seconds = divmod(rem, 60)
        lines = [
            f"lifetime stats | uptime: {hours}h{minutes:02d}m{seconds:02d}s | "
            f"dispatches={self.dispatches} succeeded={self.succeeded} "
            f"unsuccessful={self.unsuccessful}"
        ]
        for t in sorted(self._tasks.values(), key=lambda x: x.task):
            parts = [f"runs={t.runs}", f"ok={t.succeeded}"]
            for label, count in (
                ("failed", t.failed),
                ("errors", t.errors),
                ("timeouts", t.timeouts),
                ("no_session", t.session_unavailable),
            ):
                if count:
                    parts.append(f"{label}={count}")
            if t.last_outcome is not None and t.last_outcome is not OutcomeKind.SUCCEEDED:
                parts.append(f"last={t.last_outcome}")
            lines.append(f"  {t.task}: {' '.join(parts)}")
        return "\n".join(lines)

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of lifetime stats.

        The ``started_at`` key is an ISO-8601 string in UTC.
        ``uptime_s`` is rounded to one decimal place.
        """
        return {
            "started_at": self._started_at.isoformat(),
            "uptime_s": round(self.uptime_s, 1),
            "dispatches": self.dispatches,
            "succeeded": self.succeeded,
            "unsuccessful": self.unsuccessful,
            "tasks": {name: t.as_dict() for name, t in sorted(self._tasks.items())},
        }


# ---------------------------------------------------------------------------
# Stats file writer
# ---------------------------------------------------------------------------


def write_stats_file(stats: LifetimeStats, path: str) -> None:
    """Write a JSON snapshot of *stats* to *path*.

    An empty *path* disables the write.  Errors are logged at ``WARNING``
    level and never propagated.
    """
    if not path:
        return
    try:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(stats.as_dict(), fh, indent=2)
    except OSError:
        logger.warning("Failed to write stats file '%s'.", path, exc_info=True)

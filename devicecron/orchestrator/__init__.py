"""Task queue, registry, dispatch loop, and lifetime statistics.

Public API
----------
* :class:`~devicecron.orchestrator.scheduler.Scheduler`: owns the queue and
  dispatches due tasks on every ``tick()``.
* :func:`~devicecron.orchestrator.scheduler.run_continuous`: default runtime
  entry-point; ticks on a fixed interval until SIGTERM.
* :func:`~devicecron.orchestrator.runner.run_once`: single tick, used by
  ``--once`` mode and tests.
* :func:`~devicecron.orchestrator.runner.build_scheduler`: wire a scheduler
  from settings.
* :class:`~devicecron.orchestrator.registry.TaskRegistry`: loads ``TASKS``
  tables into the queue.
* :class:`~devicecron.orchestrator.heap.MinHeap`: the queue itself.
* :class:`~devicecron.orchestrator.metrics.LifetimeStats`: per-task
  dispatch counters; :func:`~devicecron.orchestrator.metrics.write_stats_file`
  serialises them for operators.
"""

from devicecron.orchestrator.heap import MinHeap
from devicecron.orchestrator.metrics import (
    LifetimeStats,
    TaskLifetimeStats,
    write_stats_file,
)
from devicecron.orchestrator.registry import TaskRegistry, resolve_schedule
from devicecron.orchestrator.runner import build_scheduler, run_once
from devicecron.orchestrator.scheduler import (
    Scheduler,
    SchedulerStatus,
    TickReport,
    run_continuous,
)

__all__ = [
    # Queue
    "MinHeap",
    # Registry
    "TaskRegistry",
    "resolve_schedule",
    # Scheduler
    "Scheduler",
    "SchedulerStatus",
    "TickReport",
    "run_continuous",
    # Single-tick entry-point
    "build_scheduler",
    "run_once",
    # Lifetime metrics
    "LifetimeStats",
    "TaskLifetimeStats",
    "write_stats_file",
]

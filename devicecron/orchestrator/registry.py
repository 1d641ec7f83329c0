"""Static plugin registry: turns ``TASKS`` tables into queued entries.

Every module named in ``TASK_MODULES`` exposes a module-level ``TASKS``
sequence whose items are :class:`~devicecron.tasks.base.BaseTask` subclasses
or instances.  :meth:`TaskRegistry.populate` imports each module, validates
every unit's schedule, computes its first due time and inserts it into the
scheduler queue.

Failure isolation
-----------------
Population never aborts because of one bad unit:

* a module that fails to import, has no ``TASKS`` table, or holds an entry
  that cannot be instantiated is logged as ``TASK_LOAD_ERROR`` and skipped;
* a unit with no schedule, or with ``enabled=False``, is logged as
  ``TASK_SKIPPED``;
* a unit whose schedule fails validation (missing ``period`` or
  ``position``, ``position >= period``, negative jitter, duplicate name) is
  logged as ``TASK_REJECTED``.

Everything else is scheduled.  Only an unexpected error escaping the whole
scan leaves the registry uninitialised, so the next tick retries from
scratch.  Nothing is inserted into the queue until the scan has finished.

Typical usage::

    registry = TaskRegistry(["devicecron.tasks", "myproject.tasks"])
    registry.populate(heap)
"""

from __future__ import annotations

import contextlib
import importlib
import logging
import random
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from devicecron.core import events
from devicecron.core.exceptions import RecurrenceError, TaskLoadError
from devicecron.core.models import Recurrence, ScheduledTask, ms_to_iso
from devicecron.core.recurrence import next_run_for, now_ms
from devicecron.orchestrator.heap import MinHeap
from devicecron.tasks.base import BaseTask

__all__ = ["TaskRegistry", "resolve_schedule"]

logger = logging.getLogger(__name__)


def resolve_schedule(unit: BaseTask) -> Recurrence | None:
    """Return the unit's validated recurrence, or ``None`` if it is unscheduled.

    Raises:
        RecurrenceError: The declared schedule is malformed.
    """
    schedule = unit.schedule
    if schedule is None:
        return None
    if isinstance(schedule, Recurrence):
        recurrence = schedule
    elif isinstance(schedule, Mapping):
        if schedule.get("enabled", True) is False:
            return None
        try:
            recurrence = Recurrence.model_validate(dict(schedule))
        except ValidationError as exc:
            reasons = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'schedule'}: {err['msg']}"
                for err in exc.errors()
            )
            raise RecurrenceError(unit.name, reasons) from exc
    else:
        raise RecurrenceError(
            unit.name, f"expected a Recurrence or mapping, got {type(schedule).__name__}"
        )
    return recurrence if recurrence.enabled else None


class TaskRegistry:
    """One-shot loader for the process-lifetime set of scheduled units.

    Args:
        task_modules: Dotted module paths, each exposing ``TASKS``.
        units: Extra units registered directly (classes or instances),
            after the modules.
        clock: Returns the current time in epoch milliseconds.
        rng: Random source for the initial jitter draw.

    Attributes:
        skipped: Unit name → reason, for units left out on purpose.
        rejected: Unit name → reason, for units with an invalid schedule.
        load_errors: Messages for modules or entries that failed to load.
    """

    def __init__(
        self,
        task_modules: Sequence[str] = ("devicecron.tasks",),
        *,
        units: Iterable[type[BaseTask] | BaseTask] = (),
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ) -> None:
        self._task_modules = list(task_modules)
        self._extra_units = list(units)
        self._clock = clock
        self._rng = rng
        self._initialized = False
        self._entries: dict[str, ScheduledTask] = {}

        self.skipped: dict[str, str] = {}
        self.rejected: dict[str, str] = {}
        self.load_errors: list[str] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def entries(self) -> dict[str, ScheduledTask]:
        """Scheduled entries keyed by unit name (empty until populated)."""
        return dict(self._entries)

    # ------------------------------------------------------------------
    # Population
    # ------------------------------------------------------------------

    def populate(
        self,
        heap: MinHeap[ScheduledTask],
        lock: threading.Lock | None = None,
    ) -> list[ScheduledTask]:
        """Scan the task tables and insert every accepted unit into *heap*.

        A no-op after the first successful call.

        Args:
            heap: Scheduler queue to fill.
            lock: Held while inserting, if given.

        Returns:
            The entries inserted by this call (empty when already initialised).
        """
        if self._initialized:
            return []

        self.skipped.clear()
        self.rejected.clear()
        self.load_errors.clear()

        now = self._clock()
        accepted: dict[str, ScheduledTask] = {}
        for source, unit in self._iter_units():
            entry = self._schedule_unit(source, unit, now, accepted)
            if entry is not None:
                accepted[entry.name] = entry

        with lock if lock is not None else contextlib.nullcontext():
            for entry in accepted.values():
                heap.insert(entry)

        self._entries = accepted
        self._initialized = True
        logger.info(
            "Task registry populated: %d scheduled, %d skipped, %d rejected, %d load error(s).",
            len(accepted),
            len(self.skipped),
            len(self.rejected),
            len(self.load_errors),
            extra={"event": events.REGISTRY_POPULATED},
        )
        return list(accepted.values())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _iter_units(self) -> Iterable[tuple[str, BaseTask]]:
        for module_path in self._task_modules:
            try:
                table = self._load_table(module_path)
            except TaskLoadError as exc:
                self._record_load_error(exc)
                continue
            for index, item in enumerate(table):
                unit = self._instantiate(f"{module_path}.TASKS[{index}]", item)
                if unit is not None:
                    yield module_path, unit

        for index, item in enumerate(self._extra_units):
            unit = self._instantiate(f"<units>[{index}]", item)
            if unit is not None:
                yield "<units>", unit

    def _load_table(self, module_path: str) -> Sequence[Any]:
        try:
            module = importlib.import_module(module_path)
        except Exception as exc:
            raise TaskLoadError(module_path, f"import failed: {exc}") from exc
        table = getattr(module, "TASKS", None)
        if table is None:
            raise TaskLoadError(module_path, "module has no TASKS table")
        if isinstance(table, (str, bytes)) or not isinstance(table, Iterable):
            raise TaskLoadError(
                module_path, f"TASKS must be a sequence, got {type(table).__name__}"
            )
        return list(table)

    def _instantiate(self, source: str, item: Any) -> BaseTask | None:
        try:
            if isinstance(item, type) and issubclass(item, BaseTask):
                unit = item()
            elif isinstance(item, BaseTask):
                unit = item
            else:
                raise TaskLoadError(source, f"not a BaseTask: {item!r}")
            name = getattr(unit, "name", None)
            if not isinstance(name, str) or not name:
                raise TaskLoadError(source, f"{type(unit).__name__} declares no name")
        except TaskLoadError as exc:
            self._record_load_error(exc)
            return None
        except Exception as exc:
            self._record_load_error(TaskLoadError(source, f"instantiation failed: {exc}"), exc)
            return None
        return unit

    def _schedule_unit(
        self,
        source: str,
        unit: BaseTask,
        now: int,
        accepted: Mapping[str, ScheduledTask],
    ) -> ScheduledTask | None:
        name = unit.name
        if name in accepted:
            duplicate = f"duplicate task name (already loaded from {accepted[name].source})"
            self._reject(RecurrenceError(name, duplicate))
            return None

        try:
            recurrence = resolve_schedule(unit)
        except RecurrenceError as exc:
            self._reject(exc)
            return None

        if recurrence is None:
            reason = "no schedule declared" if unit.schedule is None else "schedule disabled"
            self.skipped[name] = reason
            logger.info(
                "Skipping task %s: %s",
                name,
                reason,
                extra={"event": events.TASK_SKIPPED},
            )
            return None

        entry = ScheduledTask(
            name=name,
            recurrence=recurrence,
            unit=unit,
            next_run=next_run_for(recurrence, now, rng=self._rng),
            source=source,
        )
        logger.info(
            "Scheduled task %s, next run at %s",
            name,
            ms_to_iso(entry.next_run),
            extra={"event": events.TASK_REGISTERED},
        )
        return entry

    def _reject(self, exc: RecurrenceError) -> None:
        self.rejected[exc.task] = str(exc)
        logger.warning(
            "Rejecting task: %s",
            exc,
            extra={"event": events.TASK_REJECTED},
        )

    def _record_load_error(self, exc: TaskLoadError, cause: BaseException | None = None) -> None:
        self.load_errors.append(str(exc))
        logger.error(
            "Error loading task: %s",
            exc,
            exc_info=cause or exc.__cause__,
            extra={"event": events.TASK_LOAD_ERROR},
        )

"""Executable-unit contract for everything the scheduler can run.

Every unit subclasses :class:`BaseTask`, declares a :attr:`name` and a
:attr:`schedule`, and implements :meth:`execute`.  The scheduler never looks
inside a unit: it reads the schedule once at registration, then calls
``execute`` with a :class:`~devicecron.session.capabilities.SessionCapabilities`
each time the unit is due.

Design decisions
----------------
* **Abstract base class** rather than a ``Protocol``: it gives units a
  shared :meth:`describe` helper and lets the registry reject anything that
  is not a unit with a clear message.
* **Schedule as a class variable**: the registry inspects it without
  running any unit code beyond construction.  A plain mapping is accepted
  as well as a :class:`~devicecron.core.models.Recurrence`, so a unit can be
  declared as data.
* **Units are registered statically**: modules listed in ``TASK_MODULES``
  expose a ``TASKS`` table.  No source file is ever evaluated by hand.

Typical usage::

    from devicecron.core.models import Recurrence, TaskResult
    from devicecron.tasks.base import BaseTask


    class DailyCheck(BaseTask):
        name = "daily_check"
        schedule = Recurrence(period=86_400, position=9 * 3600, jitter=600)

        async def execute(self, session):
            if await session.is_locked():
                return TaskResult.ok("device locked")
            return TaskResult.failed("device unlocked")


    TASKS = [DailyCheck]
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, ClassVar

from devicecron.core.models import Recurrence, TaskResult

if TYPE_CHECKING:
    from devicecron.session.capabilities import SessionCapabilities

__all__ = ["BaseTask"]

logger = logging.getLogger(__name__)


class BaseTask(ABC):
    """Abstract base for all schedulable units.

    Attributes:
        name: Unique unit name.  Declared at class level so the registry can
            report it even when construction fails.
        schedule: Recurrence descriptor, ``None`` for units that only run on
            demand.  Either a :class:`Recurrence` or a mapping with
            ``enabled``, ``period``, ``position`` and ``jitter`` (alias
            ``offset``) keys.
        description: Free-form text shown in status output.
    """

    name: ClassVar[str]
    schedule: ClassVar[Recurrence | Mapping[str, Any] | None] = None
    description: ClassVar[str] = ""

    @abstractmethod
    async def execute(self, session: SessionCapabilities) -> TaskResult | Mapping[str, Any]:
        """Run the unit once against a live session.

        Implementations should return a :class:`TaskResult` (or a mapping of
        the same shape).  Raising is allowed: the scheduler logs the error
        and reschedules the unit as usual.
        """

    def describe(self) -> dict[str, Any]:
        schedule = self.schedule
        if isinstance(schedule, Recurrence):
            schedule = schedule.as_dict()
        return {
            "name": self.name,
            "description": self.description,
            "schedule": dict(schedule) if schedule is not None else None,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={getattr(self, 'name', '?')!r}>"

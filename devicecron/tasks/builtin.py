"""Built-in units shipped with Devicecron.

* :class:`LockGuard`: hourly check that the device is locked, locking it if
  a previous script left it open.
* :class:`ScreenProbe`: records the foreground app and the size of the UI
  hierarchy.  Disabled by default; enable it by listing a module with your
  own configured copy in ``TASK_MODULES``.
"""

from __future__ import annotations

import logging

from devicecron.core.models import Recurrence, TaskResult
from devicecron.session.capabilities import SessionCapabilities
from devicecron.tasks.base import BaseTask

__all__ = ["LockGuard", "ScreenProbe"]

logger = logging.getLogger(__name__)


class LockGuard(BaseTask):
    name = "lock_guard"
    description = "Lock the device if it was left unlocked."
    schedule = Recurrence(period=3600, position=0, jitter=300)

    async def execute(self, session: SessionCapabilities) -> TaskResult:
        if await session.is_locked():
            return TaskResult.ok("device already locked", data={"locked": True})

        logger.info("Device found unlocked; locking.")
        await session.lock()
        await session.pause(1000)

        locked = await session.is_locked()
        if not locked:
            return TaskResult.failed("device still unlocked after lock", data={"locked": False})
        return TaskResult.ok("device locked", data={"locked": True})


class ScreenProbe(BaseTask):
    name = "screen_probe"
    description = "Record the foreground package/activity and page-source size."
    schedule = {"enabled": False, "period": 86_400, "position": 9 * 3600, "jitter": 1800}

    async def execute(self, session: SessionCapabilities) -> TaskResult:
        package = await session.current_package()
        activity = await session.current_activity()
        source = await session.page_source()
        return TaskResult.ok(
            f"{package}/{activity}",
            data={"package": package, "activity": activity, "source_chars": len(source)},
        )

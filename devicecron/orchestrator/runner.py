"""Orchestrator entry-point: assemble the components and run one tick.

Component wiring
----------------
:func:`build_scheduler` turns a :class:`~devicecron.core.settings.Settings`
into a ready :class:`~devicecron.orchestrator.scheduler.Scheduler`:

1. A :class:`~devicecron.session.webdriver.WebDriverSession` pointed at
   ``APPIUM_URL`` (unless a driver is supplied).
2. A :class:`~devicecron.session.manager.SessionManager` with the retry,
   timeout and crash-signature settings.
3. A :class:`~devicecron.orchestrator.registry.TaskRegistry` over
   ``TASK_MODULES``.

:func:`run_once` performs a single tick, waits for the dispatches it
started, and tears the session down.  It backs ``--once`` mode and is handy
for cron-style external triggering.

Typical usage::

    import asyncio
    from devicecron.orchestrator.runner import run_once

    report = asyncio.run(run_once())
    print(report.dispatched)
"""

from __future__ import annotations

import logging
import time

from devicecron.core.settings import Settings
from devicecron.orchestrator.registry import TaskRegistry
from devicecron.orchestrator.scheduler import Scheduler, TickReport
from devicecron.session.base import SessionDriver
from devicecron.session.manager import SessionManager
from devicecron.session.webdriver import WebDriverSession

__all__ = ["build_scheduler", "run_once"]

logger = logging.getLogger(__name__)


def build_scheduler(settings: Settings, driver: SessionDriver | None = None) -> Scheduler:
    """Assemble a scheduler from *settings*.

    Args:
        settings: Loaded application settings.
        driver: Session transport.  Defaults to a
            :class:`~devicecron.session.webdriver.WebDriverSession` built
            from the ``APPIUM_*`` settings.

    Returns:
        An uninitialised scheduler; the registry is populated on first tick.
    """
    if driver is None:
        driver = WebDriverSession.from_settings(settings)
    sessions = SessionManager.from_settings(settings, driver)
    registry = TaskRegistry(settings.task_modules)
    logger.debug(
        "Scheduler assembled: server=%s modules=%s task_timeout=%.0fs",
        settings.appium_url,
        ",".join(settings.task_modules),
        settings.task_timeout_s,
    )
    return Scheduler(registry, sessions, task_timeout_s=settings.task_timeout_s)


async def run_once(
    settings: Settings | None = None,
    scheduler: Scheduler | None = None,
) -> TickReport:
    """Execute a single tick and wait for the dispatches it started.

    Args:
        settings: Pre-loaded settings.  If ``None``, a fresh instance is
            loaded from the environment and ``.env`` file.
        scheduler: Pre-built scheduler.  Built from *settings* if ``None``.

    Returns:
        The :class:`~devicecron.orchestrator.scheduler.TickReport` of the
        tick.

    Raises:
        SchedulerError: Registry population failed.
    """
    if settings is None:
        settings = Settings()
    if scheduler is None:
        scheduler = build_scheduler(settings)

    t0 = time.monotonic()
    try:
        report = await scheduler.tick()
        await scheduler.drain()
    finally:
        await scheduler.sessions.close()
        await scheduler.sessions.driver.close()

    logger.info(
        "run_once finished in %.1f s: dispatched=%d queue=%d",
        time.monotonic() - t0,
        len(report.dispatched),
        report.queue_size,
    )
    if scheduler.stats.dispatches:
        logger.info("%s", scheduler.stats.format_summary())
    return report

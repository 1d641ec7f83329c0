"""Structured log event name constants for the Devicecron scheduler.

Every key transition emits a log record with an ``event`` field (passed via
``extra={"event": events.X}``).  In ``LOG_FORMAT=json`` mode the value
surfaces as ``extra.event``; in text mode the message is self-describing.

Usage example::

    import logging
    from devicecron.core import events

    logger = logging.getLogger(__name__)

    logger.info("Tick started", extra={"event": events.TICK_START})
"""

from __future__ import annotations

__all__ = [
    # Registry
    "REGISTRY_POPULATED",
    "REGISTRY_POPULATE_FAILED",
    "TASK_REGISTERED",
    "TASK_SKIPPED",
    "TASK_REJECTED",
    "TASK_LOAD_ERROR",
    # Tick lifecycle
    "TICK_START",
    "TICK_IDLE",
    "TICK_ERROR",
    # Dispatch lifecycle
    "TASK_DISPATCHED",
    "TASK_SUCCEEDED",
    "TASK_FAILED",
    "TASK_RESCHEDULED",
    # Session lifecycle
    "SESSION_CONNECTED",
    "SESSION_REUSED",
    "SESSION_CONNECT_FAILED",
    "SESSION_CRASHED",
    "SESSION_RETRY",
    "SESSION_CLOSED",
]

# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

#: Registry population finished; the scheduler is initialised.
REGISTRY_POPULATED: str = "REGISTRY_POPULATED"

#: Registry population raised as a whole; ``initialized`` stays ``False``.
REGISTRY_POPULATE_FAILED: str = "REGISTRY_POPULATE_FAILED"

#: A unit was accepted and inserted into the queue.
TASK_REGISTERED: str = "TASK_REGISTERED"

#: A unit declared no schedule or disabled it.
TASK_SKIPPED: str = "TASK_SKIPPED"

#: A unit's schedule failed validation (missing period, bad position, ...).
TASK_REJECTED: str = "TASK_REJECTED"

#: A task module or table entry could not be loaded.
TASK_LOAD_ERROR: str = "TASK_LOAD_ERROR"

# ---------------------------------------------------------------------------
# Tick lifecycle
# ---------------------------------------------------------------------------

#: Emitted at the start of every tick.
TICK_START: str = "TICK_START"

#: Nothing was due during the tick.
TICK_IDLE: str = "TICK_IDLE"

#: The tick itself failed (not a task); the next tick starts fresh.
TICK_ERROR: str = "TICK_ERROR"

# ---------------------------------------------------------------------------
# Dispatch lifecycle
# ---------------------------------------------------------------------------

#: A due task was extracted from the queue and handed to a background task.
TASK_DISPATCHED: str = "TASK_DISPATCHED"

#: ``execute`` reported ``success=True``.
TASK_SUCCEEDED: str = "TASK_SUCCEEDED"

#: ``execute`` reported failure, raised, timed out, or never got a session.
TASK_FAILED: str = "TASK_FAILED"

#: A task went back into the queue with a fresh ``next_run``.
TASK_RESCHEDULED: str = "TASK_RESCHEDULED"

# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

#: A new remote session was created.
SESSION_CONNECTED: str = "SESSION_CONNECTED"

#: A caller received the existing live session.
SESSION_REUSED: str = "SESSION_REUSED"

#: Creating a remote session failed.
SESSION_CONNECT_FAILED: str = "SESSION_CONNECT_FAILED"

#: A failure matched a crash signature; the handle was discarded.
SESSION_CRASHED: str = "SESSION_CRASHED"

#: A crashed operation is being retried after the backoff.
SESSION_RETRY: str = "SESSION_RETRY"

#: The session was closed (idle release or shutdown).
SESSION_CLOSED: str = "SESSION_CLOSED"

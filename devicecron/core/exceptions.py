"""Devicecron exception taxonomy.

Every custom exception inherits from :class:`DevicecronError`.  Exceptions are
organised by architectural layer so callers can catch at the right granularity:

    Layer hierarchy
    ---------------
    DevicecronError
    ├── ConfigError
    │   └── RecurrenceError
    ├── TaskLoadError
    ├── SessionError
    │   ├── SessionConnectError
    │   ├── SessionCrashError
    │   ├── SessionCommandError
    │   └── SessionTimeoutError
    ├── TaskExecutionError
    └── SchedulerError

Usage:

    from devicecron.core.exceptions import SessionCrashError

    raise SessionCrashError("get_page_source", "instrumentation process is not running") from exc
"""

from __future__ import annotations

import logging

__all__ = [
    "DevicecronError",
    # Config
    "ConfigError",
    "RecurrenceError",
    # Registry
    "TaskLoadError",
    # Session
    "SessionError",
    "SessionConnectError",
    "SessionCrashError",
    "SessionCommandError",
    "SessionTimeoutError",
    # Execution
    "TaskExecutionError",
    # Scheduler
    "SchedulerError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class DevicecronError(Exception):
    """Root exception for all Devicecron errors.

    Catch this to handle any application-level error uniformly.  Prefer
    catching layer-specific subclasses wherever possible.
    """


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(DevicecronError):
    """Raised when the application configuration is invalid or incomplete.

    Examples:
        - ``APPIUM_URL`` is not an ``http(s)://`` URL.
        - A task module listed in ``TASK_MODULES`` cannot be imported.
    """


class RecurrenceError(ConfigError):
    """Raised when a unit declares an unusable recurrence.

    Args:
        task: Name of the offending unit.
        message: Human-readable reason.
    """

    def __init__(self, task: str, message: str) -> None:
        self.task = task
        super().__init__(f"[{task}] invalid schedule: {message}")


# ---------------------------------------------------------------------------
# Registry layer
# ---------------------------------------------------------------------------


class TaskLoadError(DevicecronError):
    """Raised when an executable unit cannot be loaded or instantiated.

    Args:
        source: Module path or table entry the unit came from.
        message: Human-readable reason.
    """

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"[{source}] {message}")


# ---------------------------------------------------------------------------
# Session layer
# ---------------------------------------------------------------------------


class SessionError(DevicecronError):
    """Base class for all remote automation session errors.

    Args:
        operation: Name of the operation that failed (``"connect"``,
            ``"page_source"``, ...).
        message: Human-readable error description.
    """

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"{operation}: {message}")


class SessionConnectError(SessionError):
    """Raised when a new remote session cannot be created."""


class SessionCrashError(SessionError):
    """Raised when the remote session is gone.

    Covers a dead instrumentation process, an unknown session id and a broken
    link to the automation server.  The session manager reacts by discarding
    the handle and reconnecting before retrying.
    """


class SessionCommandError(SessionError):
    """Raised when the remote end rejects a command without losing the session.

    Args:
        operation: Name of the operation that failed.
        message: Remote error message.
        error_code: W3C WebDriver ``error`` code (e.g. ``"no such element"``).
        status_code: HTTP status code of the response, if any.
    """

    def __init__(
        self,
        operation: str,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.error_code = error_code
        self.status_code = status_code
        detail = f" ({error_code})" if error_code else ""
        super().__init__(operation, f"{message}{detail}")


class SessionTimeoutError(SessionError):
    """Raised when a remote call exceeds its time budget.

    Args:
        operation: Name of the operation that timed out.
        timeout: Budget in seconds.
    """

    def __init__(self, operation: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(operation, f"timed out after {timeout:.1f}s")


# ---------------------------------------------------------------------------
# Execution layer
# ---------------------------------------------------------------------------


class TaskExecutionError(DevicecronError):
    """Raised when a unit's ``execute`` returns something that is not a result.

    Args:
        task: Name of the unit.
        message: Human-readable reason.
    """

    def __init__(self, task: str, message: str) -> None:
        self.task = task
        super().__init__(f"[{task}] {message}")


# ---------------------------------------------------------------------------
# Scheduler layer
# ---------------------------------------------------------------------------


class SchedulerError(DevicecronError):
    """Raised for faults inside the scheduling loop itself.

    Examples:
        - Registry population fails as a whole.
        - The queue is found in an inconsistent state.
    """

"""Core domain models, settings, logging configuration, and shared utilities."""

from devicecron.core.exceptions import (
    ConfigError,
    DevicecronError,
    RecurrenceError,
    SchedulerError,
    SessionCommandError,
    SessionConnectError,
    SessionCrashError,
    SessionError,
    SessionTimeoutError,
    TaskExecutionError,
    TaskLoadError,
)
from devicecron.core.logging_config import JsonFormatter, configure_logging
from devicecron.core.models import (
    DispatchOutcome,
    OutcomeKind,
    Recurrence,
    ScheduledTask,
    TaskResult,
)
from devicecron.core.recurrence import compute_next_run, next_run_for, now_ms
from devicecron.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "Recurrence",
    "TaskResult",
    "ScheduledTask",
    "OutcomeKind",
    "DispatchOutcome",
    # Recurrence
    "compute_next_run",
    "next_run_for",
    "now_ms",
    # Settings
    "Settings",
    # Exceptions: base
    "DevicecronError",
    # Exceptions: config
    "ConfigError",
    "RecurrenceError",
    # Exceptions: registry
    "TaskLoadError",
    # Exceptions: session
    "SessionError",
    "SessionConnectError",
    "SessionCrashError",
    "SessionCommandError",
    "SessionTimeoutError",
    # Exceptions: execution / scheduler
    "TaskExecutionError",
    "SchedulerError",
]

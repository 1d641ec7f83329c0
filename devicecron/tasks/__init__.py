"""Executable-unit contract and the built-in unit table.

This module is the default entry in ``TASK_MODULES``; the registry reads its
``TASKS`` sequence.
"""

from devicecron.tasks.base import BaseTask
from devicecron.tasks.builtin import LockGuard, ScreenProbe

#: Units registered when ``devicecron.tasks`` is listed in ``TASK_MODULES``.
TASKS = [LockGuard, ScreenProbe]

__all__ = ["BaseTask", "LockGuard", "ScreenProbe", "TASKS"]

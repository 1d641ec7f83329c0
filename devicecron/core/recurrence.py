"""Next-run computation for period-anchored, jittered schedules.

A schedule is anchored to the wall-clock grid of its period rather than to
the previous run: a daily unit at ``position=43200`` fires around 12:00 UTC
every day, however late the previous execution finished.  Jitter spreads
units that share an anchor so they do not all fire on the same tick.

Algorithm (all arithmetic in whole seconds, result in epoch milliseconds):

1. ``period_start = floor(now / period) * period``
2. ``target = period_start + position + randint(-jitter, jitter)``
3. while ``target <= now``: ``target += period``

Step 3 guarantees the result is strictly in the future, so a task that has
just run can never be due again on the same tick.

Typical usage::

    from devicecron.core.recurrence import compute_next_run, now_ms

    next_run = compute_next_run(now_ms(), period=86_400, position=43_200, jitter=3_600)
"""

from __future__ import annotations

import logging
import random
import time

from devicecron.core.models import Recurrence

__all__ = ["compute_next_run", "next_run_for", "now_ms"]

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Return the current epoch time in integer milliseconds."""
    return int(time.time() * 1000)


def compute_next_run(
    now: int,
    period: int,
    position: int,
    jitter: int = 0,
    *,
    rng: random.Random | None = None,
) -> int:
    """Return the next due time strictly after *now*.

    Args:
        now: Current time in epoch milliseconds.
        period: Cycle length in seconds.  Must be positive.
        position: Offset within the cycle in seconds.
        jitter: Bound of the uniform random shift in seconds.  ``0`` makes
            the result a pure function of *now*.
        rng: Random source for the jitter draw.  Defaults to the
            :mod:`random` module's global generator.

    Returns:
        The next run time in epoch milliseconds, always ``> now``.

    Raises:
        ValueError: If *period* is not positive or *jitter* is negative.
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    if jitter < 0:
        raise ValueError(f"jitter must be non-negative, got {jitter}")

    now_s = now // 1000
    period_start = (now_s // period) * period
    target = period_start + position

    if jitter:
        target += (rng or random).randint(-jitter, jitter)

    while target <= now_s:
        target += period

    return target * 1000


def next_run_for(
    recurrence: Recurrence,
    now: int,
    *,
    rng: random.Random | None = None,
) -> int:
    """Convenience wrapper: :func:`compute_next_run` for a :class:`Recurrence`."""
    return compute_next_run(
        now,
        recurrence.period,
        recurrence.position,
        recurrence.jitter,
        rng=rng,
    )

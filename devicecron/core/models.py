"""Devicecron core domain models.

* :class:`Recurrence`: the ``(period, position, jitter)`` schedule a unit
  declares, validated with pydantic.
* :class:`TaskResult`: what a unit's ``execute`` reports back.
* :class:`ScheduledTask`: a heap entry: one unit plus its next run time.
* :class:`DispatchOutcome`: the record produced for every dispatch,
  whatever happened.

All durations in :class:`Recurrence` are whole **seconds**; every absolute
timestamp (``next_run``, ``started_at_ms``) is epoch **milliseconds**.

Typical usage::

    from devicecron.core.models import Recurrence

    daily_noon = Recurrence(period=86_400, position=43_200, jitter=3_600)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import AliasChoices, BaseModel, Field, model_validator

if TYPE_CHECKING:
    from devicecron.tasks.base import BaseTask

__all__ = [
    "Recurrence",
    "TaskResult",
    "ScheduledTask",
    "OutcomeKind",
    "DispatchOutcome",
    "ms_to_iso",
]

logger = logging.getLogger(__name__)


def ms_to_iso(ms: int) -> str:
    """Render an epoch-millisecond timestamp as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(ms / 1000, tz=UTC).isoformat(timespec="milliseconds")


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


class Recurrence(BaseModel):
    """How often, and around which point of the cycle, a unit should run.

    The model is **frozen** so one instance can be shared by the registry and
    every reschedule without copying.

    Attributes:
        enabled: ``False`` keeps the unit out of the queue entirely.
        period: Cycle length in seconds (``86400`` = daily).  Must be > 0.
        position: Offset from the start of each cycle in seconds
            (``43200`` = noon UTC for a daily cycle).  Must be in
            ``[0, period)``.
        jitter: Maximum random shift in seconds, drawn uniformly from
            ``[-jitter, +jitter]`` on every computation.  Also accepted as
            ``offset``.
    """

    model_config = {"frozen": True, "extra": "ignore", "populate_by_name": True}

    enabled: bool = Field(default=True, description="Whether the unit is scheduled.")
    period: int = Field(..., gt=0, description="Cycle length in seconds.")
    position: int = Field(..., ge=0, description="Offset within the cycle in seconds.")
    jitter: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("jitter", "offset"),
        description="Random shift bound in seconds.",
    )

    @model_validator(mode="after")
    def _position_within_period(self) -> Recurrence:
        if self.position >= self.period:
            raise ValueError(
                f"position ({self.position}) must be smaller than period ({self.period})"
            )
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "period": self.period,
            "position": self.position,
            "jitter": self.jitter,
        }


# ---------------------------------------------------------------------------
# Task result
# ---------------------------------------------------------------------------


class TaskResult(BaseModel):
    """Outcome reported by a unit's ``execute``.

    The scheduler only reads :attr:`success` and logs :attr:`message`;
    :attr:`data` is never inspected.
    """

    success: bool
    message: str = ""
    data: Any = None

    @classmethod
    def ok(cls, message: str = "", data: Any = None) -> TaskResult:
        return cls(success=True, message=message, data=data)

    @classmethod
    def failed(cls, message: str, data: Any = None) -> TaskResult:
        return cls(success=False, message=message, data=data)


# ---------------------------------------------------------------------------
# Heap entry
# ---------------------------------------------------------------------------


@dataclass
class ScheduledTask:
    """One unit sitting in the scheduler queue.

    Attributes:
        name: Unit name, unique within the registry.
        recurrence: Validated schedule; reused for every reschedule.
        unit: The executable unit.  Never interpreted by the scheduler
            beyond calling ``execute``.
        next_run: Absolute due time in epoch milliseconds.  Recomputed after
            every dispatch.
        source: Module the unit was loaded from, for log lines.
    """

    name: str
    recurrence: Recurrence
    unit: BaseTask = field(repr=False)
    next_run: int
    source: str = ""

    def as_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "nextRun": ms_to_iso(self.next_run),
            "nextRunMs": self.next_run,
            "recurrence": self.recurrence.as_dict(),
        }


# ---------------------------------------------------------------------------
# Dispatch outcome
# ---------------------------------------------------------------------------


class OutcomeKind(StrEnum):
    """How a single dispatch ended."""

    SUCCEEDED = "succeeded"
    #: The unit returned ``success=False``.
    FAILED = "failed"
    #: ``execute`` (or result coercion) raised.
    ERROR = "error"
    #: The dispatch exceeded ``task_timeout_s``.
    TIMEOUT = "timeout"
    #: No live session could be obtained; ``execute`` never ran.
    SESSION_UNAVAILABLE = "session_unavailable"


@dataclass
class DispatchOutcome:
    """Record of one dispatch, funneled to the outcome sink.

    Attributes:
        task: Unit name.
        kind: How the dispatch ended.
        message: Unit message or error text.
        started_at_ms: Clock reading when the dispatch began.
        duration_s: Wall-clock duration of the dispatch.
        next_run: Rescheduled due time (epoch ms).
        error: The exception, for ERROR / TIMEOUT / SESSION_UNAVAILABLE.
    """

    task: str
    kind: OutcomeKind
    message: str = ""
    started_at_ms: int = 0
    duration_s: float = 0.0
    next_run: int = 0
    error: BaseException | None = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCEEDED

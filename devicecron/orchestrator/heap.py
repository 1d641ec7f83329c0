"""Array-backed binary min-heap keyed by a numeric due time.

The scheduler only ever needs three things from its queue: add an entry,
look at the earliest one, and take the earliest one out.  There is no
decrease-key: a task is always removed before it runs and re-inserted with a
freshly computed due time, so entries are never mutated while in the heap.

Ties are broken arbitrarily.  :meth:`MinHeap.snapshot` returns the entries
in internal array order and is meant for status output only.

The heap is **not** thread-safe on its own; the owner serialises access
(see :class:`~devicecron.orchestrator.scheduler.Scheduler`).

Typical usage::

    heap = MinHeap(key=lambda task: task.next_run)
    heap.insert(task)
    if (head := heap.peek_min()) is not None and head.next_run <= now:
        due = heap.extract_min()
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from typing import Generic, TypeVar

__all__ = ["MinHeap"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _next_run_key(item: object) -> float:
    return item.next_run  # type: ignore[attr-defined]


class MinHeap(Generic[T]):
    """Binary min-heap ordered by ``key(item)`` ascending.

    Args:
        key: Returns the ordering value for an item.  Defaults to the item's
            ``next_run`` attribute.
    """

    def __init__(self, key: Callable[[T], float] = _next_run_key) -> None:
        self._key = key
        self._items: list[T] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def size(self) -> int:
        return len(self._items)

    def peek_min(self) -> T | None:
        """Return the earliest item without removing it, or ``None`` if empty."""
        return self._items[0] if self._items else None

    def snapshot(self) -> list[T]:
        """Return a shallow copy of the entries (array order, not sorted)."""
        return list(self._items)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, item: T) -> None:
        self._items.append(item)
        self._sift_up(len(self._items) - 1)

    def extract_min(self) -> T | None:
        """Remove and return the earliest item, or ``None`` if empty."""
        items = self._items
        if not items:
            return None
        last = items.pop()
        if not items:
            return last
        head = items[0]
        items[0] = last
        self._sift_down(0)
        return head

    def clear(self) -> None:
        self._items.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _sift_up(self, i: int) -> None:
        items, key = self._items, self._key
        item = items[i]
        item_key = key(item)
        while i > 0:
            parent = (i - 1) // 2
            if key(items[parent]) <= item_key:
                break
            items[i] = items[parent]
            i = parent
        items[i] = item

    def _sift_down(self, i: int) -> None:
        items, key = self._items, self._key
        n = len(items)
        while True:
            left = 2 * i + 1
            right = left + 1
            smallest = i
            if left < n and key(items[left]) < key(items[smallest]):
                smallest = left
            if right < n and key(items[right]) < key(items[smallest]):
                smallest = right
            if smallest == i:
                return
            items[i], items[smallest] = items[smallest], items[i]
            i = smallest

"""De-duplicating, rate limited work queue for level-triggered controllers."""

from __future__ import annotations

import heapq
import threading
import time
from typing import Any

from .rate_limit import ItemExponentialFailureRateLimiter


class RateLimitingQueue:
    """Work queue that never holds the same item twice.

    An item that is being processed and gets added again is processed once
    more after ``done`` is called. Delayed additions are kept in a heap and
    promoted to the queue when they become due. An item waits at most once;
    adding it again with a later due time is a no-op, an earlier one replaces
    the pending entry.
    """

    def __init__(self, rate_limiter: ItemExponentialFailureRateLimiter | None = None):
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._cond = threading.Condition()
        self._queue: list[Any] = []
        self._dirty: set[Any] = set()
        self._processing: set[Any] = set()
        self._waiting: list[tuple[float, int, Any]] = []
        self._waiting_due: dict[Any, float] = {}
        self._counter = 0
        self._shutting_down = False

    def add(self, item: Any) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def add_after(self, item: Any, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            due = time.monotonic() + delay
            pending = self._waiting_due.get(item)
            if pending is not None:
                if pending <= due:
                    return
                self._waiting = [entry for entry in self._waiting if entry[2] != item]
                heapq.heapify(self._waiting)
            self._waiting_due[item] = due
            self._counter += 1
            heapq.heappush(self._waiting, (due, self._counter, item))
            self._cond.notify()

    def add_rate_limited(self, item: Any) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Any) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Any) -> int:
        return self.rate_limiter.num_requeues(item)

    def _promote_due(self) -> float | None:
        """Move due delayed items to the queue; return seconds until the next one."""
        now = time.monotonic()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, item = heapq.heappop(self._waiting)
            del self._waiting_due[item]
            if item in self._dirty:
                continue
            self._dirty.add(item)
            if item not in self._processing:
                self._queue.append(item)
        if self._waiting:
            return self._waiting[0][0] - now
        return None

    def get(self, timeout: float | None = None) -> tuple[Any, bool]:
        """Block until an item is available.

        Returns:
            Tuple of (item, shutdown). ``item`` is None when the queue shut
            down or the timeout expired.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due()
                if self._queue:
                    item = self._queue.pop(0)
                    self._processing.add(item)
                    self._dirty.discard(item)
                    return item, False
                if self._shutting_down:
                    return None, True
                wait = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None, False
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, item: Any) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

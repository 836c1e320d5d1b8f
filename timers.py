"""
Deferred work in session time.

A controller that wants to act "in 200 ms" schedules a callback here instead
of sleeping. The scheduler fires due callbacks at the start of each session
tick, so nothing ever blocks the loop, and stopping a session (or a rally
reset) cancels whatever was still pending.
"""

import heapq
import itertools
import logging
from typing import Callable, Dict, Hashable, List

logger = logging.getLogger(__name__)


class TimerHandle:
    """Returned by `TimerQueue.call_at`; `cancel()` turns the callback into a no-op."""

    __slots__ = ("when", "key", "_callback", "_cancelled", "_fired")

    def __init__(self, when: float, key: Hashable, callback: Callable[[], None]):
        self.when = when
        self.key = key
        self._callback = callback
        self._cancelled = False
        self._fired = False

    def cancel(self) -> None:
        self._cancelled = True
        self._callback = None

    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        return self._fired or self._cancelled

    def _run(self) -> None:
        if self._cancelled:
            return
        self._fired = True
        callback, self._callback = self._callback, None
        callback()

    def __repr__(self):
        state = "cancelled" if self._cancelled else ("fired" if self._fired else "pending")
        return f"<TimerHandle key={self.key!r} when={self.when:.1f} {state}>"


class TimerQueue:
    """Per-key min-heaps of pending callbacks, ordered by due time then insertion."""

    def __init__(self):
        self._heaps: Dict[Hashable, List[tuple]] = {}
        self._counter = itertools.count()

    def call_at(self, key: Hashable, when: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(when, key, callback)
        heapq.heappush(self._heaps.setdefault(key, []), (when, next(self._counter), handle))
        return handle

    def run_due(self, key: Hashable, now: float) -> int:
        """Fire every callback for `key` due at or before `now`. Returns how many ran."""
        heap = self._heaps.get(key)
        ran = 0
        while heap and heap[0][0] <= now:
            _, _, handle = heapq.heappop(heap)
            if handle.cancelled():
                continue
            handle._run()
            ran += 1
        if heap is not None and not heap:
            self._heaps.pop(key, None)
        return ran

    def cancel_all(self, key: Hashable) -> int:
        """Cancel and drop everything pending for `key`."""
        heap = self._heaps.pop(key, [])
        count = 0
        for _, _, handle in heap:
            if not handle.done():
                handle.cancel()
                count += 1
        if count:
            logger.debug("cancelled %d pending timer(s) for %r", count, key)
        return count

    def pending(self, key: Hashable) -> int:
        return sum(1 for _, _, h in self._heaps.get(key, []) if not h.done())

    def __len__(self):
        return sum(self.pending(k) for k in list(self._heaps))

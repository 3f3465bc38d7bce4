"""Work queue for record keys, modelled on client-go's delaying work queue.

Guarantees:

* A key is handed to at most one worker at a time.
* Adding a key that is already queued is a no-op; adding a key that is
  being processed marks it dirty and it is queued again on ``done()``.
* ``add_after(key, delay)`` queues the key once the delay has elapsed.
  An earlier pending wake for the same key wins over a later one.
"""

from __future__ import annotations

import heapq
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Hashable, List, Optional, Set, Tuple


class ShutDown(Exception):
    """The queue has been shut down."""


class WorkQueue:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._delayed: List[Tuple[float, int, Hashable]] = []
        self._ready_at: Dict[Hashable, float] = {}
        self._seq = 0
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready = self._clock() + delay
            current = self._ready_at.get(key)
            if current is not None and current <= ready:
                return
            self._ready_at[key] = ready
            self._seq += 1
            heapq.heappush(self._delayed, (ready, self._seq, key))
            self._cond.notify()

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._ready_at)

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._delayed:
            ready, _, key = self._delayed[0]
            if self._ready_at.get(key) != ready:
                # superseded by an earlier wake
                heapq.heappop(self._delayed)
                continue
            if ready > now:
                return ready - now
            heapq.heappop(self._delayed)
            del self._ready_at[key]
            self._add_locked(key)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Block until a key is available and mark it as processing.

        Returns None if *timeout* elapses first.

        Raises:
            ShutDown: If the queue is shut down while waiting.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    raise ShutDown()
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                wait = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        """Mark *key* finished; it is queued again if it was re-added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

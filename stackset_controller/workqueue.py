"""Keyed work queue with at most one in-flight item per key.

A key added while it is queued is coalesced. A key added while a worker is
processing it is parked and re-queued when that worker calls `done`, so two
passes over the same StackSet never overlap.
"""

import threading
from collections import deque


class KeyedWorkQueue:
    def __init__(self):
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutdown = False

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutdown or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is available; None on timeout or shutdown."""
        with self._cond:
            if not self._queue and not self._shutdown:
                self._cond.wait_for(lambda: self._queue or self._shutdown, timeout=timeout)
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def is_processing(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

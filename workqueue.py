import threading
from collections import deque
from typing import Dict, Optional


class WorkQueue:
    """Deduplicating work queue.

    A key is handed to at most one worker at a time: re-adding a key while
    it is being processed marks it dirty, and it goes back on the queue only
    when the worker calls done(). Keys already waiting are not queued twice.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 300.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._failures: Dict[str, int] = {}
        self._timers = set()
        self._shutting_down = False

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def add(self, key: str):
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self) -> Optional[str]:
        """Block until a key is available. Returns None once the queue is shut down."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def add_after(self, key: str, delay: float):
        if delay <= 0:
            self.add(key)
            return

        def fire():
            with self._cond:
                self._timers.discard(timer)
            self.add(key)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers.add(timer)
        timer.start()

    def retry_delay(self, key: str) -> float:
        with self._cond:
            failures = self._failures.get(key, 0)
        if failures == 0:
            return 0.0
        return min(self.base_delay * 2 ** (failures - 1), self.max_delay)

    def add_rate_limited(self, key: str) -> float:
        """Re-add a failed key with exponential backoff, returning the delay used"""
        with self._cond:
            self._failures[key] = self._failures.get(key, 0) + 1
        delay = self.retry_delay(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str):
        with self._cond:
            self._failures.pop(key, None)

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

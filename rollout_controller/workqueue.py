"""
Rate-limited work queue of rollout keys.

A key is handed to at most one worker at a time. Adding a key that is already queued is
a no-op, and adding a key that is being processed queues it again once the worker calls
`done`. Delayed adds wait in a heap until they are due; failed keys come back with
exponential back-off.
"""
import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_SECS = 0.005
DEFAULT_MAX_DELAY_SECS = 1000.0


class RateLimitingQueue:
    """Thread-safe queue with de-duplication, delayed adds and per-key back-off."""

    def __init__(
        self,
        name: str = "rollouts",
        base_delay: float = DEFAULT_BASE_DELAY_SECS,
        max_delay: float = DEFAULT_MAX_DELAY_SECS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._counter = itertools.count()
        self._failures: Dict[str, int] = {}
        self._shutting_down = False

    # -------------------------------------------------------------------------
    # Adding
    # -------------------------------------------------------------------------
    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: str, seconds: float) -> None:
        """Queue `key` once `seconds` have passed."""
        if seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + seconds, next(self._counter), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> None:
        """Queue `key` after its back-off, which doubles with every consecutive failure."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.base_delay * (2 ** failures), self.max_delay)
        logger.debug(f"Requeueing '{key}' in {delay:.3f}s (failures: {failures + 1})")
        self.add_after(key, delay)

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------
    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Take the next key to process.

        Args:
            timeout: Seconds to wait for a key; None waits until one arrives or the queue shuts down

        Returns:
            A key the caller must pass to `done`, or None on timeout or shutdown
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None
                wait = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - self._clock(), 0)
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def stats(self) -> Dict[str, int]:
        with self._cond:
            return {
                "queued": len(self._queue),
                "processing": len(self._processing),
                "waiting": len(self._waiting),
                "retrying": len(self._failures),
            }

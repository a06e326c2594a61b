"""Work queue with per-key single-flight dispatch and a controller worker pool."""

from __future__ import annotations

import heapq
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-key exponential backoff: base * 2^failures, capped at max_delay_s."""

    def __init__(self, base_delay_s: float = 0.5, max_delay_s: float = 60.0):
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self._failures: Dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            n = self._failures.get(key, 0)
            self._failures[key] = n + 1
        return min(self.base_delay_s * (2 ** n), self.max_delay_s)

    def failures(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


class WorkQueue:
    """
    Deduplicating queue of resource keys.

    A key is handed to at most one worker at a time. Adding a key that is
    queued already is a no-op; adding a key that is being processed marks it
    dirty and it is queued again when the worker calls ``done``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: List[str] = []
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._delayed: List[Tuple[float, int, str]] = []
        self._seq = 0
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

    def add_after(self, key: str, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            self._seq += 1
            heapq.heappush(self._delayed, (self._clock() + delay_s, self._seq, key))
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a key is ready; None on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                self._promote_due()
                if self._queue:
                    key = self._queue.pop(0)
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                wait = None
                if self._delayed:
                    wait = max(0.0, self._delayed[0][0] - self._clock())
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

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

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutdown

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._delayed)

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            if key in self._dirty:
                continue
            self._dirty.add(key)
            if key not in self._processing:
                self._queue.append(key)


class Controller:
    """
    Worker pool draining a WorkQueue through a reconcile function.

    ``reconcile(key)`` returns the number of seconds after which the key
    should be looked at again, or None when nothing more is needed until the
    next event. An exception requeues the key with per-key exponential
    backoff capped at the resync interval.
    """

    def __init__(
        self,
        name: str,
        reconcile: Callable[[str], Optional[float]],
        workers: int = 2,
        resync_interval_s: float = 60.0,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.name = name
        self.reconcile = reconcile
        self.workers = workers
        self.resync_interval_s = resync_interval_s
        self.queue = WorkQueue()
        self.rate_limiter = rate_limiter or RateLimiter(max_delay_s=resync_interval_s)
        self._threads: List[threading.Thread] = []
        self._running = False

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    def start(self) -> None:
        if self._running:
            logger.warning(f"Controller {self.name} already running")
            return
        self._running = True
        for i in range(self.workers):
            t = threading.Thread(target=self._worker, name=f"{self.name}-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info(f"Controller {self.name} started with {self.workers} workers")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop handing out keys; in-flight reconciles run to completion."""
        if not self._running:
            return
        self._running = False
        self.queue.shutdown()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads.clear()
        logger.info(f"Controller {self.name} stopped")

    def process_one(self, timeout: Optional[float] = None) -> bool:
        """Reconcile a single key from the queue. Returns False if none was ready."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self._handle(key)
        finally:
            self.queue.done(key)
        return True

    def _worker(self) -> None:
        while self._running:
            if not self.process_one(timeout=1.0) and self.queue.shutting_down:
                return

    def _handle(self, key: str) -> None:
        try:
            requeue_after = self.reconcile(key)
        except Exception as e:
            delay = self.rate_limiter.when(key)
            logger.exception(f"{self.name}: reconcile of {key} failed, retrying in {delay:.1f}s: {e}")
            self.queue.add_after(key, delay)
            return
        self.rate_limiter.forget(key)
        if requeue_after is not None:
            self.queue.add_after(key, requeue_after)

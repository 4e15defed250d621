"""Deduplicating, rate-limited work queue.

A key is held in at most one place at a time: waiting in the queue, or being
processed by a worker. Adding a key that is already waiting is a no-op.
Adding a key that is being processed marks it dirty, and it is queued again
exactly once when the worker calls ``done``. This gives per-key single-flight
with coalesced re-runs.
"""

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Hashable, List, Optional, Protocol, Set, Tuple

from vapgen.core import metrics
from vapgen.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_DELAY = 0.005
DEFAULT_MAX_DELAY = 1000.0
DEFAULT_QPS = 10.0
DEFAULT_BURST = 100


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def num_requeues(self, item: Hashable) -> int: ...

    def forget(self, item: Hashable) -> None: ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures``, capped."""

    def __init__(self, base_delay: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        # Bound the exponent so the float never overflows
        if failures > 64:
            return self.max_delay
        return min(self.base_delay * (2**failures), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class BucketRateLimiter:
    """Overall token bucket shared by all keys: ``qps`` sustained, ``burst`` at once.

    Each call reserves a token; once the bucket is empty the returned delay
    is the time until the reserved token is refilled.
    """

    def __init__(
        self,
        qps: float = DEFAULT_QPS,
        burst: int = DEFAULT_BURST,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, item: Hashable) -> int:
        return 0

    def forget(self, item: Hashable) -> None:
        pass


class MaxOfRateLimiter:
    """Combines limiters by taking the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter):
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        # Every limiter is consulted so each one records the attempt
        return max([limiter.when(item) for limiter in self.limiters])

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)


def default_controller_rate_limiter(
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    qps: float = DEFAULT_QPS,
    burst: int = DEFAULT_BURST,
) -> MaxOfRateLimiter:
    """Per-key exponential backoff bounded by an overall token bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(qps, burst),
    )


class RateLimitingQueue:
    """Work queue with deduplication, delayed adds and per-key backoff."""

    def __init__(
        self,
        name: str = "",
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

        self._cond = threading.Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._shutting_down = False

        # Delayed adds: (ready_at, sequence, item)
        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._waiting_cond = threading.Condition()
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop, name=f"{name or 'queue'}-delay", daemon=True
        )
        self._waiting_thread.start()

    # ------------------------------------------------------------------
    # Core queue
    # ------------------------------------------------------------------

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            metrics.queue_depth.set(len(self._queue))
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Tuple[Optional[Hashable], bool]:
        """Block until an item is available.

        Returns ``(item, shutdown)``. Once the queue is shut down the result
        is ``(None, True)`` even if keys are still waiting. On timeout the
        result is ``(None, False)``.
        """
        with self._cond:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None, False
                self._cond.wait(remaining)
            if self._shutting_down:
                return None, True

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            metrics.queue_depth.set(len(self._queue))
            return item, False

    def done(self, item: Hashable) -> None:
        """Mark processing of ``item`` finished, re-queueing it if it went dirty."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                metrics.queue_depth.set(len(self._queue))
                self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def is_processing(self, item: Hashable) -> bool:
        with self._cond:
            return item in self._processing

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiting_cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    # ------------------------------------------------------------------
    # Delayed and rate limited adds
    # ------------------------------------------------------------------

    def add_after(self, item: Hashable, delay: float) -> None:
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        with self._waiting_cond:
            heapq.heappush(
                self._waiting, (time.monotonic() + delay, next(self._sequence), item)
            )
            self._waiting_cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        metrics.queue_requeues.inc()
        logger.debug(f"Requeueing {item} in {delay:.3f}s")
        self.add_after(item, delay)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def _waiting_loop(self) -> None:
        while True:
            ready: List[Hashable] = []
            with self._waiting_cond:
                if self.shutting_down:
                    return
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready.append(heapq.heappop(self._waiting)[2])
                if not ready:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._waiting_cond.wait(timeout)
                    continue
            for item in ready:
                self.add(item)

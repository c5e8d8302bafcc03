"""Deduplicating, rate-limited asyncio work queue.

Semantics:

* ``add`` of a key that is already waiting is a no-op, so bursts of events
  for the same workload coalesce into one pending pass.
* A key handed out by ``get`` is "processing" until ``done``.  Re-adding it
  meanwhile marks it dirty; it is queued again on ``done``, never handed to
  a second worker concurrently.
* ``add_rate_limited`` re-adds a key after a per-key exponential back-off
  (bounded by an overall token bucket); ``forget`` resets the back-off and
  ``num_requeues`` reports how often the key has been retried.
* ``shut_down`` rejects new keys and cancels pending delayed adds; ``get``
  keeps handing out already-queued keys until the queue is drained, then
  reports quit.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Hashable
from typing import Generic, Protocol, TypeVar

from heimdall.observability.metrics import queue_depth

K = TypeVar("K", bound=Hashable)


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ExponentialRateLimiter:
    """Per-item delay ``base_delay * 2**failures`` capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        exp = self._failures.get(item, 0)
        self._failures[item] = exp + 1
        return min(self._base_delay * (2**exp), self._max_delay)

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket: ``qps`` sustained, ``burst`` immediate."""

    def __init__(self, qps: float = 10.0, burst: int = 100) -> None:
        self._qps = qps
        self._burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()

    def when(self, item: Hashable) -> float:
        now = time.monotonic()
        self._tokens = min(self._burst, self._tokens + (now - self._last) * self._qps)
        self._last = now
        self._tokens -= 1
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self._qps

    def forget(self, item: Hashable) -> None:
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combines limiters: the longest delay wins."""

    def __init__(self, *limiters: RateLimiter) -> None:
        self._limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self._limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self._limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self._limiters)


def default_rate_limiter() -> RateLimiter:
    return MaxOfRateLimiter(ExponentialRateLimiter(), BucketRateLimiter())


class RateLimitingQueue(Generic[K]):
    """Work queue shared by the watch handlers and the worker coroutines."""

    def __init__(self, rate_limiter: RateLimiter | None = None) -> None:
        self._rate_limiter = rate_limiter or default_rate_limiter()
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._delayed: set[asyncio.TimerHandle] = set()
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, item: K) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        queue_depth.set(len(self._queue))
        self._wakeup.set()

    async def get(self) -> tuple[K | None, bool]:
        """Wait for the next key.  Returns ``(key, quit)``."""
        while not self._queue and not self._shutting_down:
            self._wakeup.clear()
            await self._wakeup.wait()
        if not self._queue:
            return None, True
        item = self._queue.popleft()
        queue_depth.set(len(self._queue))
        self._processing.add(item)
        self._dirty.discard(item)
        return item, False

    def done(self, item: K) -> None:
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            queue_depth.set(len(self._queue))
            self._wakeup.set()

    def add_after(self, item: K, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _fire() -> None:
            self._delayed.discard(handle)
            self.add(item)

        handle = loop.call_later(delay, _fire)
        self._delayed.add(handle)

    def add_rate_limited(self, item: K) -> None:
        self.add_after(item, self._rate_limiter.when(item))

    def forget(self, item: K) -> None:
        self._rate_limiter.forget(item)

    def num_requeues(self, item: K) -> int:
        return self._rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        self._shutting_down = True
        for handle in self._delayed:
            handle.cancel()
        self._delayed.clear()
        self._wakeup.set()

"""Fixed-window rate limiting for the ScentWise gateway.

Counters are keyed by "<endpoint-label>:<client-ip>". Two backends share
the same allow() contract:

- MemoryRateLimiter keeps one bucket per key in process memory. It only
  protects a single warm process and is lossy across restarts.
- StoreRateLimiter increments "<key>:<window-index>" atomically in Redis, so
  every process sees the same count.

RateLimiter picks the store backend when one is configured and falls back to
the memory backend for any call where the store is unavailable.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from fastapi import Request

from scentwise.clock import Clock, SystemClock
from scentwise.store import CounterStore, StoreUnavailable

_logger = logging.getLogger("scentwise")

UNKNOWN_CLIENT = "unknown"


@dataclass
class RateLimitResult:
    """Decision for a single request."""

    allowed: bool
    remaining: int


@dataclass
class _Bucket:
    """Fixed-window counter for a single key."""

    window_start: float
    window_seconds: float
    count: int = 1


@dataclass
class MemoryRateLimiter:
    """Per-process fixed-window limiter.

    Buckets are swept at most once per sweep_interval. The sweep drops a
    bucket once its window started more than max_age seconds ago and has
    also closed, so a rule with a window longer than max_age keeps counting.
    """

    clock: Clock = field(default_factory=SystemClock)
    sweep_interval: float = 60.0
    max_age: float = 600.0
    _buckets: Dict[str, _Bucket] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _last_sweep: Optional[float] = None

    def allow(self, key: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        """Count one request against key and decide whether it may proceed."""
        now = self.clock.now()
        with self._lock:
            self._sweep(now)
            bucket = self._buckets.get(key)

            if bucket is None or (now - bucket.window_start) >= window_seconds:
                self._buckets[key] = _Bucket(window_start=now, window_seconds=window_seconds)
                return RateLimitResult(allowed=True, remaining=max(0, max_requests - 1))

            bucket.count += 1
            if bucket.count > max_requests:
                return RateLimitResult(allowed=False, remaining=0)
            return RateLimitResult(allowed=True, remaining=max_requests - bucket.count)

    def _sweep(self, now: float) -> None:
        if self._last_sweep is None:
            self._last_sweep = now
            return
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        stale = [
            k
            for k, b in self._buckets.items()
            if now - b.window_start > max(self.max_age, b.window_seconds)
        ]
        for key in stale:
            del self._buckets[key]

    def __len__(self) -> int:
        return len(self._buckets)


class StoreRateLimiter:
    """Fixed-window limiter on top of an atomic remote counter."""

    def __init__(self, store: CounterStore, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    async def allow(self, key: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        """Count one request against key.

        The increment always happens, so the stored count keeps climbing
        during a burst; only the count > max_requests decision is exposed.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        window_index = int(self._clock.now() // window_seconds)
        ttl = max(1, int(window_seconds * 2))
        count = await self._store.incr("{}:{}".format(key, window_index), ttl)
        if count > max_requests:
            return RateLimitResult(allowed=False, remaining=0)
        return RateLimitResult(allowed=True, remaining=max_requests - count)


class RateLimiter:
    """Backend selector with fail-open-to-local semantics."""

    def __init__(
        self,
        memory: MemoryRateLimiter,
        remote: Optional[StoreRateLimiter] = None,
    ) -> None:
        self.memory = memory
        self.remote = remote

    async def allow(self, key: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        """Count one request against key using the best available backend."""
        if self.remote is not None:
            try:
                return await self.remote.allow(key, max_requests, window_seconds)
            except StoreUnavailable as exc:
                _logger.warning("Rate limit store unavailable, limiting locally: %s", exc.detail)
        return self.memory.allow(key, max_requests, window_seconds)


def client_ip(request: Request) -> str:
    """Best-effort client address for keying limits and free-trial usage.

    Every request that cannot be attributed shares the "unknown" bucket.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client is not None and request.client.host:
        return request.client.host

    return UNKNOWN_CLIENT

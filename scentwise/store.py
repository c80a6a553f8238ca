"""Durable counter store backed by Redis.

The rate limiter and the free-trial ledger only need three operations from a
remote store: an atomic increment that also sets an expiry, a plain read and
a write with expiry. Any Redis error or timeout is re-raised as
StoreUnavailable so callers can fall back to their in-process path without
knowing about the client library.
"""

import logging
from typing import Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

_logger = logging.getLogger("scentwise")


class StoreUnavailable(Exception):
    """Raised when the durable store cannot be reached or answers with an error."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


class CounterStore(Protocol):
    """Minimal remote counter interface."""

    async def incr(self, key: str, ttl_seconds: int) -> int:
        ...

    async def get(self, key: str) -> Optional[int]:
        ...

    async def set(self, key: str, value: int, ttl_seconds: int) -> None:
        ...


def parse_count(raw: object) -> int:
    """Interpret a stored counter value. Anything non-numeric counts as 0."""
    try:
        value = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    return value if value > 0 else 0


class RedisCounterStore:
    """CounterStore implementation on top of redis.asyncio."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout: float = 2.0) -> "RedisCounterStore":
        """Create a store from a redis:// or rediss:// URL."""
        client = Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        return cls(client)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment key and (re)arm its expiry. Returns the new count."""
        try:
            pipe = self._client.pipeline()
            pipe.incr(key, 1)
            pipe.expire(key, ttl_seconds)
            count, _ = await pipe.execute()
        except (RedisError, OSError) as exc:
            raise StoreUnavailable("INCR {} failed: {}".format(key, exc)) from exc
        return int(count)

    async def get(self, key: str) -> Optional[int]:
        """Return the stored count, or None when the key does not exist."""
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as exc:
            raise StoreUnavailable("GET {} failed: {}".format(key, exc)) from exc
        if raw is None:
            return None
        return parse_count(raw)

    async def set(self, key: str, value: int, ttl_seconds: int) -> None:
        """Store value under key with an expiry."""
        try:
            await self._client.set(key, str(value), ex=ttl_seconds)
        except (RedisError, OSError) as exc:
            raise StoreUnavailable("SET {} failed: {}".format(key, exc)) from exc

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:
            _logger.warning("Error closing Redis connection: %s", exc)

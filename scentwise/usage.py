"""Monthly usage ledger.

Premium users are counted in a signed cookie tied to their customer id.
Free-trial users are counted per client IP through three layers, consulted
in order:

1. the durable store (Redis), shared by every process;
2. an in-process map, surviving only within one warm process;
3. a signed cookie, which private browsing defeats but which still helps
   when the other two are empty.

Reads stop at the first layer that returns a value. Writes go to every
layer; a failing layer is logged and skipped, never surfaced to the caller.
Counts are best effort: a tampered, stale or unreadable record reads as 0.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from fastapi import Response

from scentwise import tokens
from scentwise.clock import Clock, month_of
from scentwise.cookies import FREE_USAGE_COOKIE, PREMIUM_USAGE_COOKIE, USAGE_MAX_AGE, set_cookie
from scentwise.store import CounterStore, StoreUnavailable

_logger = logging.getLogger("scentwise")

KEY_PREFIX = "sw"
FREE_STORE_TTL = 33 * 24 * 60 * 60


@dataclass
class Usage:
    """Count recorded for the current month."""

    count: int
    month: str


def _as_count(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


class CounterLayer(Protocol):
    """One storage layer of the ledger."""

    name: str

    async def read(self, subject: str, month: str) -> Optional[int]:
        ...

    async def write(self, subject: str, month: str, count: int) -> None:
        ...


class StoreLayer:
    """Free-trial counts in the durable store, keyed by IP and month."""

    name = "store"

    def __init__(self, store: CounterStore, ttl_seconds: int = FREE_STORE_TTL) -> None:
        self._store = store
        self._ttl = ttl_seconds

    @staticmethod
    def key(subject: str, month: str) -> str:
        return "{}:{}:{}".format(KEY_PREFIX, subject, month)

    async def read(self, subject: str, month: str) -> Optional[int]:
        count = await self._store.get(self.key(subject, month))
        return count if count else None

    async def write(self, subject: str, month: str, count: int) -> None:
        await self._store.set(self.key(subject, month), count, self._ttl)


class MemoryLayer:
    """In-process counts. Entries from earlier months are swept periodically."""

    name = "memory"

    def __init__(self, clock: Clock, sweep_interval: float = 300.0) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._entries: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock.now()

    async def read(self, subject: str, month: str) -> Optional[int]:
        with self._lock:
            self._sweep()
            count = self._entries.get((subject, month), 0)
        return count if count > 0 else None

    async def write(self, subject: str, month: str, count: int) -> None:
        with self._lock:
            self._entries[(subject, month)] = count

    def _sweep(self) -> None:
        now = self._clock.now()
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        current = month_of(now)
        for key in [k for k in self._entries if k[1] != current]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class CookieLayer:
    """Signed usage cookie bound to one request/response pair.

    The cookie value is {"c": count, "m": month, "sig": ...} plus "id" when
    bind_id is set (premium). The digest subject for free users is
    "free:<ip>", so a cookie copied to another address reads as 0.
    """

    name = "cookie"

    def __init__(
        self,
        cookie_name: str,
        secret: str,
        cookies: Mapping[str, str],
        response: Optional[Response] = None,
        *,
        secure: bool = False,
        bind_id: bool = False,
    ) -> None:
        self._cookie_name = cookie_name
        self._secret = secret
        self._cookies = cookies
        self._response = response
        self._secure = secure
        self._bind_id = bind_id

    async def read(self, subject: str, month: str) -> Optional[int]:
        data = tokens.decode(self._cookies.get(self._cookie_name))
        if data is None:
            return None

        count = _as_count(data.get("c"))
        cookie_month = data.get("m")
        sig = data.get("sig")
        if count is None or not isinstance(cookie_month, str) or not cookie_month or not sig:
            return None

        if self._bind_id:
            cookie_id = data.get("id")
            if not isinstance(cookie_id, str) or not cookie_id:
                return None
            if not tokens.verify(sig, tokens.usage_signature(self._secret, cookie_id, count, cookie_month)):
                return None
            if cookie_id != subject:
                return None
        elif not tokens.verify(sig, tokens.usage_signature(self._secret, subject, count, cookie_month)):
            return None

        if cookie_month != month:
            return None
        return count

    async def write(self, subject: str, month: str, count: int) -> None:
        if self._response is None:
            return
        value: Dict[str, Any] = {
            "c": count,
            "m": month,
            "sig": tokens.usage_signature(self._secret, subject, count, month),
        }
        if self._bind_id:
            value["id"] = subject
        set_cookie(
            self._response,
            self._cookie_name,
            tokens.encode(value),
            max_age=USAGE_MAX_AGE,
            secure=self._secure,
        )


async def read_chain(layers: Sequence[CounterLayer], subject: str, month: str) -> int:
    """Return the first value any layer yields, or 0."""
    for layer in layers:
        try:
            value = await layer.read(subject, month)
        except StoreUnavailable as exc:
            _logger.warning("Usage layer %s unavailable on read: %s", layer.name, exc.detail)
            continue
        if value is not None:
            return value
    return 0


async def write_fanout(layers: Sequence[CounterLayer], subject: str, month: str, count: int) -> None:
    """Write count to every layer, skipping layers that fail."""
    for layer in layers:
        try:
            await layer.write(subject, month, count)
        except StoreUnavailable as exc:
            _logger.warning("Usage layer %s unavailable on write: %s", layer.name, exc.detail)


class UsageLedger:
    """Reads and records monthly query counts. Quota decisions live elsewhere."""

    def __init__(
        self,
        clock: Clock,
        store: Optional[CounterStore] = None,
        *,
        secure_cookies: bool = False,
    ) -> None:
        self._clock = clock
        self._secure = secure_cookies
        self.memory = MemoryLayer(clock)
        self._store_layer = StoreLayer(store) if store is not None else None

    def current_month(self) -> str:
        return month_of(self._clock.now())

    def _free_layers(
        self,
        secret: str,
        cookies: Mapping[str, str],
        response: Optional[Response] = None,
    ) -> List[CounterLayer]:
        layers: List[CounterLayer] = []
        if self._store_layer is not None:
            layers.append(self._store_layer)
        layers.append(self.memory)
        layers.append(
            CookieLayer(FREE_USAGE_COOKIE, secret, cookies, response, secure=self._secure)
        )
        return layers

    def _premium_layer(
        self,
        secret: str,
        cookies: Mapping[str, str],
        response: Optional[Response] = None,
    ) -> CookieLayer:
        return CookieLayer(
            PREMIUM_USAGE_COOKIE, secret, cookies, response, secure=self._secure, bind_id=True
        )

    async def read_premium(self, cookies: Mapping[str, str], user_id: str, secret: str) -> Usage:
        month = self.current_month()
        count = await read_chain([self._premium_layer(secret, cookies)], user_id, month)
        return Usage(count=count, month=month)

    async def write_premium(self, response: Response, user_id: str, count: int, secret: str) -> None:
        month = self.current_month()
        await write_fanout([self._premium_layer(secret, {}, response)], user_id, month, count)

    async def read_free(self, cookies: Mapping[str, str], ip: str, secret: str) -> Usage:
        """Read the free-trial count for ip, falling through the layers."""
        month = self.current_month()
        count = await read_chain(self._free_layers(secret, cookies), _free_subject(ip), month)
        return Usage(count=count, month=month)

    async def write_free(self, response: Response, ip: str, count: int, secret: str) -> None:
        """Record the free-trial count for ip in every layer."""
        month = self.current_month()
        await write_fanout(self._free_layers(secret, {}, response), _free_subject(ip), month, count)


def _free_subject(ip: str) -> str:
    return "free:{}".format(ip)

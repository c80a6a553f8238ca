"""Test doubles and helpers shared across the test modules."""

from typing import Dict, Iterable, List, Optional

import httpx

from scentwise.models import RecommendRequest
from scentwise.store import StoreUnavailable


class ManualClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, start: float) -> None:
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeCounterStore:
    """In-memory CounterStore with an outage switch."""

    def __init__(self) -> None:
        self.values: Dict[str, int] = {}
        self.ttls: Dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise StoreUnavailable("store is down")

    async def incr(self, key: str, ttl_seconds: int) -> int:
        self._check()
        self.values[key] = self.values.get(key, 0) + 1
        self.ttls[key] = ttl_seconds
        return self.values[key]

    async def get(self, key: str) -> Optional[int]:
        self._check()
        return self.values.get(key)

    async def set(self, key: str, value: int, ttl_seconds: int) -> None:
        self._check()
        self.values[key] = value
        self.ttls[key] = ttl_seconds


class RecordingRecommender:
    """Stands in for the text-generation provider."""

    def __init__(self, result: str = "Try **Terre d'Hermes**.", error: Optional[Exception] = None) -> None:
        self.result = result
        self.error = error
        self.calls: List[RecommendRequest] = []

    async def __call__(self, request: RecommendRequest) -> str:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.result


def set_cookies(headers: Iterable[str]) -> Dict[str, str]:
    """Map cookie name to value for a list of Set-Cookie header values.

    Deleted cookies map to "".
    """
    cookies: Dict[str, str] = {}
    for header in headers:
        name, _, rest = header.partition("=")
        value = rest.split(";", 1)[0].strip().strip('"')
        cookies[name.strip()] = value
    return cookies


def response_cookies(resp: httpx.Response) -> Dict[str, str]:
    return set_cookies(resp.headers.get_list("set-cookie"))


def cookie_header(cookies: Dict[str, str]) -> str:
    return "; ".join("{}={}".format(k, v) for k, v in cookies.items())

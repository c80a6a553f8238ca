"""Tests for the fixed-window rate limiters."""

from typing import List, Optional, Tuple

import pytest
from fastapi import Request

from scentwise.config import RateLimitConfig, RateLimitRule
from scentwise.limiter import (
    MemoryRateLimiter,
    RateLimiter,
    StoreRateLimiter,
    UNKNOWN_CLIENT,
    client_ip,
)
from scentwise.services import sweep_age
from support import FakeCounterStore, ManualClock


def _request(headers: List[Tuple[bytes, bytes]], client: Optional[Tuple[str, int]] = None) -> Request:
    scope = {"type": "http", "method": "GET", "path": "/", "headers": headers, "client": client}
    return Request(scope)


def test_allows_requests_within_limit(clock: ManualClock) -> None:
    """Requests up to the limit succeed and report what is left."""
    limiter = MemoryRateLimiter(clock=clock)
    results = [limiter.allow("login:1.1.1.1", 3, 60) for _ in range(3)]

    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [2, 1, 0]


def test_rejects_over_limit(clock: ManualClock) -> None:
    limiter = MemoryRateLimiter(clock=clock)
    for _ in range(5):
        assert limiter.allow("login:1.1.1.1", 5, 60).allowed

    result = limiter.allow("login:1.1.1.1", 5, 60)
    assert not result.allowed
    assert result.remaining == 0


def test_separate_keys_have_independent_limits(clock: ManualClock) -> None:
    limiter = MemoryRateLimiter(clock=clock)
    assert limiter.allow("login:1.1.1.1", 1, 60).allowed
    assert limiter.allow("login:2.2.2.2", 1, 60).allowed
    assert limiter.allow("recommend:1.1.1.1", 1, 60).allowed
    assert not limiter.allow("login:1.1.1.1", 1, 60).allowed


def test_window_resets(clock: ManualClock) -> None:
    """After the window has fully elapsed the count starts over."""
    limiter = MemoryRateLimiter(clock=clock)
    limiter.allow("k", 1, 60)
    assert not limiter.allow("k", 1, 60).allowed

    clock.advance(59)
    assert not limiter.allow("k", 1, 60).allowed

    clock.advance(1)
    assert limiter.allow("k", 1, 60).allowed


def test_sweep_drops_stale_buckets(clock: ManualClock) -> None:
    limiter = MemoryRateLimiter(clock=clock, sweep_interval=60, max_age=600)
    for i in range(10):
        limiter.allow("k{}".format(i), 5, 60)
    assert len(limiter) == 10

    clock.advance(601)
    limiter.allow("fresh", 5, 60)
    assert len(limiter) == 1


def test_sweep_keeps_bucket_with_long_window(clock: ManualClock) -> None:
    """An hourly rule keeps counting after the sweep age has passed."""
    limiter = MemoryRateLimiter(clock=clock, sweep_interval=60, max_age=600)
    assert limiter.allow("login:1.1.1.1", 2, 3600).allowed
    assert limiter.allow("login:1.1.1.1", 2, 3600).allowed
    assert not limiter.allow("login:1.1.1.1", 2, 3600).allowed

    clock.advance(700)
    assert not limiter.allow("login:1.1.1.1", 2, 3600).allowed

    clock.advance(2900)
    assert limiter.allow("login:1.1.1.1", 2, 3600).allowed


def test_sweep_age_follows_longest_rule() -> None:
    assert sweep_age(RateLimitConfig()) == 600
    rules = {"login": RateLimitRule(5, 60), "checkout": RateLimitRule(3, 3600)}
    assert sweep_age(RateLimitConfig(rules=rules)) == 36000


@pytest.mark.asyncio
async def test_store_limiter_keys_by_window(clock: ManualClock, fake_store: FakeCounterStore) -> None:
    limiter = StoreRateLimiter(fake_store, clock)
    await limiter.allow("login:1.1.1.1", 5, 60)

    window_index = int(clock.now() // 60)
    key = "login:1.1.1.1:{}".format(window_index)
    assert fake_store.values == {key: 1}
    assert fake_store.ttls[key] == 120


@pytest.mark.asyncio
async def test_store_limiter_rejects_over_limit(clock: ManualClock, fake_store: FakeCounterStore) -> None:
    limiter = StoreRateLimiter(fake_store, clock)
    for _ in range(2):
        assert (await limiter.allow("k", 2, 60)).allowed
    assert not (await limiter.allow("k", 2, 60)).allowed


@pytest.mark.asyncio
async def test_limits_are_shared_through_the_store(clock: ManualClock, fake_store: FakeCounterStore) -> None:
    """Two limiter instances (two processes) see one count."""
    first = RateLimiter(MemoryRateLimiter(clock=clock), StoreRateLimiter(fake_store, clock))
    second = RateLimiter(MemoryRateLimiter(clock=clock), StoreRateLimiter(fake_store, clock))

    assert (await first.allow("k", 2, 60)).allowed
    assert (await second.allow("k", 2, 60)).allowed
    assert not (await first.allow("k", 2, 60)).allowed


@pytest.mark.asyncio
async def test_falls_back_to_memory_when_store_down(
    clock: ManualClock, fake_store: FakeCounterStore
) -> None:
    """A store outage never rejects a request by itself; the local limit still applies."""
    fake_store.down = True
    limiter = RateLimiter(MemoryRateLimiter(clock=clock), StoreRateLimiter(fake_store, clock))

    assert (await limiter.allow("k", 2, 60)).allowed
    assert (await limiter.allow("k", 2, 60)).allowed
    assert not (await limiter.allow("k", 2, 60)).allowed
    assert len(limiter.memory) == 1


@pytest.mark.asyncio
async def test_memory_only_when_no_store(clock: ManualClock) -> None:
    limiter = RateLimiter(MemoryRateLimiter(clock=clock))
    assert (await limiter.allow("k", 1, 60)).allowed
    assert not (await limiter.allow("k", 1, 60)).allowed


def test_client_ip_prefers_leftmost_forwarded_for() -> None:
    request = _request(
        [(b"x-forwarded-for", b"203.0.113.7, 10.0.0.1"), (b"x-real-ip", b"10.0.0.2")],
        client=("10.0.0.3", 1234),
    )
    assert client_ip(request) == "203.0.113.7"


def test_client_ip_falls_back_to_real_ip_then_peer() -> None:
    assert client_ip(_request([(b"x-real-ip", b" 10.0.0.2 ")], ("10.0.0.3", 1))) == "10.0.0.2"
    assert client_ip(_request([], ("10.0.0.3", 1))) == "10.0.0.3"


def test_client_ip_unknown_when_unattributable() -> None:
    assert client_ip(_request([])) == UNKNOWN_CLIENT
    assert client_ip(_request([(b"x-forwarded-for", b" , 10.0.0.1")])) == UNKNOWN_CLIENT

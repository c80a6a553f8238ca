"""Service container for one gateway instance.

Everything with state that outlives a request (the in-process rate-limit
map, the in-process free-usage map, the Redis connection) is owned by a
Services object attached to the FastAPI app, never by module globals.
"""

import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastapi import Request

from scentwise.access import AccessResolver, SubscriptionRevalidator
from scentwise.clock import Clock, SystemClock
from scentwise.config import GatewayConfig, RateLimitConfig, load_config
from scentwise.limiter import MemoryRateLimiter, RateLimiter, StoreRateLimiter
from scentwise.models import RecommendRequest
from scentwise.payments import LemonSqueezyClient
from scentwise.provider import call_provider
from scentwise.store import CounterStore, RedisCounterStore
from scentwise.usage import UsageLedger

_logger = logging.getLogger("scentwise")

CONFIG_PATH = os.getenv("SCENTWISE_CONFIG", "config/example.config.json")

Recommender = Callable[[RecommendRequest], Awaitable[str]]


@dataclass
class Services:
    config: GatewayConfig
    clock: Clock
    limiter: RateLimiter
    ledger: UsageLedger
    resolver: AccessResolver
    revalidator: SubscriptionRevalidator
    payments: LemonSqueezyClient
    recommender: Recommender
    store: Optional[CounterStore] = None

    async def close(self) -> None:
        if isinstance(self.store, RedisCounterStore):
            await self.store.close()


def sweep_age(rate_limit: RateLimitConfig) -> float:
    """Ten times the longest configured window, never below ten minutes."""
    longest = max((rule.window_seconds for rule in rate_limit.rules.values()), default=60.0)
    return max(600.0, 10 * longest)


def build_services(
    config: GatewayConfig,
    *,
    clock: Optional[Clock] = None,
    store: Optional[CounterStore] = None,
    payments: Optional[LemonSqueezyClient] = None,
    recommender: Optional[Recommender] = None,
) -> Services:
    """Wire the gateway components from configuration.

    A Redis store is created from the configured URL unless one is passed
    in; without either, every counter is kept in process.
    """
    clock = clock or SystemClock()

    if store is None and config.store.url:
        store = RedisCounterStore.from_url(config.store.url, timeout=config.store.timeout)
        _logger.info("Durable counter store enabled (%s)", config.store.url_env)

    payments = payments or LemonSqueezyClient(config.payments)

    async def _recommend(request: RecommendRequest) -> str:
        return await call_provider(config.provider, request)

    return Services(
        config=config,
        clock=clock,
        limiter=RateLimiter(
            memory=MemoryRateLimiter(clock=clock, max_age=sweep_age(config.rate_limit)),
            remote=StoreRateLimiter(store, clock) if store is not None else None,
        ),
        ledger=UsageLedger(clock, store, secure_cookies=config.production),
        resolver=AccessResolver(config.secrets, clock),
        revalidator=SubscriptionRevalidator(payments, clock, config.payments.product_id),
        payments=payments,
        recommender=recommender or _recommend,
        store=store,
    )


def get_services(request: Request) -> Services:
    """Return the app's Services, building them from CONFIG_PATH on first use."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services(load_config(CONFIG_PATH))
        request.app.state.services = services
    return services

"""Shared test fixtures for the ScentWise gateway tests."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

import httpx
import pytest

from scentwise.config import GatewayConfig, load_config
from scentwise.payments import LemonSqueezyClient
from scentwise.services import Services, build_services
from support import FakeCounterStore, ManualClock, RecordingRecommender

# Mid-month, so local-time month bucketing is the same in every timezone.
START = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc).timestamp()

SECRETS = {
    "OWNER_KEY": "owner-test-key",
    "SUBSCRIPTION_SECRET": "subscription-test-secret",
    "TRIAL_SECRET": "trial-test-secret",
    "LEMONSQUEEZY_WEBHOOK_SECRET": "webhook-test-secret",
    "LEMONSQUEEZY_API_KEY": "ls-test-key",
}


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "provider": {"stub": True},
        "payments": {
            "base_url": "https://payments.test/v1",
            "store_id": "111",
            "product_id": "222",
            "variant_id": "333",
        },
        "rate_limit": {
            "rules": {
                "recommend": {"max_requests": 100, "window_seconds": 60},
                "check-tier": {"max_requests": 100, "window_seconds": 60},
            }
        },
        "quota": {"premium_monthly": 500, "free_trial": 3},
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture(autouse=True)
def _secrets_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Provide every secret by default; tests delete the ones they need missing."""
    for name, value in SECRETS.items():
        monkeypatch.setenv(name, value)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("SCENTWISE_ENV", raising=False)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture()
def fake_store() -> FakeCounterStore:
    return FakeCounterStore()


def _provider_down(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, json={"errors": [{"detail": "unavailable"}]})


@pytest.fixture()
def make_services(tmp_path: Path, clock: ManualClock) -> Callable[..., Services]:
    """Factory for a Services container around the test config.

    Payment provider calls are answered by payments_handler through an
    httpx.MockTransport; without one the provider answers 503.
    """

    def _make(
        overrides: Optional[Dict] = None,
        *,
        store: Optional[FakeCounterStore] = None,
        payments_handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        recommender: Optional[RecordingRecommender] = None,
    ) -> Services:
        config = load_config(_make_config(tmp_path, overrides))
        handler = payments_handler or _provider_down
        payments = LemonSqueezyClient(config.payments, transport=httpx.MockTransport(handler))
        return build_services(
            config,
            clock=clock,
            store=store,
            payments=payments,
            recommender=recommender or RecordingRecommender(),
        )

    return _make

"""Tests for the signed-token codec."""

import hmac
from datetime import datetime, timezone
from typing import List, Tuple

import pytest

from scentwise import tokens
from scentwise.clock import WEEK_SECONDS
from scentwise.tokens import Verdict

OWNER_KEY = "owner-test-key"
SECRET = "subscription-test-secret"
NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc).timestamp()


def test_sign_is_deterministic_and_keyed() -> None:
    """The same fields under the same secret give the same digest; other secrets differ."""
    digest = tokens.sign(SECRET, "sub-1", "cust-1")
    assert digest == tokens.sign(SECRET, "sub-1", "cust-1")
    assert len(digest) == 64
    assert digest != tokens.sign("other-secret", "sub-1", "cust-1")
    assert digest != tokens.sign(SECRET, "sub-1", "cust-2")


def test_verify_rejects_length_mismatch_and_non_strings() -> None:
    digest = tokens.sign(SECRET, "x")
    assert tokens.verify(digest, digest)
    assert not tokens.verify(digest[:-1], digest)
    assert not tokens.verify(digest + "0", digest)
    assert not tokens.verify(None, digest)
    assert not tokens.verify(12345, digest)
    assert not tokens.verify(["a"], digest)


def test_compare_digest_only_sees_equal_lengths(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: List[Tuple[int, int]] = []
    real_compare = hmac.compare_digest

    def spy(a: bytes, b: bytes) -> bool:
        seen.append((len(a), len(b)))
        return real_compare(a, b)

    monkeypatch.setattr(tokens.hmac, "compare_digest", spy)
    digest = tokens.sign(SECRET, "x")

    assert not tokens.verify(digest[:10], digest)
    assert not tokens.verify(digest * 2, digest)
    assert not tokens.verify("é" * 64, digest)
    assert seen == []

    assert tokens.verify(digest, digest)
    assert seen == [(64, 64)]


def test_verify_handles_non_ascii_input() -> None:
    """Non-ASCII candidates are compared by byte length, never raising."""
    digest = tokens.sign(SECRET, "x")
    assert not tokens.verify("é" * 32, digest)
    assert not tokens.verify("\ud800" * 64, digest)


def test_decode_rejects_garbage() -> None:
    assert tokens.decode(None) is None
    assert tokens.decode("") is None
    assert tokens.decode("not base64 !!") is None
    assert tokens.decode("%%%") is None
    # A JSON list, not an object.
    assert tokens.decode("WzEsMiwzXQ") is None


def test_encode_has_no_padding_or_cookie_unsafe_characters() -> None:
    value = tokens.encode({"email": "a@b.co", "n": 1})
    assert "=" not in value
    assert ";" not in value and "," not in value and " " not in value
    assert tokens.decode(value) == {"email": "a@b.co", "n": 1}


# --- Owner tokens ---


def test_owner_token_valid_in_current_and_next_period() -> None:
    token = tokens.make_owner_token(OWNER_KEY, NOW)
    assert tokens.verify_owner_token(token, OWNER_KEY, NOW)
    assert tokens.verify_owner_token(token, OWNER_KEY, NOW + WEEK_SECONDS)


def test_owner_token_expires_after_two_periods() -> None:
    token = tokens.make_owner_token(OWNER_KEY, NOW)
    assert not tokens.verify_owner_token(token, OWNER_KEY, NOW + 2 * WEEK_SECONDS)


def test_owner_token_rejects_wrong_key_and_empty_values() -> None:
    token = tokens.make_owner_token(OWNER_KEY, NOW)
    assert not tokens.verify_owner_token(token, "another-key", NOW)
    assert not tokens.verify_owner_token("", OWNER_KEY, NOW)
    assert not tokens.verify_owner_token(token, None, NOW)
    assert not tokens.verify_owner_token(None, OWNER_KEY, NOW)


def test_legacy_owner_token_honoured_until_sunset() -> None:
    legacy = tokens.sign(OWNER_KEY, tokens.LEGACY_OWNER_NAMESPACE)
    before = tokens.LEGACY_OWNER_SUNSET - 60
    assert tokens.verify_owner_token(legacy, OWNER_KEY, before)
    assert not tokens.verify_owner_token(legacy, OWNER_KEY, tokens.LEGACY_OWNER_SUNSET)


# --- Subscription tokens ---


def test_subscription_token_valid() -> None:
    value = tokens.make_subscription_token("sub-1", "cust-1", "a@b.co", SECRET)
    check = tokens.read_subscription_token(value, SECRET)

    assert check.ok
    assert check.verdict == Verdict.VALID
    assert check.token is not None
    assert check.token.subscription_id == "sub-1"
    assert check.token.customer_id == "cust-1"
    assert check.token.email == "a@b.co"


def test_subscription_token_with_edited_customer_is_forged() -> None:
    value = tokens.make_subscription_token("sub-1", "cust-1", "a@b.co", SECRET)
    data = tokens.decode(value)
    assert data is not None
    data["custId"] = "cust-2"

    check = tokens.read_subscription_token(tokens.encode(data), SECRET)
    assert not check.ok
    assert check.verdict == Verdict.FORGED


def test_subscription_token_signed_with_other_secret_is_forged() -> None:
    value = tokens.make_subscription_token("sub-1", "cust-1", "a@b.co", "other-secret")
    assert tokens.read_subscription_token(value, SECRET).verdict == Verdict.FORGED


def test_subscription_token_malformed() -> None:
    assert tokens.read_subscription_token(None, SECRET).verdict == Verdict.MALFORMED
    assert tokens.read_subscription_token("garbage", SECRET).verdict == Verdict.MALFORMED
    missing_sub = tokens.encode({"token": "x" * 64, "custId": "cust-1"})
    assert tokens.read_subscription_token(missing_sub, SECRET).verdict == Verdict.MALFORMED
    numeric_ids = tokens.encode({"token": "x" * 64, "subId": 1, "custId": 2})
    assert tokens.read_subscription_token(numeric_ids, SECRET).verdict == Verdict.MALFORMED


def test_email_is_not_covered_by_signature() -> None:
    """Changing the display email keeps the identity intact."""
    value = tokens.make_subscription_token("sub-1", "cust-1", "a@b.co", SECRET)
    data = tokens.decode(value)
    assert data is not None
    data["email"] = "x@y.co"

    check = tokens.read_subscription_token(tokens.encode(data), SECRET)
    assert check.ok
    assert check.token is not None
    assert check.token.customer_id == "cust-1"


# --- Usage signatures ---


def test_usage_key_is_derived_not_reused() -> None:
    key = tokens.derive_usage_key(SECRET)
    assert isinstance(key, bytes)
    assert key != SECRET.encode("utf-8")
    assert tokens.usage_signature(SECRET, "cust-1", 3, "2026-06") != tokens.sign(
        SECRET, "cust-1", 3, "2026-06"
    )


def test_usage_signature_binds_every_field() -> None:
    base = tokens.usage_signature(SECRET, "cust-1", 3, "2026-06")
    assert base != tokens.usage_signature(SECRET, "cust-2", 3, "2026-06")
    assert base != tokens.usage_signature(SECRET, "cust-1", 4, "2026-06")
    assert base != tokens.usage_signature(SECRET, "cust-1", 3, "2026-07")

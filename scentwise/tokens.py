"""Signed-token codec for the ScentWise gateway.

Every credential the gateway hands out is stateless: a keyed HMAC-SHA256
digest binding a handful of fields, optionally wrapped together with those
fields in a JSON structure and base64 encoded for use as a cookie value.
Nothing is stored server-side, so the digest is the only thing standing
between a client and a forged credential.

Rules that hold for every function in this module:
- Digests are compared by length first, then with hmac.compare_digest.
- Decoding and verification never raise on client-supplied input. Malformed
  values collapse to None / False / a non-valid TokenCheck.
"""

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from scentwise.clock import week_period

Secret = Union[str, bytes]

FIELD_DELIMITER = ":"

OWNER_NAMESPACE = "scentwise-owner-v2"
LEGACY_OWNER_NAMESPACE = "scentwise-owner-v1"
# Legacy (non-rotating) owner tokens are rejected from this instant on.
LEGACY_OWNER_SUNSET = datetime(2026, 4, 1, tzinfo=timezone.utc).timestamp()

USAGE_KEY_LABEL = "sw-usage-key-v1"


def _as_bytes(value: Secret) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8", "surrogatepass")


def digest(secret: Secret, payload: bytes) -> str:
    """Return the hex HMAC-SHA256 of raw payload bytes under secret."""
    return hmac.new(_as_bytes(secret), payload, hashlib.sha256).hexdigest()


def sign(secret: Secret, *fields: Any) -> str:
    """Return the hex HMAC-SHA256 of fields joined by ':' under secret.

    Args:
        secret: Signing key, text or raw bytes.
        *fields: Values to bind. Each is converted with str().

    Returns:
        A 64-character hex digest.
    """
    message = FIELD_DELIMITER.join(str(f) for f in fields)
    return digest(secret, message.encode("utf-8", "surrogatepass"))


def verify(candidate: Any, expected: Any) -> bool:
    """Compare two digests without leaking timing information.

    Inputs of different byte length are rejected before the constant-time
    primitive is reached, so compare_digest only ever sees equal-length
    buffers. Non-string input is rejected outright.
    """
    if not isinstance(candidate, str) or not isinstance(expected, str):
        return False
    candidate_bytes = candidate.encode("utf-8", "surrogatepass")
    expected_bytes = expected.encode("utf-8", "surrogatepass")
    if len(candidate_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(candidate_bytes, expected_bytes)


def encode(struct: Dict[str, Any]) -> str:
    """Serialize a mapping to a cookie-safe opaque string."""
    raw = json.dumps(struct, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode(value: Any) -> Optional[Dict[str, Any]]:
    """Reverse encode(). Returns None for anything that is not a JSON object."""
    if not isinstance(value, str) or not value:
        return None
    try:
        padded = value + "=" * (-len(value) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError, RecursionError):
        return None
    if not isinstance(data, dict):
        return None
    return data


# --- Owner tokens ---


def make_owner_token(owner_key: str, now: float) -> str:
    """Mint the owner token for the weekly period containing now."""
    return sign(owner_key, OWNER_NAMESPACE, week_period(now))


def verify_owner_token(cookie_value: Optional[str], owner_key: Optional[str], now: float) -> bool:
    """Check an owner cookie against the current and previous weekly period.

    A token minted in period N verifies during N and N+1 and is rejected from
    N+2 on. The legacy single-digest token verifies until the sunset date.
    """
    if not cookie_value or not owner_key:
        return False

    current = week_period(now)
    for period in (current, current - 1):
        if verify(cookie_value, sign(owner_key, OWNER_NAMESPACE, period)):
            return True

    if now < LEGACY_OWNER_SUNSET:
        return verify(cookie_value, sign(owner_key, LEGACY_OWNER_NAMESPACE))

    return False


# --- Subscription tokens ---


class Verdict(str, Enum):
    """Outcome of checking a structured token."""

    VALID = "valid"
    MALFORMED = "malformed"
    FORGED = "forged"


@dataclass(frozen=True)
class SubscriptionToken:
    """Identity carried by the subscription cookie."""

    subscription_id: str
    customer_id: str
    email: str = ""


@dataclass(frozen=True)
class TokenCheck:
    """Result of reading a subscription cookie.

    Both MALFORMED and FORGED mean "not authenticated"; they are kept apart
    only so that callers can log which one happened.
    """

    verdict: Verdict
    token: Optional[SubscriptionToken] = None

    @property
    def ok(self) -> bool:
        return self.verdict == Verdict.VALID and self.token is not None


def make_subscription_token(
    subscription_id: str, customer_id: str, email: str, secret: str
) -> str:
    """Mint an encoded subscription cookie value."""
    return encode(
        {
            "token": sign(secret, subscription_id, customer_id),
            "subId": subscription_id,
            "custId": customer_id,
            "email": email,
        }
    )


def read_subscription_token(cookie_value: Optional[str], secret: str) -> TokenCheck:
    """Decode and verify a subscription cookie value."""
    data = decode(cookie_value)
    if data is None:
        return TokenCheck(Verdict.MALFORMED)

    token = data.get("token")
    sub_id = data.get("subId")
    cust_id = data.get("custId")
    email = data.get("email")
    if not (isinstance(sub_id, str) and sub_id and isinstance(cust_id, str) and cust_id):
        return TokenCheck(Verdict.MALFORMED)
    if not isinstance(token, str) or not token:
        return TokenCheck(Verdict.MALFORMED)

    if not verify(token, sign(secret, sub_id, cust_id)):
        return TokenCheck(Verdict.FORGED)

    return TokenCheck(
        Verdict.VALID,
        SubscriptionToken(
            subscription_id=sub_id,
            customer_id=cust_id,
            email=email if isinstance(email, str) else "",
        ),
    )


# --- Usage counter signatures ---


def derive_usage_key(secret: str) -> bytes:
    """Derive the usage-ledger key so it never equals the token secret."""
    return hmac.new(
        _as_bytes(secret), USAGE_KEY_LABEL.encode("utf-8"), hashlib.sha256
    ).digest()


def usage_signature(secret: str, subject: str, count: int, month: str) -> str:
    """Sign a usage counter for subject (user id or "free:<ip>")."""
    return sign(derive_usage_key(secret), subject, count, month)

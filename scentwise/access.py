"""Access resolution for the ScentWise gateway.

AccessResolver classifies a request from its cookies alone, in strict
priority order: owner, then premium, then free. It performs no network I/O.

SubscriptionRevalidator is the separate, explicitly invoked check of a
premium token against the payment provider. It is throttled by a signed
marker cookie to at most one upstream call per 24 hours. When the upstream
call itself fails the token is trusted and a short-lived marker holds off
the next attempt.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from scentwise import tokens
from scentwise.clock import Clock
from scentwise.config import SecretsConfig
from scentwise.cookies import OWNER_COOKIE, REVALIDATION_MAX_AGE, SUBSCRIPTION_COOKIE
from scentwise.payments import LemonSqueezyClient, PaymentProviderError

_logger = logging.getLogger("scentwise")

OWNER_IDENTITY = "owner"

REVOKED_SUBSCRIPTION_STATUSES = frozenset({"expired", "paused", "unpaid"})

MARKER_NAMESPACE = "sw-revalidated-v1"


class Tier(str, Enum):
    OWNER = "owner"
    PREMIUM = "premium"
    FREE = "free"


@dataclass
class Access:
    """Resolved caller.

    clear_subscription is set when a subscription cookie was presented but
    did not verify; the endpoint must expire it in its response.
    """

    tier: Tier
    user_id: Optional[str] = None
    subscription: Optional[tokens.SubscriptionToken] = None
    clear_subscription: bool = False

    @property
    def email(self) -> Optional[str]:
        return self.subscription.email if self.subscription else None


class AccessResolver:
    """Maps request cookies to exactly one tier."""

    def __init__(self, secrets: SecretsConfig, clock: Clock) -> None:
        self._secrets = secrets
        self._clock = clock

    def resolve(self, cookies: Mapping[str, str]) -> Access:
        owner_key = self._secrets.owner_key
        owner_cookie = cookies.get(OWNER_COOKIE)
        if owner_key and owner_cookie:
            if tokens.verify_owner_token(owner_cookie, owner_key, self._clock.now()):
                return Access(tier=Tier.OWNER, user_id=OWNER_IDENTITY)

        sub_secret = self._secrets.subscription_secret
        sub_cookie = cookies.get(SUBSCRIPTION_COOKIE)
        if sub_secret and sub_cookie:
            check = tokens.read_subscription_token(sub_cookie, sub_secret)
            if check.ok and check.token is not None:
                return Access(
                    tier=Tier.PREMIUM,
                    user_id=check.token.customer_id,
                    subscription=check.token,
                )
            _logger.info("Rejected subscription cookie (%s)", check.verdict.value)
            return Access(tier=Tier.FREE, clear_subscription=True)

        return Access(tier=Tier.FREE)


class RevalidationState(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"


class RevalidationOutcome(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    UNKNOWN = "unknown"


class SubscriptionRevalidator:
    """Throttled upstream check of a premium token.

    The marker cookie is "<issued_at>.<sig>", with sig binding the issue time
    to the subscription id. It counts as VALIDATED only while it verifies and
    is younger than max_age, so a copied or edited marker does not suppress
    the check.
    """

    def __init__(
        self,
        payments: LemonSqueezyClient,
        clock: Clock,
        product_id: Optional[str] = None,
        max_age: int = REVALIDATION_MAX_AGE,
    ) -> None:
        self._payments = payments
        self._clock = clock
        self._product_id = product_id
        self.max_age = max_age

    def make_marker(
        self, token: tokens.SubscriptionToken, secret: str, valid_for: Optional[int] = None
    ) -> str:
        """Sign a marker that suppresses revalidation for valid_for seconds.

        A shorter lifetime is expressed by backdating the issue time, so
        state() needs no second format. Defaults to max_age.
        """
        issued_at = int(self._clock.now())
        if valid_for is not None and valid_for < self.max_age:
            issued_at -= self.max_age - valid_for
        sig = tokens.sign(secret, MARKER_NAMESPACE, token.subscription_id, issued_at)
        return "{}.{}".format(issued_at, sig)

    def state(
        self, marker: Optional[str], token: tokens.SubscriptionToken, secret: str
    ) -> RevalidationState:
        if not marker or "." not in marker:
            return RevalidationState.PENDING
        issued_raw, sig = marker.split(".", 1)
        if not (issued_raw.isascii() and issued_raw.isdigit()):
            return RevalidationState.PENDING
        try:
            issued_at = int(issued_raw)
        except ValueError:
            return RevalidationState.PENDING
        expected = tokens.sign(secret, MARKER_NAMESPACE, token.subscription_id, issued_at)
        if not tokens.verify(sig, expected):
            return RevalidationState.PENDING
        age = self._clock.now() - issued_at
        if age < 0 or age >= self.max_age:
            return RevalidationState.PENDING
        return RevalidationState.VALIDATED

    async def revalidate(self, token: tokens.SubscriptionToken) -> RevalidationOutcome:
        """Ask the provider whether the token's order still grants access."""
        if not self._payments.configured:
            return RevalidationOutcome.UNKNOWN
        try:
            order = await self._payments.get_order(token.subscription_id)
            if order is None:
                return RevalidationOutcome.REVOKED
            if order.customer_id and order.customer_id != token.customer_id:
                return RevalidationOutcome.REVOKED
            if not order.grants_access(self._product_id):
                return RevalidationOutcome.REVOKED

            statuses = await self._payments.list_order_subscriptions(order.id)
        except PaymentProviderError as exc:
            _logger.warning("Subscription revalidation skipped: %s", exc.detail)
            return RevalidationOutcome.UNKNOWN

        if any(s in REVOKED_SUBSCRIPTION_STATUSES for s in statuses):
            return RevalidationOutcome.REVOKED
        return RevalidationOutcome.ACTIVE

"""Cookie names and Set-Cookie helpers.

All gateway cookies are HttpOnly. Secure is added in production only so the
service still works over plain http on localhost.
"""

from fastapi import Response

OWNER_COOKIE = "sw_owner"
SUBSCRIPTION_COOKIE = "sw_sub"
PREMIUM_USAGE_COOKIE = "sw_usage"
FREE_USAGE_COOKIE = "sw_free"
REVALIDATED_COOKIE = "sw_sub_checked"

DAY_SECONDS = 24 * 60 * 60

OWNER_MAX_AGE = 14 * DAY_SECONDS
SUBSCRIPTION_MAX_AGE = 30 * DAY_SECONDS
USAGE_MAX_AGE = 32 * DAY_SECONDS
REVALIDATION_MAX_AGE = DAY_SECONDS
REVALIDATION_RETRY_AGE = 15 * 60


def set_cookie(
    response: Response,
    name: str,
    value: str,
    *,
    max_age: int,
    secure: bool,
    samesite: str = "lax",
) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
        samesite=samesite,
    )


def clear_cookie(response: Response, name: str, *, secure: bool, samesite: str = "strict") -> None:
    """Expire a cookie immediately."""
    response.delete_cookie(
        name,
        path="/",
        secure=secure,
        httponly=True,
        samesite=samesite,
    )

"""FastAPI application for the ScentWise gateway.

Every endpoint runs the same ordered pipeline, short-circuiting with a
specific status at the first failing step:

1. Method check (routing)
2. Origin/Referer check for state-changing methods (guard dependency)
3. Per-endpoint rate limit keyed by client IP (guard dependency)
4. Access resolution from cookies (owner / premium / free)
5. Quota check against the usage ledger
6. Delegate to the payment or text-generation provider
7. Usage write-back, only after the delegate succeeded
"""

import json
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from scentwise import tokens
from scentwise.access import Access, RevalidationOutcome, RevalidationState, Tier
from scentwise.config import load_config
from scentwise.cookies import (
    OWNER_COOKIE,
    OWNER_MAX_AGE,
    PREMIUM_USAGE_COOKIE,
    REVALIDATED_COOKIE,
    REVALIDATION_MAX_AGE,
    REVALIDATION_RETRY_AGE,
    SUBSCRIPTION_COOKIE,
    SUBSCRIPTION_MAX_AGE,
    clear_cookie,
    set_cookie,
)
from scentwise.gate import GateContext, GateError, guard, json_body, new_request_id
from scentwise.limiter import client_ip
from scentwise.models import (
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    OrderLoginRequest,
    OwnerLoginRequest,
    RecommendRequest,
    RecommendResponse,
    TierResponse,
)
from scentwise.payments import PaymentProviderError, verify_webhook_signature
from scentwise.provider import ProviderNotConfigured
from scentwise.services import CONFIG_PATH, Services, build_services, get_services
from scentwise.telemetry import log_request, logger, setup_logging

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ORDER_ID_RE = re.compile(r"^\d{1,20}$")

NO_SUBSCRIPTION_MESSAGE = (
    "No active subscription found for this email. Make sure you are using the "
    "email address from your purchase, or sign in with your order number instead."
)

router = APIRouter(prefix="/api")


def _error_response(
    status: int,
    error_type: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    **extra: Any
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=ErrorDetail(type=error_type, message=message), **extra)
    return JSONResponse(
        status_code=status,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


def _json_response(model: BaseModel, status: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status, content=model.model_dump(by_alias=True, exclude_none=True))


def _not_configured(gate: GateContext, what: str, detail: str) -> JSONResponse:
    log_request(
        endpoint=gate.label,
        client_ip=gate.client_ip,
        outcome="not_configured",
        error=detail,
        request_id=gate.request_id,
    )
    return _error_response(500, "not_configured", "{} not configured".format(what))


def _apply_access_cookies(response: JSONResponse, access: Access, services: Services) -> JSONResponse:
    if access.clear_subscription:
        clear_cookie(response, SUBSCRIPTION_COOKIE, secure=services.config.production)
        clear_cookie(response, REVALIDATED_COOKIE, secure=services.config.production)
    return response


def _issue_subscription_cookie(
    response: JSONResponse,
    services: Services,
    subscription_id: str,
    customer_id: str,
    email: str,
    secret: str,
    samesite: str,
) -> None:
    set_cookie(
        response,
        SUBSCRIPTION_COOKIE,
        tokens.make_subscription_token(subscription_id, customer_id, email, secret),
        max_age=SUBSCRIPTION_MAX_AGE,
        secure=services.config.production,
        samesite=samesite,
    )


# --- Login ---


@router.post("/login", response_model=None)
async def login(
    gate: GateContext = Depends(guard("login")),
    body: LoginRequest = Depends(json_body(LoginRequest)),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Sign a subscriber in by the email address used at purchase."""
    secret = services.config.secrets.subscription_secret
    if not services.payments.configured or not secret:
        return _not_configured(gate, "Server", "Missing payment API key or subscription secret")

    email = body.email.strip().lower()
    if not EMAIL_RE.match(email):
        return _error_response(400, "validation_error", "Invalid email format")

    product_id = services.config.payments.product_id
    try:
        customer = await services.payments.find_customer_by_email(email)
        orders = [] if customer is None else await services.payments.list_customer_orders(customer.id)
    except PaymentProviderError as exc:
        log_request(
            endpoint=gate.label,
            client_ip=gate.client_ip,
            outcome="provider_error",
            error=exc.detail,
            request_id=gate.request_id,
        )
        if exc.auth_failed:
            return _error_response(
                502,
                "provider_error",
                "Subscription service authentication failed. The site owner needs to "
                "check the payment provider API key.",
            )
        return _error_response(
            502, "provider_error", "Could not look up subscription. Please try again later."
        )

    order = next((o for o in orders if o.grants_access(product_id)), None)
    if customer is None or order is None:
        log_request(
            endpoint=gate.label,
            client_ip=gate.client_ip,
            outcome="not_found",
            request_id=gate.request_id,
        )
        return _error_response(404, "not_found", NO_SUBSCRIPTION_MESSAGE)

    customer_email = order.user_email or email
    response = _json_response(LoginResponse(tier=Tier.PREMIUM.value, email=customer_email))
    _issue_subscription_cookie(
        response, services, order.id, customer.id, customer_email, secret, samesite="lax"
    )
    log_request(
        endpoint=gate.label,
        client_ip=gate.client_ip,
        outcome="success",
        tier=Tier.PREMIUM.value,
        request_id=gate.request_id,
    )
    return response


@router.post("/verify-subscription", response_model=None)
async def verify_subscription(
    gate: GateContext = Depends(guard("verify")),
    body: OrderLoginRequest = Depends(json_body(OrderLoginRequest)),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Sign a subscriber in by order number (e.g. after checkout redirect)."""
    secret = services.config.secrets.subscription_secret
    if not services.payments.configured or not secret:
        return _not_configured(gate, "Server", "Missing payment API key or subscription secret")

    order_id = body.order_id.strip()
    if not ORDER_ID_RE.match(order_id):
        return _error_response(400, "validation_error", "Invalid order ID format")

    try:
        order = await services.payments.get_order(order_id)
    except PaymentProviderError as exc:
        log_request(
            endpoint=gate.label,
            client_ip=gate.client_ip,
            outcome="provider_error",
            error=exc.detail,
            request_id=gate.request_id,
        )
        return _error_response(
            502, "provider_error", "Could not verify order. Please try again later."
        )

    if order is None:
        return _error_response(
            400,
            "invalid_order",
            "Could not verify order. Check the order number in your receipt email.",
        )
    if not order.grants_access(services.config.payments.product_id):
        return _error_response(400, "invalid_order", "Order not valid")
    if not order.id or not order.customer_id:
        return _error_response(400, "invalid_order", "No subscription found")

    response = _json_response(LoginResponse(tier=Tier.PREMIUM.value, email=order.user_email))
    _issue_subscription_cookie(
        response, services, order.id, order.customer_id, order.user_email, secret, samesite="strict"
    )
    log_request(
        endpoint=gate.label,
        client_ip=gate.client_ip,
        outcome="success",
        tier=Tier.PREMIUM.value,
        request_id=gate.request_id,
    )
    return response


@router.post("/owner-auth", response_model=None)
async def owner_login(
    gate: GateContext = Depends(guard("owner")),
    body: OwnerLoginRequest = Depends(json_body(OwnerLoginRequest)),
    services: Services = Depends(get_services),
) -> JSONResponse:
    owner_key = services.config.secrets.owner_key
    if not owner_key:
        return _not_configured(gate, "Owner access", "Owner key is not set")

    if not tokens.verify(body.key, owner_key):
        log_request(
            endpoint=gate.label,
            client_ip=gate.client_ip,
            outcome="invalid_key",
            request_id=gate.request_id,
        )
        return _error_response(401, "invalid_key", "Invalid key")

    response = _json_response(LoginResponse(tier=Tier.OWNER.value))
    set_cookie(
        response,
        OWNER_COOKIE,
        tokens.make_owner_token(owner_key, services.clock.now()),
        max_age=OWNER_MAX_AGE,
        secure=services.config.production,
        samesite="strict",
    )
    log_request(
        endpoint=gate.label,
        client_ip=gate.client_ip,
        outcome="success",
        tier=Tier.OWNER.value,
        request_id=gate.request_id,
    )
    return response


@router.delete("/owner-auth", response_model=None)
async def logout(
    gate: GateContext = Depends(guard("owner")),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Sign out: clear every credential and the premium usage cookie."""
    response = JSONResponse(status_code=200, content={"success": True})
    secure = services.config.production
    for name in (OWNER_COOKIE, SUBSCRIPTION_COOKIE, PREMIUM_USAGE_COOKIE, REVALIDATED_COOKIE):
        clear_cookie(response, name, secure=secure)
    log_request(
        endpoint=gate.label,
        client_ip=gate.client_ip,
        outcome="logout",
        request_id=gate.request_id,
    )
    return response


# --- Tier check ---


@router.get("/check-tier", response_model=None)
async def check_tier(
    request: Request,
    gate: GateContext = Depends(guard("check-tier")),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Report the caller's tier and usage, revalidating premium at most daily."""
    access = services.resolver.resolve(request.cookies)
    secure = services.config.production
    set_marker: Optional[str] = None
    marker_age = REVALIDATION_MAX_AGE

    if access.tier == Tier.OWNER:
        return _json_response(TierResponse(tier=Tier.OWNER.value))

    if access.tier == Tier.PREMIUM and access.subscription is not None:
        secret = services.config.secrets.subscription_secret or ""
        revalidator = services.revalidator
        marker = request.cookies.get(REVALIDATED_COOKIE)
        if revalidator.state(marker, access.subscription, secret) == RevalidationState.PENDING:
            outcome = await revalidator.revalidate(access.subscription)
            if outcome == RevalidationOutcome.REVOKED:
                log_request(
                    endpoint=gate.label,
                    client_ip=gate.client_ip,
                    outcome="subscription_revoked",
                    tier=Tier.PREMIUM.value,
                    request_id=gate.request_id,
                )
                access = Access(tier=Tier.FREE, clear_subscription=True)
            elif outcome == RevalidationOutcome.ACTIVE:
                set_marker = revalidator.make_marker(access.subscription, secret)
            else:
                marker_age = REVALIDATION_RETRY_AGE
                set_marker = revalidator.make_marker(
                    access.subscription, secret, valid_for=marker_age
                )

    if access.tier == Tier.PREMIUM and access.user_id is not None:
        secret = services.config.secrets.subscription_secret or ""
        usage = await services.ledger.read_premium(request.cookies, access.user_id, secret)
        response = _json_response(
            TierResponse(
                tier=Tier.PREMIUM.value,
                email=access.email,
                usage=usage.count,
                limit=services.config.quota.premium_monthly,
            )
        )
        if set_marker is not None:
            set_cookie(
                response,
                REVALIDATED_COOKIE,
                set_marker,
                max_age=marker_age,
                secure=secure,
            )
        return response

    trial_secret = services.config.secrets.trial_secret
    if trial_secret:
        free = await services.ledger.read_free(request.cookies, gate.client_ip, trial_secret)
        body = TierResponse(
            tier=Tier.FREE.value,
            free_used=free.count,
            free_limit=services.config.quota.free_trial,
        )
    else:
        body = TierResponse(tier=Tier.FREE.value)
    return _apply_access_cookies(_json_response(body), access, services)


# --- Checkout ---


@router.post("/create-checkout", response_model=None)
async def create_checkout(
    gate: GateContext = Depends(guard("checkout")),
    services: Services = Depends(get_services),
) -> JSONResponse:
    payments_cfg = services.config.payments
    if not services.payments.configured or not payments_cfg.store_id or not payments_cfg.variant_id:
        return _not_configured(gate, "Checkout", "Missing payment API key, store id or variant id")

    try:
        url = await services.payments.create_checkout(payments_cfg.store_id, payments_cfg.variant_id)
    except PaymentProviderError as exc:
        log_request(
            endpoint=gate.label,
            client_ip=gate.client_ip,
            outcome="provider_error",
            error=exc.detail,
            request_id=gate.request_id,
        )
        return _error_response(
            502, "provider_error", "Could not create checkout. Please try again later."
        )

    log_request(
        endpoint=gate.label,
        client_ip=gate.client_ip,
        outcome="success",
        request_id=gate.request_id,
    )
    return JSONResponse(status_code=200, content={"url": url})


# --- Recommendations ---


@router.post("/recommend", response_model=None)
async def recommend(
    request: Request,
    gate: GateContext = Depends(guard("recommend")),
    body: RecommendRequest = Depends(json_body(RecommendRequest)),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Handle a gated recommendation request (steps 4-7 of the pipeline)."""
    config = services.config
    access = services.resolver.resolve(request.cookies)
    tier = access.tier.value

    # --- Quota check ---
    premium_usage = 0
    free_used = 0
    if access.tier == Tier.PREMIUM and access.user_id is not None:
        secret = config.secrets.subscription_secret or ""
        premium_usage = (
            await services.ledger.read_premium(request.cookies, access.user_id, secret)
        ).count
        if premium_usage >= config.quota.premium_monthly:
            log_request(
                endpoint=gate.label,
                client_ip=gate.client_ip,
                outcome="quota_exceeded",
                tier=tier,
                request_id=gate.request_id,
                extra={"usage": premium_usage},
            )
            return _error_response(
                429,
                "quota_exceeded",
                "Monthly limit reached. Your quota resets at the start of next month.",
                tier=tier,
                usage=premium_usage,
                limit=config.quota.premium_monthly,
            )
    elif access.tier == Tier.FREE:
        trial_secret = config.secrets.trial_secret
        if not trial_secret:
            log_request(
                endpoint=gate.label,
                client_ip=gate.client_ip,
                outcome="subscription_required",
                tier=tier,
                request_id=gate.request_id,
            )
            return _apply_access_cookies(
                _error_response(
                    403, "subscription_required", "Premium subscription required", tier=tier
                ),
                access,
                services,
            )
        free_used = (
            await services.ledger.read_free(request.cookies, gate.client_ip, trial_secret)
        ).count
        if free_used >= config.quota.free_trial:
            log_request(
                endpoint=gate.label,
                client_ip=gate.client_ip,
                outcome="quota_exceeded",
                tier=tier,
                request_id=gate.request_id,
                extra={"free_used": free_used},
            )
            return _apply_access_cookies(
                _error_response(
                    403,
                    "quota_exceeded",
                    "Free trial used up. Subscribe to keep getting recommendations.",
                    tier=tier,
                    free_used=free_used,
                    free_limit=config.quota.free_trial,
                ),
                access,
                services,
            )

    # --- Provider call ---
    try:
        result = await services.recommender(body)
    except ProviderNotConfigured as exc:
        return _not_configured(gate, "AI service", exc.detail)
    except httpx.HTTPStatusError as exc:
        log_request(
            endpoint=gate.label,
            client_ip=gate.client_ip,
            outcome="provider_error",
            tier=tier,
            error="Provider returned HTTP {}: {}".format(
                exc.response.status_code, exc.response.text[:500]
            ),
            request_id=gate.request_id,
        )
        return _error_response(
            502, "provider_error", "AI service temporarily unavailable. Please try again."
        )
    except httpx.HTTPError as exc:
        log_request(
            endpoint=gate.label,
            client_ip=gate.client_ip,
            outcome="provider_error",
            tier=tier,
            error="Provider unreachable: {}".format(exc),
            request_id=gate.request_id,
        )
        return _error_response(
            502, "provider_error", "AI service temporarily unavailable. Please try again."
        )
    except Exception as exc:
        log_request(
            endpoint=gate.label,
            client_ip=gate.client_ip,
            outcome="provider_error",
            tier=tier,
            error=repr(exc),
            request_id=gate.request_id,
        )
        return _error_response(
            500, "server_error", "An internal error occurred. Please try again."
        )

    # --- Usage write-back ---
    if access.tier == Tier.PREMIUM and access.user_id is not None:
        count = premium_usage + 1
        response = _json_response(
            RecommendResponse(result=result, usage=count, limit=config.quota.premium_monthly)
        )
        await services.ledger.write_premium(
            response, access.user_id, count, config.secrets.subscription_secret or ""
        )
        extra: Dict[str, Any] = {"usage": count}
    elif access.tier == Tier.FREE:
        count = free_used + 1
        response = _json_response(
            RecommendResponse(result=result, free_used=count, free_limit=config.quota.free_trial)
        )
        await services.ledger.write_free(
            response, gate.client_ip, count, config.secrets.trial_secret or ""
        )
        _apply_access_cookies(response, access, services)
        extra = {"free_used": count}
    else:
        response = _json_response(RecommendResponse(result=result))
        extra = {}

    log_request(
        endpoint=gate.label,
        client_ip=gate.client_ip,
        outcome="success",
        tier=tier,
        request_id=gate.request_id,
        extra=extra,
    )
    return response


# --- Webhook ---

_WEBHOOK_EVENTS = {
    "order_created": "New order",
    "order_refunded": "Order refunded",
    "subscription_created": "Subscription created",
    "subscription_cancelled": "Subscription cancelled",
    "subscription_expired": "Subscription expired",
    "subscription_paused": "Subscription paused",
}


@router.post("/webhook", response_model=None)
async def webhook(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    """Receive payment provider events.

    The signature covers the exact raw body. Every correctly signed delivery
    is acknowledged with 200, including ignored events, so the provider does
    not retry.
    """
    ip = client_ip(request)
    request_id = new_request_id()
    secret = services.config.secrets.webhook_secret
    if not secret:
        log_request(
            endpoint="webhook",
            client_ip=ip,
            outcome="not_configured",
            error="Webhook secret is not set",
            request_id=request_id,
        )
        return _error_response(500, "not_configured", "Server not configured")

    raw_body = await request.body()
    if not verify_webhook_signature(raw_body, request.headers.get("x-signature"), secret):
        log_request(
            endpoint="webhook",
            client_ip=ip,
            outcome="invalid_signature",
            error="Webhook signature verification failed",
            request_id=request_id,
        )
        return _error_response(401, "invalid_signature", "Invalid signature")

    ack = JSONResponse(status_code=200, content={"received": True})

    try:
        payload = json.loads(raw_body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        log_request(endpoint="webhook", client_ip=ip, outcome="ignored", request_id=request_id)
        return ack

    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    attrs = data.get("attributes") if isinstance(data.get("attributes"), dict) else {}
    event_name = meta.get("event_name")

    expected_store = services.config.payments.store_id
    if expected_store and str(attrs.get("store_id")) != expected_store:
        log_request(
            endpoint="webhook",
            client_ip=ip,
            outcome="ignored",
            request_id=request_id,
            extra={"event": event_name, "reason": "store_id mismatch"},
        )
        return ack

    log_request(
        endpoint="webhook",
        client_ip=ip,
        outcome="event",
        request_id=request_id,
        extra={
            "event": event_name,
            "order_id": data.get("id"),
            "customer_id": attrs.get("customer_id"),
            "status": attrs.get("status"),
        },
    )
    description = _WEBHOOK_EVENTS.get(str(event_name))
    if description:
        logger.info("Webhook: %s (id=%s, customer=%s)", description, data.get("id"), attrs.get("customer_id"))
    else:
        logger.info("Webhook: unhandled event %s", event_name)
    return ack


# --- Diagnostics ---


@router.get("/debug-config", response_model=None)
async def debug_config(
    request: Request,
    gate: GateContext = Depends(guard("debug")),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Owner-only view of which settings are present."""
    access = services.resolver.resolve(request.cookies)
    if access.tier != Tier.OWNER:
        return _error_response(401, "unauthorized", "Unauthorized")

    config = services.config
    secrets = config.secrets

    def present(value: Optional[str], missing: str = "MISSING") -> str:
        return "set" if value else missing

    if config.provider.api_key:
        provider_state = "set"
    elif config.provider.stub:
        provider_state = "stub mode"
    else:
        provider_state = "MISSING"

    report = {
        "payments_api_key": present(config.payments.api_key),
        "subscription_secret": present(secrets.subscription_secret),
        "trial_secret": present(secrets.trial_secret, "not set (free trial disabled)"),
        "webhook_secret": present(secrets.webhook_secret),
        "owner_key": "set",
        "store_id": present(config.payments.store_id, "not set"),
        "product_id": present(config.payments.product_id, "not set"),
        "variant_id": present(config.payments.variant_id),
        "provider_api_key": provider_state,
        "durable_store": "enabled" if services.store is not None else "disabled",
        "environment": "production" if config.production else "development",
    }

    api_test = "skipped"
    if services.payments.configured:
        try:
            await services.payments.get_current_user()
            api_test = "OK"
        except PaymentProviderError as exc:
            api_test = "FAILED (HTTP {})".format(exc.status_code) if exc.status_code else "ERROR"
            log_request(
                endpoint=gate.label,
                client_ip=gate.client_ip,
                outcome="provider_error",
                error=exc.detail,
                request_id=gate.request_id,
            )

    return JSONResponse(status_code=200, content={"config": report, "apiKeyTest": api_test})


# --- Application ---


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI application, optionally around prebuilt services."""

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        """Initialize services and logging on startup; close the store on shutdown."""
        if getattr(application.state, "services", None) is None:
            application.state.services = build_services(load_config(CONFIG_PATH))
        config = application.state.services.config
        setup_logging(config.log_file, config.log_level)
        yield
        await application.state.services.close()

    application = FastAPI(title="ScentWise Gateway", version="1.0.0", lifespan=lifespan)
    if services is not None:
        application.state.services = services
    application.include_router(router)

    @application.exception_handler(GateError)
    async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
        return _error_response(
            exc.status_code, exc.error_type, exc.message, headers=exc.headers, **exc.extra
        )

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        error_type = {404: "not_found", 405: "method_not_allowed"}.get(exc.status_code, "http_error")
        return _error_response(
            exc.status_code, error_type, str(exc.detail), headers=getattr(exc, "headers", None)
        )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Convert FastAPI's validation errors into our error envelope format."""
        messages = "; ".join(str(e.get("msg", "")) for e in exc.errors())
        return _error_response(
            422,
            "validation_error",
            "Request validation failed: {}".format(messages),
        )

    return application


app = create_app()

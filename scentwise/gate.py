"""Request gate shared by every endpoint.

guard(label) is a FastAPI dependency that runs the first gate steps before
any request work: the cross-site origin check for state-changing methods,
then the per-endpoint rate limit. Access resolution and quota checks follow
in the endpoint itself because they depend on what the endpoint does.

Gate failures are raised as GateError and rendered by the application's
exception handler. Endpoints take their JSON body through json_body(),
declared after guard(), so a rejected request is never parsed.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar
from urllib.parse import urlsplit

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError

from scentwise.limiter import client_ip
from scentwise.services import get_services
from scentwise.telemetry import log_request

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

_DEFAULT_PORTS = {"http": 80, "https": 443}

RATE_LIMIT_MESSAGE = "Too many requests. Please wait a minute and try again."

ModelT = TypeVar("ModelT", bound=BaseModel)


class GateError(Exception):
    """Raised when a request is rejected by the gate or an endpoint.

    Extra keyword arguments are merged into the error envelope (e.g. tier,
    usage and limit for quota errors).
    """

    def __init__(
        self,
        status_code: int,
        error_type: str,
        message: str,
        headers: Optional[Dict[str, str]] = None,
        **extra: Any
    ) -> None:
        self.status_code = status_code
        self.error_type = error_type
        self.message = message
        self.headers = headers
        self.extra = extra
        super().__init__(message)


@dataclass
class GateContext:
    """What the gate learned about a request that passed it."""

    label: str
    client_ip: str
    request_id: str


def _authority(url: str) -> Optional[str]:
    """Return "host[:port]" of url with the scheme's default port dropped."""
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not hostname:
        return None
    if ":" in hostname:
        hostname = "[{}]".format(hostname)
    if port is None or port == _DEFAULT_PORTS.get(parts.scheme.lower()):
        return hostname
    return "{}:{}".format(hostname, port)


def validate_origin(request: Request) -> bool:
    """Reject cross-site state-changing requests.

    Safe methods pass. Otherwise the Origin header must name the same host
    as the Host header; Referer is consulted only when Origin is absent.
    Missing, mismatched or unparsable headers fail.
    """
    if request.method.upper() in SAFE_METHODS:
        return True

    host = request.headers.get("host")
    if not host:
        return False

    origin = request.headers.get("origin")
    source = origin if origin is not None else request.headers.get("referer")
    if not source:
        return False

    source_authority = _authority(source)
    if source_authority is None:
        return False
    scheme = urlsplit(source).scheme
    return source_authority == _authority("{}://{}".format(scheme, host.strip().lower()))


def new_request_id() -> str:
    return "sw-{}".format(uuid.uuid4().hex[:12])


def guard(label: str, *, check_origin: bool = True) -> Callable[[Request], Awaitable[GateContext]]:
    """Build the gate dependency for an endpoint label."""

    async def _gate(request: Request) -> GateContext:
        services = get_services(request)
        ip = client_ip(request)
        request_id = new_request_id()

        if check_origin and not validate_origin(request):
            log_request(
                endpoint=label,
                client_ip=ip,
                outcome="forbidden",
                error="Origin/Referer check failed",
                request_id=request_id,
            )
            raise GateError(403, "forbidden", "Forbidden")

        rule = services.config.rate_limit.rule_for(label)
        result = await services.limiter.allow(
            "{}:{}".format(label, ip), rule.max_requests, rule.window_seconds
        )
        if not result.allowed:
            log_request(
                endpoint=label,
                client_ip=ip,
                outcome="rate_limited",
                request_id=request_id,
            )
            raise GateError(
                429,
                "rate_limit_exceeded",
                RATE_LIMIT_MESSAGE,
                headers={"Retry-After": str(int(rule.window_seconds))},
            )

        return GateContext(label=label, client_ip=ip, request_id=request_id)

    return _gate


def json_body(model: Type[ModelT]) -> Callable[[Request], Awaitable[ModelT]]:
    """Build a dependency that parses the JSON body into model.

    Parse and schema failures are raised as RequestValidationError so they
    share the 422 envelope of FastAPI's own validation.
    """

    async def _parse(request: Request) -> ModelT:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise RequestValidationError(
                [{"type": "json_invalid", "loc": ("body",), "msg": "JSON decode error"}]
            ) from exc
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise RequestValidationError(exc.errors()) from exc

    return _parse

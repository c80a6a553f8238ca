"""Client for the subscription/payment provider (Lemon Squeezy JSON:API).

Only the calls the gateway needs are implemented: customer lookup by email,
order lookup, subscription status for an order, hosted checkout creation and
webhook signature verification. Upstream failures are raised as
PaymentProviderError carrying the HTTP status (None for transport errors);
callers decide what the client gets to see.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from scentwise import tokens
from scentwise.config import PaymentsConfig

JSON_API = "application/vnd.api+json"

REFUNDED = "refunded"


class PaymentProviderError(Exception):
    """Raised when the payment provider cannot be reached or returns an error."""

    def __init__(self, status_code: Optional[int], detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(detail)

    @property
    def auth_failed(self) -> bool:
        return self.status_code in (401, 403)


@dataclass
class Customer:
    id: str
    email: str


@dataclass
class Order:
    """The subset of an order the gateway cares about."""

    id: str
    customer_id: str
    status: str
    user_email: str = ""
    product_id: Optional[str] = None
    store_id: Optional[str] = None

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "Order":
        attrs = resource.get("attributes") or {}
        item = attrs.get("first_order_item") or {}
        product_id = item.get("product_id")
        store_id = attrs.get("store_id")
        return cls(
            id=str(resource.get("id") or ""),
            customer_id=str(attrs.get("customer_id") or ""),
            status=str(attrs.get("status") or ""),
            user_email=str(attrs.get("user_email") or ""),
            product_id=str(product_id) if product_id is not None else None,
            store_id=str(store_id) if store_id is not None else None,
        )

    def grants_access(self, product_id: Optional[str]) -> bool:
        """True if the order is not refunded and is for the expected product."""
        if self.status == REFUNDED:
            return False
        if product_id and self.product_id != product_id:
            return False
        return True


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check the X-Signature header against an HMAC of the exact raw body."""
    if not signature or not secret:
        return False
    return tokens.verify(signature, tokens.digest(secret, raw_body))


def _json_body(resp: httpx.Response, path: str) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as exc:
        raise PaymentProviderError(resp.status_code, "{} returned invalid JSON".format(path)) from exc
    if not isinstance(data, dict):
        raise PaymentProviderError(resp.status_code, "{} returned a non-object body".format(path))
    return data


class LemonSqueezyClient:
    """Async client for the provider's REST API."""

    def __init__(
        self,
        config: PaymentsConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._config.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": "Bearer {}".format(self._config.api_key or ""),
            "Accept": JSON_API,
            "Content-Type": JSON_API,
        }

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return "{}/{}".format(self._config.base_url.rstrip("/"), path.lstrip("/"))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=self._config.timeout, transport=self._transport
            ) as client:
                resp = await client.request(
                    method, self._url(path), params=params, json=json, headers=self._headers()
                )
        except httpx.HTTPError as exc:
            raise PaymentProviderError(None, "{} {} failed: {}".format(method, path, exc)) from exc
        return resp

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = await self._request("GET", path, params=params)
        if resp.status_code >= 400:
            raise PaymentProviderError(
                resp.status_code,
                "GET {} returned HTTP {}: {}".format(path, resp.status_code, resp.text[:500]),
            )
        return _json_body(resp, path)

    async def find_customer_by_email(self, email: str) -> Optional[Customer]:
        """Find a customer by email, paging through the store's customers.

        The provider's email filter is unreliable, so emails are matched
        locally. Paging stops at the first match or after max_customer_pages.
        """
        wanted = email.strip().lower()
        first_page: Dict[str, Any] = {"page[size]": 100}
        if self._config.store_id:
            first_page["filter[store_id]"] = self._config.store_id
        params: Optional[Dict[str, Any]] = first_page

        url = "customers"
        for _ in range(self._config.max_customer_pages):
            data = await self._get_json(url, params)
            for resource in data.get("data") or []:
                attrs = resource.get("attributes") or {}
                candidate = str(attrs.get("email") or "").lower()
                if candidate and candidate == wanted:
                    return Customer(id=str(resource.get("id")), email=candidate)

            next_url = (data.get("links") or {}).get("next")
            if not next_url:
                break
            # The next link already carries the query string.
            url, params = next_url, None
        return None

    async def list_customer_orders(self, customer_id: str) -> List[Order]:
        data = await self._get_json("customers/{}/orders".format(customer_id))
        return [Order.from_resource(r) for r in data.get("data") or []]

    async def get_order(self, order_id: str) -> Optional[Order]:
        """Fetch one order. Returns None when the provider answers 404."""
        try:
            data = await self._get_json("orders/{}".format(order_id))
        except PaymentProviderError as exc:
            if exc.status_code == 404:
                return None
            raise
        resource = data.get("data")
        if not isinstance(resource, dict):
            return None
        return Order.from_resource(resource)

    async def list_order_subscriptions(self, order_id: str) -> List[str]:
        """Return the status of every subscription created by an order."""
        data = await self._get_json("subscriptions", {"filter[order_id]": order_id})
        return [
            str((r.get("attributes") or {}).get("status") or "")
            for r in data.get("data") or []
        ]

    async def create_checkout(self, store_id: str, variant_id: str) -> str:
        """Create a hosted checkout and return its URL."""
        payload = {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "checkout_options": {"embed": True},
                    "checkout_data": {"custom": {}},
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": store_id}},
                    "variant": {"data": {"type": "variants", "id": variant_id}},
                },
            }
        }
        resp = await self._request("POST", "checkouts", json=payload)
        if resp.status_code >= 400:
            raise PaymentProviderError(
                resp.status_code,
                "POST checkouts returned HTTP {}: {}".format(resp.status_code, resp.text[:500]),
            )
        url = ((_json_body(resp, "checkouts").get("data") or {}).get("attributes") or {}).get("url")
        if not url:
            raise PaymentProviderError(resp.status_code, "Checkout response carried no URL")
        return str(url)

    async def get_current_user(self) -> Dict[str, Any]:
        """Return the account the API key belongs to (connectivity check)."""
        data = await self._get_json("users/me")
        return data.get("data") or {}

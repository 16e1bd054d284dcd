from __future__ import annotations

import json
import socket
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol
from urllib import error, request
from urllib.parse import quote, urlparse

from referral_pricing.core.constants import BILLABLE_SUBSCRIPTION_STATUSES
from referral_pricing.core.dates import normalize_datetime
from referral_pricing.core.exceptions import (
    BillingConflictError,
    BillingError,
    BillingRejectedError,
    BillingTimeoutError,
    BillingUnavailableError,
    InvalidInputError,
    SubscriptionNotFoundError,
)
from referral_pricing.core.reduction_calculator import to_decimal

_ALLOWED_HTTP_SCHEMES = {"http", "https"}


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription_id: int
    status: str
    price: Decimal
    next_payment_date: Optional[datetime]
    customer_id: Optional[int]

    @property
    def is_billable(self) -> bool:
        return (self.status or "").lower() in BILLABLE_SUBSCRIPTION_STATUSES


class BillingGateway(Protocol):
    """Operations the scheduler needs from the subscription billing system."""

    def get_subscription(self, subscription_id: int) -> SubscriptionSnapshot:
        ...

    def set_subscription_price(self, subscription_id: int, new_price: Decimal, note: str = "") -> None:
        ...


def parse_subscription(payload: dict, subscription_id: Optional[int] = None) -> SubscriptionSnapshot:
    if not isinstance(payload, dict):
        raise BillingRejectedError("Subscription payload must be an object")
    raw_id = payload.get("id", payload.get("subscription_id", subscription_id))
    if raw_id is None:
        raise BillingRejectedError("Subscription payload has no id")
    if payload.get("price") is None:
        raise BillingRejectedError("Subscription {} payload has no price".format(raw_id))
    try:
        price = to_decimal(payload["price"], "price")
    except InvalidInputError as exc:
        raise BillingRejectedError("Subscription {} has an invalid price".format(raw_id)) from exc
    try:
        parsed_id = int(raw_id)
    except (TypeError, ValueError) as exc:
        raise BillingRejectedError("Subscription id {!r} is not numeric".format(raw_id)) from exc
    customer_id = payload.get("customer_id")
    if customer_id is not None:
        try:
            customer_id = int(customer_id)
        except (TypeError, ValueError) as exc:
            raise BillingRejectedError(
                "Subscription {} has a non-numeric customer_id {!r}".format(raw_id, customer_id)
            ) from exc
    return SubscriptionSnapshot(
        subscription_id=parsed_id,
        status=str(payload.get("status") or "").strip().lower(),
        price=price,
        next_payment_date=normalize_datetime(payload.get("next_payment_date")),
        customer_id=customer_id,
    )


def validate_api_url(api_url):
    parsed = urlparse(api_url)
    scheme = parsed.scheme.lower()
    if scheme not in _ALLOWED_HTTP_SCHEMES or not parsed.netloc:
        raise ValueError("BILLING_API_URL must be an absolute HTTP(S) URL")
    return api_url.rstrip("/")


def _error_body(exc) -> str:
    try:
        body_bytes = exc.read()
    except (OSError, ValueError):
        return ""
    if not body_bytes:
        return ""
    return body_bytes.decode("utf-8", errors="replace").strip()


def _raise_http_error(exc, subscription_id):
    body = _error_body(exc)
    message = "Billing API error: HTTP {}".format(exc.code)
    if body:
        message = "{} {}".format(message, body)
    if exc.code == 404:
        raise SubscriptionNotFoundError("Subscription {} not found".format(subscription_id)) from exc
    if exc.code == 409:
        raise BillingConflictError(message) from exc
    if exc.code in (408, 429) or exc.code >= 500:
        raise BillingUnavailableError(message) from exc
    raise BillingRejectedError(message) from exc


class HttpBillingGateway:
    """JSON-over-HTTP client for the billing system.

    ``GET  {base}/subscriptions/{id}`` returns the subscription snapshot and
    ``PUT  {base}/subscriptions/{id}/price`` sets the recurring price; the
    billing side recalculates totals and stores the note on the subscription.
    """

    def __init__(self, api_url: str, *, access_token: Optional[str] = None, timeout_seconds: float = 10.0):
        self._api_url = validate_api_url((api_url or "").strip())
        self._access_token = (access_token or "").strip()
        self._timeout = float(timeout_seconds)

    @classmethod
    def from_settings(cls, settings) -> "HttpBillingGateway":
        api_url = (settings.BILLING_API_URL or "").strip()
        if not api_url:
            raise RuntimeError("BILLING_API_URL is not configured")
        return cls(
            api_url,
            access_token=settings.BILLING_API_TOKEN,
            timeout_seconds=settings.BILLING_TIMEOUT_SECONDS,
        )

    def get_subscription(self, subscription_id: int) -> SubscriptionSnapshot:
        payload = self._request("GET", self._subscription_url(subscription_id), subscription_id)
        return parse_subscription(payload, subscription_id)

    def set_subscription_price(self, subscription_id: int, new_price: Decimal, note: str = "") -> None:
        body = {"price": str(new_price), "note": note}
        self._request("PUT", self._subscription_url(subscription_id) + "/price", subscription_id, body)

    def _subscription_url(self, subscription_id: int) -> str:
        return "{}/subscriptions/{}".format(self._api_url, quote(str(subscription_id), safe=""))

    def _headers(self) -> dict:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._access_token:
            if self._access_token.lower().startswith("bearer "):
                headers["Authorization"] = self._access_token
            else:
                headers["Authorization"] = "Bearer {}".format(self._access_token)
        return headers

    def _request(self, method: str, url: str, subscription_id, body: Optional[dict] = None):
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = request.Request(url, data=data, method=method, headers=self._headers())
        try:
            with request.urlopen(req, timeout=self._timeout) as response:  # nosec B310
                raw = response.read()
        except error.HTTPError as exc:
            _raise_http_error(exc, subscription_id)
        except (socket.timeout, TimeoutError) as exc:
            raise BillingTimeoutError(
                "Billing API timed out after {}s".format(self._timeout)
            ) from exc
        except error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise BillingTimeoutError(
                    "Billing API timed out after {}s".format(self._timeout)
                ) from exc
            raise BillingUnavailableError("Billing API unreachable: {}".format(exc.reason)) from exc

        if not raw:
            return {}
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise BillingError("Billing API returned invalid JSON") from exc


__all__ = [
    "BillingGateway",
    "HttpBillingGateway",
    "SubscriptionSnapshot",
    "parse_subscription",
    "validate_api_url",
]

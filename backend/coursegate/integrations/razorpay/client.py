"""
Razorpay REST client for plans, orders and subscriptions.

The gateway is an opaque external boundary; this module is the only place
that knows its URLs and payload shapes. Idempotent creates are retried a
bounded number of times on transport errors and 5xx responses.
Cancellation is never retried blindly: the current gateway state is read
first and the call is skipped when the subscription is already cancelled.
"""

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from coursegate.config import get_settings
from coursegate.platform.errors import GatewayError

logger = logging.getLogger(__name__)

# Gateway statuses after which a cancel call is pointless
_FINISHED_STATUSES = frozenset({"cancelled", "completed", "expired"})

_RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504})


class PaymentGatewayError(GatewayError):
    """Error returned by (or while talking to) the Razorpay API."""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict] = None):
        super().__init__(message, details=details)
        self.gateway_code = code


@dataclass
class GatewayPlan:
    plan_id: str
    period: Optional[str] = None
    interval: Optional[int] = None


@dataclass
class GatewayOrder:
    order_id: str
    amount: int
    currency: str
    status: Optional[str] = None
    receipt: Optional[str] = None


@dataclass
class GatewayAddon:
    """One-time charge attached to a subscription (used for paid trials)."""
    name: str
    amount: int
    currency: str = "INR"

    def to_payload(self) -> Dict[str, Any]:
        return {"item": {"name": self.name, "amount": self.amount, "currency": self.currency}}


@dataclass
class GatewaySubscription:
    subscription_id: str
    status: Optional[str] = None
    short_url: Optional[str] = None
    plan_id: Optional[str] = None
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    charge_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    notes: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return (self.status or "") in _FINISHED_STATUSES


def from_unix(value: Optional[Any]) -> Optional[datetime]:
    """Razorpay timestamps are unix seconds; 0/None mean unset."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """
    Verify X-Razorpay-Signature over the exact raw request bytes.

    Re-serialising a parsed body changes whitespace/field order and would
    reject legitimate deliveries, so callers must pass the untouched body.
    """
    secret = secret or get_settings().razorpay_webhook_secret
    if not secret:
        logger.error("RAZORPAY_WEBHOOK_SECRET not configured for webhook verification")
        return False
    if not signature:
        return False

    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def verify_payment_signature(
    order_id: str,
    payment_id: str,
    signature: Optional[str],
    secret: Optional[str] = None,
) -> bool:
    """Verify the checkout callback signature: HMAC(key_secret, "order_id|payment_id")."""
    secret = secret or get_settings().razorpay_key_secret
    if not secret:
        logger.error("RAZORPAY_KEY_SECRET not configured for payment verification")
        return False
    if not signature or not order_id or not payment_id:
        return False

    message = f"{order_id}|{payment_id}".encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


class RazorpayClient:
    """
    Async client for the Razorpay API.

    Handles:
    - Recurring plan templates
    - One-time orders (lifetime purchases)
    - Subscriptions with optional trial addon, fetch, cancel
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.key_id = key_id or settings.razorpay_key_id
        self.key_secret = key_secret or settings.razorpay_key_secret
        self.base_url = (base_url or settings.razorpay_base_url).rstrip("/")
        self.max_retries = max_retries if max_retries is not None else settings.gateway_max_retries

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id or "", self.key_secret or ""),
            headers={"Content-Type": "application/json"},
            timeout=timeout or float(settings.gateway_timeout_seconds),
        )

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        retry: bool = False,
    ) -> Dict[str, Any]:
        """
        Execute one API call.

        Args:
            method: HTTP method
            path: Path under the API base URL
            payload: JSON body
            retry: Retry on transport errors/5xx (idempotent calls only)

        Raises:
            PaymentGatewayError: on any failure after retries
        """
        attempts = (self.max_retries if retry else 0) + 1
        last_error: Optional[PaymentGatewayError] = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(method, path, json=payload)
                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as e:
                description = _error_description(e.response)
                logger.error("Razorpay API HTTP error", extra={
                    "path": path,
                    "status_code": e.response.status_code,
                    "description": description,
                    "attempt": attempt,
                })
                last_error = PaymentGatewayError(
                    f"Payment gateway error: {description}",
                    code=str(e.response.status_code),
                )
                if e.response.status_code not in _RETRYABLE_STATUS_CODES:
                    raise last_error

            except httpx.RequestError as e:
                logger.error("Razorpay API request error", extra={
                    "path": path,
                    "error": str(e),
                    "attempt": attempt,
                })
                last_error = PaymentGatewayError(f"Request failed: {str(e)}")

            if attempt < attempts:
                await asyncio.sleep(0.5 * attempt)

        raise last_error

    # ------------------------------------------------------------------ plans

    async def create_plan(
        self,
        name: str,
        amount: int,
        currency: str,
        period: str,
        interval: int = 1,
        description: Optional[str] = None,
    ) -> GatewayPlan:
        """Register a recurring template. period is 'monthly' or 'yearly'."""
        data = await self._request("POST", "/plans", {
            "period": period,
            "interval": interval,
            "item": {
                "name": name,
                "amount": amount,
                "currency": currency,
                "description": description,
            },
        }, retry=True)

        logger.info("Razorpay plan created", extra={"gateway_plan_id": data.get("id"), "period": period})
        return GatewayPlan(plan_id=data["id"], period=data.get("period"), interval=data.get("interval"))

    # ----------------------------------------------------------------- orders

    async def create_order(
        self,
        amount: int,
        currency: str,
        notes: Optional[Dict[str, str]] = None,
        receipt: Optional[str] = None,
    ) -> GatewayOrder:
        """Create a one-time order (lifetime purchases)."""
        payload: Dict[str, Any] = {"amount": amount, "currency": currency, "notes": notes or {}}
        if receipt:
            payload["receipt"] = receipt
        data = await self._request("POST", "/orders", payload, retry=True)

        logger.info("Razorpay order created", extra={"order_id": data.get("id"), "amount": amount})
        return GatewayOrder(
            order_id=data["id"],
            amount=data.get("amount", amount),
            currency=data.get("currency", currency),
            status=data.get("status"),
            receipt=data.get("receipt"),
        )

    # ---------------------------------------------------------- subscriptions

    async def create_subscription(
        self,
        plan_id: str,
        total_count: int,
        notes: Optional[Dict[str, str]] = None,
        addons: Optional[List[GatewayAddon]] = None,
        start_at: Optional[datetime] = None,
        customer_notify: bool = True,
    ) -> GatewaySubscription:
        """
        Create a recurring subscription.

        A non-empty addons list charges immediately at checkout (paid trial);
        start_at defers the first recurring charge.
        """
        payload: Dict[str, Any] = {
            "plan_id": plan_id,
            "total_count": total_count,
            "customer_notify": 1 if customer_notify else 0,
            "notes": notes or {},
        }
        if addons:
            payload["addons"] = [addon.to_payload() for addon in addons]
        if start_at is not None:
            payload["start_at"] = int(start_at.timestamp())

        data = await self._request("POST", "/subscriptions", payload, retry=True)

        logger.info("Razorpay subscription created", extra={
            "gateway_subscription_id": data.get("id"),
            "status": data.get("status"),
            "has_addon": bool(addons),
        })
        return self._to_subscription(data)

    async def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        data = await self._request("GET", f"/subscriptions/{subscription_id}", retry=True)
        return self._to_subscription(data)

    async def cancel_subscription(
        self,
        subscription_id: str,
        cancel_at_cycle_end: bool = False,
    ) -> GatewaySubscription:
        """
        Cancel a subscription, immediately or at the end of the current cycle.

        Reads the current state first; an already finished subscription is
        returned as-is without issuing the cancel call.
        """
        current = await self.get_subscription(subscription_id)
        if current.is_finished:
            logger.info("Razorpay subscription already finished, skipping cancel", extra={
                "gateway_subscription_id": subscription_id,
                "status": current.status,
            })
            return current

        data = await self._request("POST", f"/subscriptions/{subscription_id}/cancel", {
            "cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0,
        })

        logger.info("Razorpay subscription cancelled", extra={
            "gateway_subscription_id": subscription_id,
            "cancel_at_cycle_end": cancel_at_cycle_end,
            "new_status": data.get("status"),
        })
        return self._to_subscription(data)

    @staticmethod
    def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
        return verify_webhook_signature(payload, signature, secret)

    @staticmethod
    def verify_payment_signature(
        order_id: str, payment_id: str, signature: Optional[str], secret: Optional[str] = None
    ) -> bool:
        return verify_payment_signature(order_id, payment_id, signature, secret)

    @staticmethod
    def _to_subscription(data: Dict[str, Any]) -> GatewaySubscription:
        return GatewaySubscription(
            subscription_id=data["id"],
            status=data.get("status"),
            short_url=data.get("short_url"),
            plan_id=data.get("plan_id"),
            current_start=from_unix(data.get("current_start")),
            current_end=from_unix(data.get("current_end")),
            charge_at=from_unix(data.get("charge_at")),
            ended_at=from_unix(data.get("ended_at")),
            notes=data.get("notes") or {},
        )


def _error_description(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or "Unknown error"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("description") or "Unknown error"
    return "Unknown error"

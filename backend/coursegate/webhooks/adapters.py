"""
Adapters from external notification shapes to GatewayEvent.

Razorpay sends {"event": name, "payload": {entity_type: {"entity": {...}}}}.
Google Play real-time developer notifications arrive as a Pub/Sub push
envelope whose base64 message.data holds a flat subscriptionNotification.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from coursegate.integrations.razorpay.client import from_unix
from coursegate.models.base import utcnow
from coursegate.platform.errors import ValidationError
from coursegate.webhooks.events import EventKind, EventSource, GatewayEvent

logger = logging.getLogger(__name__)

RAZORPAY_EVENT_KINDS = {
    "subscription.authenticated": EventKind.AUTHENTICATED,
    "subscription.activated": EventKind.ACTIVATED,
    "invoice.generated": EventKind.INVOICE_GENERATED,
    "invoice.paid": EventKind.CHARGED,
    "subscription.charged": EventKind.CHARGED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
    "subscription.pending": EventKind.PAYMENT_FAILED,
    "payment.failed": EventKind.PAYMENT_ERROR,
    "order.paid": EventKind.ORDER_PAID,
    "payment.captured": EventKind.ORDER_PAID,
    "subscription.cancelled": EventKind.CANCELLED,
    "subscription.halted": EventKind.HALTED,
    "subscription.expired": EventKind.EXPIRED,
    "subscription.completed": EventKind.EXPIRED,
}

PLAY_NOTIFICATION_KINDS = {
    1: EventKind.CHARGED,          # SUBSCRIPTION_RECOVERED
    2: EventKind.CHARGED,          # SUBSCRIPTION_RENEWED
    3: EventKind.CANCELLED,        # SUBSCRIPTION_CANCELED
    4: EventKind.ACTIVATED,        # SUBSCRIPTION_PURCHASED
    5: EventKind.HALTED,           # SUBSCRIPTION_ON_HOLD
    6: EventKind.PAYMENT_FAILED,   # SUBSCRIPTION_IN_GRACE_PERIOD
    7: EventKind.ACTIVATED,        # SUBSCRIPTION_RESTARTED
    12: EventKind.CANCELLED,       # SUBSCRIPTION_REVOKED
    13: EventKind.EXPIRED,         # SUBSCRIPTION_EXPIRED
}

PLAY_CANCELED = 3


def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    wrapper = payload.get(name) or {}
    return wrapper.get("entity") or {}


def from_millis(value: Optional[Any]) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def from_razorpay(body: Dict[str, Any], event_id: Optional[str] = None) -> Optional[GatewayEvent]:
    """Normalise a Razorpay webhook body. Returns None for events we do not handle."""
    event_type = body.get("event")
    kind = RAZORPAY_EVENT_KINDS.get(event_type)
    if kind is None:
        logger.info("Unhandled Razorpay event", extra={"event_type": event_type, "event_id": event_id})
        return None

    payload = body.get("payload") or {}
    subscription = _entity(payload, "subscription")
    invoice = _entity(payload, "invoice")
    payment = _entity(payload, "payment")
    order = _entity(payload, "order")

    gateway_subscription_id = (
        subscription.get("id")
        or invoice.get("subscription_id")
        or payment.get("subscription_id")
    )

    if invoice:
        amount = invoice.get("amount_paid") or invoice.get("amount")
        currency = invoice.get("currency")
    elif payment:
        amount = payment.get("amount")
        currency = payment.get("currency")
    else:
        amount = order.get("amount_paid") or order.get("amount")
        currency = order.get("currency")

    period_start = (
        from_unix(invoice.get("billing_start") or invoice.get("period_start"))
        or from_unix(subscription.get("current_start"))
    )
    period_end = (
        from_unix(invoice.get("billing_end") or invoice.get("period_end"))
        or from_unix(subscription.get("current_end"))
    )

    error = {
        key: payment.get(key)
        for key in ("error_code", "error_description", "error_reason")
        if payment.get(key)
    }
    if invoice.get("error_reason") and "error_reason" not in error:
        error["error_reason"] = invoice.get("error_reason")

    return GatewayEvent(
        kind=kind,
        source=EventSource.RAZORPAY.value,
        event_type=event_type,
        event_id=event_id,
        gateway_subscription_id=gateway_subscription_id,
        invoice_id=invoice.get("id") or payment.get("invoice_id"),
        payment_id=payment.get("id") or invoice.get("payment_id"),
        order_id=order.get("id") or payment.get("order_id") or invoice.get("order_id"),
        amount=int(amount) if amount is not None else None,
        currency=currency,
        payment_method=payment.get("method"),
        period_start=period_start,
        period_end=period_end,
        charge_at=from_unix(subscription.get("charge_at")),
        ended_at=from_unix(subscription.get("ended_at")),
        occurred_at=from_unix(payment.get("created_at")) or from_unix(body.get("created_at")) or utcnow(),
        notes=subscription.get("notes") or payment.get("notes") or order.get("notes") or {},
        error=error,
    )


def decode_pubsub_envelope(envelope: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
    """
    Unwrap a Pub/Sub push body into (notification dict, message id).

    Raises:
        ValidationError: envelope or its data is malformed
    """
    message = envelope.get("message") if isinstance(envelope, dict) else None
    if not isinstance(message, dict) or not message.get("data"):
        raise ValidationError("Pub/Sub envelope has no message data")
    try:
        decoded = base64.b64decode(message["data"], validate=True)
        data = json.loads(decoded)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Pub/Sub message data is not base64 JSON") from e
    if not isinstance(data, dict):
        raise ValidationError("Pub/Sub message data is not a JSON object")
    return data, message.get("messageId") or message.get("message_id")


def from_play_rtdn(data: Dict[str, Any], message_id: Optional[str] = None) -> Optional[GatewayEvent]:
    """Normalise a Play developer notification. Test and one-time notifications yield None."""
    notification = data.get("subscriptionNotification")
    if not notification:
        logger.info("Ignoring non-subscription store notification", extra={
            "message_id": message_id,
            "is_test": "testNotification" in data,
        })
        return None

    try:
        code = int(notification.get("notificationType"))
    except (TypeError, ValueError):
        code = None
    kind = PLAY_NOTIFICATION_KINDS.get(code)
    if kind is None:
        logger.info("Unhandled store notification type", extra={
            "notification_type": notification.get("notificationType"),
            "message_id": message_id,
        })
        return None

    purchase_token = notification.get("purchaseToken")
    if not purchase_token:
        raise ValidationError("Store notification has no purchaseToken")

    occurred_at = from_millis(data.get("eventTimeMillis")) or utcnow()
    period_end = from_millis(notification.get("expiryTimeMillis"))

    return GatewayEvent(
        kind=kind,
        source=EventSource.PLAY_STORE.value,
        event_type=f"play.{code}",
        event_id=message_id,
        gateway_subscription_id=purchase_token,
        period_start=from_millis(notification.get("startTimeMillis")),
        period_end=period_end,
        ended_at=period_end if kind in (EventKind.EXPIRED, EventKind.CANCELLED) else None,
        occurred_at=occurred_at,
        at_period_end=code == PLAY_CANCELED and period_end is not None and period_end > occurred_at,
        notes={"product_id": notification.get("subscriptionId"), "package_name": data.get("packageName")},
    )

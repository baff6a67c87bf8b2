"""
Payment gateway webhook handlers.

SECURITY:
- Razorpay deliveries MUST carry a valid X-Razorpay-Signature over the raw body
- Play Store pushes MUST carry the configured push token when one is set
- No user authentication (webhooks come from the gateways, not users)

Once a delivery is authenticated it is always acknowledged with 200 so the
gateway does not retry data that will never reconcile; processing errors
are logged with the correlation id and never echoed back.
"""

import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from coursegate.api.dependencies import get_entitlement_store, get_gateway, get_request_db_session
from coursegate.config import get_settings
from coursegate.entitlements import EntitlementStore
from coursegate.integrations.razorpay import verify_webhook_signature
from coursegate.platform.errors import AuthenticationError, SignatureError, ValidationError, get_correlation_id
from coursegate.webhooks import GatewayEvent, WebhookReconciler
from coursegate.webhooks.adapters import decode_pubsub_envelope, from_play_rtdn, from_razorpay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def verify_razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
) -> bytes:
    """Return the raw body once its HMAC has been checked."""
    body = await request.body()

    if not verify_webhook_signature(body, x_razorpay_signature):
        logger.warning("Invalid webhook signature", extra={
            "path": request.url.path,
            "correlation_id": get_correlation_id(request),
        })
        raise SignatureError("Invalid webhook signature")

    return body


def verify_play_push_token(token: Optional[str] = Query(None)) -> None:
    expected = get_settings().play_push_token
    if expected and not hmac.compare_digest(token or "", expected):
        raise AuthenticationError("Invalid push token")


def _parse_json(body: bytes) -> dict:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Invalid JSON payload") from e
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    return payload


async def _reconcile(
    event: Optional[GatewayEvent],
    request: Request,
    db: Session,
    gateway,
    store: EntitlementStore,
) -> dict:
    if event is None:
        return {"status": "ignored"}

    correlation_id = get_correlation_id(request)
    reconciler = WebhookReconciler(db, gateway=gateway, entitlement_store=store, correlation_id=correlation_id)
    try:
        outcome = await reconciler.process(event)
    except Exception:
        logger.exception("Error processing webhook", extra={
            "event_type": event.event_type,
            "event_id": event.event_id,
            "correlation_id": correlation_id,
        })
        return {"status": "error", "correlation_id": correlation_id}

    return {"status": outcome.value}


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    body: bytes = Depends(verify_razorpay_webhook),
    x_razorpay_event_id: Optional[str] = Header(None),
    db: Session = Depends(get_request_db_session),
    gateway=Depends(get_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Handle Razorpay subscription, invoice, payment and order events."""
    payload = _parse_json(body)

    logger.info("Received Razorpay webhook", extra={
        "event_type": payload.get("event"),
        "event_id": x_razorpay_event_id,
    })

    event = from_razorpay(payload, event_id=x_razorpay_event_id)
    return await _reconcile(event, request, db, gateway, store)


@router.post("/play-store")
async def play_store_webhook(
    request: Request,
    _: None = Depends(verify_play_push_token),
    db: Session = Depends(get_request_db_session),
    gateway=Depends(get_gateway),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Handle Google Play real-time developer notifications (Pub/Sub push)."""
    envelope = _parse_json(await request.body())
    data, message_id = decode_pubsub_envelope(envelope)

    logger.info("Received store notification", extra={"message_id": message_id})

    event = from_play_rtdn(data, message_id=message_id)
    return await _reconcile(event, request, db, gateway, store)

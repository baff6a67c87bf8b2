"""Builders for gateway notification bodies used across webhook tests."""

import base64
import json
from typing import Optional


def razorpay_body(event: str, subscription=None, invoice=None, payment=None, order=None, created_at=None) -> dict:
    payload = {}
    if subscription is not None:
        payload["subscription"] = {"entity": subscription}
    if invoice is not None:
        payload["invoice"] = {"entity": invoice}
    if payment is not None:
        payload["payment"] = {"entity": payment}
    if order is not None:
        payload["order"] = {"entity": order}
    body = {"entity": "event", "event": event, "payload": payload}
    if created_at is not None:
        body["created_at"] = created_at
    return body


def play_notification(code: int, token: str, expiry_ms: Optional[int] = None, event_ms: Optional[int] = None) -> dict:
    notification = {
        "version": "1.0",
        "notificationType": code,
        "purchaseToken": token,
        "subscriptionId": "premium_monthly",
    }
    if expiry_ms is not None:
        notification["expiryTimeMillis"] = str(expiry_ms)
    data = {"version": "1.0", "packageName": "com.example.courses", "subscriptionNotification": notification}
    if event_ms is not None:
        data["eventTimeMillis"] = str(event_ms)
    return data


def pubsub_envelope(data: dict, message_id: str = "msg-1") -> dict:
    encoded = base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")
    return {"message": {"data": encoded, "messageId": message_id}, "subscription": "projects/p/subscriptions/s"}

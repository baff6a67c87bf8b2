"""
Normalised gateway event.

Every inbound notification, whatever its wire shape, is converted into a
GatewayEvent before it reaches a handler. Handlers never look at raw
payloads except to copy error details into payment metadata.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class EventKind(str, enum.Enum):
    AUTHENTICATED = "authenticated"        # paid-trial addon charged
    ACTIVATED = "activated"                # subscription started (trial or direct)
    INVOICE_GENERATED = "invoice_generated"
    CHARGED = "charged"                    # recurring charge succeeded / renewal
    PAYMENT_FAILED = "payment_failed"      # recurring charge failed, grace starts
    PAYMENT_ERROR = "payment_error"        # a single payment attempt failed
    ORDER_PAID = "order_paid"              # one-time order captured
    CANCELLED = "cancelled"
    HALTED = "halted"
    EXPIRED = "expired"


class EventSource(str, enum.Enum):
    RAZORPAY = "razorpay"
    PLAY_STORE = "play_store"


@dataclass
class GatewayEvent:
    kind: EventKind
    source: str
    event_type: str
    event_id: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    charge_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    occurred_at: Optional[datetime] = None
    # Store cancellations that only stop auto-renew; access runs to period_end
    at_period_end: bool = False
    notes: Dict[str, Any] = field(default_factory=dict)
    error: Dict[str, Any] = field(default_factory=dict)

    @property
    def reason(self) -> str:
        return f"webhook:{self.event_type}"

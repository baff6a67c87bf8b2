"""
One-time payment capture and payment ledger maintenance.

Two paths can confirm the same lifetime purchase: the client posting the
checkout signature (verify_one_time_payment) and the order.paid /
payment.captured webhooks. Both call capture_one_time_payment, which is
keyed by the gateway order id. The first caller applies the capture; the
second finds the payment already paid and returns without side effects.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from coursegate.config import get_settings
from coursegate.entitlements.store import EntitlementStore
from coursegate.integrations.razorpay.client import verify_payment_signature
from coursegate.models.base import utcnow
from coursegate.models.payment import Payment, PaymentStatus, PaymentType
from coursegate.models.subscription import TERMINAL_STATUSES, SubscriptionStatus
from coursegate.platform.errors import NotFoundError, SignatureError
from coursegate.services.subscription_service import SubscriptionService
from coursegate.services.subscription_transitions import transition_subscription_status

logger = logging.getLogger(__name__)


@dataclass
class CaptureResult:
    payment_id: str
    subscription_id: Optional[str]
    subscription_status: Optional[str]
    already_processed: bool = False

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment_id,
            "subscription_id": self.subscription_id,
            "subscription_status": self.subscription_status,
            "already_processed": self.already_processed,
        }


class PaymentService:
    """Capture, verification and cleanup of gateway payments."""

    def __init__(
        self,
        session: Session,
        gateway=None,
        entitlement_store: Optional[EntitlementStore] = None,
        correlation_id: Optional[str] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.entitlements = entitlement_store or EntitlementStore(session)
        self.correlation_id = correlation_id

    def find_by_order_id(self, order_id: str, user_id: Optional[str] = None) -> Optional[Payment]:
        query = self.session.query(Payment).filter(Payment.order_id == order_id)
        if user_id:
            query = query.filter(Payment.user_id == user_id)
        return query.first()

    def apply_capture(
        self,
        payment: Payment,
        gateway_payment_id: str,
        source: str,
        payment_method: Optional[str] = None,
    ) -> CaptureResult:
        """
        Mark payment paid and activate its subscription. Flushes only.

        A paid payment is left as-is. A capture that arrives after the row
        was abandoned still counts: the money was taken.
        """
        subscription = payment.subscription
        if payment.is_paid:
            logger.info("Payment already captured, skipping", extra={
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "source": source,
                "correlation_id": self.correlation_id,
            })
            return CaptureResult(
                payment_id=payment.id,
                subscription_id=subscription.id if subscription else None,
                subscription_status=subscription.status if subscription else None,
                already_processed=True,
            )

        payment.status = PaymentStatus.PAID.value
        payment.payment_id = gateway_payment_id
        if payment_method:
            payment.payment_method = payment_method
        if source.startswith("webhook"):
            payment.is_webhook_processed = True
            payment.event_type = source.split(":", 1)[-1]

        if subscription is not None:
            if subscription.status in TERMINAL_STATUSES:
                transition_subscription_status(
                    self.session, subscription, SubscriptionStatus.PENDING.value,
                    reason=f"{source}:late_capture", entitlement_store=self.entitlements,
                )
            now = utcnow()
            transition_subscription_status(
                self.session,
                subscription,
                SubscriptionStatus.ACTIVE.value,
                reason=f"{source}:payment_captured",
                entitlement_store=self.entitlements,
                current_period_start=subscription.current_period_start or now,
            )

        self.session.flush()
        logger.info("One-time payment captured", extra={
            "payment_id": payment.id,
            "order_id": payment.order_id,
            "subscription_id": subscription.id if subscription else None,
            "source": source,
            "correlation_id": self.correlation_id,
        })
        return CaptureResult(
            payment_id=payment.id,
            subscription_id=subscription.id if subscription else None,
            subscription_status=subscription.status if subscription else None,
        )

    async def capture_one_time_payment(
        self,
        order_id: str,
        gateway_payment_id: str,
        source: str,
        user_id: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> CaptureResult:
        """
        Capture by order id, commit, then retire subscriptions the purchase covers.

        Raises:
            NotFoundError: no payment recorded for order_id
        """
        payment = self.find_by_order_id(order_id, user_id=user_id)
        if payment is None:
            raise NotFoundError("Payment", order_id)

        try:
            result = self.apply_capture(payment, gateway_payment_id, source, payment_method)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        if not result.already_processed and payment.subscription is not None:
            plan = payment.subscription.plan
            await SubscriptionService(
                self.session,
                gateway=self.gateway,
                entitlement_store=self.entitlements,
                correlation_id=self.correlation_id,
            ).cleanup_redundant_subscriptions(
                payment.user_id,
                plan.plan_type,
                plan.target_id,
                exclude_subscription_id=payment.subscription.id,
            )
        return result

    async def verify_one_time_payment(
        self,
        user_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> CaptureResult:
        """
        Client-side checkout confirmation.

        Raises:
            SignatureError: signature does not match; nothing is changed
            NotFoundError: the order does not belong to this user
        """
        if not verify_payment_signature(order_id, payment_id, signature):
            logger.warning("Payment signature verification failed", extra={
                "user_id": user_id,
                "order_id": order_id,
                "correlation_id": self.correlation_id,
            })
            raise SignatureError("Invalid payment signature")

        return await self.capture_one_time_payment(
            order_id,
            payment_id,
            source="verify",
            user_id=user_id,
        )

    def cleanup_abandoned_orders(self, older_than_hours: Optional[int] = None) -> int:
        """Fail pending one-time/trial orders never paid within the window."""
        hours = older_than_hours if older_than_hours is not None else get_settings().abandoned_order_hours
        cutoff = utcnow() - timedelta(hours=hours)

        abandoned = self.session.query(Payment).filter(
            Payment.status == PaymentStatus.PENDING.value,
            Payment.order_id.isnot(None),
            Payment.payment_type.in_([PaymentType.ONE_TIME.value, PaymentType.TRIAL.value]),
            Payment.created_at < cutoff,
        ).all()

        for payment in abandoned:
            payment.status = PaymentStatus.FAILED.value
            payment.extra_metadata = {
                **(payment.extra_metadata or {}),
                "failure_reason": "abandoned",
                "abandoned_after_hours": hours,
            }

        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        if abandoned:
            logger.info("Abandoned orders marked failed", extra={
                "count": len(abandoned),
                "older_than_hours": hours,
            })
        return len(abandoned)


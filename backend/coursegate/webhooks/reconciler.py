"""
Webhook reconciler: applies normalised gateway events to local state.

Each EventKind maps to one handler. A handler changes the subscription,
its payments and (through the transition primitive) its entitlement, and
the reconciler commits them together.

Ordering is not guaranteed, so handlers check the current status before
acting: a late charge never revives a cancelled subscription and a
redelivered failure never extends a grace window. Payments are matched on
gateway ids (invoice, payment, order), never on their current status.
"""

import enum
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursegate.config import get_settings
from coursegate.entitlements.store import EntitlementStore
from coursegate.models.base import utcnow
from coursegate.models.payment import Payment, PaymentStatus, PaymentType
from coursegate.models.subscription import (
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from coursegate.models.webhook_event import ProcessedWebhookEvent
from coursegate.platform.errors import ConsistencyError
from coursegate.services.payment_service import PaymentService
from coursegate.services.periods import period_end
from coursegate.services.subscription_service import SubscriptionService
from coursegate.services.subscription_transitions import (
    InvalidTransitionError,
    transition_subscription_status,
)
from coursegate.webhooks.events import EventKind, EventSource, GatewayEvent

logger = logging.getLogger(__name__)

S = SubscriptionStatus


class ReconcileOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"            # arrived after a state it must not override
    UNMATCHED = "unmatched"    # references data that does not exist locally


class WebhookReconciler:
    """Idempotent dispatcher for GatewayEvents."""

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
        self._handlers: Dict[EventKind, Callable[[GatewayEvent], Awaitable[ReconcileOutcome]]] = {
            EventKind.AUTHENTICATED: self._on_authenticated,
            EventKind.ACTIVATED: self._on_activated,
            EventKind.INVOICE_GENERATED: self._on_invoice_generated,
            EventKind.CHARGED: self._on_charged,
            EventKind.PAYMENT_FAILED: self._on_payment_failed,
            EventKind.PAYMENT_ERROR: self._on_payment_error,
            EventKind.ORDER_PAID: self._on_order_paid,
            EventKind.CANCELLED: self._on_cancelled,
            EventKind.HALTED: self._on_halted,
            EventKind.EXPIRED: self._on_expired,
        }
        # Post-commit follow-ups (redundant subscription cleanup)
        self._after_commit = []

    # ------------------------------------------------------------ dispatch

    def _already_processed(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        return self.session.query(ProcessedWebhookEvent.event_id).filter(
            ProcessedWebhookEvent.event_id == event_id
        ).first() is not None

    def _mark_processed(self, event: GatewayEvent) -> None:
        if event.event_id:
            self.session.add(ProcessedWebhookEvent(
                event_id=event.event_id,
                source=event.source,
                event_type=event.event_type,
            ))

    async def process(self, event: GatewayEvent) -> ReconcileOutcome:
        """
        Apply one event and commit.

        Unmatched references are logged and acknowledged without recording
        the event id, so a redelivery after the local row appears still
        applies. Infrastructure errors roll back and propagate.
        """
        log_extra = {
            "event_type": event.event_type,
            "event_id": event.event_id,
            "source": event.source,
            "gateway_subscription_id": event.gateway_subscription_id,
            "correlation_id": self.correlation_id,
        }

        if self._already_processed(event.event_id):
            logger.info("Duplicate webhook delivery skipped", extra=log_extra)
            return ReconcileOutcome.DUPLICATE

        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.info("No handler for webhook event", extra=log_extra)
            return ReconcileOutcome.IGNORED

        self._after_commit = []
        try:
            outcome = await handler(event)
        except ConsistencyError as e:
            self.session.rollback()
            logger.warning("Webhook references unknown local state", extra={
                **log_extra,
                "reference": e.reference,
                "detail": str(e),
            })
            return ReconcileOutcome.UNMATCHED
        except InvalidTransitionError as e:
            self.session.rollback()
            logger.info("Out-of-order webhook not applied", extra={
                **log_extra,
                "from_status": e.from_status,
                "to_status": e.to_status,
            })
            outcome = ReconcileOutcome.STALE
        except Exception:
            self.session.rollback()
            logger.exception("Webhook processing failed", extra=log_extra)
            raise

        try:
            self._mark_processed(event)
            self.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event id committed first
            self.session.rollback()
            logger.info("Concurrent duplicate webhook delivery", extra=log_extra)
            return ReconcileOutcome.DUPLICATE
        except Exception:
            self.session.rollback()
            raise

        for follow_up in self._after_commit:
            await follow_up()

        logger.info("Webhook reconciled", extra={**log_extra, "outcome": outcome.value})
        return outcome

    # ------------------------------------------------------------- helpers

    def _subscription_for(self, event: GatewayEvent) -> Subscription:
        if not event.gateway_subscription_id:
            raise ConsistencyError("Event carries no subscription id")
        subscription = self.session.query(Subscription).filter(
            Subscription.gateway_subscription_id == event.gateway_subscription_id
        ).first()
        if subscription is None:
            raise ConsistencyError(
                "No local subscription for gateway id",
                reference=event.gateway_subscription_id,
            )
        return subscription

    def _transition(self, subscription: Subscription, new_status: str, event: GatewayEvent, **fields) -> bool:
        return transition_subscription_status(
            self.session,
            subscription,
            new_status,
            event.reason,
            entitlement_store=self.entitlements,
            **fields,
        )

    def _pending_trial_payments(self, subscription: Subscription):
        return self.session.query(Payment).filter(
            Payment.subscription_id == subscription.id,
            Payment.payment_type == PaymentType.TRIAL.value,
            Payment.status == PaymentStatus.PENDING.value,
        ).all()

    def _trial_paid_at(self, subscription: Subscription):
        payment = self.session.query(Payment).filter(
            Payment.subscription_id == subscription.id,
            Payment.payment_type == PaymentType.TRIAL.value,
            Payment.status == PaymentStatus.PAID.value,
        ).order_by(Payment.created_at.desc()).first()
        if payment is None:
            return None
        paid_at = (payment.extra_metadata or {}).get("paid_at")
        if paid_at:
            return datetime.fromisoformat(paid_at)
        return payment.updated_at

    def _mark_trial_fee_paid(self, subscription: Subscription, event: GatewayEvent) -> None:
        paid_at = event.occurred_at or utcnow()
        for payment in self._pending_trial_payments(subscription):
            payment.status = PaymentStatus.PAID.value
            payment.is_webhook_processed = True
            payment.event_type = event.event_type
            if event.payment_id and not self._payment_id_taken(event.payment_id, payment.id):
                payment.payment_id = event.payment_id
            if event.payment_method:
                payment.payment_method = event.payment_method
            payment.extra_metadata = {**(payment.extra_metadata or {}), "paid_at": paid_at.isoformat()}

    def _payment_id_taken(self, payment_id: str, own_id: Optional[str] = None) -> bool:
        query = self.session.query(Payment.id).filter(Payment.payment_id == payment_id)
        if own_id:
            query = query.filter(Payment.id != own_id)
        return query.first() is not None

    def _is_trial_fee_charge(self, subscription: Subscription, event: GatewayEvent) -> bool:
        """A charge for exactly the trial fee while the trial has not begun or is running."""
        plan = subscription.plan
        if not subscription.is_trial or not plan.trial_fee:
            return False
        if subscription.status not in (S.PENDING.value, S.TRIAL.value):
            return False
        if subscription.trial_ends_at is not None and subscription.trial_ends_at <= utcnow():
            return False
        return event.amount == plan.trial_fee

    # ------------------------------------------------------------ handlers

    async def _on_authenticated(self, event: GatewayEvent) -> ReconcileOutcome:
        subscription = self._subscription_for(event)
        plan = subscription.plan

        is_paid_trial = event.notes.get("type") == "paid_trial" or (
            subscription.is_trial and (plan.trial_fee or 0) > 0
        )
        if not is_paid_trial:
            logger.info("Authentication without trial addon, waiting for activation", extra={
                "subscription_id": subscription.id,
            })
            return ReconcileOutcome.IGNORED

        self._mark_trial_fee_paid(subscription, event)

        if subscription.status not in (S.PENDING.value, S.TRIAL.value):
            # Activation or a charge already moved it on; only the ledger changes
            return ReconcileOutcome.STALE

        trial_ends_at = subscription.trial_ends_at or (
            (event.occurred_at or utcnow()) + timedelta(days=plan.trial_days)
        )
        self._transition(subscription, S.TRIAL.value, event, is_trial=True, trial_ends_at=trial_ends_at)
        return ReconcileOutcome.PROCESSED

    async def _on_activated(self, event: GatewayEvent) -> ReconcileOutcome:
        subscription = self._subscription_for(event)
        plan = subscription.plan

        if subscription.status in TERMINAL_STATUSES:
            return ReconcileOutcome.STALE

        if subscription.status != S.PENDING.value:
            if subscription.cancel_at_period_end:
                # Store restart: auto-renew switched back on
                subscription.cancel_at_period_end = False
                fields = {"current_period_end": event.period_end} if event.period_end else {}
                self._transition(subscription, subscription.status, event, **fields)
                return ReconcileOutcome.PROCESSED
            logger.info("Subscription already activated", extra={
                "subscription_id": subscription.id,
                "status": subscription.status,
            })
            return ReconcileOutcome.DUPLICATE

        flow = event.notes.get("type")
        if flow:
            is_trial = flow in ("paid_trial", "free_trial")
        else:
            is_trial = subscription.is_trial and plan.has_trial

        fields = {}
        if event.period_start:
            fields["current_period_start"] = event.period_start
        if event.period_end:
            fields["current_period_end"] = event.period_end
        if event.charge_at:
            fields["next_billing_at"] = event.charge_at

        if is_trial:
            trial_start = self._trial_paid_at(subscription) if flow == "paid_trial" else None
            if trial_start is None:
                trial_start = utcnow()
            fields["trial_ends_at"] = trial_start + timedelta(days=plan.trial_days)
            self._transition(subscription, S.TRIAL.value, event, is_trial=True, **fields)
        else:
            self._transition(subscription, S.ACTIVE.value, event, is_trial=False, **fields)
        return ReconcileOutcome.PROCESSED

    async def _on_invoice_generated(self, event: GatewayEvent) -> ReconcileOutcome:
        subscription = self._subscription_for(event)
        if not event.invoice_id:
            raise ConsistencyError("invoice.generated without an invoice id")

        existing = self.session.query(Payment.id).filter(Payment.invoice_id == event.invoice_id).first()
        if existing is not None:
            return ReconcileOutcome.DUPLICATE

        self.session.add(Payment(
            user_id=subscription.user_id,
            plan_id=subscription.plan_id,
            subscription_id=subscription.id,
            invoice_id=event.invoice_id,
            gateway_subscription_id=event.gateway_subscription_id,
            amount=event.amount or 0,
            currency=event.currency or subscription.plan.currency,
            payment_type=PaymentType.RECURRING.value,
            status=PaymentStatus.PENDING.value,
            event_type=event.event_type,
        ))
        self.session.flush()
        return ReconcileOutcome.PROCESSED

    def _record_charge(self, subscription: Subscription, event: GatewayEvent) -> Optional[Payment]:
        """
        Mark the charge paid in the ledger.

        Returns None when this exact charge (same invoice or payment id) was
        already recorded as paid.
        """
        payment = None
        if event.invoice_id:
            payment = self.session.query(Payment).filter(Payment.invoice_id == event.invoice_id).first()
        if payment is None and event.payment_id:
            payment = self.session.query(Payment).filter(Payment.payment_id == event.payment_id).first()

        if payment is not None and payment.is_paid:
            return None

        if payment is None:
            payment = Payment(
                user_id=subscription.user_id,
                plan_id=subscription.plan_id,
                subscription_id=subscription.id,
                invoice_id=event.invoice_id,
                gateway_subscription_id=event.gateway_subscription_id,
                amount=event.amount or 0,
                currency=event.currency or subscription.plan.currency,
                payment_type=PaymentType.RECURRING.value,
            )
            self.session.add(payment)

        payment.status = PaymentStatus.PAID.value
        if event.payment_id and not self._payment_id_taken(event.payment_id, payment.id):
            payment.payment_id = event.payment_id
        if event.payment_method:
            payment.payment_method = event.payment_method
        payment.is_webhook_processed = True
        payment.event_type = event.event_type
        self.session.flush()
        return payment

    async def _on_charged(self, event: GatewayEvent) -> ReconcileOutcome:
        subscription = self._subscription_for(event)

        if event.source == EventSource.RAZORPAY.value and self._is_trial_fee_charge(subscription, event):
            return await self._on_authenticated(event)

        if event.invoice_id or event.payment_id:
            if self._record_charge(subscription, event) is None:
                logger.info("Charge already recorded", extra={
                    "subscription_id": subscription.id,
                    "invoice_id": event.invoice_id,
                    "payment_id": event.payment_id,
                })
                return ReconcileOutcome.DUPLICATE

        if subscription.status in TERMINAL_STATUSES:
            logger.warning("Charge received for terminal subscription, status kept", extra={
                "subscription_id": subscription.id,
                "status": subscription.status,
                "event_type": event.event_type,
            })
            return ReconcileOutcome.STALE

        start = event.period_start
        end = event.period_end
        if end is None:
            start = start or subscription.current_period_end or utcnow()
            end = period_end(start, subscription.plan.subscription_type)

        fields = {"is_trial": False, "grace_until": None}
        if start:
            fields["current_period_start"] = start
        if end:
            fields["current_period_end"] = end
        if event.charge_at:
            fields["next_billing_at"] = event.charge_at

        self._transition(subscription, S.ACTIVE.value, event, **fields)
        return ReconcileOutcome.PROCESSED

    async def _on_payment_failed(self, event: GatewayEvent) -> ReconcileOutcome:
        subscription = self._subscription_for(event)

        if event.invoice_id:
            payment = self.session.query(Payment).filter(Payment.invoice_id == event.invoice_id).first()
            if payment is not None and payment.status == PaymentStatus.PENDING.value:
                payment.status = PaymentStatus.FAILED.value
                payment.is_webhook_processed = True
                payment.event_type = event.event_type
                payment.extra_metadata = {**(payment.extra_metadata or {}), **event.error}

        if subscription.status == S.PAST_DUE.value:
            return ReconcileOutcome.DUPLICATE
        if subscription.status not in (S.TRIAL.value, S.ACTIVE.value):
            return ReconcileOutcome.STALE

        grace_until = utcnow() + timedelta(days=get_settings().grace_period_days)
        self._transition(subscription, S.PAST_DUE.value, event, grace_until=grace_until)
        return ReconcileOutcome.PROCESSED

    async def _on_payment_error(self, event: GatewayEvent) -> ReconcileOutcome:
        payment = None
        if event.payment_id:
            payment = self.session.query(Payment).filter(Payment.payment_id == event.payment_id).first()
        if payment is None and event.order_id:
            payment = self.session.query(Payment).filter(Payment.order_id == event.order_id).first()
        if payment is None and event.gateway_subscription_id:
            payment = self.session.query(Payment).filter(
                Payment.gateway_subscription_id == event.gateway_subscription_id,
                Payment.payment_type == PaymentType.TRIAL.value,
                Payment.status == PaymentStatus.PENDING.value,
            ).first()

        if payment is None:
            logger.info("No payment record for failed payment", extra={
                "payment_id": event.payment_id,
                "order_id": event.order_id,
            })
            return ReconcileOutcome.IGNORED

        if payment.status != PaymentStatus.PENDING.value:
            return ReconcileOutcome.STALE

        payment.status = PaymentStatus.FAILED.value
        if event.payment_id and not self._payment_id_taken(event.payment_id, payment.id):
            payment.payment_id = event.payment_id
        payment.is_webhook_processed = True
        payment.event_type = event.event_type
        payment.extra_metadata = {**(payment.extra_metadata or {}), **event.error}
        self.session.flush()
        return ReconcileOutcome.PROCESSED

    async def _on_order_paid(self, event: GatewayEvent) -> ReconcileOutcome:
        if not event.order_id:
            return ReconcileOutcome.IGNORED

        payments = PaymentService(
            self.session,
            gateway=self.gateway,
            entitlement_store=self.entitlements,
            correlation_id=self.correlation_id,
        )
        payment = payments.find_by_order_id(event.order_id)
        if payment is None:
            # Orders behind recurring charges are not tracked locally
            logger.info("Paid order has no local payment", extra={"order_id": event.order_id})
            return ReconcileOutcome.IGNORED

        result = payments.apply_capture(
            payment,
            event.payment_id,
            source=f"webhook:{event.event_type}",
            payment_method=event.payment_method,
        )
        if result.already_processed:
            return ReconcileOutcome.DUPLICATE

        subscription = payment.subscription
        if subscription is not None:
            user_id = payment.user_id
            plan_type = subscription.plan.plan_type
            target_id = subscription.plan.target_id
            subscription_id = subscription.id

            async def cleanup():
                await SubscriptionService(
                    self.session,
                    gateway=self.gateway,
                    entitlement_store=self.entitlements,
                    correlation_id=self.correlation_id,
                ).cleanup_redundant_subscriptions(
                    user_id, plan_type, target_id, exclude_subscription_id=subscription_id
                )

            self._after_commit.append(cleanup)
        return ReconcileOutcome.PROCESSED

    async def _on_cancelled(self, event: GatewayEvent) -> ReconcileOutcome:
        subscription = self._subscription_for(event)
        if subscription.status in TERMINAL_STATUSES:
            return ReconcileOutcome.DUPLICATE if subscription.status == S.CANCELLED.value else ReconcileOutcome.STALE

        if event.at_period_end and subscription.status in (S.TRIAL.value, S.ACTIVE.value):
            subscription.cancel_at_period_end = True
            self._transition(subscription, subscription.status, event, current_period_end=event.period_end)
            logger.info("Store subscription will end at period end", extra={
                "subscription_id": subscription.id,
                "current_period_end": event.period_end.isoformat(),
            })
            return ReconcileOutcome.PROCESSED

        now = utcnow()
        ended_at = event.ended_at if event.ended_at and event.ended_at <= now else now
        self._transition(
            subscription,
            S.CANCELLED.value,
            event,
            current_period_end=ended_at,
            cancelled_at=now,
        )
        return ReconcileOutcome.PROCESSED

    async def _on_halted(self, event: GatewayEvent) -> ReconcileOutcome:
        subscription = self._subscription_for(event)
        if subscription.status == S.HALTED.value:
            return ReconcileOutcome.DUPLICATE
        if subscription.status in TERMINAL_STATUSES or subscription.status == S.PENDING.value:
            return ReconcileOutcome.STALE
        self._transition(subscription, S.HALTED.value, event)
        return ReconcileOutcome.PROCESSED

    async def _on_expired(self, event: GatewayEvent) -> ReconcileOutcome:
        subscription = self._subscription_for(event)
        if subscription.status == S.EXPIRED.value:
            return ReconcileOutcome.DUPLICATE
        if subscription.status in TERMINAL_STATUSES:
            return ReconcileOutcome.STALE
        fields = {"current_period_end": event.ended_at} if event.ended_at else {}
        self._transition(subscription, S.EXPIRED.value, event, **fields)
        return ReconcileOutcome.PROCESSED

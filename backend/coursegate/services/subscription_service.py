"""
Subscription lifecycle manager.

Owns UserSubscription rows, talks to the payment gateway, enforces the
overlap rules and routes every status change through
transition_subscription_status so the entitlement always follows.

Usage:
    service = SubscriptionService(session, gateway=RazorpayClient())
    checkout = await service.initiate_subscription(user_id, plan_id)
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursegate.catalog import CategoryHierarchyResolver
from coursegate.config import get_settings
from coursegate.entitlements.store import EntitlementStore
from coursegate.integrations.razorpay.client import GatewayAddon
from coursegate.models.base import utcnow
from coursegate.models.payment import Payment, PaymentStatus, PaymentType
from coursegate.models.plan import PlanType, SubscriptionPlan
from coursegate.models.subscription import (
    ACCESS_GRANTING_STATUSES,
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
)
from coursegate.models.user import User
from coursegate.platform.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    OverlapError,
    ValidationError,
)
from coursegate.services.subscription_transitions import (
    can_transition,
    transition_subscription_status,
)

logger = logging.getLogger(__name__)

# Razorpay subscription status -> local status
GATEWAY_STATUS_MAP = {
    "created": SubscriptionStatus.PENDING.value,
    "authenticated": SubscriptionStatus.ACTIVE.value,
    "active": SubscriptionStatus.ACTIVE.value,
    "pending": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAST_DUE.value,
    "halted": SubscriptionStatus.HALTED.value,
    "cancelled": SubscriptionStatus.CANCELLED.value,
    "completed": SubscriptionStatus.CANCELLED.value,
    "expired": SubscriptionStatus.EXPIRED.value,
}

# Fields cleared when a terminal row is reused for a new attempt
_RESET_FIELDS = dict(
    is_trial=False,
    current_period_start=None,
    current_period_end=None,
    trial_ends_at=None,
    grace_until=None,
    next_billing_at=None,
    cancel_at_period_end=False,
    cancelled_at=None,
)


@dataclass
class MobileReceipt:
    """A store purchase already verified by the caller."""

    purchase_token: str
    start_time: datetime
    expiry_time: Optional[datetime] = None
    is_trial: bool = False
    order_id: Optional[str] = None
    amount: Optional[int] = None


@dataclass
class CheckoutResult:
    """What the client needs to finish (or confirm) a purchase."""

    subscription_id: str
    status: str
    provider: str
    requires_payment: bool
    amount_due: int
    currency: str
    message: str
    is_trial: bool = False
    trial_days: int = 0
    trial_fee: int = 0
    key_id: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    order_id: Optional[str] = None
    short_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "subscription_id": self.subscription_id,
            "status": self.status,
            "provider": self.provider,
            "requires_payment": self.requires_payment,
            "amount_due": self.amount_due,
            "currency": self.currency,
            "message": self.message,
            "is_trial": self.is_trial,
            "trial_days": self.trial_days,
            "trial_fee": self.trial_fee,
            "key_id": self.key_id,
            "gateway_subscription_id": self.gateway_subscription_id,
            "order_id": self.order_id,
            "short_url": self.short_url,
        }


_PERIOD_NOUN = {"monthly": "month", "yearly": "year"}


def _advisory_lock_key(user_id: str, plan_id: str) -> int:
    digest = hashlib.sha256(f"{user_id}:{plan_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def _format_amount(amount: int, currency: str) -> str:
    return f"{currency} {amount / 100:.2f}"


def _scheduled_end(subscription: Subscription, gateway_end: Optional[datetime] = None) -> datetime:
    """Boundary for a period-end cancellation on a row with no current_period_end."""
    return gateway_end or subscription.trial_ends_at or subscription.next_billing_at or utcnow()


class SubscriptionService:
    """Initiation, cancellation, cleanup and gateway sync for subscriptions."""

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
        self.hierarchy = CategoryHierarchyResolver(session)
        self.correlation_id = correlation_id

    # ------------------------------------------------------------- helpers

    def _require_gateway(self):
        if self.gateway is None:
            raise GatewayError("Payment gateway is not configured")
        return self.gateway

    def _transition(self, subscription: Subscription, new_status: str, reason: str, **fields) -> bool:
        return transition_subscription_status(
            self.session,
            subscription,
            new_status,
            reason,
            entitlement_store=self.entitlements,
            **fields,
        )

    def _lock_user_plan(self, user_id: str, plan_id: str) -> None:
        """Serialise initiations for one (user, plan) on PostgreSQL."""
        if self.session.get_bind().dialect.name != "postgresql":
            return
        self.session.execute(
            text("SELECT pg_advisory_xact_lock(:key)"),
            {"key": _advisory_lock_key(user_id, plan_id)},
        )

    def _load_plan_for_purchase(self, plan_id: str) -> SubscriptionPlan:
        plan = self.session.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()
        if plan is None or not plan.is_active:
            raise ValidationError("Plan not found or no longer available", details={"plan_id": plan_id})
        if plan.price is None or plan.price <= 0:
            raise ValidationError("Free plans do not require a subscription", details={"plan_id": plan_id})
        return plan

    def _find_row(self, user_id: str, plan_id: str) -> Optional[Subscription]:
        return self.session.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.plan_id == plan_id,
        ).first()

    def _get_owned(self, user_id: str, subscription_id: str) -> Subscription:
        subscription = self.session.query(Subscription).filter(
            Subscription.id == subscription_id,
            Subscription.user_id == user_id,
        ).first()
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def check_overlap(self, user_id: str, plan: SubscriptionPlan) -> None:
        """
        Reject a purchase the user is already entitled to.

        Raises:
            OverlapError: naming the existing grant that covers the plan
        """
        keys = {e.key for e in self.entitlements.get_active_entitlements(user_id)}

        if (PlanType.WHOLE_APP.value, None) in keys:
            raise OverlapError(
                "You already have full app access",
                conflicting_type=PlanType.WHOLE_APP.value,
            )

        if plan.plan_type == PlanType.COURSE.value:
            if (PlanType.COURSE.value, plan.target_id) in keys:
                raise OverlapError(
                    "You already own this course",
                    conflicting_type=PlanType.COURSE.value,
                    conflicting_target_id=plan.target_id,
                )
            for category_id in self.hierarchy.get_course_ancestors(plan.target_id):
                if (PlanType.CATEGORY.value, category_id) in keys:
                    raise OverlapError(
                        "You already have access to this course through your category subscription",
                        conflicting_type=PlanType.CATEGORY.value,
                        conflicting_target_id=category_id,
                    )

        elif plan.plan_type == PlanType.CATEGORY.value:
            for category_id in self.hierarchy.get_ancestors(plan.target_id):
                if (PlanType.CATEGORY.value, category_id) in keys:
                    message = (
                        "You already have access to this category"
                        if category_id == plan.target_id
                        else "You already have access to this category through a parent category subscription"
                    )
                    raise OverlapError(
                        message,
                        conflicting_type=PlanType.CATEGORY.value,
                        conflicting_target_id=category_id,
                    )

    def _prepare_row(self, user_id: str, plan: SubscriptionPlan, provider: str) -> Subscription:
        """
        Return the (user, plan) row ready for a new attempt in pending.

        A row that still grants access means the user is mid-subscription on
        this very plan; that is a conflict even if no entitlement shows it.
        """
        subscription = self._find_row(user_id, plan.id)

        if subscription is None:
            subscription = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                provider=provider,
                status=SubscriptionStatus.PENDING.value,
            )
            subscription.plan = plan
            self.session.add(subscription)
            self.session.flush()
            return subscription

        if subscription.status in ACCESS_GRANTING_STATUSES:
            raise ConflictError(
                "You already have an active subscription to this plan",
                details={"subscription_id": subscription.id, "status": subscription.status},
            )

        if subscription.status in TERMINAL_STATUSES:
            self._transition(
                subscription,
                SubscriptionStatus.PENDING.value,
                reason="initiate:reuse_row",
                provider=provider,
                **_RESET_FIELDS,
            )
        else:
            subscription.provider = provider
        return subscription

    def _fail_pending_payments(self, subscription: Subscription, reason: str) -> int:
        pending = self.session.query(Payment).filter(
            Payment.subscription_id == subscription.id,
            Payment.status == PaymentStatus.PENDING.value,
        ).all()
        for payment in pending:
            payment.status = PaymentStatus.FAILED.value
            payment.extra_metadata = {**(payment.extra_metadata or {}), "failure_reason": reason}
        return len(pending)

    async def _abandon_previous_attempt(
        self,
        subscription: Subscription,
        reason: str = "initiate:superseded",
        payment_reason: str = "superseded_by_new_attempt",
    ) -> None:
        """Best-effort cancel of a half-finished checkout so the user can retry."""
        old_gateway_id = subscription.gateway_subscription_id
        if old_gateway_id and subscription.provider == SubscriptionProvider.GATEWAY_RECURRING.value:
            try:
                await self._require_gateway().cancel_subscription(old_gateway_id, cancel_at_cycle_end=False)
            except GatewayError as e:
                logger.warning("Could not cancel abandoned gateway subscription", extra={
                    "subscription_id": subscription.id,
                    "gateway_subscription_id": old_gateway_id,
                    "error": str(e),
                    "correlation_id": self.correlation_id,
                })

        failed = self._fail_pending_payments(subscription, payment_reason)
        self._transition(
            subscription,
            SubscriptionStatus.CANCELLED.value,
            reason=reason,
            note=f"previous gateway id {old_gateway_id}",
        )
        logger.info("Previous pending attempt abandoned", extra={
            "subscription_id": subscription.id,
            "payments_failed": failed,
            "correlation_id": self.correlation_id,
        })

    # ----------------------------------------------------------- initiation

    async def initiate_subscription(
        self,
        user_id: str,
        plan_id: str,
        receipt: Optional[MobileReceipt] = None,
    ) -> CheckoutResult:
        """
        Start a purchase of plan_id for user_id.

        Mobile receipts activate immediately. Lifetime plans create a
        gateway order and wait for payment capture. Recurring plans create a
        gateway subscription (with a trial addon for paid trials) and wait
        for the activation webhook.

        Raises:
            ValidationError: plan missing/inactive/free or not synced
            NotFoundError: unknown user
            OverlapError: the user already has equal or broader access
            ConflictError: an active subscription for this plan exists
            GatewayError: the gateway call failed
        """
        plan = self._load_plan_for_purchase(plan_id)
        user = self.session.query(User).filter(User.id == user_id).first()
        if user is None:
            raise NotFoundError("User", user_id)

        try:
            self._lock_user_plan(user_id, plan.id)
            self.check_overlap(user_id, plan)

            if receipt is not None:
                result = self._initiate_mobile(user, plan, receipt)
            elif plan.is_lifetime:
                result = await self._initiate_lifetime(user, plan)
            else:
                result = await self._initiate_recurring(user, plan)

            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning("Concurrent subscription initiation rejected", extra={
                "user_id": user_id,
                "plan_id": plan_id,
                "error": str(e.orig) if e.orig else str(e),
                "correlation_id": self.correlation_id,
            })
            raise ConflictError("A subscription for this plan is already being created") from e
        except Exception:
            self.session.rollback()
            raise

        logger.info("Subscription initiated", extra={
            "user_id": user_id,
            "plan_id": plan.id,
            "subscription_id": result.subscription_id,
            "provider": result.provider,
            "status": result.status,
            "correlation_id": self.correlation_id,
        })

        if result.status in ACCESS_GRANTING_STATUSES:
            await self.cleanup_redundant_subscriptions(
                user_id, plan.plan_type, plan.target_id, exclude_subscription_id=result.subscription_id
            )
        return result

    def _initiate_mobile(self, user: User, plan: SubscriptionPlan, receipt: MobileReceipt) -> CheckoutResult:
        if not receipt.purchase_token:
            raise ValidationError("Store receipt is missing its purchase token")

        claimed = self.session.query(Subscription).filter(
            Subscription.gateway_subscription_id == receipt.purchase_token
        ).first()
        if claimed is not None and (claimed.user_id != user.id or claimed.plan_id != plan.id):
            raise ConflictError("This store purchase is already linked to another subscription")

        subscription = self._prepare_row(user.id, plan, SubscriptionProvider.MOBILE_STORE.value)

        new_status = SubscriptionStatus.TRIAL.value if receipt.is_trial else SubscriptionStatus.ACTIVE.value
        self._transition(
            subscription,
            new_status,
            reason="initiate:mobile_receipt",
            gateway_subscription_id=receipt.purchase_token,
            current_period_start=receipt.start_time,
            current_period_end=receipt.expiry_time,
            trial_ends_at=receipt.expiry_time if receipt.is_trial else None,
            next_billing_at=receipt.expiry_time,
        )

        already_recorded = receipt.order_id and self.session.query(Payment.id).filter(
            Payment.order_id == receipt.order_id
        ).first()
        if not already_recorded:
            amount = receipt.amount if receipt.amount is not None else (0 if receipt.is_trial else plan.price)
            self.session.add(Payment(
                user_id=user.id,
                plan_id=plan.id,
                subscription_id=subscription.id,
                order_id=receipt.order_id,
                gateway_subscription_id=receipt.purchase_token,
                amount=amount,
                currency=plan.currency,
                payment_type=PaymentType.TRIAL.value if receipt.is_trial else PaymentType.RECURRING.value,
                status=PaymentStatus.PAID.value,
                payment_method="store",
                event_type="mobile_receipt",
            ))
        self.session.flush()

        return CheckoutResult(
            subscription_id=subscription.id,
            status=subscription.status,
            provider=subscription.provider,
            requires_payment=False,
            amount_due=0,
            currency=plan.currency,
            is_trial=receipt.is_trial,
            trial_days=plan.trial_days,
            message="Store purchase confirmed. Access is now active.",
        )

    async def _initiate_lifetime(self, user: User, plan: SubscriptionPlan) -> CheckoutResult:
        existing = self._find_row(user.id, plan.id)
        if existing is not None and existing.status == SubscriptionStatus.PENDING.value:
            self._fail_pending_payments(existing, "superseded_by_new_attempt")

        subscription = self._prepare_row(user.id, plan, SubscriptionProvider.GATEWAY_ONETIME.value)

        order = await self._require_gateway().create_order(
            amount=plan.price,
            currency=plan.currency,
            notes={"user_id": user.id, "plan_id": plan.id, "subscription_type": plan.subscription_type},
        )

        self.session.add(Payment(
            user_id=user.id,
            plan_id=plan.id,
            subscription_id=subscription.id,
            order_id=order.order_id,
            amount=plan.price,
            currency=plan.currency,
            payment_type=PaymentType.ONE_TIME.value,
            status=PaymentStatus.PENDING.value,
            extra_metadata={"plan_type": plan.plan_type, "target_id": plan.target_id},
        ))
        self.session.flush()

        return CheckoutResult(
            subscription_id=subscription.id,
            status=subscription.status,
            provider=subscription.provider,
            requires_payment=True,
            amount_due=plan.price,
            currency=plan.currency,
            key_id=get_settings().razorpay_key_id,
            order_id=order.order_id,
            message=f"One-time payment of {_format_amount(plan.price, plan.currency)} for lifetime access",
        )

    async def _initiate_recurring(self, user: User, plan: SubscriptionPlan) -> CheckoutResult:
        if not plan.gateway_plan_id:
            raise ValidationError("Plan not synced with payment gateway", details={"plan_id": plan.id})

        existing = self._find_row(user.id, plan.id)
        if existing is not None and existing.status == SubscriptionStatus.PENDING.value:
            await self._abandon_previous_attempt(existing)

        subscription = self._prepare_row(user.id, plan, SubscriptionProvider.GATEWAY_RECURRING.value)

        trial_eligible = plan.has_trial and not user.has_used_trial
        paid_trial = trial_eligible and (plan.trial_fee or 0) > 0

        addons = None
        if paid_trial:
            addons = [GatewayAddon(name=f"{plan.name} - Trial Fee", amount=plan.trial_fee, currency=plan.currency)]

        start_at = utcnow() + timedelta(days=plan.trial_days) if trial_eligible else None
        if paid_trial:
            flow = "paid_trial"
        elif trial_eligible:
            flow = "free_trial"
        else:
            flow = "direct"

        gateway_subscription = await self._require_gateway().create_subscription(
            plan_id=plan.gateway_plan_id,
            total_count=get_settings().subscription_total_count,
            notes={"user_id": user.id, "plan_id": plan.id, "type": flow},
            addons=addons,
            start_at=start_at,
        )

        subscription.gateway_subscription_id = gateway_subscription.subscription_id
        subscription.is_trial = trial_eligible
        subscription.next_billing_at = start_at

        if paid_trial:
            self.session.add(Payment(
                user_id=user.id,
                plan_id=plan.id,
                subscription_id=subscription.id,
                gateway_subscription_id=gateway_subscription.subscription_id,
                amount=plan.trial_fee,
                currency=plan.currency,
                payment_type=PaymentType.TRIAL.value,
                status=PaymentStatus.PENDING.value,
            ))
        self.session.flush()

        period = _PERIOD_NOUN.get(plan.subscription_type, plan.subscription_type)
        if paid_trial:
            amount_due = plan.trial_fee
            message = (
                f"Pay {_format_amount(plan.trial_fee, plan.currency)} now for a {plan.trial_days}-day trial. "
                f"Then {_format_amount(plan.price, plan.currency)} per {period}."
            )
        elif trial_eligible:
            amount_due = 0
            message = (
                f"Your {plan.trial_days}-day free trial starts after authorisation. "
                f"Then {_format_amount(plan.price, plan.currency)} per {period}."
            )
        else:
            amount_due = plan.price
            message = f"{_format_amount(plan.price, plan.currency)} per {period}, billed now."

        return CheckoutResult(
            subscription_id=subscription.id,
            status=subscription.status,
            provider=subscription.provider,
            requires_payment=True,
            amount_due=amount_due,
            currency=plan.currency,
            is_trial=trial_eligible,
            trial_days=plan.trial_days if trial_eligible else 0,
            trial_fee=plan.trial_fee if paid_trial else 0,
            key_id=get_settings().razorpay_key_id,
            gateway_subscription_id=gateway_subscription.subscription_id,
            short_url=gateway_subscription.short_url,
            message=message,
        )

    # --------------------------------------------------------- cancellation

    async def cancel_at_period_end(self, user_id: str, subscription_id: str) -> Subscription:
        """
        Schedule cancellation at the end of the paid period.

        Status and entitlement are untouched; the period-end sweep finishes
        the job once current_period_end passes.
        """
        subscription = self._get_owned(user_id, subscription_id)
        if subscription.status not in (SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value):
            raise ValidationError(
                "Only trial or active subscriptions can be cancelled at period end",
                details={"status": subscription.status},
            )
        if subscription.provider != SubscriptionProvider.GATEWAY_RECURRING.value:
            raise ValidationError("This subscription is not billed through the payment gateway")
        if not subscription.gateway_subscription_id:
            raise ValidationError("Subscription not linked to payment gateway")
        if subscription.cancel_at_period_end:
            return subscription

        gateway_subscription = await self._require_gateway().cancel_subscription(
            subscription.gateway_subscription_id,
            cancel_at_cycle_end=True,
        )

        try:
            subscription.cancel_at_period_end = True
            if subscription.current_period_end is None:
                subscription.current_period_end = _scheduled_end(subscription, gateway_subscription.current_end)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info("Subscription scheduled for cancellation at period end", extra={
            "subscription_id": subscription.id,
            "user_id": user_id,
            "current_period_end": (
                subscription.current_period_end.isoformat() if subscription.current_period_end else None
            ),
            "correlation_id": self.correlation_id,
        })
        return subscription

    async def cancel_immediately(self, user_id: str, subscription_id: str) -> Subscription:
        """Cancel now: gateway cancel, status cancelled and entitlement revoked in one commit."""
        subscription = self._get_owned(user_id, subscription_id)
        if subscription.status not in (
            SubscriptionStatus.TRIAL.value,
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.PAST_DUE.value,
        ):
            raise ValidationError(
                "Only trial, active or past-due subscriptions can be cancelled",
                details={"status": subscription.status},
            )
        if subscription.provider == SubscriptionProvider.MOBILE_STORE.value:
            raise ValidationError("Store subscriptions are cancelled from the app store")

        if subscription.provider == SubscriptionProvider.GATEWAY_RECURRING.value:
            if not subscription.gateway_subscription_id:
                raise ValidationError("Subscription not linked to payment gateway")
            await self._require_gateway().cancel_subscription(
                subscription.gateway_subscription_id,
                cancel_at_cycle_end=False,
            )

        now = utcnow()
        try:
            self._transition(
                subscription,
                SubscriptionStatus.CANCELLED.value,
                reason="user:cancel_immediately",
                current_period_end=now,
                cancelled_at=now,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return subscription

    async def cancel_pending(self, user_id: str) -> List[Subscription]:
        """
        Abandon every checkout the user started but never paid for.

        Each pending row gets its gateway subscription cancelled, its
        pending payments failed and its status moved to cancelled. No
        entitlement changes, since a pending row never granted one.
        """
        pending = self.session.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.PENDING.value,
        ).all()
        if not pending:
            return []

        try:
            for subscription in pending:
                await self._abandon_previous_attempt(
                    subscription, reason="user:cancel_pending", payment_reason="checkout_cancelled"
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info("Pending checkouts cancelled", extra={
            "user_id": user_id,
            "count": len(pending),
            "correlation_id": self.correlation_id,
        })
        return pending

    async def cleanup_redundant_subscriptions(
        self,
        user_id: str,
        new_plan_type: str,
        target_id: Optional[str],
        exclude_subscription_id: Optional[str] = None,
    ) -> int:
        """
        Schedule period-end cancellation of subscriptions a new purchase covers.

        WHOLE_APP makes every other plan redundant. A CATEGORY makes redundant
        any COURSE plan inside its subtree and any narrower CATEGORY plan
        below it. Access is left alone; the user has paid for the current
        period. Returns the number of subscriptions scheduled.
        """
        new_plan_type = getattr(new_plan_type, "value", new_plan_type)
        if new_plan_type == PlanType.COURSE.value:
            return 0

        query = self.session.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_([SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value]),
            Subscription.provider == SubscriptionProvider.GATEWAY_RECURRING.value,
            Subscription.cancel_at_period_end.is_(False),
        )
        if exclude_subscription_id:
            query = query.filter(Subscription.id != exclude_subscription_id)
        candidates = query.all()

        scheduled = 0
        for subscription in candidates:
            old_plan = subscription.plan
            if not self._is_redundant(new_plan_type, target_id, old_plan):
                continue
            try:
                if subscription.gateway_subscription_id:
                    await self._require_gateway().cancel_subscription(
                        subscription.gateway_subscription_id,
                        cancel_at_cycle_end=True,
                    )
                subscription.cancel_at_period_end = True
                if subscription.current_period_end is None:
                    subscription.current_period_end = _scheduled_end(subscription)
                self.session.commit()
                scheduled += 1
                logger.info("Redundant subscription scheduled for cancellation", extra={
                    "subscription_id": subscription.id,
                    "user_id": user_id,
                    "old_plan_type": old_plan.plan_type,
                    "new_plan_type": new_plan_type,
                    "correlation_id": self.correlation_id,
                })
            except Exception:
                self.session.rollback()
                logger.exception("Failed to cancel redundant subscription", extra={
                    "subscription_id": subscription.id,
                    "user_id": user_id,
                    "correlation_id": self.correlation_id,
                })
        return scheduled

    def _is_redundant(self, new_plan_type: str, target_id: Optional[str], old_plan: SubscriptionPlan) -> bool:
        if new_plan_type == PlanType.WHOLE_APP.value:
            return old_plan.plan_type != PlanType.WHOLE_APP.value
        if new_plan_type == PlanType.CATEGORY.value:
            if old_plan.plan_type == PlanType.COURSE.value:
                return target_id in self.hierarchy.get_course_ancestors(old_plan.target_id)
            if old_plan.plan_type == PlanType.CATEGORY.value and old_plan.target_id != target_id:
                return self.hierarchy.is_within(old_plan.target_id, target_id)
        return False

    # ----------------------------------------------------------------- sync

    async def sync_from_gateway(self, subscription_id: str) -> Subscription:
        """Pull the gateway's view of a recurring subscription and apply it."""
        subscription = self.session.query(Subscription).filter(Subscription.id == subscription_id).first()
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        if (
            subscription.provider != SubscriptionProvider.GATEWAY_RECURRING.value
            or not subscription.gateway_subscription_id
        ):
            raise ValidationError("Subscription not linked to payment gateway")

        remote = await self._require_gateway().get_subscription(subscription.gateway_subscription_id)
        mapped = GATEWAY_STATUS_MAP.get(remote.status or "")
        if mapped is None:
            logger.warning("Unknown gateway subscription status", extra={
                "subscription_id": subscription.id,
                "gateway_status": remote.status,
            })
            return subscription

        if (
            mapped == SubscriptionStatus.ACTIVE.value
            and subscription.is_trial
            and subscription.status in (SubscriptionStatus.PENDING.value, SubscriptionStatus.TRIAL.value)
        ):
            mapped = SubscriptionStatus.TRIAL.value

        fields = {}
        if remote.current_start:
            fields["current_period_start"] = remote.current_start
        if remote.current_end:
            fields["current_period_end"] = remote.current_end
        if remote.charge_at:
            fields["next_billing_at"] = remote.charge_at
        if mapped == SubscriptionStatus.TRIAL.value and subscription.trial_ends_at is None:
            fields["trial_ends_at"] = remote.charge_at or utcnow() + timedelta(days=subscription.plan.trial_days)
        if mapped == SubscriptionStatus.PAST_DUE.value and subscription.grace_until is None:
            fields["grace_until"] = utcnow() + timedelta(days=get_settings().grace_period_days)

        if mapped != subscription.status and not can_transition(subscription.status, mapped):
            logger.warning("Gateway state conflicts with local terminal state, not applied", extra={
                "subscription_id": subscription.id,
                "local_status": subscription.status,
                "gateway_status": remote.status,
            })
            return subscription

        try:
            self._transition(subscription, mapped, reason="gateway_sync", **fields)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return subscription

    # ---------------------------------------------------------------- reads

    def get_subscription(self, user_id: str, subscription_id: str) -> Subscription:
        return self._get_owned(user_id, subscription_id)

    def get_active_subscription(self, user_id: str, plan_id: Optional[str] = None) -> Optional[Subscription]:
        query = self.session.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(ACCESS_GRANTING_STATUSES),
        )
        if plan_id:
            query = query.filter(Subscription.plan_id == plan_id)
        return query.order_by(Subscription.created_at.desc()).first()

    def list_user_subscriptions(self, user_id: str) -> List[Subscription]:
        return self.session.query(Subscription).filter(
            Subscription.user_id == user_id,
        ).order_by(Subscription.created_at.desc()).all()

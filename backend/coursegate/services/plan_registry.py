"""
Plan registry: admin-managed pricing templates.

Billing terms are frozen at creation. Recurring plans are mirrored as a
gateway plan template; lifetime plans are one-time orders and never touch
the gateway at creation time.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from coursegate.catalog import CategoryHierarchyResolver
from coursegate.config import get_settings
from coursegate.entitlements.store import EntitlementStore
from coursegate.models.catalog import Course
from coursegate.models.plan import (
    BILLING_FIELDS,
    DISPLAY_FIELDS,
    BillingPeriod,
    PlanType,
    SubscriptionPlan,
)
from coursegate.models.subscription import (
    NON_TERMINAL_STATUSES,
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
)
from coursegate.platform.errors import ConflictError, GatewayError, NotFoundError, ValidationError
from coursegate.services.subscription_transitions import transition_subscription_status

logger = logging.getLogger(__name__)


@dataclass
class DeactivationResult:
    """Outcome of deactivating every plan on a deleted target."""

    target_id: str
    plan_type: str
    plans_deactivated: int = 0
    subscriptions_cancelled: int = 0
    errors: list = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "plan_type": self.plan_type,
            "plans_deactivated": self.plans_deactivated,
            "subscriptions_cancelled": self.subscriptions_cancelled,
            "success": self.success,
            "error_count": len(self.errors),
        }


def validate_plan_target(plan_type: str, target_id: Optional[str]) -> None:
    """Exactly one of: WHOLE_APP with no target, or CATEGORY/COURSE with a target."""
    if plan_type == PlanType.WHOLE_APP.value:
        if target_id is not None:
            raise ValidationError("WHOLE_APP plans must not have a target")
    elif plan_type in (PlanType.CATEGORY.value, PlanType.COURSE.value):
        if not target_id:
            raise ValidationError(f"{plan_type} plans require a target_id")
    else:
        raise ValidationError(f"Unknown plan type: {plan_type}")


class PlanRegistry:
    """Create, edit, read and retire subscription plans."""

    def __init__(self, session: Session, gateway=None, correlation_id: Optional[str] = None):
        self.session = session
        self.gateway = gateway
        self.correlation_id = correlation_id

    def _target_exists(self, plan_type: str, target_id: Optional[str]) -> bool:
        if plan_type == PlanType.CATEGORY.value:
            return CategoryHierarchyResolver(self.session).category_exists(target_id)
        if plan_type == PlanType.COURSE.value:
            return self.session.query(Course.id).filter(Course.id == target_id).first() is not None
        return True

    async def create_plan(
        self,
        name: str,
        plan_type: str,
        subscription_type: str,
        price: int,
        target_id: Optional[str] = None,
        currency: Optional[str] = None,
        trial_days: int = 0,
        trial_fee: int = 0,
        description: Optional[str] = None,
        display_order: int = 0,
    ) -> SubscriptionPlan:
        """
        Create a plan and, for recurring billing, its gateway template.

        The local row is flushed first so it has an id; if the gateway call
        fails the transaction is rolled back and no plan remains.

        Raises:
            ValidationError: invalid type/target/price/trial terms
            NotFoundError: target category or course does not exist
            GatewayError: the gateway template could not be created
        """
        plan_type = getattr(plan_type, "value", plan_type)
        subscription_type = getattr(subscription_type, "value", subscription_type)

        validate_plan_target(plan_type, target_id)
        if subscription_type not in {p.value for p in BillingPeriod}:
            raise ValidationError(f"Unknown subscription type: {subscription_type}")
        if price is None or price <= 0:
            raise ValidationError("Plan price must be a positive amount in minor units")
        if trial_days < 0 or trial_fee < 0:
            raise ValidationError("Trial days and trial fee cannot be negative")
        if subscription_type == BillingPeriod.LIFETIME.value and (trial_days or trial_fee):
            raise ValidationError("Lifetime plans cannot have a trial")
        if not self._target_exists(plan_type, target_id):
            raise NotFoundError(plan_type.capitalize(), target_id)

        plan = SubscriptionPlan(
            name=name,
            description=description,
            display_order=display_order,
            plan_type=plan_type,
            target_id=target_id,
            subscription_type=subscription_type,
            price=price,
            currency=currency or get_settings().default_currency,
            trial_days=trial_days,
            trial_fee=trial_fee,
            is_active=True,
        )
        self.session.add(plan)
        self.session.flush()

        if plan.is_lifetime:
            self.session.commit()
            logger.info("Lifetime plan created without gateway template", extra={
                "plan_id": plan.id,
                "plan_type": plan_type,
                "target_id": target_id,
                "correlation_id": self.correlation_id,
            })
            return plan

        if self.gateway is None:
            self.session.rollback()
            raise GatewayError("Payment gateway is not configured")

        try:
            gateway_plan = await self.gateway.create_plan(
                name=plan.name,
                amount=plan.price,
                currency=plan.currency,
                period=plan.subscription_type,
                interval=1,
                description=plan.description,
            )
        except Exception as e:
            self.session.rollback()
            logger.error("Gateway plan creation failed, local plan rolled back", extra={
                "plan_name": name,
                "error": str(e),
                "correlation_id": self.correlation_id,
            })
            if isinstance(e, GatewayError):
                raise
            raise GatewayError(f"Failed to create plan in payment gateway: {e}") from e

        plan.gateway_plan_id = gateway_plan.plan_id
        self.session.commit()

        logger.info("Recurring plan created", extra={
            "plan_id": plan.id,
            "gateway_plan_id": plan.gateway_plan_id,
            "plan_type": plan_type,
            "target_id": target_id,
            "correlation_id": self.correlation_id,
        })
        return plan

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = self.session.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()
        if plan is None:
            raise NotFoundError("Plan", plan_id)
        return plan

    def list_active_plans(
        self,
        plan_type: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> List[SubscriptionPlan]:
        query = self.session.query(SubscriptionPlan).filter(SubscriptionPlan.is_active.is_(True))
        if plan_type:
            query = query.filter(SubscriptionPlan.plan_type == getattr(plan_type, "value", plan_type))
        if target_id:
            query = query.filter(SubscriptionPlan.target_id == target_id)
        return query.order_by(SubscriptionPlan.display_order, SubscriptionPlan.created_at).all()

    def update_plan(self, plan_id: str, updates: Dict[str, Any]) -> SubscriptionPlan:
        """
        Edit display fields. Billing terms are immutable; create a new plan
        to change price or trial terms.
        """
        plan = self.get_plan(plan_id)

        frozen = sorted(set(updates) & BILLING_FIELDS)
        if frozen:
            raise ValidationError(
                "Cannot change billing terms of an existing plan. Create a new plan instead.",
                details={"fields": frozen},
            )
        unknown = sorted(set(updates) - DISPLAY_FIELDS)
        if unknown:
            raise ValidationError("Unknown plan fields", details={"fields": unknown})

        for name, value in updates.items():
            setattr(plan, name, value)
        self.session.commit()

        logger.info("Plan updated", extra={
            "plan_id": plan.id,
            "fields": sorted(updates),
            "correlation_id": self.correlation_id,
        })
        return plan

    def delete_plan(self, plan_id: str) -> SubscriptionPlan:
        """Soft delete; refused while any non-terminal subscription uses the plan."""
        plan = self.get_plan(plan_id)

        in_use = self.session.query(Subscription).filter(
            Subscription.plan_id == plan.id,
            Subscription.status.in_(NON_TERMINAL_STATUSES),
        ).count()
        if in_use:
            raise ConflictError(
                "Cannot delete plan with active subscriptions",
                details={"plan_id": plan.id, "active_subscriptions": in_use},
            )

        plan.is_active = False
        self.session.commit()
        logger.info("Plan deactivated", extra={"plan_id": plan.id, "correlation_id": self.correlation_id})
        return plan

    async def deactivate_plans_by_target(self, target_id: str, plan_type: str) -> DeactivationResult:
        """
        Retire every plan on a deleted course/category and end its subscriptions.

        Plans are deactivated and committed first. Each non-terminal
        subscription is then cancelled at the gateway and, in its own
        transaction, marked cancelled with its entitlement revoked. A failing
        subscription is logged and skipped.
        """
        plan_type = getattr(plan_type, "value", plan_type)
        result = DeactivationResult(target_id=target_id, plan_type=plan_type)

        plans = self.session.query(SubscriptionPlan).filter(
            SubscriptionPlan.plan_type == plan_type,
            SubscriptionPlan.target_id == target_id,
        ).all()
        for plan in plans:
            if plan.is_active:
                plan.is_active = False
                result.plans_deactivated += 1
        self.session.commit()

        plan_ids = [plan.id for plan in plans]
        if not plan_ids:
            return result

        subscriptions = self.session.query(Subscription).filter(
            Subscription.plan_id.in_(plan_ids),
            Subscription.status.in_(NON_TERMINAL_STATUSES),
        ).all()

        store = EntitlementStore(self.session)
        for subscription in subscriptions:
            try:
                if (
                    subscription.gateway_subscription_id
                    and self.gateway is not None
                    and subscription.provider == SubscriptionProvider.GATEWAY_RECURRING.value
                ):
                    await self.gateway.cancel_subscription(
                        subscription.gateway_subscription_id,
                        cancel_at_cycle_end=False,
                    )
                transition_subscription_status(
                    self.session,
                    subscription,
                    SubscriptionStatus.CANCELLED.value,
                    reason="plan_target_deleted",
                    entitlement_store=store,
                    note=f"{plan_type} {target_id} deleted",
                )
                self.session.commit()
                result.subscriptions_cancelled += 1
            except Exception as e:
                self.session.rollback()
                error_msg = f"Failed to cancel subscription {subscription.id}: {str(e)}"
                logger.exception("Subscription cleanup failed during plan deactivation", extra={
                    "subscription_id": subscription.id,
                    "target_id": target_id,
                    "correlation_id": self.correlation_id,
                })
                result.errors.append(error_msg)

        logger.info("Plans deactivated by target", extra=result.to_dict())
        return result

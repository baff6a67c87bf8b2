"""
SubscriptionPlan model: admin-defined pricing templates.

A plan targets the whole app, one category (and its subtree) or one course.
Billing terms are frozen at creation; only display fields may change.
All amounts are in minor currency units (paise).
"""

import enum

from sqlalchemy import Column, String, Integer, Boolean, Text, Index, CheckConstraint

from coursegate.db_base import Base
from coursegate.models.base import TimestampMixin, generate_uuid


class PlanType(str, enum.Enum):
    WHOLE_APP = "WHOLE_APP"
    CATEGORY = "CATEGORY"
    COURSE = "COURSE"


class BillingPeriod(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


# Fields an admin may edit after creation
DISPLAY_FIELDS = frozenset({"name", "description", "display_order"})

# Fields that define what a subscriber pays for; immutable post-creation
BILLING_FIELDS = frozenset({
    "plan_type", "target_id", "subscription_type", "price", "currency",
    "trial_days", "trial_fee", "gateway_plan_id",
})


class SubscriptionPlan(Base, TimestampMixin):
    """A priced offering."""

    __tablename__ = "subscription_plans"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    # Display
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    display_order = Column(Integer, nullable=False, default=0)

    # Billing terms
    plan_type = Column(String(20), nullable=False, comment="WHOLE_APP | CATEGORY | COURSE")
    target_id = Column(
        String(255),
        nullable=True,
        comment="Category or course id; NULL iff plan_type is WHOLE_APP",
    )
    subscription_type = Column(String(20), nullable=False, comment="monthly | yearly | lifetime")
    price = Column(Integer, nullable=False, comment="Price in minor units")
    currency = Column(String(3), nullable=False, default="INR")
    trial_days = Column(Integer, nullable=False, default=0)
    trial_fee = Column(Integer, nullable=False, default=0, comment="Trial addon fee in minor units")
    gateway_plan_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Gateway recurring template id; NULL for lifetime plans",
    )

    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "(plan_type = 'WHOLE_APP' AND target_id IS NULL) OR "
            "(plan_type IN ('CATEGORY', 'COURSE') AND target_id IS NOT NULL)",
            name="ck_subscription_plans_target",
        ),
        Index("ix_subscription_plans_target", "plan_type", "target_id"),
        Index("ix_subscription_plans_active", "is_active"),
    )

    @property
    def is_lifetime(self) -> bool:
        return self.subscription_type == BillingPeriod.LIFETIME.value

    @property
    def is_recurring(self) -> bool:
        return not self.is_lifetime

    @property
    def has_trial(self) -> bool:
        return (self.trial_days or 0) > 0

    def __repr__(self) -> str:
        return (
            f"<SubscriptionPlan(id={self.id}, plan_type={self.plan_type}, "
            f"target_id={self.target_id}, subscription_type={self.subscription_type})>"
        )

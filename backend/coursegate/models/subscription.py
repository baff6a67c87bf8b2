"""
UserSubscription model and its append-only transition log.

One row per (user_id, plan_id): re-subscribing to the same plan reuses the
row. The unique constraint is the final backstop against two concurrent
initiations for the same pair. Every status change also appends a
SubscriptionTransition row so the lifecycle history survives the reuse.

State machine:
    pending  -> trial | active | cancelled | expired
    trial    -> active | past_due | cancelled | expired
    active   -> past_due | cancelled | expired
    past_due -> active | halted | cancelled | expired
    cancelled, halted, expired are terminal (a new initiation resets to pending)
"""

import enum

from sqlalchemy import (
    Column,
    String,
    Boolean,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from coursegate.db_base import Base
from coursegate.models.base import TimestampMixin, UTCDateTime, generate_uuid, utcnow


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    HALTED = "halted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionProvider(str, enum.Enum):
    GATEWAY_RECURRING = "gateway_recurring"
    GATEWAY_ONETIME = "gateway_onetime"
    MOBILE_STORE = "mobile_store"


# Statuses that carry access; past_due keeps access for the grace window
ACCESS_GRANTING_STATUSES = frozenset({
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
})

ACCESS_REVOKING_STATUSES = frozenset({
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.HALTED.value,
    SubscriptionStatus.EXPIRED.value,
})

TERMINAL_STATUSES = ACCESS_REVOKING_STATUSES

NON_TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.PENDING.value,
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
})


class Subscription(Base, TimestampMixin):
    """A user's billing relationship to one plan."""

    __tablename__ = "user_subscriptions"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String(255), ForeignKey("subscription_plans.id"), nullable=False)

    provider = Column(
        String(50),
        nullable=False,
        default=SubscriptionProvider.GATEWAY_RECURRING.value,
    )
    gateway_subscription_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Gateway subscription id, or store purchase token for mobile",
    )

    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.PENDING.value,
        index=True,
    )
    is_trial = Column(Boolean, nullable=False, default=False)

    current_period_start = Column(UTCDateTime(), nullable=True)
    current_period_end = Column(UTCDateTime(), nullable=True)
    trial_ends_at = Column(UTCDateTime(), nullable=True)
    grace_until = Column(UTCDateTime(), nullable=True)
    next_billing_at = Column(UTCDateTime(), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(UTCDateTime(), nullable=True)

    plan = relationship("SubscriptionPlan", lazy="joined")
    payments = relationship(
        "Payment",
        back_populates="subscription",
        order_by="Payment.created_at",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "plan_id", name="uq_user_subscriptions_user_plan"),
        Index("ix_user_subscriptions_status_trial_end", "status", "trial_ends_at"),
        Index("ix_user_subscriptions_status_grace", "status", "grace_until"),
        Index("ix_user_subscriptions_period_end_cancel", "cancel_at_period_end", "current_period_end"),
    )

    @property
    def grants_access(self) -> bool:
        return self.status in ACCESS_GRANTING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan_id={self.plan_id}, status={self.status})>"
        )


class SubscriptionTransition(Base):
    """Append-only record of one applied status change."""

    __tablename__ = "subscription_transitions"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    subscription_id = Column(
        String(255),
        ForeignKey("user_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status = Column(String(20), nullable=False)
    to_status = Column(String(20), nullable=False)
    reason = Column(String(100), nullable=False, comment="e.g. webhook:invoice.paid, sweep:grace_expired")
    period_start = Column(UTCDateTime(), nullable=True)
    period_end = Column(UTCDateTime(), nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<SubscriptionTransition(subscription_id={self.subscription_id}, "
            f"{self.from_status}->{self.to_status}, reason={self.reason})>"
        )

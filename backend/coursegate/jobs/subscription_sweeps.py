"""
Scheduled subscription sweeps.

Gateway webhooks are not guaranteed to fire at the exact moment a period or
grace window ends, so these sweeps enforce the time-based transitions:

- enforce_period_end_cancellations: cancel_at_period_end rows whose period
  has ended -> cancelled (entitlement revoked)
- expire_trial_subscriptions: trials past trial_ends_at -> active
- expire_grace_periods: past_due rows past grace_until -> halted
  (entitlement revoked)
- abandoned one-time orders -> payment failed

Each sweep selects on status, so the row sets are disjoint. Every row is
committed on its own; one failure is logged and the sweep moves on.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from coursegate.entitlements.store import EntitlementStore
from coursegate.models.base import utcnow
from coursegate.models.subscription import Subscription, SubscriptionProvider, SubscriptionStatus
from coursegate.platform.errors import GatewayError
from coursegate.services.payment_service import PaymentService
from coursegate.services.periods import period_end
from coursegate.services.subscription_transitions import transition_subscription_status

logger = logging.getLogger(__name__)

S = SubscriptionStatus


@dataclass
class SweepStats:
    """Counts from one sweep run."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    period_end_cancelled: int = 0
    trials_converted: int = 0
    grace_halted: int = 0
    orders_abandoned: int = 0
    errors: list = field(default_factory=list)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "period_end_cancelled": self.period_end_cancelled,
            "trials_converted": self.trials_converted,
            "grace_halted": self.grace_halted,
            "orders_abandoned": self.orders_abandoned,
            "error_count": len(self.errors),
            "duration_seconds": duration,
        }


class SubscriptionSweepJob:
    """
    Time-driven subscription transitions.

    Should run on a schedule (hourly by default) via the sweep worker.
    """

    def __init__(self, db_session: Session, gateway=None, entitlement_store: Optional[EntitlementStore] = None):
        self.db_session = db_session
        self.gateway = gateway
        self.entitlements = entitlement_store or EntitlementStore(db_session)

    def _apply(self, subscription: Subscription, new_status: str, reason: str, stats: SweepStats, **fields) -> bool:
        try:
            transition_subscription_status(
                self.db_session,
                subscription,
                new_status,
                reason,
                entitlement_store=self.entitlements,
                **fields,
            )
            self.db_session.commit()
            return True
        except Exception as e:
            self.db_session.rollback()
            stats.errors.append(f"{reason} failed for {subscription.id}: {e}")
            logger.exception("Sweep transition failed", extra={
                "subscription_id": subscription.id,
                "reason": reason,
            })
            return False

    async def enforce_period_end_cancellations(
        self, now: Optional[datetime] = None, stats: Optional[SweepStats] = None
    ) -> int:
        """Cancel subscriptions whose scheduled cancellation boundary has passed."""
        now = now or utcnow()
        stats = stats or SweepStats()

        due = self.db_session.query(Subscription).filter(
            Subscription.cancel_at_period_end.is_(True),
            Subscription.status.in_([S.TRIAL.value, S.ACTIVE.value, S.PAST_DUE.value]),
            Subscription.current_period_end.isnot(None),
            Subscription.current_period_end <= now,
        ).all()

        count = 0
        for subscription in due:
            if (
                self.gateway is not None
                and subscription.provider == SubscriptionProvider.GATEWAY_RECURRING.value
                and subscription.gateway_subscription_id
            ):
                # Confirms the scheduled cancel; the client skips finished subscriptions
                try:
                    await self.gateway.cancel_subscription(
                        subscription.gateway_subscription_id,
                        cancel_at_cycle_end=False,
                    )
                except GatewayError as e:
                    logger.warning("Gateway cancel failed during period-end sweep", extra={
                        "subscription_id": subscription.id,
                        "error": str(e),
                    })

            if self._apply(
                subscription,
                S.CANCELLED.value,
                "sweep:period_end_cancel",
                stats,
                cancelled_at=now,
            ):
                count += 1

        stats.period_end_cancelled += count
        if due:
            logger.info("Period-end cancellations enforced", extra={"count": count, "due": len(due)})
        return count

    def expire_trial_subscriptions(self, now: Optional[datetime] = None, stats: Optional[SweepStats] = None) -> int:
        """Move trials past trial_ends_at to active and open the first paid period."""
        now = now or utcnow()
        stats = stats or SweepStats()

        expired = self.db_session.query(Subscription).filter(
            Subscription.status == S.TRIAL.value,
            Subscription.trial_ends_at.isnot(None),
            Subscription.trial_ends_at <= now,
            Subscription.cancel_at_period_end.is_(False),
        ).all()

        count = 0
        for subscription in expired:
            start = subscription.trial_ends_at
            fields = {"is_trial": False, "current_period_start": start}
            if subscription.current_period_end is None or subscription.current_period_end <= start:
                fields["current_period_end"] = period_end(start, subscription.plan.subscription_type)
            if self._apply(subscription, S.ACTIVE.value, "sweep:trial_ended", stats, **fields):
                count += 1

        stats.trials_converted += count
        if expired:
            logger.info("Trial subscriptions converted", extra={"count": count, "due": len(expired)})
        return count

    def expire_grace_periods(self, now: Optional[datetime] = None, stats: Optional[SweepStats] = None) -> int:
        """Halt past_due subscriptions whose grace window has closed."""
        now = now or utcnow()
        stats = stats or SweepStats()

        lapsed = self.db_session.query(Subscription).filter(
            Subscription.status == S.PAST_DUE.value,
            Subscription.grace_until.isnot(None),
            Subscription.grace_until <= now,
        ).all()

        count = 0
        for subscription in lapsed:
            if self._apply(subscription, S.HALTED.value, "sweep:grace_expired", stats):
                count += 1

        stats.grace_halted += count
        if lapsed:
            logger.info("Grace periods expired", extra={"count": count, "due": len(lapsed)})
        return count

    async def run(self, now: Optional[datetime] = None) -> dict:
        """
        Execute every sweep once.

        Period-end cancellations run before trial expiry so a trial that was
        cancelled at period end is never converted to a paid period.
        """
        logger.info("Starting subscription sweep job")
        now = now or utcnow()
        stats = SweepStats()

        await self.enforce_period_end_cancellations(now=now, stats=stats)
        self.expire_trial_subscriptions(now=now, stats=stats)
        self.expire_grace_periods(now=now, stats=stats)

        try:
            stats.orders_abandoned = PaymentService(self.db_session).cleanup_abandoned_orders()
        except Exception as e:
            stats.errors.append(f"abandoned order cleanup failed: {e}")
            logger.exception("Abandoned order cleanup failed")

        stats.completed_at = datetime.now(timezone.utc)
        logger.info("Subscription sweep job completed", extra=stats.to_dict())
        return stats.to_dict()

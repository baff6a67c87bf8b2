"""
Tests for the scheduled subscription sweeps.

Covers:
1. Period-end cancellations
2. Trial expiry into the first paid period
3. Grace period expiry into halted
4. Ordering between sweeps and per-row isolation
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from coursegate.entitlements import AccessChecker, EntitlementStore
from coursegate.jobs.subscription_sweeps import SubscriptionSweepJob
from coursegate.models import UserEntitlement
from coursegate.models.base import utcnow
from coursegate.webhooks import WebhookReconciler
from coursegate.webhooks.adapters import from_razorpay
from coursegate.tests.webhooks.payloads import razorpay_body


def _entitlement(db_session):
    return db_session.query(UserEntitlement).one()


class TestPeriodEndCancellation:

    @pytest.mark.asyncio
    async def test_access_runs_until_boundary(self, db_session, gateway, user, make_plan, make_subscription):
        subscription = make_subscription(user, make_plan(), status="active", cancel_at_period_end=True, period_days=10)
        EntitlementStore(db_session).sync_subscription_to_entitlement(subscription)
        db_session.commit()
        boundary = subscription.current_period_end
        job = SubscriptionSweepJob(db_session, gateway=gateway)

        assert await job.enforce_period_end_cancellations(now=boundary - timedelta(minutes=1)) == 0
        assert subscription.status == "active"
        assert _entitlement(db_session).status == "active"

        assert await job.enforce_period_end_cancellations(now=boundary) == 1
        assert subscription.status == "cancelled"
        assert _entitlement(db_session).status == "revoked"
        gateway.cancel_subscription.assert_awaited_once_with(
            subscription.gateway_subscription_id, cancel_at_cycle_end=False
        )

    @pytest.mark.asyncio
    async def test_cancelled_trial_is_not_converted(self, db_session, gateway, user, make_plan, make_subscription):
        now = utcnow()
        subscription = make_subscription(
            user, make_plan(trial_days=7), status="trial", is_trial=True, cancel_at_period_end=True,
            trial_ends_at=now - timedelta(hours=1), current_period_end=now - timedelta(hours=1),
        )

        stats = await SubscriptionSweepJob(db_session, gateway=gateway).run(now=now)

        assert subscription.status == "cancelled"
        assert stats["period_end_cancelled"] == 1
        assert stats["trials_converted"] == 0

    @pytest.mark.asyncio
    async def test_upgrade_on_same_target_keeps_access(
        self, db_session, gateway, user, catalog, make_plan, make_subscription
    ):
        now = utcnow()
        store = EntitlementStore(db_session)
        monthly = make_subscription(
            user, make_plan("CATEGORY", "tech"), status="active", cancel_at_period_end=True,
            current_period_end=now - timedelta(minutes=5),
        )
        store.sync_subscription_to_entitlement(monthly)
        yearly = make_subscription(
            user, make_plan("CATEGORY", "tech", subscription_type="yearly"), status="active", period_days=365,
        )
        store.sync_subscription_to_entitlement(yearly)
        db_session.commit()

        await SubscriptionSweepJob(db_session, gateway=gateway).run(now=now)

        assert (monthly.status, yearly.status) == ("cancelled", "active")
        assert _entitlement(db_session).status == "active"
        assert _entitlement(db_session).valid_until == yearly.current_period_end
        assert AccessChecker(db_session).has_access(user.id, "COURSE", "py-101") is True


class TestTrialExpiry:

    def test_expired_trial_opens_first_paid_period(self, db_session, user, make_plan, make_subscription):
        now = utcnow()
        trial_end = now - timedelta(hours=2)
        subscription = make_subscription(
            user, make_plan(trial_days=7), status="trial", is_trial=True,
            trial_ends_at=trial_end, current_period_end=trial_end,
        )

        converted = SubscriptionSweepJob(db_session).expire_trial_subscriptions(now=now)

        assert converted == 1
        assert subscription.status == "active"
        assert subscription.is_trial is False
        assert subscription.current_period_start == trial_end
        assert subscription.current_period_end > now

    def test_running_trial_untouched(self, db_session, user, make_plan, make_subscription):
        subscription = make_subscription(
            user, make_plan(trial_days=7), status="trial", trial_ends_at=utcnow() + timedelta(days=3),
        )
        assert SubscriptionSweepJob(db_session).expire_trial_subscriptions() == 0
        assert subscription.status == "trial"


class TestGraceExpiry:

    @pytest.mark.asyncio
    async def test_failed_payment_then_grace_lapses(self, db_session, gateway, user, make_plan, make_subscription):
        subscription = make_subscription(user, make_plan(), status="active")
        failed = razorpay_body("invoice.payment_failed", invoice={
            "id": "inv_late", "subscription_id": subscription.gateway_subscription_id,
        })
        await WebhookReconciler(db_session, gateway=gateway).process(from_razorpay(failed, event_id="evt_fail"))

        assert subscription.status == "past_due"
        grace = subscription.grace_until
        assert _entitlement(db_session).status == "active"

        job = SubscriptionSweepJob(db_session, gateway=gateway)
        assert job.expire_grace_periods(now=grace - timedelta(seconds=1)) == 0
        assert job.expire_grace_periods(now=grace + timedelta(seconds=1)) == 1

        assert subscription.status == "halted"
        assert _entitlement(db_session).status == "revoked"


class TestIsolation:

    def test_one_bad_row_does_not_block_the_rest(self, db_session, make_user, make_plan, make_subscription):
        now = utcnow()
        plan = make_plan()
        broken = make_subscription(make_user("a"), plan, status="past_due", grace_until=now - timedelta(hours=1))
        healthy = make_subscription(make_user("b"), plan, status="past_due", grace_until=now - timedelta(hours=1))
        job = SubscriptionSweepJob(db_session)

        original = job.entitlements.sync_subscription_to_entitlement

        def flaky_sync(subscription, **kwargs):
            if subscription.id == broken.id:
                raise RuntimeError("database hiccup")
            return original(subscription, **kwargs)

        with patch.object(job.entitlements, "sync_subscription_to_entitlement", side_effect=flaky_sync):
            halted = job.expire_grace_periods(now=now)

        assert halted == 1
        assert broken.status == "past_due"
        assert healthy.status == "halted"

    @pytest.mark.asyncio
    async def test_run_reports_counts(self, db_session, user, make_plan, make_subscription):
        stats = await SubscriptionSweepJob(db_session).run()

        assert stats["period_end_cancelled"] == 0
        assert stats["error_count"] == 0
        assert stats["completed_at"] is not None

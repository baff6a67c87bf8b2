"""
Tests for one-time payment capture.

The checkout callback and the order.paid webhook race for the same order;
whichever arrives first applies the capture and the other is a no-op.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from coursegate.models import Payment, Subscription, UserEntitlement
from coursegate.models.base import utcnow
from coursegate.platform.errors import NotFoundError, SignatureError
from coursegate.services.payment_service import PaymentService
from coursegate.services.subscription_service import SubscriptionService
from coursegate.tests.conftest import sign_payment


@pytest_asyncio.fixture
async def lifetime_checkout(db_session, gateway, user, catalog, make_plan):
    plan = make_plan("CATEGORY", "tech", subscription_type="lifetime", price=499900)
    return await SubscriptionService(db_session, gateway=gateway).initiate_subscription(user.id, plan.id)


class TestVerifyOneTimePayment:

    @pytest.mark.asyncio
    async def test_valid_signature_grants_perpetual_access(self, db_session, gateway, user, lifetime_checkout):
        service = PaymentService(db_session, gateway=gateway)

        result = await service.verify_one_time_payment(
            user.id, "order_1", "pay_1", sign_payment("order_1", "pay_1")
        )

        assert result.already_processed is False
        assert result.subscription_status == "active"
        payment = db_session.query(Payment).one()
        assert (payment.status, payment.payment_id) == ("paid", "pay_1")
        entitlement = db_session.query(UserEntitlement).one()
        assert (entitlement.type, entitlement.target_id) == ("CATEGORY", "tech")
        assert entitlement.valid_until is None

    @pytest.mark.asyncio
    async def test_bad_signature_changes_nothing(self, db_session, gateway, user, lifetime_checkout):
        with pytest.raises(SignatureError):
            await PaymentService(db_session, gateway=gateway).verify_one_time_payment(
                user.id, "order_1", "pay_1", "forged"
            )

        assert db_session.query(Payment).one().status == "pending"
        assert db_session.query(Subscription).one().status == "pending"
        assert db_session.query(UserEntitlement).count() == 0

    @pytest.mark.asyncio
    async def test_order_of_another_user_not_found(self, db_session, gateway, make_user, lifetime_checkout):
        stranger = make_user("stranger")
        with pytest.raises(NotFoundError):
            await PaymentService(db_session, gateway=gateway).verify_one_time_payment(
                stranger.id, "order_1", "pay_1", sign_payment("order_1", "pay_1")
            )

    @pytest.mark.asyncio
    async def test_second_capture_is_a_no_op(self, db_session, gateway, user, lifetime_checkout):
        service = PaymentService(db_session, gateway=gateway)
        await service.capture_one_time_payment("order_1", "pay_1", source="webhook:order.paid")

        result = await service.verify_one_time_payment(
            user.id, "order_1", "pay_1", sign_payment("order_1", "pay_1")
        )

        assert result.already_processed is True
        payment = db_session.query(Payment).one()
        assert payment.is_webhook_processed is True
        assert payment.event_type == "order.paid"

    @pytest.mark.asyncio
    async def test_capture_after_abandonment_still_activates(self, db_session, gateway, user, lifetime_checkout):
        subscription = db_session.query(Subscription).one()
        subscription.status = "cancelled"
        db_session.commit()

        result = await PaymentService(db_session, gateway=gateway).capture_one_time_payment(
            "order_1", "pay_late", source="webhook:payment.captured"
        )

        assert result.subscription_status == "active"


class TestCleanupAbandonedOrders:

    def test_stale_pending_orders_fail(self, db_session, user, make_plan):
        plan = make_plan(subscription_type="lifetime")
        stale = Payment(
            user_id=user.id, plan_id=plan.id, order_id="order_old", amount=100,
            payment_type="one_time", status="pending", created_at=utcnow() - timedelta(hours=30),
        )
        fresh = Payment(
            user_id=user.id, plan_id=plan.id, order_id="order_new", amount=100,
            payment_type="one_time", status="pending",
        )
        db_session.add_all([stale, fresh])
        db_session.commit()

        assert PaymentService(db_session).cleanup_abandoned_orders(older_than_hours=24) == 1
        assert stale.status == "failed"
        assert stale.extra_metadata["failure_reason"] == "abandoned"
        assert fresh.status == "pending"

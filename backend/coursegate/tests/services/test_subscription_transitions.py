"""Tests for the status-transition primitive."""

from datetime import timedelta

import pytest

from coursegate.models import SubscriptionTransition, User, UserEntitlement
from coursegate.models.base import utcnow
from coursegate.services.subscription_transitions import (
    InvalidTransitionError,
    can_transition,
    transition_subscription_status,
)


class TestStateMachine:

    @pytest.mark.parametrize("from_status,to_status", [
        ("pending", "trial"),
        ("pending", "active"),
        ("trial", "active"),
        ("trial", "past_due"),
        ("active", "past_due"),
        ("past_due", "active"),
        ("past_due", "halted"),
        ("cancelled", "pending"),
    ])
    def test_allowed(self, from_status, to_status):
        assert can_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        ("cancelled", "active"),
        ("halted", "active"),
        ("expired", "trial"),
        ("active", "trial"),
        ("active", "pending"),
        ("pending", "past_due"),
    ])
    def test_forbidden(self, from_status, to_status):
        assert not can_transition(from_status, to_status)


class TestTransition:

    def test_activation_grants_and_logs_history(self, db_session, user, make_plan, make_subscription):
        plan = make_plan()
        subscription = make_subscription(user, plan, status="pending")

        changed = transition_subscription_status(db_session, subscription, "active", "test:activate")
        db_session.commit()

        assert changed is True
        history = db_session.query(SubscriptionTransition).one()
        assert (history.from_status, history.to_status, history.reason) == ("pending", "active", "test:activate")
        entitlement = db_session.query(UserEntitlement).one()
        assert entitlement.status == "active"
        assert entitlement.valid_until == subscription.current_period_end

    def test_terminal_status_cannot_be_revived(self, db_session, user, make_plan, make_subscription):
        plan = make_plan()
        subscription = make_subscription(user, plan, status="cancelled")

        with pytest.raises(InvalidTransitionError) as exc_info:
            transition_subscription_status(db_session, subscription, "active", "webhook:late_charge")

        assert exc_info.value.status_code == 409
        assert subscription.status == "cancelled"

    def test_same_status_refreshes_without_history(self, db_session, user, make_plan, make_subscription):
        plan = make_plan()
        subscription = make_subscription(user, plan, status="active")
        new_end = utcnow() + timedelta(days=60)

        changed = transition_subscription_status(
            db_session, subscription, "active", "test:refresh", current_period_end=new_end
        )

        assert changed is False
        assert db_session.query(SubscriptionTransition).count() == 0
        assert db_session.query(UserEntitlement).one().valid_until == new_end

    def test_entering_trial_consumes_trial_flag(self, db_session, user, make_plan, make_subscription):
        plan = make_plan(trial_days=7)
        subscription = make_subscription(user, plan, status="pending")

        transition_subscription_status(
            db_session, subscription, "trial", "test:trial", trial_ends_at=utcnow() + timedelta(days=7)
        )
        db_session.commit()

        assert subscription.is_trial is True
        assert db_session.query(User).filter(User.id == user.id).one().has_used_trial is True

    def test_reactivation_clears_grace(self, db_session, user, make_plan, make_subscription):
        plan = make_plan()
        subscription = make_subscription(
            user, plan, status="past_due", grace_until=utcnow() + timedelta(days=3)
        )

        transition_subscription_status(db_session, subscription, "active", "test:recovered")

        assert subscription.grace_until is None

    def test_cancel_stamps_cancelled_at_and_revokes(self, db_session, user, make_plan, make_subscription):
        plan = make_plan()
        subscription = make_subscription(user, plan, status="active")
        transition_subscription_status(db_session, subscription, "active", "test:grant")

        transition_subscription_status(db_session, subscription, "cancelled", "test:cancel")

        assert subscription.cancelled_at is not None
        assert db_session.query(UserEntitlement).one().status == "revoked"

    def test_unknown_field_rejected(self, db_session, user, make_plan, make_subscription):
        subscription = make_subscription(user, make_plan(), status="active")
        with pytest.raises(ValueError):
            transition_subscription_status(db_session, subscription, "active", "test", plan_id="other")

"""
The single entry point for changing a subscription's status.

Every status change goes through transition_subscription_status, which
checks the move against the state machine, applies the accompanying field
updates, appends a SubscriptionTransition row and synchronises the
entitlement in the same session. Nothing is committed here; the caller
commits once so all of it lands together.
"""

import logging
from typing import Any, Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from coursegate.entitlements.store import EntitlementStore
from coursegate.models.base import utcnow
from coursegate.models.subscription import Subscription, SubscriptionStatus, SubscriptionTransition
from coursegate.models.user import User
from coursegate.platform.errors import ConflictError

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.PENDING.value: frozenset({S.TRIAL.value, S.ACTIVE.value, S.CANCELLED.value, S.EXPIRED.value}),
    S.TRIAL.value: frozenset({
        S.ACTIVE.value, S.PAST_DUE.value, S.HALTED.value, S.CANCELLED.value, S.EXPIRED.value,
    }),
    S.ACTIVE.value: frozenset({S.PAST_DUE.value, S.HALTED.value, S.CANCELLED.value, S.EXPIRED.value}),
    S.PAST_DUE.value: frozenset({S.ACTIVE.value, S.HALTED.value, S.CANCELLED.value, S.EXPIRED.value}),
    # Terminal rows only move again when a new initiation reuses the row
    S.CANCELLED.value: frozenset({S.PENDING.value}),
    S.HALTED.value: frozenset({S.PENDING.value}),
    S.EXPIRED.value: frozenset({S.PENDING.value}),
}

# Columns a transition may update alongside the status
TRANSITION_FIELDS = frozenset({
    "is_trial",
    "current_period_start",
    "current_period_end",
    "trial_ends_at",
    "grace_until",
    "next_billing_at",
    "cancel_at_period_end",
    "cancelled_at",
    "gateway_subscription_id",
    "provider",
})


class InvalidTransitionError(ConflictError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, subscription_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Subscription cannot move from {from_status} to {to_status}",
            details={"subscription_id": subscription_id, "from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def transition_subscription_status(
    session: Session,
    subscription: Subscription,
    new_status: str,
    reason: str,
    entitlement_store: Optional[EntitlementStore] = None,
    note: Optional[str] = None,
    **fields: Any,
) -> bool:
    """
    Move a subscription to new_status and sync its entitlement.

    A "transition" to the current status applies the field updates and
    re-syncs the entitlement (refreshing valid_until) without logging a
    history row.

    Args:
        session: Session the caller will commit
        subscription: Row to change
        new_status: Target SubscriptionStatus value
        reason: Short machine-readable cause, e.g. "webhook:invoice.paid"
        entitlement_store: Store to sync through (built from session if omitted)
        note: Free-text detail kept on the history row
        **fields: Column updates from TRANSITION_FIELDS

    Returns:
        True if the status changed, False for a same-status refresh

    Raises:
        InvalidTransitionError: the state machine forbids the move
    """
    new_status = getattr(new_status, "value", new_status)
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")

    old_status = subscription.status
    changed = old_status != new_status
    if changed and not can_transition(old_status, new_status):
        logger.warning("Rejected subscription transition", extra={
            "subscription_id": subscription.id,
            "from_status": old_status,
            "to_status": new_status,
            "reason": reason,
        })
        raise InvalidTransitionError(subscription.id, old_status, new_status)

    for name, value in fields.items():
        setattr(subscription, name, value)

    subscription.status = new_status

    if changed:
        if new_status == S.ACTIVE.value and "grace_until" not in fields:
            subscription.grace_until = None
        if new_status == S.CANCELLED.value and subscription.cancelled_at is None:
            subscription.cancelled_at = utcnow()
        if new_status == S.TRIAL.value:
            subscription.is_trial = True
            user = session.query(User).filter(User.id == subscription.user_id).first()
            if user is not None and not user.has_used_trial:
                user.has_used_trial = True

        session.add(SubscriptionTransition(
            subscription_id=subscription.id,
            from_status=old_status,
            to_status=new_status,
            reason=reason,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            note=note,
        ))

    session.flush()

    store = entitlement_store or EntitlementStore(session)
    store.sync_subscription_to_entitlement(subscription, previous_status=old_status if changed else None)

    if changed:
        logger.info("Subscription status changed", extra={
            "subscription_id": subscription.id,
            "user_id": subscription.user_id,
            "from_status": old_status,
            "to_status": new_status,
            "reason": reason,
        })
    return changed

"""
Entitlement store: the authoritative access-control table.

grant_entitlement / revoke_entitlement are idempotent upserts keyed by
(user_id, type, target_id). sync_subscription_to_entitlement is the single
place that turns a subscription status into a grant or a revoke; the
status-transition primitive calls it on every change.

Writes only flush. The calling service owns the commit, so a status change
and its entitlement update land in the same transaction.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Union

from sqlalchemy import event
from sqlalchemy.orm import Session

from coursegate.catalog import CategoryHierarchyResolver
from coursegate.entitlements.cache import EntitlementCache
from coursegate.models.base import utcnow
from coursegate.models.catalog import Course
from coursegate.models.entitlement import EntitlementSource, EntitlementStatus, UserEntitlement
from coursegate.models.plan import PlanType, SubscriptionPlan
from coursegate.models.subscription import (
    ACCESS_GRANTING_STATUSES,
    ACCESS_REVOKING_STATUSES,
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
)
from coursegate.platform.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_PENDING_INVALIDATIONS = "entitlement_cache_pending"


def _register_cache_invalidation(session: Session, cache: EntitlementCache) -> None:
    """Invalidate touched users again once the transaction commits."""
    if session.info.get("entitlement_cache_listener"):
        return
    session.info["entitlement_cache_listener"] = True

    @event.listens_for(session, "after_commit")
    def _invalidate_after_commit(committed_session):
        pending: Set[str] = committed_session.info.pop(_PENDING_INVALIDATIONS, set())
        for user_id in pending:
            cache.invalidate(user_id)

    @event.listens_for(session, "after_rollback")
    def _discard_pending(rolled_back_session):
        rolled_back_session.info.pop(_PENDING_INVALIDATIONS, None)


def entitlement_window(subscription: Subscription, plan: SubscriptionPlan) -> Optional[datetime]:
    """
    valid_until for an access-granting subscription.

    Lifetime purchases are perpetual. Trials run to the later of the trial
    end and the period end. Past-due subscriptions keep access through the
    grace deadline even when the paid period has already ended.
    """
    if plan.is_lifetime or subscription.provider == SubscriptionProvider.GATEWAY_ONETIME.value:
        return None

    candidates = [subscription.current_period_end]
    if subscription.status == SubscriptionStatus.TRIAL.value:
        candidates.append(subscription.trial_ends_at)
    elif subscription.status == SubscriptionStatus.PAST_DUE.value:
        candidates.append(subscription.grace_until)

    candidates = [c for c in candidates if c is not None]
    if not candidates:
        return None
    return max(candidates)


def _source_for(subscription: Subscription) -> str:
    if subscription.provider == SubscriptionProvider.MOBILE_STORE.value:
        return EntitlementSource.APP.value
    return EntitlementSource.WEB.value


class EntitlementStore:
    """Grant, revoke and read UserEntitlement rows."""

    def __init__(self, session: Session, cache: Optional[EntitlementCache] = None):
        self.session = session
        self.cache = cache
        if cache is not None:
            _register_cache_invalidation(session, cache)

    def _touch(self, user_id: str) -> None:
        if self.cache is None:
            return
        self.cache.invalidate(user_id)
        self.session.info.setdefault(_PENDING_INVALIDATIONS, set()).add(user_id)

    def _validate_target(self, ent_type: str, target_id: Optional[str]) -> None:
        if ent_type not in {t.value for t in PlanType}:
            raise ValidationError(f"Unknown entitlement type: {ent_type}")
        if ent_type == PlanType.WHOLE_APP.value:
            if target_id is not None:
                raise ValidationError("WHOLE_APP entitlements must not have a target")
            return
        if not target_id:
            raise ValidationError(f"{ent_type} entitlements require a target")
        if ent_type == PlanType.CATEGORY.value:
            if not CategoryHierarchyResolver(self.session).category_exists(target_id):
                raise NotFoundError("Category", target_id)
        elif self.session.query(Course.id).filter(Course.id == target_id).first() is None:
            raise NotFoundError("Course", target_id)

    def _find(self, user_id: str, ent_type: str, target_id: Optional[str]) -> Optional[UserEntitlement]:
        query = self.session.query(UserEntitlement).filter(
            UserEntitlement.user_id == user_id,
            UserEntitlement.type == ent_type,
        )
        if target_id is None:
            query = query.filter(UserEntitlement.target_id.is_(None))
        else:
            query = query.filter(UserEntitlement.target_id == target_id)
        return query.first()

    def grant_entitlement(
        self,
        user_id: str,
        ent_type: str,
        target_id: Optional[str] = None,
        source: Optional[str] = None,
        valid_until: Optional[datetime] = None,
    ) -> UserEntitlement:
        """
        Upsert the (user, type, target) row to active.

        Granting an existing row only refreshes valid_until and source.

        Raises:
            ValidationError: type/target combination is invalid
            NotFoundError: the category or course does not exist
        """
        ent_type = getattr(ent_type, "value", ent_type)
        self._validate_target(ent_type, target_id)

        entitlement = self._find(user_id, ent_type, target_id)
        if entitlement is None:
            entitlement = UserEntitlement(
                user_id=user_id,
                type=ent_type,
                target_id=target_id,
                status=EntitlementStatus.ACTIVE.value,
                valid_until=valid_until,
                source=source,
            )
            self.session.add(entitlement)
            action = "created"
        else:
            entitlement.status = EntitlementStatus.ACTIVE.value
            entitlement.valid_until = valid_until
            if source:
                entitlement.source = source
            action = "refreshed"

        self.session.flush()
        self._touch(user_id)

        logger.info("Entitlement granted", extra={
            "user_id": user_id,
            "type": ent_type,
            "target_id": target_id,
            "valid_until": valid_until.isoformat() if valid_until else None,
            "action": action,
        })
        return entitlement

    def revoke_entitlement(self, user_id: str, ent_type: str, target_id: Optional[str] = None) -> int:
        """Flip matching active rows to revoked. Returns the number changed; 0 is not an error."""
        ent_type = getattr(ent_type, "value", ent_type)
        entitlement = self._find(user_id, ent_type, target_id)
        if entitlement is None or entitlement.status == EntitlementStatus.REVOKED.value:
            return 0

        entitlement.status = EntitlementStatus.REVOKED.value
        self.session.flush()
        self._touch(user_id)

        logger.info("Entitlement revoked", extra={
            "user_id": user_id,
            "type": ent_type,
            "target_id": target_id,
        })
        return 1

    def get_active_entitlements(self, user_id: str, now: Optional[datetime] = None) -> List[UserEntitlement]:
        now = now or utcnow()
        rows = self.session.query(UserEntitlement).filter(
            UserEntitlement.user_id == user_id,
            UserEntitlement.status == EntitlementStatus.ACTIVE.value,
        ).all()
        return [row for row in rows if row.is_effective(now)]

    def _covering_subscriptions(
        self,
        user_id: str,
        plan_type: str,
        target_id: Optional[str],
        exclude_subscription_id: Optional[str] = None,
    ) -> List[Subscription]:
        """The user's access-granting subscriptions whose plan maps to the same entitlement row."""
        query = self.session.query(Subscription).join(
            SubscriptionPlan, Subscription.plan_id == SubscriptionPlan.id
        ).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(ACCESS_GRANTING_STATUSES),
            SubscriptionPlan.plan_type == plan_type,
        )
        if target_id is None:
            query = query.filter(SubscriptionPlan.target_id.is_(None))
        else:
            query = query.filter(SubscriptionPlan.target_id == target_id)
        if exclude_subscription_id:
            query = query.filter(Subscription.id != exclude_subscription_id)
        return query.all()

    def _grant_from(self, subscriptions: List[Subscription]) -> UserEntitlement:
        """Grant the shared row for the longest window any of the subscriptions covers."""
        windows = [entitlement_window(s, s.plan) for s in subscriptions]
        valid_until = None if any(w is None for w in windows) else max(windows)
        primary = subscriptions[0]
        return self.grant_entitlement(
            primary.user_id,
            primary.plan.plan_type,
            primary.plan.target_id,
            source=_source_for(primary),
            valid_until=valid_until,
        )

    def sync_subscription_to_entitlement(
        self,
        subscription: Union[Subscription, str],
        previous_status: Optional[str] = None,
    ) -> Optional[UserEntitlement]:
        """
        Make the entitlement match the subscription's current status.

        trial/active/past_due grant, cancelled/halted/expired revoke,
        pending leaves the entitlement alone. The (user, type, target) row
        is shared by every plan on that target, so a grant spans the longest
        window of all live subscriptions on it, and a revoke is skipped while
        another one still covers it. A subscription leaving pending never
        granted anything and revokes nothing. Returns the granted row, or
        None when nothing was granted.
        """
        if isinstance(subscription, str):
            subscription_id = subscription
            subscription = self.session.query(Subscription).filter(
                Subscription.id == subscription_id
            ).first()
            if subscription is None:
                raise NotFoundError("Subscription", subscription_id)

        plan = subscription.plan
        if plan is None:
            raise NotFoundError("Plan", subscription.plan_id)

        others = self._covering_subscriptions(
            subscription.user_id, plan.plan_type, plan.target_id, exclude_subscription_id=subscription.id
        )

        if subscription.status in ACCESS_GRANTING_STATUSES:
            return self._grant_from([subscription] + others)

        if subscription.status not in ACCESS_REVOKING_STATUSES:
            return None

        if previous_status == SubscriptionStatus.PENDING.value:
            logger.info("Abandoned subscription ended without a grant to revoke", extra={
                "subscription_id": subscription.id,
                "user_id": subscription.user_id,
                "status": subscription.status,
            })
            return None

        if others:
            logger.info("Entitlement kept by another subscription", extra={
                "subscription_id": subscription.id,
                "covering_subscription_id": others[0].id,
                "user_id": subscription.user_id,
                "type": plan.plan_type,
                "target_id": plan.target_id,
            })
            self._grant_from(others)
            return None

        self.revoke_entitlement(subscription.user_id, plan.plan_type, plan.target_id)
        return None

    # ---------------------------------------------------------- admin reads

    def list_entitlements(self, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        """Every entitlement row, newest first, one page at a time."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", details={"page": page, "limit": limit})

        query = self.session.query(UserEntitlement)
        total = query.count()
        items = query.order_by(
            UserEntitlement.created_at.desc(), UserEntitlement.id
        ).offset((page - 1) * limit).limit(limit).all()
        return {"total": total, "page": page, "limit": limit, "items": items}

    def list_by_target(self, ent_type: str, target_id: Optional[str] = None) -> List[UserEntitlement]:
        """Active rows on one target, e.g. everyone holding a course."""
        ent_type = getattr(ent_type, "value", ent_type)
        if ent_type not in {t.value for t in PlanType}:
            raise ValidationError(f"Unknown entitlement type: {ent_type}")

        query = self.session.query(UserEntitlement).filter(
            UserEntitlement.type == ent_type,
            UserEntitlement.status == EntitlementStatus.ACTIVE.value,
        )
        if target_id is None:
            query = query.filter(UserEntitlement.target_id.is_(None))
        else:
            query = query.filter(UserEntitlement.target_id == target_id)
        return query.order_by(UserEntitlement.created_at.desc()).all()

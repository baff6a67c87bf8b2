"""
Read-side access checks for the content layer.

Order of evaluation:
1. Free resource (no active plan covers it) -> allowed, even anonymously
2. Anonymous caller on a paid resource -> denied
3. Admin role -> allowed
4. Effective WHOLE_APP entitlement -> allowed
5. COURSE: direct entitlement, or CATEGORY entitlement on any ancestor
   of the course's category
6. CATEGORY: CATEGORY entitlement on the category or any ancestor

Only UserEntitlement rows are consulted for access, never subscriptions.
"""

import logging
from typing import List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from coursegate.catalog import CategoryHierarchyResolver
from coursegate.entitlements.cache import EntitlementCache
from coursegate.entitlements.store import EntitlementStore
from coursegate.models.base import utcnow
from coursegate.models.plan import PlanType, SubscriptionPlan
from coursegate.models.user import User
from coursegate.platform.errors import ValidationError

logger = logging.getLogger(__name__)

RESOURCE_TYPES = frozenset({PlanType.WHOLE_APP.value, PlanType.CATEGORY.value, PlanType.COURSE.value})


class AccessChecker:
    """Answers "can this user access this resource"."""

    def __init__(self, session: Session, cache: Optional[EntitlementCache] = None):
        self.session = session
        self.cache = cache
        self.hierarchy = CategoryHierarchyResolver(session)

    def _ancestors_for(self, resource_type: str, resource_id: str) -> List[str]:
        if resource_type == PlanType.COURSE.value:
            return self.hierarchy.get_course_ancestors(resource_id)
        if resource_type == PlanType.CATEGORY.value:
            return self.hierarchy.get_ancestors(resource_id)
        return []

    def is_paid(self, resource_type: str, resource_id: Optional[str]) -> bool:
        """True if any active plan targets the resource or an ancestor, or any WHOLE_APP plan exists."""
        active_plans = self.session.query(SubscriptionPlan.id).filter(SubscriptionPlan.is_active.is_(True))

        if active_plans.filter(SubscriptionPlan.plan_type == PlanType.WHOLE_APP.value).first() is not None:
            return True

        if resource_type == PlanType.COURSE.value:
            direct = active_plans.filter(
                SubscriptionPlan.plan_type == PlanType.COURSE.value,
                SubscriptionPlan.target_id == resource_id,
            ).first()
            if direct is not None:
                return True

        ancestors = self._ancestors_for(resource_type, resource_id)
        if not ancestors:
            return False
        return active_plans.filter(
            SubscriptionPlan.plan_type == PlanType.CATEGORY.value,
            SubscriptionPlan.target_id.in_(ancestors),
        ).first() is not None

    def _effective_keys(self, user_id: str) -> Set[Tuple[str, Optional[str]]]:
        now = utcnow()
        if self.cache is not None:
            cached = self.cache.get(user_id)
            if cached is not None:
                return {
                    (ent_type, target_id)
                    for ent_type, target_id, valid_until in cached
                    if valid_until is None or valid_until > now
                }

        rows = EntitlementStore(self.session).get_active_entitlements(user_id, now=now)
        if self.cache is not None:
            self.cache.set(user_id, [(row.type, row.target_id, row.valid_until) for row in rows])
        return {row.key for row in rows}

    def has_access(self, user_id: Optional[str], resource_type: str, resource_id: Optional[str]) -> bool:
        resource_type = getattr(resource_type, "value", resource_type)
        if resource_type == "APP":
            resource_type = PlanType.WHOLE_APP.value
        if resource_type not in RESOURCE_TYPES:
            raise ValidationError(f"Unknown resource type: {resource_type}")

        if not self.is_paid(resource_type, resource_id):
            return True

        if not user_id:
            return False

        user = self.session.query(User).filter(User.id == user_id).first()
        if user is not None and user.is_admin:
            return True

        keys = self._effective_keys(user_id)

        if (PlanType.WHOLE_APP.value, None) in keys:
            return True

        if resource_type == PlanType.COURSE.value and (PlanType.COURSE.value, resource_id) in keys:
            return True

        for category_id in self._ancestors_for(resource_type, resource_id):
            if (PlanType.CATEGORY.value, category_id) in keys:
                return True

        logger.debug("Access denied", extra={
            "user_id": user_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
        })
        return False

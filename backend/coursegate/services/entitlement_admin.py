"""
Manual entitlement management for support staff.

Revocation here is a single row flip, committed on its own. It does not
touch subscriptions, so a later renewal of a live subscription grants the
row again.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from coursegate.entitlements.store import EntitlementStore
from coursegate.models.plan import PlanType
from coursegate.models.user import User
from coursegate.platform.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class EntitlementAdmin:

    def __init__(
        self,
        session: Session,
        entitlement_store: Optional[EntitlementStore] = None,
        correlation_id: Optional[str] = None,
    ):
        self.session = session
        self.store = entitlement_store or EntitlementStore(session)
        self.correlation_id = correlation_id

    def revoke(self, admin_id: str, user_id: str, ent_type: str, target_id: Optional[str] = None) -> int:
        """
        Revoke the user's (type, target) entitlement.

        Returns the number of rows changed; 0 when the user held nothing
        there or it was already revoked.

        Raises:
            ValidationError: unknown type, or a target on WHOLE_APP
            NotFoundError: the user does not exist
        """
        ent_type = getattr(ent_type, "value", ent_type)
        if ent_type not in {t.value for t in PlanType}:
            raise ValidationError(f"Unknown entitlement type: {ent_type}")
        if ent_type == PlanType.WHOLE_APP.value and target_id is not None:
            raise ValidationError("WHOLE_APP entitlements must not have a target")
        if self.session.query(User.id).filter(User.id == user_id).first() is None:
            raise NotFoundError("User", user_id)

        try:
            changed = self.store.revoke_entitlement(user_id, ent_type, target_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info("Entitlement revoked by admin", extra={
            "admin_id": admin_id,
            "user_id": user_id,
            "type": ent_type,
            "target_id": target_id,
            "revoked": changed,
            "correlation_id": self.correlation_id,
        })
        return changed

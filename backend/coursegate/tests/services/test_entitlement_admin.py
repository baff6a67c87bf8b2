"""Tests for manual entitlement revocation."""

import pytest

from coursegate.entitlements import EntitlementStore
from coursegate.models import UserEntitlement
from coursegate.platform.errors import NotFoundError, ValidationError
from coursegate.services.entitlement_admin import EntitlementAdmin


class TestRevoke:

    def test_revoke_is_committed(self, db_session, admin, user, catalog):
        EntitlementStore(db_session).grant_entitlement(user.id, "COURSE", "py-101")
        db_session.commit()

        changed = EntitlementAdmin(db_session).revoke(admin.id, user.id, "COURSE", "py-101")
        db_session.rollback()

        assert changed == 1
        assert db_session.query(UserEntitlement).one().status == "revoked"

    def test_nothing_to_revoke(self, db_session, admin, user):
        assert EntitlementAdmin(db_session).revoke(admin.id, user.id, "WHOLE_APP") == 0

    def test_unknown_user(self, db_session, admin):
        with pytest.raises(NotFoundError):
            EntitlementAdmin(db_session).revoke(admin.id, "ghost", "WHOLE_APP")

    @pytest.mark.parametrize("ent_type,target_id", [("LESSON", "x"), ("WHOLE_APP", "tech")])
    def test_bad_key_rejected(self, db_session, admin, user, ent_type, target_id):
        with pytest.raises(ValidationError):
            EntitlementAdmin(db_session).revoke(admin.id, user.id, ent_type, target_id)

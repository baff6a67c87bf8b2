"""Tests for the plan, subscription, payment and access endpoints."""

import pytest
from fastapi.testclient import TestClient

from coursegate.config import reset_settings
from coursegate.entitlements import EntitlementStore
from coursegate.models import SubscriptionPlan, UserEntitlement
from coursegate.tests.conftest import sign_payment


def as_user(user_id):
    return {"X-User-Id": user_id}


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert "X-Correlation-ID" in response.headers


class TestPlanRoutes:

    def test_public_listing_filters_by_target(self, client, catalog, make_plan):
        make_plan()
        make_plan("COURSE", "py-101", name="Python")

        response = client.get("/api/plans", params={"plan_type": "COURSE", "target_id": "py-101"})

        assert response.status_code == 200
        assert [p["name"] for p in response.json()] == ["Python"]

    def test_admin_routes_reject_anonymous(self, client):
        payload = {"name": "App", "plan_type": "WHOLE_APP", "subscription_type": "monthly", "price": 49900}
        response = client.post("/api/admin/plans", json=payload)
        assert response.status_code == 401

    def test_admin_routes_reject_non_admin(self, client, user):
        payload = {"name": "App", "plan_type": "WHOLE_APP", "subscription_type": "monthly", "price": 49900}
        response = client.post("/api/admin/plans", json=payload, headers=as_user(user.id))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"

    def test_admin_creates_plan(self, client, db_session, admin, gateway):
        payload = {"name": "App", "plan_type": "WHOLE_APP", "subscription_type": "monthly", "price": 49900}

        response = client.post("/api/admin/plans", json=payload, headers=as_user(admin.id))

        assert response.status_code == 201
        body = response.json()
        assert (body["plan_type"], body["price"], body["is_active"]) == ("WHOLE_APP", 49900, True)
        gateway.create_plan.assert_awaited_once()
        assert db_session.query(SubscriptionPlan).count() == 1

    def test_price_change_rejected(self, client, admin, make_plan):
        plan = make_plan()

        response = client.patch(f"/api/admin/plans/{plan.id}", json={"price": 1}, headers=as_user(admin.id))

        assert response.status_code == 400
        assert response.json()["error"]["details"]["fields"] == ["price"]

    def test_rename_allowed(self, client, admin, make_plan):
        plan = make_plan()

        response = client.patch(f"/api/admin/plans/{plan.id}", json={"name": "Everything"}, headers=as_user(admin.id))

        assert response.status_code == 200
        assert response.json()["name"] == "Everything"

    def test_empty_update_rejected(self, client, admin, make_plan):
        plan = make_plan()
        response = client.patch(f"/api/admin/plans/{plan.id}", json={}, headers=as_user(admin.id))
        assert response.status_code == 400


class TestSubscriptionRoutes:

    def test_requires_caller(self, client, make_plan):
        plan = make_plan()
        assert client.post("/api/subscriptions", json={"plan_id": plan.id}).status_code == 401

    def test_start_recurring_checkout(self, client, user, make_plan):
        plan = make_plan()

        response = client.post("/api/subscriptions", json={"plan_id": plan.id}, headers=as_user(user.id))

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["requires_payment"] is True
        assert body["gateway_subscription_id"].startswith("sub_gw_")

    def test_unknown_plan(self, client, user):
        response = client.post("/api/subscriptions", json={"plan_id": "nope"}, headers=as_user(user.id))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_already_entitled_conflict(self, client, db_session, user, make_plan, make_subscription):
        plan = make_plan()
        subscription = make_subscription(user, plan, status="active")
        EntitlementStore(db_session).sync_subscription_to_entitlement(subscription)

        response = client.post("/api/subscriptions", json={"plan_id": plan.id}, headers=as_user(user.id))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ALREADY_ENTITLED"

    def test_list_and_get_own_subscriptions(self, client, user, make_plan, make_subscription):
        subscription = make_subscription(user, make_plan(), status="active")

        listed = client.get("/api/subscriptions", headers=as_user(user.id)).json()
        fetched = client.get(f"/api/subscriptions/{subscription.id}", headers=as_user(user.id)).json()

        assert [s["id"] for s in listed] == [subscription.id]
        assert fetched["plan_type"] == "WHOLE_APP"

    def test_other_users_subscription_hidden(self, client, make_user, user, make_plan, make_subscription):
        subscription = make_subscription(user, make_plan(), status="active")
        stranger = make_user("stranger")

        response = client.get(f"/api/subscriptions/{subscription.id}", headers=as_user(stranger.id))

        assert response.status_code == 404

    def test_cancel_defaults_to_period_end(self, client, user, make_plan, make_subscription):
        subscription = make_subscription(user, make_plan(), status="active")

        response = client.post(f"/api/subscriptions/{subscription.id}/cancel", headers=as_user(user.id))

        assert response.status_code == 200
        body = response.json()
        assert (body["status"], body["cancel_at_period_end"]) == ("active", True)

    def test_cancel_immediately(self, client, user, make_plan, make_subscription):
        subscription = make_subscription(user, make_plan(), status="active")

        response = client.post(
            f"/api/subscriptions/{subscription.id}/cancel",
            json={"immediate": True},
            headers=as_user(user.id),
        )

        assert response.json()["status"] == "cancelled"


class TestPaymentRoutes:

    def test_verify_lifetime_purchase(self, client, db_session, user, catalog, make_plan):
        plan = make_plan("CATEGORY", "tech", subscription_type="lifetime", price=499900)
        checkout = client.post("/api/subscriptions", json={"plan_id": plan.id}, headers=as_user(user.id)).json()
        assert checkout["order_id"] == "order_1"

        response = client.post(
            "/api/payments/verify",
            json={
                "razorpay_order_id": "order_1",
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": sign_payment("order_1", "pay_1"),
            },
            headers=as_user(user.id),
        )

        assert response.status_code == 200
        assert response.json()["subscription_status"] == "active"
        entitlement = db_session.query(UserEntitlement).one()
        assert entitlement.valid_until is None

    def test_forged_signature(self, client, user, catalog, make_plan):
        plan = make_plan("CATEGORY", "tech", subscription_type="lifetime", price=499900)
        client.post("/api/subscriptions", json={"plan_id": plan.id}, headers=as_user(user.id))

        response = client.post(
            "/api/payments/verify",
            json={"razorpay_order_id": "order_1", "razorpay_payment_id": "pay_1", "razorpay_signature": "x"},
            headers=as_user(user.id),
        )

        assert response.status_code == 400


class TestAccessRoutes:

    def test_free_course_open_to_anonymous(self, client, catalog):
        body = client.get("/api/access/course/guitar-101").json()
        assert (body["resource_type"], body["has_access"], body["is_paid"]) == ("COURSE", True, False)

    def test_paid_category_needs_entitlement(self, client, user, catalog, make_plan):
        make_plan("CATEGORY", "tech")

        anonymous = client.get("/api/access/course/py-101").json()
        member = client.get("/api/access/course/py-101", headers=as_user(user.id)).json()
        music = client.get("/api/access/course/guitar-101", headers=as_user(user.id)).json()

        assert (anonymous["has_access"], anonymous["is_paid"]) == (False, True)
        assert member["has_access"] is False
        assert music["has_access"] is True

    def test_whole_app_subscriber(self, client, db_session, user, make_plan, make_subscription):
        subscription = make_subscription(user, make_plan(), status="active")
        EntitlementStore(db_session).sync_subscription_to_entitlement(subscription)

        body = client.get("/api/access/app", headers=as_user(user.id)).json()

        assert (body["resource_type"], body["has_access"], body["is_paid"]) == ("APP", True, True)

    def test_admin_bypasses_paywall(self, client, admin, make_plan):
        make_plan()
        assert client.get("/api/access/app", headers=as_user(admin.id)).json()["has_access"] is True

    def test_unknown_resource_type(self, client):
        assert client.get("/api/access/lesson/1").status_code == 400


class TestEntitlementRoutes:

    def test_me_lists_effective_grants(self, client, db_session, user, make_plan, make_subscription):
        subscription = make_subscription(user, make_plan(), status="active")
        EntitlementStore(db_session).sync_subscription_to_entitlement(subscription)
        db_session.commit()

        response = client.get("/api/entitlements/me", headers=as_user(user.id))

        assert response.status_code == 200
        assert [(e["type"], e["status"]) for e in response.json()] == [("WHOLE_APP", "active")]

    def test_me_requires_caller(self, client):
        assert client.get("/api/entitlements/me").status_code == 401

    def test_admin_listing_paginates(self, client, db_session, admin, make_user):
        store = EntitlementStore(db_session)
        for n in range(3):
            store.grant_entitlement(make_user(f"buyer-{n}").id, "WHOLE_APP")
        db_session.commit()

        body = client.get(
            "/api/admin/entitlements", params={"page": 2, "limit": 2}, headers=as_user(admin.id)
        ).json()

        assert (body["total"], body["page"], body["limit"], len(body["items"])) == (3, 2, 2, 1)

    def test_admin_listing_rejects_non_admin(self, client, user):
        response = client.get("/api/admin/entitlements", headers=as_user(user.id))
        assert response.status_code == 403

    def test_by_target(self, client, db_session, admin, user, catalog):
        EntitlementStore(db_session).grant_entitlement(user.id, "CATEGORY", "tech")
        db_session.commit()

        response = client.get(
            "/api/admin/entitlements/by-target",
            params={"type": "CATEGORY", "target_id": "tech"},
            headers=as_user(admin.id),
        )

        assert response.status_code == 200
        assert [e["user_id"] for e in response.json()] == [user.id]

    def test_admin_revoke_closes_access(self, client, db_session, admin, user, make_plan):
        make_plan()
        EntitlementStore(db_session).grant_entitlement(user.id, "WHOLE_APP")
        db_session.commit()

        response = client.post(
            "/api/admin/entitlements/revoke",
            json={"user_id": user.id, "type": "WHOLE_APP"},
            headers=as_user(admin.id),
        )
        access = client.get("/api/access/app", headers=as_user(user.id)).json()

        assert response.status_code == 200
        assert response.json()["revoked"] == 1
        assert access["has_access"] is False

    def test_admin_revoke_unknown_user(self, client, admin):
        response = client.post(
            "/api/admin/entitlements/revoke",
            json={"user_id": "ghost", "type": "WHOLE_APP"},
            headers=as_user(admin.id),
        )
        assert response.status_code == 404


class TestCancelPendingRoute:

    def test_pending_checkout_dropped(self, client, db_session, user, make_plan):
        checkout = client.post(
            "/api/subscriptions", json={"plan_id": make_plan().id}, headers=as_user(user.id)
        ).json()

        response = client.delete("/api/subscriptions/pending", headers=as_user(user.id))

        assert response.status_code == 200
        assert response.json() == {"cancelled": 1, "subscription_ids": [checkout["subscription_id"]]}
        listed = client.get("/api/subscriptions", headers=as_user(user.id)).json()
        assert [s["status"] for s in listed] == ["cancelled"]

    def test_nothing_pending(self, client, user):
        response = client.delete("/api/subscriptions/pending", headers=as_user(user.id))
        assert response.json() == {"cancelled": 0, "subscription_ids": []}


class TestCallerIdentity:

    @pytest.fixture
    def untrusted(self, monkeypatch):
        monkeypatch.delenv("TRUST_USER_ID_HEADER", raising=False)
        reset_settings()

    def test_header_ignored_without_trusted_proxy(self, client, admin, make_plan, untrusted):
        make_plan()
        payload = {"name": "App", "plan_type": "WHOLE_APP", "subscription_type": "monthly", "price": 49900}

        create = client.post("/api/admin/plans", json=payload, headers=as_user(admin.id))
        access = client.get("/api/access/app", headers=as_user(admin.id)).json()

        assert create.status_code == 401
        assert access["has_access"] is False

    def test_request_state_identity_always_honoured(self, app, admin, untrusted):
        @app.middleware("http")
        async def authenticate(request, call_next):
            request.state.user_id = admin.id
            return await call_next(request)

        payload = {"name": "App", "plan_type": "WHOLE_APP", "subscription_type": "monthly", "price": 49900}
        response = TestClient(app).post("/api/admin/plans", json=payload)

        assert response.status_code == 201

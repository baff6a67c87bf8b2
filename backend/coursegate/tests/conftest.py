"""
Shared fixtures for the billing engine tests.

Every test gets a fresh in-memory SQLite database with the full schema, a
fake Razorpay client (AsyncMock methods returning gateway dataclasses) and
known gateway secrets in the environment.
"""

import hashlib
import hmac
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coursegate.config import reset_settings
from coursegate.db_base import Base
from coursegate.integrations.razorpay import GatewayOrder, GatewayPlan, GatewaySubscription
from coursegate.models import (
    Category,
    Course,
    Subscription,
    SubscriptionPlan,
    User,
)
from coursegate.models.base import utcnow

WEBHOOK_SECRET = "whsec_test_secret"
KEY_SECRET = "key_secret_test"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def sign_payment(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


# ============================================================================
# ENVIRONMENT
# ============================================================================

@pytest.fixture(autouse=True)
def billing_env(monkeypatch):
    monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_test_key")
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", KEY_SECRET)
    monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("GRACE_PERIOD_DAYS", "7")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("PLAY_PUSH_TOKEN", raising=False)
    monkeypatch.delenv("TRUST_USER_ID_HEADER", raising=False)
    reset_settings()
    yield
    reset_settings()


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create in-memory SQLite database for testing."""
    Session = sessionmaker(bind=engine, autoflush=False)
    session = Session()
    yield session
    session.close()


# ============================================================================
# FAKE GATEWAY
# ============================================================================

@pytest.fixture
def gateway():
    """Razorpay stand-in. Every call succeeds unless a test overrides it."""
    fake = MagicMock()
    fake.create_plan = AsyncMock(side_effect=lambda **kw: GatewayPlan(plan_id=f"plan_{kw['name']}"))
    fake.create_order = AsyncMock(return_value=GatewayOrder(order_id="order_1", amount=0, currency="INR"))

    counter = {"n": 0}

    async def create_subscription(**kwargs):
        counter["n"] += 1
        return GatewaySubscription(
            subscription_id=f"sub_gw_{counter['n']}",
            status="created",
            short_url=f"https://rzp.io/i/{counter['n']}",
            plan_id=kwargs.get("plan_id"),
        )

    fake.create_subscription = AsyncMock(side_effect=create_subscription)
    fake.cancel_subscription = AsyncMock(
        side_effect=lambda subscription_id, cancel_at_cycle_end=False: GatewaySubscription(
            subscription_id=subscription_id,
            status="active" if cancel_at_cycle_end else "cancelled",
        )
    )
    fake.get_subscription = AsyncMock(
        side_effect=lambda subscription_id: GatewaySubscription(subscription_id=subscription_id, status="active")
    )
    fake.close = AsyncMock()
    return fake


# ============================================================================
# FACTORIES
# ============================================================================

@pytest.fixture
def make_user(db_session):
    def _make(user_id=None, role="user", has_used_trial=False):
        user = User(role=role, has_used_trial=has_used_trial)
        if user_id:
            user.id = user_id
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture
def user(make_user):
    return make_user("user-1")


@pytest.fixture
def admin(make_user):
    return make_user("admin-1", role="admin")


@pytest.fixture
def catalog(db_session):
    """
    Category tree used across tests:

        tech
        └── programming
            └── python       (course: py-101)
        music                (course: guitar-101)
    """
    tech = Category(id="tech", name="Technology")
    programming = Category(id="programming", name="Programming", parent_id="tech")
    python = Category(id="python", name="Python", parent_id="programming")
    music = Category(id="music", name="Music")
    db_session.add_all([tech, programming, python, music])
    db_session.flush()
    db_session.add_all([
        Course(id="py-101", title="Python Basics", category_id="python"),
        Course(id="guitar-101", title="Guitar Basics", category_id="music"),
    ])
    db_session.commit()
    return {"tech": tech, "programming": programming, "python": python, "music": music}


@pytest.fixture
def make_plan(db_session):
    counter = {"n": 0}

    def _make(
        plan_type="WHOLE_APP",
        target_id=None,
        subscription_type="monthly",
        price=49900,
        trial_days=0,
        trial_fee=0,
        is_active=True,
        name=None,
    ):
        counter["n"] += 1
        plan = SubscriptionPlan(
            name=name or f"{plan_type.title()} {subscription_type} {counter['n']}",
            plan_type=plan_type,
            target_id=target_id,
            subscription_type=subscription_type,
            price=price,
            currency="INR",
            trial_days=trial_days,
            trial_fee=trial_fee,
            gateway_plan_id=None if subscription_type == "lifetime" else f"plan_gw_{counter['n']}",
            is_active=is_active,
        )
        db_session.add(plan)
        db_session.commit()
        return plan
    return _make


@pytest.fixture
def make_subscription(db_session):
    """Insert a subscription row directly in a given state (no transitions)."""
    counter = {"n": 0}

    def _make(user, plan, status="active", provider="gateway_recurring", period_days=30, **fields):
        counter["n"] += 1
        now = utcnow()
        values = dict(
            user_id=user.id,
            plan_id=plan.id,
            provider=provider,
            status=status,
            gateway_subscription_id=f"sub_existing_{counter['n']}",
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days),
        )
        values.update(fields)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make

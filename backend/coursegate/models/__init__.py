"""
Database models for plans, subscriptions, payments and entitlements.
"""

from coursegate.models.base import TimestampMixin, UTCDateTime
from coursegate.models.catalog import Category, Course
from coursegate.models.user import User, UserRole
from coursegate.models.plan import SubscriptionPlan, PlanType, BillingPeriod
from coursegate.models.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionProvider,
    SubscriptionTransition,
    ACCESS_GRANTING_STATUSES,
    ACCESS_REVOKING_STATUSES,
    NON_TERMINAL_STATUSES,
)
from coursegate.models.entitlement import UserEntitlement, EntitlementStatus, EntitlementSource
from coursegate.models.payment import Payment, PaymentType, PaymentStatus
from coursegate.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    # Catalog
    "Category",
    "Course",
    "User",
    "UserRole",
    # Billing
    "SubscriptionPlan",
    "PlanType",
    "BillingPeriod",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionProvider",
    "SubscriptionTransition",
    "ACCESS_GRANTING_STATUSES",
    "ACCESS_REVOKING_STATUSES",
    "NON_TERMINAL_STATUSES",
    "Payment",
    "PaymentType",
    "PaymentStatus",
    "ProcessedWebhookEvent",
    # Access
    "UserEntitlement",
    "EntitlementStatus",
    "EntitlementSource",
]

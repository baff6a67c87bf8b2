"""Entitlement store, access checks and the entitlement cache."""

from coursegate.entitlements.store import EntitlementStore, entitlement_window
from coursegate.entitlements.access import AccessChecker
from coursegate.entitlements.cache import EntitlementCache

__all__ = [
    "EntitlementStore",
    "entitlement_window",
    "AccessChecker",
    "EntitlementCache",
]

"""Configuration module for the billing engine."""

from coursegate.config.settings import (
    BillingSettings,
    get_settings,
    normalize_database_url,
    reset_settings,
)

__all__ = [
    "BillingSettings",
    "get_settings",
    "normalize_database_url",
    "reset_settings",
]

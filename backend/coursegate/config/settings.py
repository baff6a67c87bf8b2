"""
Billing engine settings, read once from the environment.

A local .env file is honoured in development (python-dotenv). Secrets are
never logged; get_settings() is cached, call reset_settings() in tests after
patching os.environ.
"""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s, using default", name, extra={"default": default})
        return default


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def normalize_database_url(url: Optional[str]) -> Optional[str]:
    """Convert Heroku/Render style postgres:// URLs for SQLAlchemy."""
    if not url:
        return url
    url = url.strip()
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass(frozen=True)
class BillingSettings:
    database_url: Optional[str]
    razorpay_key_id: Optional[str]
    razorpay_key_secret: Optional[str]
    razorpay_webhook_secret: Optional[str]
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    gateway_max_retries: int = 3
    gateway_timeout_seconds: int = 30
    grace_period_days: int = 7
    subscription_total_count: int = 120
    abandoned_order_hours: int = 24
    sweep_interval_seconds: int = 3600
    redis_url: Optional[str] = None
    entitlement_cache_ttl_seconds: int = 300
    default_currency: str = "INR"
    play_push_token: Optional[str] = None
    trust_user_id_header: bool = False


@lru_cache(maxsize=1)
def get_settings() -> BillingSettings:
    return BillingSettings(
        database_url=normalize_database_url(os.getenv("DATABASE_URL")),
        razorpay_key_id=os.getenv("RAZORPAY_KEY_ID"),
        razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET"),
        razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET"),
        razorpay_base_url=os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1"),
        gateway_max_retries=_int_env("GATEWAY_MAX_RETRIES", 3),
        gateway_timeout_seconds=_int_env("GATEWAY_TIMEOUT_SECONDS", 30),
        grace_period_days=_int_env("GRACE_PERIOD_DAYS", 7),
        subscription_total_count=_int_env("SUBSCRIPTION_TOTAL_COUNT", 120),
        abandoned_order_hours=_int_env("ABANDONED_ORDER_HOURS", 24),
        sweep_interval_seconds=_int_env("SWEEP_INTERVAL_SECONDS", 3600),
        redis_url=os.getenv("REDIS_URL") or None,
        entitlement_cache_ttl_seconds=_int_env("ENTITLEMENT_CACHE_TTL_SECONDS", 300),
        default_currency=os.getenv("DEFAULT_CURRENCY", "INR"),
        play_push_token=os.getenv("PLAY_PUSH_TOKEN") or None,
        trust_user_id_header=_bool_env("TRUST_USER_ID_HEADER"),
    )


def reset_settings() -> None:
    get_settings.cache_clear()

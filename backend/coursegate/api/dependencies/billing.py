"""Gateway client and entitlement cache wiring for request handlers."""

import logging
from functools import lru_cache
from typing import AsyncGenerator, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from coursegate.api.dependencies.request_db import get_request_db_session
from coursegate.config import get_settings
from coursegate.entitlements import EntitlementCache, EntitlementStore
from coursegate.integrations.razorpay import RazorpayClient

logger = logging.getLogger(__name__)


async def get_gateway() -> AsyncGenerator[Optional[RazorpayClient], None]:
    """One gateway client per request; None when credentials are missing."""
    settings = get_settings()
    if not settings.razorpay_key_id or not settings.razorpay_key_secret:
        yield None
        return

    client = RazorpayClient()
    try:
        yield client
    finally:
        await client.close()


@lru_cache(maxsize=1)
def _shared_cache() -> Optional[EntitlementCache]:
    cache = EntitlementCache.from_settings()
    if cache is None:
        logger.info("REDIS_URL not set, entitlement cache disabled")
    return cache


def get_entitlement_cache() -> Optional[EntitlementCache]:
    return _shared_cache()


def get_entitlement_store(
    db: Session = Depends(get_request_db_session),
    cache: Optional[EntitlementCache] = Depends(get_entitlement_cache),
) -> EntitlementStore:
    return EntitlementStore(db, cache=cache)

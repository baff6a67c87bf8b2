"""
Redis cache of each user's effective entitlement keys.

Non-authoritative: a miss, a Redis outage or a decode failure all fall
through to the database. Entries carry valid_until so a cached grant stops
counting the moment it expires, even inside the TTL.
"""

import json
import logging
from datetime import datetime
from typing import List, Optional, Tuple

import redis

from coursegate.config import get_settings

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "entitlements:user:"

# (type, target_id, valid_until)
CachedKey = Tuple[str, Optional[str], Optional[datetime]]


def _key(user_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{user_id}"


def _serialize(entries: List[CachedKey]) -> str:
    return json.dumps([
        [ent_type, target_id, valid_until.isoformat() if valid_until else None]
        for ent_type, target_id, valid_until in entries
    ])


def _deserialize(data: str) -> List[CachedKey]:
    return [
        (ent_type, target_id, datetime.fromisoformat(valid_until) if valid_until else None)
        for ent_type, target_id, valid_until in json.loads(data)
    ]


class EntitlementCache:
    """Thin wrapper around a Redis client; every failure is a cache miss."""

    def __init__(self, client: "redis.Redis", ttl_seconds: Optional[int] = None):
        self.client = client
        self.ttl_seconds = ttl_seconds or get_settings().entitlement_cache_ttl_seconds

    @classmethod
    def from_settings(cls) -> Optional["EntitlementCache"]:
        """Build a cache from REDIS_URL, or None when caching is not configured."""
        settings = get_settings()
        if not settings.redis_url:
            return None
        client = redis.from_url(settings.redis_url, decode_responses=True)
        return cls(client, settings.entitlement_cache_ttl_seconds)

    def get(self, user_id: str) -> Optional[List[CachedKey]]:
        try:
            raw = self.client.get(_key(user_id))
            if not raw:
                return None
            return _deserialize(raw)
        except (redis.RedisError, ValueError, TypeError) as e:
            logger.warning("Entitlement cache get failed", extra={"user_id": user_id, "error": str(e)})
            return None

    def set(self, user_id: str, entries: List[CachedKey]) -> None:
        try:
            self.client.setex(_key(user_id), self.ttl_seconds, _serialize(entries))
        except redis.RedisError as e:
            logger.warning("Entitlement cache set failed", extra={"user_id": user_id, "error": str(e)})

    def invalidate(self, user_id: str) -> None:
        try:
            self.client.delete(_key(user_id))
        except redis.RedisError as e:
            logger.warning("Entitlement cache delete failed", extra={"user_id": user_id, "error": str(e)})

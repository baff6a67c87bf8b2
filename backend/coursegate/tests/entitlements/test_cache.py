"""Tests for the Redis-backed entitlement cache."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import redis

from coursegate.config import reset_settings
from coursegate.entitlements import EntitlementCache, EntitlementStore


class TestEntitlementCache:

    def test_round_trips_entries(self):
        client = MagicMock()
        cache = EntitlementCache(client, ttl_seconds=60)
        until = datetime(2030, 1, 1, tzinfo=timezone.utc)

        cache.set("u1", [("COURSE", "c1", until), ("WHOLE_APP", None, None)])
        key, ttl, payload = client.setex.call_args[0]
        assert key == "entitlements:user:u1"
        assert ttl == 60

        client.get.return_value = payload
        assert cache.get("u1") == [("COURSE", "c1", until), ("WHOLE_APP", None, None)]

    def test_redis_errors_are_misses(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        client.setex.side_effect = redis.ConnectionError("down")
        client.delete.side_effect = redis.ConnectionError("down")
        cache = EntitlementCache(client, ttl_seconds=60)

        assert cache.get("u1") is None
        cache.set("u1", [])
        cache.invalidate("u1")

    def test_corrupt_payload_is_a_miss(self):
        client = MagicMock()
        client.get.return_value = "not json"
        assert EntitlementCache(client, ttl_seconds=60).get("u1") is None

    def test_from_settings_without_redis_url(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        reset_settings()
        assert EntitlementCache.from_settings() is None


class TestStoreInvalidation:

    def test_grant_invalidates_now_and_after_commit(self, db_session, user):
        cache = MagicMock()
        store = EntitlementStore(db_session, cache=cache)

        store.grant_entitlement(user.id, "WHOLE_APP")
        assert cache.invalidate.call_count == 1

        db_session.commit()
        assert cache.invalidate.call_count == 2
        cache.invalidate.assert_called_with(user.id)

    def test_rollback_skips_post_commit_invalidation(self, db_session, user):
        cache = MagicMock()
        store = EntitlementStore(db_session, cache=cache)

        store.grant_entitlement(user.id, "WHOLE_APP")
        db_session.rollback()
        db_session.commit()

        assert cache.invalidate.call_count == 1

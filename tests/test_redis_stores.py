"""Tests for the Redis-backed counter and lockout stores.

Run against the Redis at REDIS_URL (default redis://localhost:6379/1);
skipped when it is not reachable.
"""

import os
import uuid

import pytest
from redis import Redis
from redis.exceptions import RedisError

from authguard.clock import utcnow
from authguard.service.normalize import account_key
from authguard.storage.errors import StoreUnavailable
from authguard.storage.redis_cache import RedisCounterStore, RedisLockoutStore

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/1")


@pytest.fixture
def redis_client():
    client = Redis.from_url(
        REDIS_URL, decode_responses=True, socket_timeout=1, socket_connect_timeout=1
    )
    try:
        client.ping()
    except RedisError:
        pytest.skip(f"Redis not reachable at {REDIS_URL}")
    yield client
    client.close()


@pytest.fixture
def key():
    return f"login:email:{uuid.uuid4().hex}@example.com"


class TestRedisCounterStore:
    """Same contract as the in-process store, backed by Redis TTLs."""

    def test_hit_count_clear(self, redis_client, key):
        store = RedisCounterStore(REDIS_URL, client=redis_client)

        assert store.hit(key, 60) == 1
        assert store.hit(key, 60) == 2
        assert store.count(key) == 2

        store.clear(key)
        assert store.count(key) == 0
        assert store.available_in(key) == 0

    def test_ttl_follows_decay(self, redis_client, key):
        store = RedisCounterStore(REDIS_URL, client=redis_client)
        store.hit(key, 900)

        assert 895 <= store.available_in(key) <= 900
        store.clear(key)

    def test_shorter_decay_never_trims_ttl(self, redis_client, key):
        store = RedisCounterStore(REDIS_URL, client=redis_client)
        store.hit(key, 1800)
        store.hit(key, 60)

        assert store.available_in(key) > 60
        store.clear(key)

    def test_longer_decay_extends_ttl(self, redis_client, key):
        store = RedisCounterStore(REDIS_URL, client=redis_client)
        store.hit(key, 60)
        store.hit(key, 1800)

        assert store.available_in(key) > 60
        store.clear(key)

    def test_keys_are_hashed(self, redis_client, key):
        store = RedisCounterStore(REDIS_URL, client=redis_client)
        store.hit(key, 60)

        assert redis_client.exists(key) == 0
        assert redis_client.exists(RedisCounterStore._normalize_key(key)) == 1
        store.clear(key)


class TestRedisLockoutStore:
    """Lua-driven lockout ledger."""

    TIERS = [(3, 600), (5, 1200)]

    def test_lock_starts_then_extends(self, redis_client):
        frozen = utcnow()
        store = RedisLockoutStore(REDIS_URL, client=redis_client, clock=lambda: frozen)
        account = account_key(f"{uuid.uuid4().hex}@example.com")

        updates = [
            store.register_failure(
                account, origin="203.0.113.7", tiers=self.TIERS, window_seconds=3600
            )
            for _ in range(5)
        ]

        assert [u.lock_started for u in updates] == [False, False, True, False, False]
        assert [u.lock_extended for u in updates] == [False, False, False, False, True]
        record = store.get_lockout(account)
        assert record.failed_count == 5
        assert record.lockout_count == 1
        assert record.last_origin == "203.0.113.7"
        assert record.locked_until is not None
        assert 1100 <= redis_client.ttl(RedisLockoutStore._record_key(account)) <= 3600

        assert store.clear_lockout(account) is True
        assert store.get_lockout(account) is None
        assert store.clear_lockout(account) is False


class TestUnreachableRedis:
    """Connection failures surface as StoreUnavailable."""

    def test_counter_operations_raise_store_unavailable(self):
        store = RedisCounterStore("redis://127.0.0.1:1/0", socket_timeout=0.2)

        with pytest.raises(StoreUnavailable):
            store.count("k")
        with pytest.raises(StoreUnavailable):
            store.hit("k", 60)

    def test_lockout_operations_raise_store_unavailable(self):
        store = RedisLockoutStore("redis://127.0.0.1:1/0", socket_timeout=0.2)

        with pytest.raises(StoreUnavailable):
            store.get_lockout("abc")

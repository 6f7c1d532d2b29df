"""
Tests for the queue store backends.

Covers:
  - InMemoryQueueStore (lists, key-value, TTLs, sweep)
  - RedisQueueStore (mocked redis client, connectivity errors)
  - SupervisedQueueStore (failover, replay, restore with migration)
  - Store factory
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from config.settings import QueueConfig
from database.keys import queue_key
from database.store_base import StoreUnavailableError
from database.store_memory import InMemoryQueueStore
from database.store_redis import RedisQueueStore
from database.store_supervisor import SupervisedQueueStore
from models.schemas import QueueTier
from conftest import FlakyStore


# ──────────────────────────────────────────────────────────────
#  InMemoryQueueStore
# ──────────────────────────────────────────────────────────────

class TestInMemoryQueueStore:
    @pytest.mark.asyncio
    async def test_push_pop_fifo(self, store):
        assert await store.push("t1", QueueTier.REGULAR, "a") == 1
        assert await store.push("t1", QueueTier.REGULAR, "b") == 2
        assert await store.pop("t1", QueueTier.REGULAR) == "a"
        assert await store.pop("t1", QueueTier.REGULAR) == "b"
        assert await store.pop("t1", QueueTier.REGULAR) is None

    @pytest.mark.asyncio
    async def test_tiers_and_tenants_are_separate(self, store):
        await store.push("t1", QueueTier.PRIORITY, "p")
        await store.push("t1", QueueTier.REGULAR, "r")
        await store.push("t2", QueueTier.REGULAR, "other")
        assert await store.length("t1", QueueTier.PRIORITY) == 1
        assert await store.length("t1", QueueTier.REGULAR) == 1
        assert await store.pop("t2", QueueTier.PRIORITY) is None
        assert await store.list("t2", QueueTier.REGULAR) == ["other"]

    @pytest.mark.asyncio
    async def test_list_is_non_destructive_and_limited(self, store):
        for item in "abcde":
            await store.push("t1", QueueTier.REGULAR, item)
        assert await store.list("t1", QueueTier.REGULAR, limit=3) == ["a", "b", "c"]
        assert await store.length("t1", QueueTier.REGULAR) == 5

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, store):
        for item in "abc":
            await store.push("t1", QueueTier.REGULAR, item)
        assert await store.remove("t1", QueueTier.REGULAR, "b") is True
        assert await store.remove("t1", QueueTier.REGULAR, "zz") is False
        assert await store.clear("t1", QueueTier.REGULAR) == 2
        assert await store.clear("t1", QueueTier.REGULAR) == 0

    @pytest.mark.asyncio
    async def test_set_only_if_absent(self, store):
        assert await store.set("k", "1", only_if_absent=True) is True
        assert await store.set("k", "2", only_if_absent=True) is False
        assert await store.get("k") == "1"

    @pytest.mark.asyncio
    async def test_ttl_expiry_follows_clock(self, store, clock):
        await store.set("k", "v", ttl_seconds=10)
        clock.advance(9)
        assert await store.get("k") == "v"
        clock.advance(1)
        assert await store.get("k") is None
        assert await store.set("k", "new", only_if_absent=True) is True

    @pytest.mark.asyncio
    async def test_increment_and_expire(self, store, clock):
        assert await store.increment_and_expire("c", 60) == 1
        assert await store.increment_and_expire("c", 60) == 2
        clock.advance(61)
        assert await store.increment_and_expire("c", 60) == 1

    @pytest.mark.asyncio
    async def test_delete_and_delete_prefix(self, store):
        await store.set("dup:t1:a", "1")
        await store.set("dup:t1:b", "1")
        await store.set("dup:t2:a", "1")
        assert await store.delete("dup:t1:a", "missing") == 1
        assert await store.delete_prefix("dup:t1:") == 1
        assert await store.get("dup:t2:a") == "1"

    @pytest.mark.asyncio
    async def test_sweep_expired(self, store, clock):
        await store.set("short", "v", ttl_seconds=5)
        await store.set("long", "v", ttl_seconds=500)
        await store.set("forever", "v")
        clock.advance(10)
        assert store.sweep_expired() == 1
        assert store.stats()["keys"] == 2

    @pytest.mark.asyncio
    async def test_queued_items_snapshot(self, store):
        await store.push("t1", QueueTier.PRIORITY, "p")
        await store.push("t2", QueueTier.REGULAR, "r")
        snapshot = store.queued_items()
        assert snapshot == {("t1", QueueTier.PRIORITY): ["p"], ("t2", QueueTier.REGULAR): ["r"]}


# ──────────────────────────────────────────────────────────────
#  RedisQueueStore (mocked client)
# ──────────────────────────────────────────────────────────────

class TestRedisQueueStore:
    @pytest.fixture
    def client(self):
        return AsyncMock()

    @pytest.fixture
    def redis_store(self, client):
        return RedisQueueStore(client=client)

    @pytest.mark.asyncio
    async def test_push_uses_rpush_on_tier_key(self, redis_store, client):
        client.rpush.return_value = 3
        assert await redis_store.push("t1", QueueTier.PRIORITY, "item") == 3
        client.rpush.assert_awaited_once_with(queue_key("t1", QueueTier.PRIORITY), "item")
        assert queue_key("t1", QueueTier.PRIORITY) == "queue:priority:t1"

    @pytest.mark.asyncio
    async def test_pop_uses_lpop(self, redis_store, client):
        client.lpop.return_value = None
        assert await redis_store.pop("t1", QueueTier.REGULAR) is None
        client.lpop.assert_awaited_once_with("queue:regular:t1")

    @pytest.mark.asyncio
    async def test_list_translates_limit_to_range(self, redis_store, client):
        client.lrange.return_value = ["a", "b"]
        assert await redis_store.list("t1", QueueTier.REGULAR, limit=2) == ["a", "b"]
        client.lrange.assert_awaited_once_with("queue:regular:t1", 0, 1)

    @pytest.mark.asyncio
    async def test_set_with_ttl_and_nx(self, redis_store, client):
        client.set.return_value = None
        assert await redis_store.set("k", "v", ttl_seconds=1.5, only_if_absent=True) is False
        client.set.assert_awaited_once_with("k", "v", px=1500, nx=True)

    @pytest.mark.asyncio
    async def test_connection_error_becomes_store_unavailable(self, redis_store, client):
        client.rpush.side_effect = RedisConnectionError("connection refused")
        with pytest.raises(StoreUnavailableError) as exc:
            await redis_store.push("t1", QueueTier.REGULAR, "item")
        assert exc.value.backend == "redis"

    @pytest.mark.asyncio
    async def test_increment_uses_transaction(self, redis_store, client):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[4, True])
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=pipe)
        context.__aexit__ = AsyncMock(return_value=False)
        client.pipeline = MagicMock(return_value=context)

        assert await redis_store.increment_and_expire("c", 10) == 4
        pipe.incr.assert_called_once_with("c")
        pipe.pexpire.assert_called_once_with("c", 10000)

    @pytest.mark.asyncio
    async def test_unconnected_store_is_unavailable(self):
        with pytest.raises(StoreUnavailableError):
            await RedisQueueStore().ping()


# ──────────────────────────────────────────────────────────────
#  SupervisedQueueStore
# ──────────────────────────────────────────────────────────────

class TestSupervisedQueueStore:
    @pytest.fixture
    def primary(self, clock):
        return FlakyStore(clock=clock)

    @pytest.fixture
    def supervised(self, primary, clock):
        return SupervisedQueueStore(primary, InMemoryQueueStore(clock=clock))

    @pytest.mark.asyncio
    async def test_uses_primary_while_healthy(self, supervised, primary):
        await supervised.push("t1", QueueTier.REGULAR, "a")
        assert await primary.length("t1", QueueTier.REGULAR) == 1
        assert supervised.degraded is False
        assert supervised.name == "flaky"

    @pytest.mark.asyncio
    async def test_failover_replays_call_on_fallback(self, supervised, primary):
        primary.down = True
        assert await supervised.push("t1", QueueTier.REGULAR, "a") == 1
        assert supervised.degraded is True
        assert supervised.failovers == 1
        assert supervised.name == "memory"
        assert await supervised.pop("t1", QueueTier.REGULAR) == "a"

    @pytest.mark.asyncio
    async def test_failover_disabled_propagates(self, primary, clock):
        supervised = SupervisedQueueStore(primary, InMemoryQueueStore(clock=clock), fallback_enabled=False)
        primary.down = True
        with pytest.raises(StoreUnavailableError):
            await supervised.get("k")

    @pytest.mark.asyncio
    async def test_restore_waits_for_primary(self, supervised, primary):
        primary.down = True
        await supervised.push("t1", QueueTier.REGULAR, "a")
        assert await supervised.restore_primary() is False
        assert supervised.degraded is True

    @pytest.mark.asyncio
    async def test_restore_migrates_queued_lists(self, supervised, primary):
        await supervised.push("t1", QueueTier.REGULAR, "old")
        primary.down = True
        await supervised.push("t1", QueueTier.REGULAR, "during-outage")
        await supervised.push("t2", QueueTier.PRIORITY, "urgent")

        primary.down = False
        assert await supervised.restore_primary() is True
        assert supervised.degraded is False
        assert await primary.list("t1", QueueTier.REGULAR) == ["old", "during-outage"]
        assert await primary.list("t2", QueueTier.PRIORITY) == ["urgent"]
        assert supervised.fallback.queued_items() == {}

    @pytest.mark.asyncio
    async def test_connect_failure_starts_on_fallback(self, clock):
        primary = RedisQueueStore(client=AsyncMock(**{"ping.side_effect": RedisConnectionError("down")}))
        supervised = SupervisedQueueStore(primary, InMemoryQueueStore(clock=clock))
        await supervised.connect()
        assert supervised.degraded is True
        assert await supervised.push("t1", QueueTier.REGULAR, "a") == 1


# ──────────────────────────────────────────────────────────────
#  Store factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_default_is_memory(self):
        from database.store_factory import create_store
        assert isinstance(create_store(), InMemoryQueueStore)

    def test_redis_backend_is_supervised(self):
        from database.store_factory import create_store
        store = create_store(QueueConfig(backend="redis", redis_url="redis://cache:6379"))
        assert isinstance(store, SupervisedQueueStore)
        assert isinstance(store.primary, RedisQueueStore)
        assert isinstance(store.fallback, InMemoryQueueStore)

import pytest

from app.core.store import MemoryStore, RedisStore, StoreError, create_store


@pytest.mark.asyncio
async def test_set_nx_only_sets_when_absent(store):
    assert await store.set_nx("k", "first") is True
    assert await store.set_nx("k", "second") is False
    assert await store.get("k") == "first"


@pytest.mark.asyncio
async def test_values_expire_after_ttl(store, clock):
    await store.set("k", "v", ex=10)
    clock.advance(9)
    assert await store.get("k") == "v"
    clock.advance(1)
    assert await store.get("k") is None
    assert await store.set_nx("k", "again", ex=10) is True


@pytest.mark.asyncio
async def test_delete_if_equals_only_deletes_matching_value(store):
    await store.set("lock", "token-a")
    assert await store.delete_if_equals("lock", "token-b") is False
    assert await store.get("lock") == "token-a"
    assert await store.delete_if_equals("lock", "token-a") is True
    assert await store.get("lock") is None
    assert await store.delete_if_equals("lock", "token-a") is False


@pytest.mark.asyncio
async def test_sorted_set_orders_by_score_then_member(store):
    assert await store.zadd_nx("q", 2, "b") is True
    assert await store.zadd_nx("q", 1, "c") is True
    assert await store.zadd_nx("q", 2, "a") is True
    assert await store.zadd_nx("q", 0, "b") is False

    assert await store.zrange_with_scores("q") == [("c", 1.0), ("a", 2.0), ("b", 2.0)]
    assert await store.zrange_with_scores("q", 0, 0) == [("c", 1.0)]
    assert await store.zrank("q", "b") == 2
    assert await store.zrank("q", "missing") is None
    assert await store.zcard("q") == 3

    assert await store.zrem("q", "c") == 1
    assert await store.zrem("q", "c") == 0
    assert await store.zcard("q") == 2


@pytest.mark.asyncio
async def test_delete_reports_whether_key_existed(store):
    await store.set("k", "v")
    assert await store.delete("k") == 1
    assert await store.delete("k") == 0


@pytest.mark.asyncio
async def test_unconnected_redis_store_raises_store_error():
    redis_store = RedisStore("redis://localhost:6379/0")
    with pytest.raises(StoreError):
        await redis_store.get("anything")


class _Settings:
    def __init__(self, backend):
        self.store_backend = backend
        self.redis_url = "redis://localhost:6379/0"


def test_create_store_selects_adapter():
    assert isinstance(create_store(_Settings("memory")), MemoryStore)
    assert isinstance(create_store(_Settings("redis")), RedisStore)
    with pytest.raises(ValueError):
        create_store(_Settings("upstash-rest"))

import asyncio

import pytest
from fakeredis import FakeAsyncRedis
from redis.exceptions import ConnectionError as RedisConnectionError

from app.cache import keys
from app.cache.layer import CacheLayer
from app.core.config import Settings


@pytest.fixture
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.aclose()


@pytest.fixture
async def cache(settings, redis):
    layer = CacheLayer(settings, redis=redis, reconnect_purge=keys.VOLATILE_PATTERNS)
    await layer.connect()
    return layer


async def test_set_and_get_round_trip(cache, redis):
    assert await cache.set("task:1", {"id": 1, "title": "Fix bug"}, ttl=120)
    assert await cache.get("task:1") == {"id": 1, "title": "Fix bug"}
    # namespaced in Redis
    assert await redis.exists("taskcache:task:1") == 1


async def test_ttl_reported_from_redis(cache):
    await cache.set("task:1", {"id": 1}, ttl=120)
    remaining = await cache.ttl("task:1")
    assert 0 < remaining <= 120
    assert await cache.ttl("task:missing") == -2


async def test_l2_hit_repopulates_l1(cache, redis):
    await redis.set("taskcache:user:7", '{"id": 7}', ex=60)
    assert await cache.get("user:7") == {"id": 7}
    assert cache.stats["l2_hits"] == 1

    assert await cache.get("user:7") == {"id": 7}
    assert cache.stats["l1_hits"] == 1


async def test_l1_entry_expires():
    settings = Settings(_env_file=None, redis_dsn=None, l1_ttl_seconds=1)
    layer = CacheLayer(settings)
    await layer.connect()

    await layer.set("task:1", {"id": 1}, ttl=300)
    assert await layer.get("task:1") == {"id": 1}
    await asyncio.sleep(1.1)
    assert await layer.get("task:1") is None


async def test_delete_removes_from_both_tiers(cache, redis):
    await cache.set("task:1", {"id": 1})
    assert await cache.delete("task:1") is True
    assert await cache.get("task:1") is None
    assert await redis.exists("taskcache:task:1") == 0
    assert await cache.delete("task:1") is False


async def test_delete_pattern_across_tiers(cache, redis):
    await cache.set("tasks:1:aaa", {"items": []})
    await cache.set("tasks:2:bbb", {"items": []})
    await cache.set("task:9", {"id": 9})
    # only in Redis, written by another worker
    await redis.set("taskcache:tasks:3:ccc", "{}", ex=60)

    removed = await cache.delete_pattern(keys.ALL_TASK_LISTS)
    assert removed == 3
    assert await cache.get("tasks:1:aaa") is None
    assert await cache.get("task:9") == {"id": 9}
    assert await redis.keys("taskcache:tasks:*") == []


async def test_get_or_load_runs_loader_once(cache):
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return {"id": 1}

    results = await asyncio.gather(*(cache.get_or_load("task:1", loader, ttl=60) for _ in range(5)))
    assert results == [{"id": 1}] * 5
    assert calls == 1


async def test_get_or_load_does_not_cache_none(cache):
    async def loader():
        return None

    assert await cache.get_or_load("task:404", loader) is None
    assert await cache.exists("task:404") is False


async def test_unreachable_redis_degrades_to_l1():
    settings = Settings(_env_file=None, redis_dsn="redis://127.0.0.1:1/0")
    layer = CacheLayer(settings)
    await layer.connect()

    assert layer.connected is False
    assert await layer.set("task:1", {"id": 1}) is True
    assert await layer.get("task:1") == {"id": 1}
    assert await layer.delete_pattern("task:*") == 1
    await layer.close()


async def test_redis_required_fails_startup():
    settings = Settings(_env_file=None, redis_dsn="redis://127.0.0.1:1/0", redis_required=True)
    layer = CacheLayer(settings)
    with pytest.raises(RedisConnectionError):
        await layer.connect()


async def test_redis_errors_are_not_raised(cache, redis, monkeypatch):
    async def broken(*args, **kwargs):
        raise RedisConnectionError("connection lost")

    monkeypatch.setattr(redis, "get", broken)
    monkeypatch.setattr(redis, "set", broken)

    assert await cache.get("task:1") is None
    assert await cache.set("task:1", {"id": 1}) is True  # L1 still accepts it
    assert cache.connected is False
    assert cache.stats["errors"] == 1


async def test_reconnect_purges_derived_entries_but_keeps_revocations(cache, redis):
    await redis.set("taskcache:task:1", '{"id": 1}')
    await redis.set("taskcache:blacklist:abc", "true")
    cache.connected = False

    assert await cache.ping() is True
    assert await redis.exists("taskcache:task:1") == 0
    assert await redis.exists("taskcache:blacklist:abc") == 1


async def test_stats_report_hit_rate(cache):
    await cache.set("task:1", {"id": 1})
    await cache.get("task:1")
    await cache.get("task:2")
    stats = cache.get_stats()
    assert stats["connected"] is True
    assert stats["hit_rate"] == 0.5

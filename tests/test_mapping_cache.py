"""Tests for the in-memory, null and Redis mapping caches."""

import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from hotel_identity.exceptions import CollaboratorUnavailable
from hotel_identity.mapping_cache import InMemoryMappingCache, NullMappingCache, RedisMappingCache
from hotel_identity.models import MatchMethod, ProviderMapping


def _mapping(provider_hotel_id="H1", canonical_id="c-1", confidence=0.99):
    return ProviderMapping(
        canonical_hotel_id=canonical_id,
        provider_id="amadeus",
        provider_hotel_id=provider_hotel_id,
        match_confidence=confidence,
        match_method=MatchMethod.RAG,
        include_in_ads=True,
        raw_provider_data={"name": "Hotel Arts"},
    )


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache."""

    def __init__(self):
        self.data = {}
        self.expiries = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.expiries[key] = ex

    async def delete(self, *keys):
        self._check()
        for key in keys:
            self.data.pop(key, None)

    async def scan_iter(self, match=None):
        self._check()
        for key in list(self.data):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        self.closed = True


# ========================================================================
# IN-MEMORY
# ========================================================================


@pytest.mark.asyncio
async def test_in_memory_get_and_set():
    cache = InMemoryMappingCache()
    assert await cache.get("amadeus", "H1") is None
    await cache.set(_mapping())
    cached = await cache.get("amadeus", "H1")
    assert cached.canonical_hotel_id == "c-1"
    assert (cache.hits, cache.misses) == (1, 1)


@pytest.mark.asyncio
async def test_in_memory_last_write_wins():
    cache = InMemoryMappingCache()
    await cache.set(_mapping(canonical_id="c-1"))
    await cache.set(_mapping(canonical_id="c-2"))
    assert (await cache.get("amadeus", "H1")).canonical_hotel_id == "c-2"
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_in_memory_evicts_least_recently_used():
    cache = InMemoryMappingCache(max_entries=2)
    await cache.set(_mapping("H1"))
    await cache.set(_mapping("H2"))
    await cache.get("amadeus", "H1")
    await cache.set(_mapping("H3"))

    assert await cache.get("amadeus", "H2") is None
    assert await cache.get("amadeus", "H1") is not None
    assert await cache.get("amadeus", "H3") is not None


@pytest.mark.asyncio
async def test_in_memory_ttl_expiry():
    clock = FakeClock()
    cache = InMemoryMappingCache(ttl_seconds=60, clock=clock)
    await cache.set(_mapping())

    clock.now += 59
    assert await cache.get("amadeus", "H1") is not None
    clock.now += 2
    assert await cache.get("amadeus", "H1") is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_in_memory_clear():
    cache = InMemoryMappingCache()
    await cache.set(_mapping("H1"))
    await cache.set(_mapping("H2"))
    await cache.clear()
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_null_cache_never_hits():
    cache = NullMappingCache()
    await cache.set(_mapping())
    assert await cache.get("amadeus", "H1") is None


# ========================================================================
# REDIS
# ========================================================================


@pytest.mark.asyncio
async def test_redis_round_trip_keeps_fields():
    client = FakeRedis()
    cache = RedisMappingCache(client, ttl_seconds=300)
    await cache.set(_mapping())

    assert client.expiries == {"hotel-mapping:amadeus:H1": 300}
    cached = await cache.get("amadeus", "H1")
    assert cached.canonical_hotel_id == "c-1"
    assert cached.match_method == MatchMethod.RAG
    assert cached.include_in_ads is True
    assert cached.raw_provider_data == {"name": "Hotel Arts"}
    assert await cache.get("amadeus", "missing") is None


@pytest.mark.asyncio
async def test_redis_clear_only_removes_prefixed_keys():
    client = FakeRedis()
    client.data["unrelated"] = "keep"
    cache = RedisMappingCache(client)
    await cache.set(_mapping("H1"))
    await cache.set(_mapping("H2"))

    await cache.clear()

    assert client.data == {"unrelated": "keep"}


@pytest.mark.asyncio
async def test_redis_errors_become_collaborator_unavailable():
    client = FakeRedis()
    client.fail = True
    cache = RedisMappingCache(client)

    with pytest.raises(CollaboratorUnavailable) as exc_info:
        await cache.get("amadeus", "H1")
    assert exc_info.value.collaborator == "mapping-cache"

    with pytest.raises(CollaboratorUnavailable):
        await cache.set(_mapping())


@pytest.mark.asyncio
async def test_redis_close():
    client = FakeRedis()
    await RedisMappingCache(client).close()
    assert client.closed is True

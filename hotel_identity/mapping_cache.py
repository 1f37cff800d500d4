"""
Mapping cache: fast key-value layer keyed by (provider_id, provider_hotel_id).

The cache is a derived projection of the store's provider-mapping table and
holds nothing that cannot be rebuilt from it. Instances are passed into the
matcher and factory explicitly.
"""

import json
import time
from collections import OrderedDict
from typing import Optional, Protocol, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from config.logging_config import get_logger
from config.settings import (
    MAPPING_CACHE_KEY_PREFIX,
    MAPPING_CACHE_MAX_ENTRIES,
    MAPPING_CACHE_TTL_SECONDS,
)
from hotel_identity.exceptions import CollaboratorUnavailable
from hotel_identity.models import ProviderMapping, mapping_from_dict, mapping_to_dict

logger = get_logger(__name__)


class MappingCache(Protocol):
    """get / set / clear over provider mappings. Last write wins."""

    async def get(self, provider_id: str, provider_hotel_id: str) -> Optional[ProviderMapping]:
        ...

    async def set(self, mapping: ProviderMapping) -> None:
        ...

    async def clear(self) -> None:
        ...


class InMemoryMappingCache:
    """Bounded in-process LRU with optional TTL."""

    def __init__(
        self,
        max_entries: int = MAPPING_CACHE_MAX_ENTRIES,
        ttl_seconds: Optional[float] = None,
        clock=time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str], Tuple[float, ProviderMapping]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    async def get(self, provider_id: str, provider_hotel_id: str) -> Optional[ProviderMapping]:
        key = (provider_id, provider_hotel_id)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, mapping = entry
        if self.ttl_seconds is not None and self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return mapping

    async def set(self, mapping: ProviderMapping) -> None:
        self._entries[mapping.key] = (self._clock(), mapping)
        self._entries.move_to_end(mapping.key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


class NullMappingCache:
    """Cache that stores nothing. Every lookup falls through to the store."""

    async def get(self, provider_id: str, provider_hotel_id: str) -> Optional[ProviderMapping]:
        return None

    async def set(self, mapping: ProviderMapping) -> None:
        return None

    async def clear(self) -> None:
        return None


class RedisMappingCache:
    """Distributed cache backed by Redis, shared between workers."""

    def __init__(
        self,
        client,
        key_prefix: str = MAPPING_CACHE_KEY_PREFIX,
        ttl_seconds: Optional[int] = MAPPING_CACHE_TTL_SECONDS,
    ):
        self._client = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisMappingCache":
        """Factory: create a cache from a redis:// URL."""
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, provider_id: str, provider_hotel_id: str) -> str:
        return f"{self.key_prefix}{provider_id}:{provider_hotel_id}"

    async def get(self, provider_id: str, provider_hotel_id: str) -> Optional[ProviderMapping]:
        try:
            raw = await self._client.get(self._key(provider_id, provider_hotel_id))
        except RedisError as e:
            raise CollaboratorUnavailable("mapping-cache", str(e)) from e
        if raw is None:
            return None
        return mapping_from_dict(json.loads(raw))

    async def set(self, mapping: ProviderMapping) -> None:
        payload = json.dumps(mapping_to_dict(mapping), default=str)
        try:
            await self._client.set(
                self._key(mapping.provider_id, mapping.provider_hotel_id),
                payload,
                ex=self.ttl_seconds,
            )
        except RedisError as e:
            raise CollaboratorUnavailable("mapping-cache", str(e)) from e

    async def clear(self) -> None:
        try:
            keys = [key async for key in self._client.scan_iter(match=f"{self.key_prefix}*")]
            if keys:
                await self._client.delete(*keys)
        except RedisError as e:
            raise CollaboratorUnavailable("mapping-cache", str(e)) from e
        logger.info(f"Cleared {len(keys)} cached provider mappings")

    async def close(self) -> None:
        await self._client.aclose()

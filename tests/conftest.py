"""Shared fixtures: fake embedder, in-memory store and cache, record builders."""

import asyncio
import math
import zlib
from typing import Dict, List, Optional

import numpy as np
import pytest

from config.settings import MatchingConfig
from hotel_identity.canonical_factory import CanonicalHotelFactory
from hotel_identity.canonical_store import InMemoryCanonicalStore
from hotel_identity.exceptions import CollaboratorUnavailable
from hotel_identity.hotel_matcher import HotelMatcher
from hotel_identity.mapping_cache import InMemoryMappingCache
from hotel_identity.models import CanonicalHotel, ProviderHotelRecord
from hotel_identity.similarity import normalize_name, slugify


class FakeEmbedder:
    """
    Deterministic embedder. Texts listed in ``vectors`` get that exact
    vector; any other text gets a pseudo-random unit vector seeded by its
    CRC32, so unrelated texts are nearly orthogonal.
    """

    def __init__(self, dimension: int = 64, vectors: Optional[Dict[str, List[float]]] = None):
        self.dimension = dimension
        self.vectors = dict(vectors or {})
        self.calls = 0
        self.fail = False
        self.delay = 0.0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise CollaboratorUnavailable("embedding", "service down")
        if text in self.vectors:
            return list(self.vectors[text])
        rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
        vector = rng.normal(size=self.dimension)
        return (vector / np.linalg.norm(vector)).tolist()


def unit_pair(similarity: float) -> List[float]:
    """2-d unit vector whose cosine with [1, 0] is ``similarity``."""
    return [similarity, math.sqrt(1.0 - similarity ** 2)]


def offset_north(latitude: float, metres: float) -> float:
    """Latitude ``metres`` further north (haversine radius 6371 km)."""
    return latitude + math.degrees(metres / 6371000.0)


def make_record(**overrides) -> ProviderHotelRecord:
    values = dict(
        provider_id="amadeus",
        provider_hotel_id="AM-1",
        name="Grand Hotel Central",
        address="Via Laietana 30",
        city="Barcelona",
        country="ES",
        latitude=41.3851,
        longitude=2.1773,
        price=200.0,
        currency="EUR",
    )
    values.update(overrides)
    return ProviderHotelRecord(**values)


@pytest.fixture
def config():
    return MatchingConfig(collaborator_timeout_seconds=2.0)


@pytest.fixture
def store():
    return InMemoryCanonicalStore()


@pytest.fixture
def cache():
    return InMemoryMappingCache()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def matcher(store, embedder, cache, config):
    return HotelMatcher(store, embedder, cache, config)


@pytest.fixture
def factory(store, embedder, cache, config):
    return CanonicalHotelFactory(store, embedder, cache, config)


@pytest.fixture
def add_canonical(store):
    """Insert a canonical hotel directly into the store, bypassing the factory."""

    async def _add(name, latitude=None, longitude=None, embedding=None, city="Barcelona",
                   cross_reference_id=None, slug=None):
        hotel = CanonicalHotel(
            id="",
            name=name,
            normalized_name=normalize_name(name),
            slug=slug or slugify(name, city),
            latitude=latitude,
            longitude=longitude,
            city=city,
            name_embedding=list(embedding or []),
            cross_reference_id=cross_reference_id,
        )
        return await store.insert_canonical_hotel(hotel)

    return _add

"""
Canonical store: registry of canonical hotels and the provider-mapping table.

``CanonicalStore`` is the access contract the matcher and factory depend on.
``InMemoryCanonicalStore`` implements it in-process (tests, offline runs);
``postgres_store.PostgresCanonicalStore`` implements it on Postgres + pgvector.
"""

import asyncio
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Protocol, Set, Tuple

import numpy as np

from config.logging_config import get_logger
from hotel_identity.exceptions import CrossReferenceConflictError, SlugConflictError
from hotel_identity.models import (
    CanonicalHotel,
    GeoCandidate,
    ProviderMapping,
    VectorCandidate,
    utc_now,
)
from hotel_identity.similarity import haversine_distance_km, normalize_name

logger = get_logger(__name__)

# Fields that may not be changed through update_canonical_hotel
_IMMUTABLE_FIELDS = {"id", "created_at", "normalized_name"}


class CanonicalStore(Protocol):
    """Async access contract for canonical hotels and provider mappings."""

    async def insert_canonical_hotel(self, hotel: CanonicalHotel) -> str:
        """Insert and return the id. Raises SlugConflictError / CrossReferenceConflictError."""
        ...

    async def update_canonical_hotel(self, canonical_id: str, **changes) -> CanonicalHotel:
        ...

    async def get_canonical_hotel(self, canonical_id: str) -> Optional[CanonicalHotel]:
        ...

    async def get_canonical_hotel_by_slug(self, slug: str) -> Optional[CanonicalHotel]:
        ...

    async def get_canonical_hotel_by_cross_reference(self, cross_reference_id: str) -> Optional[CanonicalHotel]:
        ...

    async def vector_search(
        self, query_vector: List[float], similarity_floor: float, top_k: int
    ) -> List[VectorCandidate]:
        """Most similar hotels first, only those at or above the floor."""
        ...

    async def geo_radius_search(
        self, latitude: float, longitude: float, radius_km: float, limit: int
    ) -> List[GeoCandidate]:
        """Hotels within the radius, nearest first."""
        ...

    async def get_mapping(self, provider_id: str, provider_hotel_id: str) -> Optional[ProviderMapping]:
        ...

    async def upsert_mapping(self, mapping: ProviderMapping) -> ProviderMapping:
        """Insert or overwrite the mapping for its (provider_id, provider_hotel_id)."""
        ...

    async def list_mappings(self, canonical_id: str) -> List[ProviderMapping]:
        ...


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``."""
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, matrix @ query / denom, 0.0)
    return np.clip(sims, -1.0, 1.0)


class InMemoryCanonicalStore:
    """In-process canonical store with brute-force vector and radius search."""

    def __init__(self):
        self._hotels: Dict[str, CanonicalHotel] = {}
        self._by_slug: Dict[str, str] = {}
        self._by_cross_reference: Dict[str, str] = {}
        self._mappings: Dict[Tuple[str, str], ProviderMapping] = {}
        self._mappings_by_hotel: Dict[str, Set[Tuple[str, str]]] = {}
        self._lock = asyncio.Lock()

    # -- canonical hotels ---------------------------------------------------

    async def insert_canonical_hotel(self, hotel: CanonicalHotel) -> str:
        async with self._lock:
            if hotel.slug in self._by_slug:
                raise SlugConflictError(hotel.slug)
            if hotel.cross_reference_id and hotel.cross_reference_id in self._by_cross_reference:
                raise CrossReferenceConflictError(
                    hotel.cross_reference_id, self._by_cross_reference[hotel.cross_reference_id]
                )
            canonical_id = hotel.id or str(uuid.uuid4())
            stored = replace(
                hotel,
                id=canonical_id,
                normalized_name=normalize_name(hotel.name),
                images=list(hotel.images),
                amenities=list(hotel.amenities),
                name_embedding=list(hotel.name_embedding),
            )
            self._hotels[canonical_id] = stored
            self._by_slug[stored.slug] = canonical_id
            if stored.cross_reference_id:
                self._by_cross_reference[stored.cross_reference_id] = canonical_id
            self._mappings_by_hotel.setdefault(canonical_id, set())
        logger.debug(f"Inserted canonical hotel {canonical_id} ({stored.slug})")
        return canonical_id

    async def update_canonical_hotel(self, canonical_id: str, **changes) -> CanonicalHotel:
        forbidden = _IMMUTABLE_FIELDS.intersection(changes)
        if forbidden:
            raise ValueError(f"Cannot update fields: {sorted(forbidden)}")
        async with self._lock:
            current = self._hotels.get(canonical_id)
            if current is None:
                raise KeyError(f"Unknown canonical hotel: {canonical_id}")

            new_slug = changes.get("slug")
            if new_slug and new_slug != current.slug and new_slug in self._by_slug:
                raise SlugConflictError(new_slug)
            new_xref = changes.get("cross_reference_id")
            if new_xref and new_xref != current.cross_reference_id:
                owner = self._by_cross_reference.get(new_xref)
                if owner is not None and owner != canonical_id:
                    raise CrossReferenceConflictError(new_xref, owner)

            if "name" in changes:
                changes["normalized_name"] = normalize_name(changes["name"])
            updated = replace(current, **changes, updated_at=utc_now())

            if updated.slug != current.slug:
                del self._by_slug[current.slug]
                self._by_slug[updated.slug] = canonical_id
            if updated.cross_reference_id != current.cross_reference_id:
                if current.cross_reference_id:
                    self._by_cross_reference.pop(current.cross_reference_id, None)
                if updated.cross_reference_id:
                    self._by_cross_reference[updated.cross_reference_id] = canonical_id
            self._hotels[canonical_id] = updated
        return replace(updated)

    async def get_canonical_hotel(self, canonical_id: str) -> Optional[CanonicalHotel]:
        hotel = self._hotels.get(canonical_id)
        return replace(hotel) if hotel else None

    async def get_canonical_hotel_by_slug(self, slug: str) -> Optional[CanonicalHotel]:
        canonical_id = self._by_slug.get(slug)
        return await self.get_canonical_hotel(canonical_id) if canonical_id else None

    async def get_canonical_hotel_by_cross_reference(self, cross_reference_id: str) -> Optional[CanonicalHotel]:
        canonical_id = self._by_cross_reference.get(cross_reference_id)
        return await self.get_canonical_hotel(canonical_id) if canonical_id else None

    # -- search -------------------------------------------------------------

    async def vector_search(
        self, query_vector: List[float], similarity_floor: float, top_k: int
    ) -> List[VectorCandidate]:
        query = np.asarray(query_vector, dtype=float)
        hotels = [
            h for h in self._hotels.values()
            if h.name_embedding and len(h.name_embedding) == len(query)
        ]
        if not hotels or top_k <= 0:
            return []

        matrix = np.array([h.name_embedding for h in hotels], dtype=float)
        sims = cosine_similarities(matrix, query)

        # Stable sort keeps insertion order among equal similarities
        order = sorted(range(len(hotels)), key=lambda i: -sims[i])
        candidates = []
        for idx in order:
            similarity = float(sims[idx])
            if similarity < similarity_floor:
                break
            hotel = hotels[idx]
            candidates.append(VectorCandidate(
                id=hotel.id,
                name=hotel.name,
                latitude=hotel.latitude,
                longitude=hotel.longitude,
                similarity=similarity,
            ))
            if len(candidates) >= top_k:
                break
        return candidates

    async def geo_radius_search(
        self, latitude: float, longitude: float, radius_km: float, limit: int
    ) -> List[GeoCandidate]:
        nearby = []
        for hotel in self._hotels.values():
            if hotel.latitude is None or hotel.longitude is None:
                continue
            distance = haversine_distance_km(latitude, longitude, hotel.latitude, hotel.longitude)
            if distance <= radius_km:
                nearby.append((distance, hotel))
        nearby.sort(key=lambda pair: pair[0])
        return [
            GeoCandidate(id=h.id, name=h.name, latitude=h.latitude, longitude=h.longitude)
            for _, h in nearby[:limit]
        ]

    # -- provider mappings --------------------------------------------------

    async def get_mapping(self, provider_id: str, provider_hotel_id: str) -> Optional[ProviderMapping]:
        mapping = self._mappings.get((provider_id, provider_hotel_id))
        return replace(mapping) if mapping else None

    async def upsert_mapping(self, mapping: ProviderMapping) -> ProviderMapping:
        async with self._lock:
            if mapping.canonical_hotel_id not in self._hotels:
                raise KeyError(f"Unknown canonical hotel: {mapping.canonical_hotel_id}")
            key = mapping.key
            previous = self._mappings.get(key)
            now = utc_now()
            stored = replace(
                mapping,
                created_at=previous.created_at if previous else mapping.created_at,
                updated_at=now,
            )
            self._mappings[key] = stored

            touched = {stored.canonical_hotel_id}
            if previous and previous.canonical_hotel_id != stored.canonical_hotel_id:
                self._mappings_by_hotel[previous.canonical_hotel_id].discard(key)
                touched.add(previous.canonical_hotel_id)
            self._mappings_by_hotel.setdefault(stored.canonical_hotel_id, set()).add(key)

            # provider_count is a denormalized count of linked mappings
            for canonical_id in touched:
                hotel = self._hotels[canonical_id]
                self._hotels[canonical_id] = replace(
                    hotel, provider_count=len(self._mappings_by_hotel[canonical_id]), updated_at=now
                )
        return replace(stored)

    async def list_mappings(self, canonical_id: str) -> List[ProviderMapping]:
        keys = self._mappings_by_hotel.get(canonical_id, set())
        mappings = [replace(self._mappings[k]) for k in keys]
        return sorted(mappings, key=lambda m: m.created_at)

    # -- introspection ------------------------------------------------------

    async def count_canonical_hotels(self) -> int:
        return len(self._hotels)

    async def close(self) -> None:
        return None

"""
Hotel matcher: resolves a provider hotel record to a canonical hotel.

Stages, each returning early on a confident result:
    1. cache   - mapping cache, then the store's provider-mapping table
    2. rag     - cross-reference lookup, then embedding search scored on
                 embedding / location / name similarity
    3. gps     - geo-radius search scored on name similarity plus a
                 proximity bonus (records with coordinates only)

Nothing accepted -> ``MatchResult.no_match()``. The matcher never creates
canonical hotels; that is the factory's job.
"""

import asyncio
from typing import Awaitable, List, Optional, Sequence, Tuple, TypeVar

from config.logging_config import get_logger
from config.settings import MATCH_CONCURRENCY, MatchingConfig
from hotel_identity.audit_logger import AuditLogger
from hotel_identity.canonical_store import CanonicalStore
from hotel_identity.embedding_service import Embedder
from hotel_identity.exceptions import CollaboratorUnavailable, InvalidRecordError
from hotel_identity.mapping_cache import MappingCache, NullMappingCache
from hotel_identity.models import (
    GeoCandidate,
    MatchDiagnostics,
    MatchMethod,
    MatchOutcome,
    MatchResult,
    ProviderHotelRecord,
    ProviderMapping,
    VectorCandidate,
)
from hotel_identity.similarity import haversine_distance_km, name_similarity, normalize_name

logger = get_logger(__name__)

T = TypeVar("T")


# ========================================================================
# SCORING
# ========================================================================


def score_location(distance_km: Optional[float], config: MatchingConfig) -> float:
    """Distance-banded location score; unknown distance is neutral."""
    if distance_km is None:
        return config.location_score_unknown
    for max_distance, score in config.location_bands:
        if distance_km < max_distance:
            return score
    return config.location_score_far


def _distance_to(record: ProviderHotelRecord, latitude, longitude) -> Optional[float]:
    if not record.has_coordinates or latitude is None or longitude is None:
        return None
    return haversine_distance_km(record.latitude, record.longitude, latitude, longitude)


def score_rag_candidate(
    record: ProviderHotelRecord, candidate: VectorCandidate, config: MatchingConfig
) -> Tuple[float, MatchDiagnostics]:
    """
    Weighted score of one vector-search candidate.

    total = w_e * embedding + w_l * location + w_n * name
    """
    embedding_score = min(1.0, max(0.0, candidate.similarity))
    distance = _distance_to(record, candidate.latitude, candidate.longitude)
    location_score = score_location(distance, config)
    name_score = name_similarity(record.name, candidate.name)

    total = (
        config.embedding_weight * embedding_score
        + config.location_weight * location_score
        + config.name_weight * name_score
    )
    diagnostics = MatchDiagnostics(
        embedding_score=embedding_score,
        location_score=location_score,
        name_score=name_score,
        distance_km=distance,
    )
    return total, diagnostics


def score_gps_candidate(
    record: ProviderHotelRecord, candidate: GeoCandidate, config: MatchingConfig
) -> Tuple[float, MatchDiagnostics]:
    """Name similarity plus a bonus for candidates very close by."""
    distance = haversine_distance_km(
        record.latitude, record.longitude, candidate.latitude, candidate.longitude
    )
    name_score = name_similarity(record.name, candidate.name)
    bonus = config.gps_proximity_bonus if distance < config.gps_proximity_km else 0.0
    return name_score + bonus, MatchDiagnostics(name_score=name_score, distance_km=distance)


def validate_record(record: ProviderHotelRecord):
    """Raise InvalidRecordError when the record has nothing to match on."""
    if not record.provider_id or not record.provider_hotel_id:
        raise InvalidRecordError("Record is missing provider_id or provider_hotel_id")
    if not record.name or not record.name.strip():
        raise InvalidRecordError(
            f"Record {record.provider_id}:{record.provider_hotel_id} has no name"
        )
    if not normalize_name(record.name):
        raise InvalidRecordError(
            f"Record {record.provider_id}:{record.provider_hotel_id} name '{record.name}' "
            f"has no comparable characters"
        )
    if record.latitude is not None and not -90.0 <= record.latitude <= 90.0:
        raise InvalidRecordError(f"Latitude out of range: {record.latitude}")
    if record.longitude is not None and not -180.0 <= record.longitude <= 180.0:
        raise InvalidRecordError(f"Longitude out of range: {record.longitude}")


# ========================================================================
# MATCHER
# ========================================================================


class HotelMatcher:
    """Multi-stage matcher. Collaborators are injected, never global."""

    def __init__(
        self,
        store: CanonicalStore,
        embedder: Embedder,
        cache: Optional[MappingCache] = None,
        config: Optional[MatchingConfig] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.cache = cache if cache is not None else NullMappingCache()
        self.config = config or MatchingConfig()
        self.audit_logger = audit_logger

    async def _call(self, collaborator: str, awaitable: Awaitable[T]) -> T:
        """Await a collaborator call, surfacing timeouts as CollaboratorUnavailable."""
        timeout = self.config.collaborator_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CollaboratorUnavailable(collaborator, f"timed out after {timeout}s") from e

    # -- public API ---------------------------------------------------------

    async def match(self, record: ProviderHotelRecord) -> MatchResult:
        """
        Resolve ``record`` to a canonical hotel.

        Returns a ``no_match`` result when no stage is confident enough.

        Raises:
            InvalidRecordError: record has no name or provider ids
            CollaboratorUnavailable: embedding service or store failed or timed out
        """
        validate_record(record)

        result = await self._match_cached(record)
        if result is None:
            result = await self._match_cross_reference(record)
        if result is None:
            result, rag_diagnostics = await self._match_rag(record)
            if result is None:
                result = await self._match_gps(record)
            if result is None:
                result = MatchResult.no_match(rag_diagnostics)

        self._audit(record, result)
        return result

    async def match_gps_only(self, record: ProviderHotelRecord) -> MatchResult:
        """
        Degraded mode without the embedding service: cache, cross-reference
        and GPS stages only. Callers opt into this explicitly.
        """
        validate_record(record)

        result = await self._match_cached(record)
        if result is None:
            result = await self._match_cross_reference(record)
        if result is None:
            result = await self._match_gps(record)
        if result is None:
            result = MatchResult.no_match()

        self._audit(record, result)
        return result

    async def match_many(
        self, records: Sequence[ProviderHotelRecord], concurrency: int = MATCH_CONCURRENCY
    ) -> List[MatchResult]:
        """Match records concurrently; results are in input order."""
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def bounded(record):
            async with semaphore:
                return await self.match(record)

        return list(await asyncio.gather(*(bounded(r) for r in records)))

    # -- stage 1: cache -----------------------------------------------------

    async def _match_cached(self, record: ProviderHotelRecord) -> Optional[MatchResult]:
        key = (record.provider_id, record.provider_hotel_id)
        mapping = await self._call("mapping-cache", self.cache.get(*key))
        if mapping is None:
            mapping = await self._call("store", self.store.get_mapping(*key))
            if mapping is None:
                return None
            await self._call("mapping-cache", self.cache.set(mapping))

        logger.debug(f"Cache hit for {key[0]}:{key[1]} -> {mapping.canonical_hotel_id}")
        return MatchResult(
            canonical_id=mapping.canonical_hotel_id,
            confidence=mapping.match_confidence,
            method=MatchOutcome.CACHE,
            should_advertise=mapping.include_in_ads,
        )

    # -- stage 2: cross-reference + embedding search ------------------------

    async def _match_cross_reference(self, record: ProviderHotelRecord) -> Optional[MatchResult]:
        if not record.cross_reference_id:
            return None
        hotel = await self._call(
            "store", self.store.get_canonical_hotel_by_cross_reference(record.cross_reference_id)
        )
        if hotel is None:
            return None

        logger.info(
            f"Cross-reference match {record.provider_id}:{record.provider_hotel_id} "
            f"-> {hotel.id} ({record.cross_reference_id})"
        )
        result = MatchResult(
            canonical_id=hotel.id,
            confidence=1.0,
            method=MatchOutcome.RAG,
            should_advertise=True,
        )
        await self._remember(record, result, MatchMethod.RAG)
        return result

    async def _match_rag(
        self, record: ProviderHotelRecord
    ) -> Tuple[Optional[MatchResult], MatchDiagnostics]:
        config = self.config
        vector = await self._call("embedding", self.embedder.embed(record.comparison_text()))
        candidates = await self._call(
            "vector-search",
            self.store.vector_search(vector, config.rag_similarity_floor, config.rag_top_k),
        )

        best_candidate = None
        best_score = -1.0
        best_diagnostics = MatchDiagnostics()
        # Strict comparison keeps the first-seen candidate on ties
        for candidate in candidates:
            total, diagnostics = score_rag_candidate(record, candidate, config)
            if total > best_score:
                best_candidate, best_score, best_diagnostics = candidate, total, diagnostics
        best_diagnostics.candidate_count = len(candidates)

        if best_candidate is None or best_score < config.rag_accept_threshold:
            logger.debug(
                f"RAG stage below threshold for {record.provider_id}:{record.provider_hotel_id} "
                f"(best {best_score:.3f} of {len(candidates)} candidates)"
            )
            return None, best_diagnostics

        result = MatchResult(
            canonical_id=best_candidate.id,
            confidence=min(1.0, best_score),
            method=MatchOutcome.RAG,
            should_advertise=best_score >= config.rag_advertise_threshold,
            diagnostics=best_diagnostics,
        )
        logger.info(
            f"RAG match {record.provider_id}:{record.provider_hotel_id} -> "
            f"{best_candidate.id} (score {best_score:.3f})"
        )
        await self._remember(record, result, MatchMethod.RAG)
        return result, best_diagnostics

    # -- stage 3: GPS + name ------------------------------------------------

    async def _match_gps(self, record: ProviderHotelRecord) -> Optional[MatchResult]:
        if not record.has_coordinates:
            return None
        config = self.config
        candidates = await self._call(
            "store",
            self.store.geo_radius_search(
                record.latitude, record.longitude, config.gps_radius_km, config.gps_candidate_limit
            ),
        )

        best_candidate = None
        best_score = -1.0
        best_diagnostics = MatchDiagnostics()
        for candidate in candidates:
            score, diagnostics = score_gps_candidate(record, candidate, config)
            if score > best_score:
                best_candidate, best_score, best_diagnostics = candidate, score, diagnostics
        best_diagnostics.candidate_count = len(candidates)

        if best_candidate is None or best_score < config.gps_accept_threshold:
            return None

        # Score can exceed 1.0 with the proximity bonus; confidence cannot
        result = MatchResult(
            canonical_id=best_candidate.id,
            confidence=min(1.0, best_score),
            method=MatchOutcome.GPS,
            should_advertise=best_score >= config.gps_advertise_threshold,
            diagnostics=best_diagnostics,
        )
        logger.info(
            f"GPS match {record.provider_id}:{record.provider_hotel_id} -> "
            f"{best_candidate.id} (score {best_score:.3f}, {best_diagnostics.distance_km:.3f} km)"
        )
        await self._remember(record, result, MatchMethod.GPS)
        return result

    # -- helpers ------------------------------------------------------------

    async def _remember(self, record: ProviderHotelRecord, result: MatchResult, method: MatchMethod):
        """Persist the mapping, then write it to the cache."""
        mapping = ProviderMapping(
            canonical_hotel_id=result.canonical_id,
            provider_id=record.provider_id,
            provider_hotel_id=record.provider_hotel_id,
            match_confidence=result.confidence,
            match_method=method,
            include_in_ads=result.should_advertise,
            raw_provider_data=record.snapshot(),
        )
        stored = await self._call("store", self.store.upsert_mapping(mapping))
        await self._call("mapping-cache", self.cache.set(stored))

    def _audit(self, record: ProviderHotelRecord, result: MatchResult):
        if self.audit_logger is not None:
            self.audit_logger.log_match_decision(record, result)

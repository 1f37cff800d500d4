"""
Canonical hotel factory: mints canonical hotels for records that matched
nothing, and enriches existing ones from trusted provider records.
"""

import asyncio
from typing import Any, Awaitable, Dict, Optional, TypeVar

from config.logging_config import get_logger
from config.settings import MatchingConfig, MergeConfig
from hotel_identity.audit_logger import AuditLogger
from hotel_identity.canonical_store import CanonicalStore
from hotel_identity.data_merger import normalize_amenity
from hotel_identity.embedding_service import Embedder
from hotel_identity.exceptions import (
    CollaboratorUnavailable,
    CrossReferenceConflictError,
    SlugConflictError,
    SlugExhaustedError,
)
from hotel_identity.hotel_matcher import validate_record
from hotel_identity.mapping_cache import MappingCache, NullMappingCache
from hotel_identity.models import (
    CanonicalHotel,
    MatchMethod,
    ProviderHotelRecord,
    ProviderMapping,
)
from hotel_identity.similarity import normalize_name, slugify, with_suffix

logger = get_logger(__name__)

T = TypeVar("T")


class CanonicalHotelFactory:
    """Creates canonical hotels and their initial provider mapping."""

    def __init__(
        self,
        store: CanonicalStore,
        embedder: Embedder,
        cache: Optional[MappingCache] = None,
        config: Optional[MatchingConfig] = None,
        audit_logger: Optional[AuditLogger] = None,
        merge_config: Optional[MergeConfig] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.cache = cache if cache is not None else NullMappingCache()
        self.config = config or MatchingConfig()
        self.merge_config = merge_config or MergeConfig()
        self.audit_logger = audit_logger

    async def _call(self, collaborator: str, awaitable: Awaitable[T]) -> T:
        timeout = self.config.collaborator_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CollaboratorUnavailable(collaborator, f"timed out after {timeout}s") from e

    async def create_canonical_hotel(self, record: ProviderHotelRecord) -> str:
        """
        Create a canonical hotel for ``record`` and its ``initial`` mapping.

        Slugs are claimed with a check-then-insert loop: ``base``, ``base-2``,
        ``base-3``... A concurrent writer taking the same slug between the
        check and the insert only moves the loop on to the next suffix.

        Returns:
            The canonical hotel id (an existing one if another hotel already
            carries the record's cross-reference id).

        Raises:
            InvalidRecordError: record has nothing to match on
            CollaboratorUnavailable: embedding service or store failed
            SlugExhaustedError: no free slug within ``max_slug_attempts``
        """
        validate_record(record)
        embedding = await self._call("embedding", self.embedder.embed(record.comparison_text()))
        base_slug = slugify(record.name, record.city, self.config.slug_max_length)

        canonical_id = None
        slug = base_slug
        attempt = 0
        for attempt in range(1, self.config.max_slug_attempts + 1):
            slug = with_suffix(base_slug, attempt)
            if await self._call("store", self.store.get_canonical_hotel_by_slug(slug)):
                continue

            hotel = CanonicalHotel(
                id="",
                name=record.name,
                normalized_name=normalize_name(record.name),
                slug=slug,
                latitude=record.latitude,
                longitude=record.longitude,
                city=record.city,
                state=record.state,
                country=record.country,
                star_rating=record.star_rating,
                description=record.description or "",
                images=list(record.images),
                amenities=[normalize_amenity(a) for a in record.amenities if a and a.strip()],
                name_embedding=list(embedding),
                cross_reference_id=record.cross_reference_id,
                match_confidence=1.0,
                provider_count=1,
                ad_approvable=bool(record.cross_reference_id),
            )
            try:
                canonical_id = await self._call("store", self.store.insert_canonical_hotel(hotel))
                break
            except SlugConflictError:
                logger.debug(f"Slug '{slug}' taken by a concurrent writer, trying next suffix")
            except CrossReferenceConflictError as e:
                return await self._link_to_cross_reference(record, e)

        if canonical_id is None:
            raise SlugExhaustedError(
                f"No free slug for '{base_slug}' after {self.config.max_slug_attempts} attempts"
            )

        # First provider for a new canonical hotel is trusted by construction
        mapping = ProviderMapping(
            canonical_hotel_id=canonical_id,
            provider_id=record.provider_id,
            provider_hotel_id=record.provider_hotel_id,
            match_confidence=1.0,
            match_method=MatchMethod.INITIAL,
            include_in_ads=True,
            raw_provider_data=record.snapshot(),
        )
        await self._store_mapping(mapping)

        logger.info(f"Created canonical hotel {canonical_id} '{record.name}' as '{slug}'")
        if self.audit_logger is not None:
            self.audit_logger.log_canonical_created(canonical_id, slug, record, attempt)
        return canonical_id

    async def _link_to_cross_reference(
        self, record: ProviderHotelRecord, conflict: CrossReferenceConflictError
    ) -> str:
        """Another writer created the hotel with this cross-reference id first."""
        existing = await self._call(
            "store", self.store.get_canonical_hotel_by_cross_reference(conflict.cross_reference_id)
        )
        if existing is None:
            raise conflict
        logger.info(
            f"Cross-reference {conflict.cross_reference_id} already owned by {existing.id}; "
            f"linking {record.provider_id}:{record.provider_hotel_id}"
        )
        await self._store_mapping(ProviderMapping(
            canonical_hotel_id=existing.id,
            provider_id=record.provider_id,
            provider_hotel_id=record.provider_hotel_id,
            match_confidence=1.0,
            match_method=MatchMethod.RAG,
            include_in_ads=True,
            raw_provider_data=record.snapshot(),
        ))
        return existing.id

    async def _store_mapping(self, mapping: ProviderMapping):
        stored = await self._call("store", self.store.upsert_mapping(mapping))
        await self._call("mapping-cache", self.cache.set(stored))

    def is_trusted(self, record: ProviderHotelRecord, confidence: float) -> bool:
        if self.merge_config.use_cross_reference_for_trust and record.cross_reference_id:
            return True
        return confidence >= self.merge_config.trusted_confidence_threshold

    async def enrich_canonical_hotel(
        self, canonical_id: str, record: ProviderHotelRecord, confidence: float
    ) -> Optional[CanonicalHotel]:
        """
        Fill gaps on an existing canonical hotel from a trusted record.

        Enrichment is additive: a longer description replaces a shorter one,
        images and amenities are unioned, missing star rating and coordinates
        are filled. A missing cross-reference id is adopted only when
        ``confidence`` clears the trusted threshold, since it makes the hotel
        ad-approvable. Untrusted records change nothing.

        Returns the updated hotel, or None when nothing changed.
        """
        if not self.is_trusted(record, confidence):
            return None
        hotel = await self._call("store", self.store.get_canonical_hotel(canonical_id))
        if hotel is None:
            logger.warning(f"Cannot enrich unknown canonical hotel {canonical_id}")
            return None

        changes: Dict[str, Any] = {}
        if record.description and len(record.description) > len(hotel.description or ""):
            changes["description"] = record.description

        new_images = [url for url in record.images if url and url not in hotel.images]
        if new_images:
            changes["images"] = list(hotel.images) + list(dict.fromkeys(new_images))

        known = {a.lower() for a in hotel.amenities}
        new_amenities = []
        for amenity in record.amenities:
            if not amenity or not amenity.strip():
                continue
            normalized = normalize_amenity(amenity)
            if normalized.lower() not in known:
                known.add(normalized.lower())
                new_amenities.append(normalized)
        if new_amenities:
            changes["amenities"] = list(hotel.amenities) + new_amenities

        if hotel.star_rating is None and record.star_rating is not None:
            changes["star_rating"] = record.star_rating
        if (hotel.latitude is None or hotel.longitude is None) and record.has_coordinates:
            changes["latitude"] = record.latitude
            changes["longitude"] = record.longitude
        # Only a near-certain match may hand over the cross-reference id
        if (
            not hotel.cross_reference_id
            and record.cross_reference_id
            and confidence >= self.merge_config.trusted_confidence_threshold
        ):
            changes["cross_reference_id"] = record.cross_reference_id

        if not changes:
            return None

        try:
            updated = await self._call("store", self.store.update_canonical_hotel(canonical_id, **changes))
        except CrossReferenceConflictError:
            logger.warning(
                f"Cross-reference {record.cross_reference_id} belongs to another canonical hotel; "
                f"enriching {canonical_id} without it"
            )
            changes.pop("cross_reference_id")
            if not changes:
                return None
            updated = await self._call("store", self.store.update_canonical_hotel(canonical_id, **changes))

        logger.debug(f"Enriched canonical hotel {canonical_id}: {sorted(changes)}")
        if self.audit_logger is not None:
            self.audit_logger.log_canonical_enriched(canonical_id, changes, record.provider_id)
        return updated

"""
Resolution pipeline: the aggregation-side caller of the matcher and factory.

match -> (no_match) create canonical hotel / (match) enrich canonical hotel.
Collaborator failures leave the record unresolved so it can still be shown
unmerged; with ``degrade_to_gps`` an embedding outage retries GPS-only.
"""

import asyncio
import time
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Sequence

from tqdm import tqdm

from config.logging_config import get_logger
from config.settings import MATCH_CONCURRENCY, MergeConfig
from hotel_identity.audit_logger import AuditLogger
from hotel_identity.canonical_factory import CanonicalHotelFactory
from hotel_identity.data_merger import merge_hotel_listings
from hotel_identity.exceptions import CollaboratorUnavailable, InvalidRecordError
from hotel_identity.hotel_matcher import HotelMatcher
from hotel_identity.models import (
    MatchedRecord,
    MatchOutcome,
    MatchResult,
    ProviderHotelRecord,
    UnifiedListing,
)

logger = get_logger(__name__)

# Resolution outcomes beyond the match methods
CREATED = "created"
UNRESOLVED = "unresolved"
INVALID = "invalid"


@dataclass
class Resolution:
    """What happened to one provider record."""
    record: ProviderHotelRecord
    outcome: str
    canonical_id: Optional[str] = None
    confidence: float = 0.0
    should_advertise: bool = False
    degraded: bool = False
    error: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.canonical_id is not None

    def as_matched_record(self, provider_name: Optional[str] = None) -> MatchedRecord:
        """Input for the data merger."""
        try:
            method = MatchOutcome(self.outcome)
        except ValueError:
            method = MatchOutcome.NO_MATCH
        return MatchedRecord(
            record=self.record,
            match=MatchResult(
                canonical_id=self.canonical_id,
                confidence=self.confidence,
                method=method,
                should_advertise=self.should_advertise,
            ),
            provider_name=provider_name,
        )


@dataclass
class IngestionStats:
    """Counters for one catalog ingestion run."""
    total: int = 0
    cached: int = 0
    rag: int = 0
    gps: int = 0
    created: int = 0
    degraded: int = 0
    unresolved: int = 0
    invalid: int = 0
    duration_seconds: float = 0.0

    def count(self, resolution: Resolution):
        self.total += 1
        if resolution.outcome == MatchOutcome.CACHE.value:
            self.cached += 1
        elif resolution.outcome == MatchOutcome.RAG.value:
            self.rag += 1
        elif resolution.outcome == MatchOutcome.GPS.value:
            self.gps += 1
        elif resolution.outcome == CREATED:
            self.created += 1
        elif resolution.outcome == INVALID:
            self.invalid += 1
        else:
            self.unresolved += 1
        if resolution.degraded:
            self.degraded += 1

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class ResolutionPipeline:
    """Resolves provider records to canonical hotels and merges search results."""

    def __init__(
        self,
        matcher: HotelMatcher,
        factory: CanonicalHotelFactory,
        merge_config: Optional[MergeConfig] = None,
        degrade_to_gps: bool = False,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.matcher = matcher
        self.factory = factory
        self.merge_config = merge_config or MergeConfig()
        self.degrade_to_gps = degrade_to_gps
        self.audit_logger = audit_logger

    async def resolve(self, record: ProviderHotelRecord) -> Resolution:
        """
        Resolve one record to a canonical hotel, creating one on no_match.

        Raises:
            InvalidRecordError: record has nothing to match on
        """
        degraded = False
        try:
            result = await self.matcher.match(record)
        except CollaboratorUnavailable as e:
            if not (self.degrade_to_gps and e.collaborator == "embedding"):
                return self._unresolved(record, e)
            logger.warning(f"Embedding unavailable, retrying {record.provider_id}:{record.provider_hotel_id} GPS-only")
            try:
                result = await self.matcher.match_gps_only(record)
            except CollaboratorUnavailable as gps_error:
                return self._unresolved(record, gps_error, degraded=True)
            degraded = True

        if result.matched:
            try:
                await self.factory.enrich_canonical_hotel(result.canonical_id, record, result.confidence)
            except CollaboratorUnavailable as e:
                logger.warning(f"Enrichment of {result.canonical_id} skipped: {e}")
            return Resolution(
                record=record,
                outcome=result.method.value,
                canonical_id=result.canonical_id,
                confidence=result.confidence,
                should_advertise=result.should_advertise,
                degraded=degraded,
            )

        if degraded:
            # Creating needs an embedding; leave the record standalone
            return Resolution(record=record, outcome=UNRESOLVED, degraded=True,
                              error="no match in degraded mode")

        try:
            canonical_id = await self.factory.create_canonical_hotel(record)
        except CollaboratorUnavailable as e:
            return self._unresolved(record, e)
        return Resolution(
            record=record,
            outcome=CREATED,
            canonical_id=canonical_id,
            confidence=1.0,
            should_advertise=True,
        )

    def _unresolved(self, record: ProviderHotelRecord, error: Exception, degraded: bool = False) -> Resolution:
        logger.error(
            f"Could not resolve {record.provider_id}:{record.provider_hotel_id}: {error}",
            exc_info=True,
        )
        if self.audit_logger is not None:
            self.audit_logger.log_error(
                "collaborator_unavailable",
                {"provider_id": record.provider_id, "provider_hotel_id": record.provider_hotel_id,
                 "error": str(error)},
            )
        return Resolution(record=record, outcome=UNRESOLVED, degraded=degraded, error=str(error))

    async def _resolve_or_invalid(self, record: ProviderHotelRecord) -> Resolution:
        try:
            return await self.resolve(record)
        except InvalidRecordError as e:
            logger.warning(f"Skipping invalid record: {e}")
            return Resolution(record=record, outcome=INVALID, error=str(e))

    async def _warm_embeddings(self, records: Sequence[ProviderHotelRecord]) -> int:
        """
        Embed every distinct named record in one batch before resolving, so
        per-record embed calls hit the embedder's cache. Only embedders with
        ``embed_texts`` support this; a failed batch falls back to per-record
        calls, which report their own errors.
        """
        embed_texts = getattr(self.matcher.embedder, "embed_texts", None)
        if embed_texts is None:
            return 0
        texts = list(dict.fromkeys(r.comparison_text() for r in records if r.name and r.name.strip()))
        if not texts:
            return 0
        try:
            await embed_texts(texts)
        except CollaboratorUnavailable as e:
            logger.warning(f"Batch embedding failed, embedding records one by one: {e}")
            return 0
        return len(texts)

    async def resolve_many(
        self, records: Sequence[ProviderHotelRecord], concurrency: int = MATCH_CONCURRENCY
    ) -> List[Resolution]:
        """Resolve records concurrently. Invalid records come back with outcome 'invalid'."""
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def bounded(record):
            async with semaphore:
                return await self._resolve_or_invalid(record)

        return list(await asyncio.gather(*(bounded(r) for r in records)))

    async def aggregate_search_results(
        self,
        records: Sequence[ProviderHotelRecord],
        provider_names: Optional[Dict[str, str]] = None,
        concurrency: int = MATCH_CONCURRENCY,
    ) -> List[UnifiedListing]:
        """
        One listing per canonical hotel, cheapest first.

        Unresolved records become standalone listings; invalid ones are dropped.
        """
        provider_names = provider_names or {}
        resolutions = await self.resolve_many(records, concurrency)

        groups: Dict[str, List[MatchedRecord]] = {}
        standalone: List[List[MatchedRecord]] = []
        for resolution in resolutions:
            if resolution.outcome == INVALID:
                continue
            matched = resolution.as_matched_record(provider_names.get(resolution.record.provider_id))
            if resolution.resolved:
                groups.setdefault(resolution.canonical_id, []).append(matched)
            else:
                standalone.append([matched])

        listings = [
            merge_hotel_listings(group, self.merge_config)
            for group in list(groups.values()) + standalone
        ]
        listings.sort(key=lambda listing: listing.price)
        logger.info(
            f"Aggregated {len(records)} provider records into {len(listings)} listings "
            f"({len(standalone)} standalone)"
        )
        return listings

    async def ingest_catalog(
        self,
        records: Sequence[ProviderHotelRecord],
        concurrency: int = MATCH_CONCURRENCY,
        show_progress: bool = True,
    ) -> IngestionStats:
        """Offline backfill: resolve every record and count the outcomes."""
        stats = IngestionStats()
        start = time.monotonic()
        if self.audit_logger is not None:
            self.audit_logger.log_ingestion_start({"records": len(records), "concurrency": concurrency})

        logger.info("=" * 80)
        logger.info(f"INGESTING {len(records)} PROVIDER RECORDS (concurrency {concurrency})")
        logger.info("=" * 80)

        warmed = await self._warm_embeddings(records)
        if warmed:
            logger.info(f"Pre-computed {warmed} embeddings")

        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def bounded(record):
            async with semaphore:
                return await self._resolve_or_invalid(record)

        tasks = [asyncio.ensure_future(bounded(r)) for r in records]
        with tqdm(total=len(tasks), desc="Resolving hotels", disable=not show_progress) as progress:
            for finished in asyncio.as_completed(tasks):
                stats.count(await finished)
                progress.update(1)

        stats.duration_seconds = round(time.monotonic() - start, 3)
        logger.info(
            f"Ingestion complete: {stats.created} created, {stats.cached} cached, "
            f"{stats.rag} rag, {stats.gps} gps, {stats.unresolved} unresolved, "
            f"{stats.invalid} invalid in {stats.duration_seconds:.2f}s"
        )
        if self.audit_logger is not None:
            self.audit_logger.log_ingestion_complete(stats.to_dict())
        return stats

"""End-to-end tests: resolution, search aggregation, catalog ingestion and output."""

import json

import pytest

from conftest import FakeEmbedder, make_record, offset_north, unit_pair
from hotel_identity.audit_logger import AuditLogger
from hotel_identity.canonical_factory import CanonicalHotelFactory
from hotel_identity.exceptions import CollaboratorUnavailable
from hotel_identity.hotel_matcher import HotelMatcher
from hotel_identity.output_builder import OutputBuilder
from hotel_identity.pipeline_orchestrator import CREATED, INVALID, UNRESOLVED, ResolutionPipeline

MADRID = (40.4168, -3.7038)


@pytest.fixture
def audit_logger(tmp_path):
    return AuditLogger(tmp_path / "audit.jsonl")


@pytest.fixture
def pipeline(store, embedder, cache, config, audit_logger):
    matcher = HotelMatcher(store, embedder, cache, config, audit_logger=audit_logger)
    factory = CanonicalHotelFactory(store, embedder, cache, config, audit_logger=audit_logger)
    return ResolutionPipeline(matcher, factory, audit_logger=audit_logger)


def _events(audit_logger):
    lines = audit_logger.audit_file.read_text().splitlines()
    return [json.loads(line)["event_type"] for line in lines]


# ========================================================================
# RESOLVE
# ========================================================================


@pytest.mark.asyncio
async def test_resolve_creates_then_hits_cache(pipeline, store):
    record = make_record()

    first = await pipeline.resolve(record)
    second = await pipeline.resolve(record)

    assert first.outcome == CREATED
    assert first.should_advertise is True
    assert second.outcome == "cache"
    assert second.canonical_id == first.canonical_id
    assert await store.count_canonical_hotels() == 1


@pytest.mark.asyncio
async def test_collaborator_failure_leaves_record_unresolved(pipeline, embedder, audit_logger):
    embedder.fail = True
    resolution = await pipeline.resolve(make_record())

    assert resolution.outcome == UNRESOLVED
    assert resolution.resolved is False
    assert "embedding" in resolution.error
    assert "error" in _events(audit_logger)


@pytest.mark.asyncio
async def test_degrade_to_gps_on_embedding_outage(matcher, factory, embedder, add_canonical):
    canonical_id = await add_canonical("Grand Hotel Central", 41.3851, 2.1773)
    pipeline = ResolutionPipeline(matcher, factory, degrade_to_gps=True)
    embedder.fail = True

    nearby = await pipeline.resolve(make_record())
    elsewhere = await pipeline.resolve(make_record(provider_hotel_id="AM-2", name="Hotel Sol",
                                                   latitude=MADRID[0], longitude=MADRID[1]))

    assert nearby.outcome == "gps"
    assert nearby.canonical_id == canonical_id
    assert nearby.degraded is True
    assert elsewhere.outcome == UNRESOLVED
    assert elsewhere.degraded is True


@pytest.mark.asyncio
async def test_rag_match_below_trust_keeps_canonical_hotel_unapproved(store, cache, config, add_canonical):
    canonical_id = await add_canonical(
        "Grand Hotel Central", offset_north(41.3851, 300), 2.1773, embedding=[1.0, 0.0]
    )
    record = make_record(provider_id="hotelbeds", provider_hotel_id="HB-9",
                         name="Grand Hotel Centrale", cross_reference_id="X9")
    embedder = FakeEmbedder(dimension=2, vectors={record.comparison_text(): unit_pair(0.80)})
    pipeline = ResolutionPipeline(
        HotelMatcher(store, embedder, cache, config), CanonicalHotelFactory(store, embedder, cache, config)
    )

    resolution = await pipeline.resolve(record)

    assert resolution.outcome == "rag"
    assert resolution.canonical_id == canonical_id
    assert resolution.confidence < 0.99
    assert resolution.should_advertise is False
    hotel = await store.get_canonical_hotel(canonical_id)
    assert hotel.cross_reference_id is None
    assert hotel.ad_approvable is False

    assert await store.get_canonical_hotel_by_cross_reference("X9") is None


# ========================================================================
# SEARCH AGGREGATION
# ========================================================================


@pytest.mark.asyncio
async def test_aggregate_merges_records_of_the_same_hotel(pipeline):
    records = [
        make_record(provider_id="amadeus", provider_hotel_id="AM-1", price=200.0, cross_reference_id="G-1"),
        make_record(provider_id="hotelbeds", provider_hotel_id="HB-1", name="Grand Central Hotel Barcelona",
                    price=180.0, cross_reference_id="G-1"),
        make_record(provider_id="amadeus", provider_hotel_id="AM-9", name="Hotel Sol", city="Madrid",
                    latitude=MADRID[0], longitude=MADRID[1], price=250.0),
        make_record(provider_id="amadeus", provider_hotel_id="AM-0", name=""),
    ]

    listings = await pipeline.aggregate_search_results(
        records, provider_names={"hotelbeds": "Hotelbeds", "amadeus": "Amadeus"}, concurrency=1
    )

    assert len(listings) == 2
    merged, single = listings
    assert merged.price == 180.0
    assert merged.selected_provider.provider_name == "Hotelbeds"
    assert [o.provider_id for o in merged.all_offers] == ["hotelbeds", "amadeus"]
    assert single.name == "Hotel Sol"
    assert len(single.all_offers) == 1
    assert merged.canonical_id != single.canonical_id


@pytest.mark.asyncio
async def test_unresolved_records_become_standalone_listings(pipeline, embedder):
    embedder.fail = True
    records = [make_record(provider_hotel_id="AM-1", price=120.0), make_record(provider_hotel_id="AM-2", price=90.0)]

    listings = await pipeline.aggregate_search_results(records)

    assert [listing.price for listing in listings] == [90.0, 120.0]
    assert all(listing.canonical_id is None for listing in listings)


# ========================================================================
# INGESTION
# ========================================================================


@pytest.mark.asyncio
async def test_ingest_catalog_counts_outcomes(pipeline, audit_logger):
    records = [make_record(), make_record(), make_record(provider_hotel_id="AM-0", name="")]

    stats = await pipeline.ingest_catalog(records, concurrency=1, show_progress=False)

    assert stats.total == 3
    assert stats.created == 1
    assert stats.cached == 1
    assert stats.invalid == 1
    assert stats.unresolved == 0
    events = _events(audit_logger)
    assert events[0] == "ingestion_start"
    assert events[-1] == "ingestion_complete"
    assert "canonical_created" in events


class BatchingEmbedder(FakeEmbedder):
    """FakeEmbedder with a batch call whose results later embed calls reuse."""

    def __init__(self):
        super().__init__()
        self.batches = []
        self.warm = {}
        self.warm_hits = 0
        self.fail_batch = False

    async def embed_texts(self, texts):
        self.batches.append(list(texts))
        if self.fail_batch:
            raise CollaboratorUnavailable("embedding", "batch rejected")
        for text in texts:
            self.warm[text] = await super().embed(text)
        return [self.warm[text] for text in texts]

    async def embed(self, text):
        if text in self.warm:
            self.warm_hits += 1
            return list(self.warm[text])
        return await super().embed(text)


@pytest.mark.asyncio
async def test_ingest_catalog_embeds_in_one_batch(store, cache, config):
    embedder = BatchingEmbedder()
    pipeline = ResolutionPipeline(
        HotelMatcher(store, embedder, cache, config), CanonicalHotelFactory(store, embedder, cache, config)
    )
    central = make_record()
    sol = make_record(provider_hotel_id="AM-2", name="Hotel Sol", city="Madrid",
                      latitude=MADRID[0], longitude=MADRID[1])
    records = [central, make_record(), sol, make_record(provider_hotel_id="AM-0", name=" ")]

    stats = await pipeline.ingest_catalog(records, concurrency=1, show_progress=False)

    assert embedder.batches == [[central.comparison_text(), sol.comparison_text()]]
    assert embedder.calls == 2
    assert embedder.warm_hits > 0
    assert stats.created == 2
    assert stats.cached == 1
    assert stats.invalid == 1


@pytest.mark.asyncio
async def test_failed_batch_falls_back_to_single_embeds(store, cache, config):
    embedder = BatchingEmbedder()
    embedder.fail_batch = True
    pipeline = ResolutionPipeline(
        HotelMatcher(store, embedder, cache, config), CanonicalHotelFactory(store, embedder, cache, config)
    )

    stats = await pipeline.ingest_catalog([make_record()], show_progress=False)

    assert len(embedder.batches) == 1
    assert embedder.warm_hits == 0
    assert stats.created == 1
    assert stats.unresolved == 0


@pytest.mark.asyncio
async def test_resolution_outcome_of_invalid_record(pipeline):
    resolutions = await pipeline.resolve_many([make_record(latitude=123.0)])
    assert resolutions[0].outcome == INVALID


# ========================================================================
# OUTPUT
# ========================================================================


def test_ingestion_report_resolution_rate():
    report = OutputBuilder.build_ingestion_report(
        {"total": 3, "created": 1, "cached": 1, "invalid": 1}, {"input": "catalog.json"}
    )
    assert report["resolution_rate"] == pytest.approx(0.6667)
    assert report["metadata"]["input"] == "catalog.json"
    assert OutputBuilder.validate_output(report) is True
    assert OutputBuilder.validate_output({"listings": []}) is False


@pytest.mark.asyncio
async def test_search_output_is_saved(pipeline, tmp_path):
    records = [
        make_record(provider_id="amadeus", price=200.0, cross_reference_id="G-1"),
        make_record(provider_id="hotelbeds", provider_hotel_id="HB-1", price=150.0, cross_reference_id="G-1"),
    ]
    listings = await pipeline.aggregate_search_results(records, concurrency=1)

    output = OutputBuilder.build_search_output(listings)
    path = OutputBuilder.save_json(tmp_path / "out" / "search.json", output)

    saved = json.loads(path.read_text())
    assert saved["metadata"]["merged_listings"] == 1
    assert saved["listings"][0]["show_price_comparison"] is True
    assert saved["listings"][0]["price"] == 150.0

"""Main entry point for the hotel identity resolution engine."""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path

from config.logging_config import get_logger
from config.settings import (
    DATABASE_URL,
    EMBEDDING_BACKEND,
    INGESTION_REPORT_FILE,
    MATCH_CONCURRENCY,
    OUTPUT_DIR,
    REDIS_URL,
    MatchingConfig,
)
from hotel_identity.audit_logger import AuditLogger
from hotel_identity.canonical_factory import CanonicalHotelFactory
from hotel_identity.canonical_store import InMemoryCanonicalStore
from hotel_identity.data_loader import DataLoader
from hotel_identity.embedding_service import create_embedder
from hotel_identity.exceptions import HotelIdentityError
from hotel_identity.hotel_matcher import HotelMatcher
from hotel_identity.mapping_cache import InMemoryMappingCache, RedisMappingCache
from hotel_identity.output_builder import OutputBuilder
from hotel_identity.pipeline_orchestrator import ResolutionPipeline
from hotel_identity.postgres_store import PostgresCanonicalStore

logger = get_logger(__name__)


# ========================================================================
# CLI INTERFACE
# ========================================================================


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Hotel Identity Resolution Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Backfill canonical hotels from a provider catalog
  python main.py ingest --input data/inputs/hotelbeds.json --provider hotelbeds

  # Same, against Postgres + Redis
  python main.py ingest --input data/inputs/amadeus.json --store postgres --cache redis

  # Merge one search's results into unified listings
  python main.py aggregate --input data/inputs/search_results.json

  # Match only (no canonical hotel creation)
  python main.py match --input data/inputs/search_results.json
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("ingest", "Resolve a provider catalog, creating canonical hotels as needed"),
        ("aggregate", "Resolve search results and merge them into listings"),
        ("match", "Match records against existing canonical hotels and print results"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--input", type=Path, required=True, help="JSON file of provider records")
        sub.add_argument("--provider", help="Provider id for records that carry none")
        sub.add_argument(
            "--concurrency", type=int, default=MATCH_CONCURRENCY,
            help=f"Records resolved at once (default: {MATCH_CONCURRENCY})",
        )
        sub.add_argument(
            "--store", choices=["memory", "postgres"], default="postgres" if DATABASE_URL else "memory",
            help="Canonical store backend",
        )
        sub.add_argument(
            "--cache", choices=["memory", "redis"], default="redis" if REDIS_URL else "memory",
            help="Mapping cache backend",
        )
        sub.add_argument(
            "--embedding", choices=["sentence-transformers", "google"], default=EMBEDDING_BACKEND,
            help=f"Embedding backend (default: {EMBEDDING_BACKEND})",
        )
        sub.add_argument(
            "--degrade-to-gps", action="store_true",
            help="Retry GPS-only matching when the embedding service is down",
        )
        sub.add_argument("--strict", action="store_true", help="Fail on any invalid input record")
        sub.add_argument("--output", type=Path, help="Where to write the JSON result")

    return parser.parse_args(argv)


# ========================================================================
# MAIN EXECUTION
# ========================================================================


async def run(args) -> int:
    records, validation = DataLoader(strict_mode=args.strict).load_provider_records(args.input, args.provider)
    if not records:
        logger.error(f"No valid records in {args.input}")
        return 1

    embedder = create_embedder(args.embedding)
    if args.store == "postgres":
        store = await PostgresCanonicalStore.connect(DATABASE_URL, dimension=embedder.dimension)
        await store.create_schema()
    else:
        store = InMemoryCanonicalStore()
    cache = RedisMappingCache.from_url(REDIS_URL) if args.cache == "redis" else InMemoryMappingCache()

    config = MatchingConfig()
    audit_logger = AuditLogger()
    matcher = HotelMatcher(store, embedder, cache, config, audit_logger)
    factory = CanonicalHotelFactory(store, embedder, cache, config, audit_logger)
    pipeline = ResolutionPipeline(matcher, factory, degrade_to_gps=args.degrade_to_gps, audit_logger=audit_logger)

    try:
        if args.command == "ingest":
            stats = await pipeline.ingest_catalog(records, args.concurrency)
            report = OutputBuilder.build_ingestion_report(
                stats.to_dict(),
                {"input": str(args.input), "skipped_records": len(validation.errors)},
            )
            OutputBuilder.save_json(args.output or INGESTION_REPORT_FILE, report)
        elif args.command == "aggregate":
            listings = await pipeline.aggregate_search_results(records, concurrency=args.concurrency)
            output = OutputBuilder.build_search_output(listings)
            OutputBuilder.save_json(args.output or OUTPUT_DIR / "listings.json", output)
        else:
            results = await matcher.match_many(records, args.concurrency)
            rows = [
                {
                    "provider_id": r.provider_id,
                    "provider_hotel_id": r.provider_hotel_id,
                    "name": r.name,
                    **asdict(result),
                }
                for r, result in zip(records, results)
            ]
            if args.output:
                OutputBuilder.save_json(args.output, {"results": rows})
            else:
                print(json.dumps(rows, indent=2, default=str))
    finally:
        if isinstance(cache, RedisMappingCache):
            await cache.close()
        await store.close()
    return 0


def main(argv=None):
    """Execute the selected command."""
    args = parse_args(argv)
    try:
        logger.info(f"Hotel identity resolution: {args.command} {args.input}")
        return asyncio.run(run(args))
    except HotelIdentityError as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""
Postgres-backed canonical store (asyncpg + pgvector).

Vectors are passed as pgvector text literals (``'[0.1,0.2,...]'::text::vector``)
so no client-side codec is needed.
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import asyncpg

from config.logging_config import get_logger
from config.settings import DATABASE_URL, EMBEDDING_DIMENSION
from hotel_identity.exceptions import (
    CollaboratorUnavailable,
    CrossReferenceConflictError,
    SlugConflictError,
)
from hotel_identity.models import (
    CanonicalHotel,
    GeoCandidate,
    MatchMethod,
    ProviderMapping,
    VectorCandidate,
)
from hotel_identity.similarity import EARTH_RADIUS_KM, normalize_name

logger = get_logger(__name__)

SLUG_CONSTRAINT = "canonical_hotels_slug_key"
CROSS_REFERENCE_CONSTRAINT = "canonical_hotels_cross_reference_id_key"

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS canonical_hotels (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    normalized_name TEXT NOT NULL,
    slug TEXT NOT NULL,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    city TEXT NOT NULL DEFAULT '',
    state TEXT,
    country TEXT NOT NULL DEFAULT '',
    star_rating DOUBLE PRECISION,
    description TEXT NOT NULL DEFAULT '',
    images TEXT[] NOT NULL DEFAULT '{{}}',
    amenities TEXT[] NOT NULL DEFAULT '{{}}',
    name_embedding vector({dimension}),
    cross_reference_id TEXT,
    match_confidence DOUBLE PRECISION NOT NULL DEFAULT 1.0,
    provider_count INTEGER NOT NULL DEFAULT 0,
    ad_approvable BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT canonical_hotels_slug_key UNIQUE (slug),
    CONSTRAINT canonical_hotels_cross_reference_id_key UNIQUE (cross_reference_id),
    CONSTRAINT canonical_hotels_cross_reference_trust CHECK (
        cross_reference_id IS NULL OR (match_confidence = 1.0 AND ad_approvable)
    )
);

CREATE INDEX IF NOT EXISTS idx_canonical_hotels_embedding
    ON canonical_hotels USING hnsw (name_embedding vector_cosine_ops);

CREATE TABLE IF NOT EXISTS provider_mappings (
    canonical_hotel_id TEXT NOT NULL REFERENCES canonical_hotels(id),
    provider_id TEXT NOT NULL,
    provider_hotel_id TEXT NOT NULL,
    match_confidence DOUBLE PRECISION NOT NULL,
    match_method TEXT NOT NULL CHECK (match_method IN ('cache', 'rag', 'gps', 'initial')),
    include_in_ads BOOLEAN NOT NULL DEFAULT FALSE,
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    verified_by TEXT,
    verified_at TIMESTAMPTZ,
    raw_provider_data JSONB NOT NULL DEFAULT '{{}}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (provider_id, provider_hotel_id),
    CONSTRAINT provider_mappings_ads_confidence CHECK (NOT include_in_ads OR match_confidence >= 0.98)
);

CREATE INDEX IF NOT EXISTS idx_provider_mappings_canonical
    ON provider_mappings(canonical_hotel_id);
"""

# Columns update_canonical_hotel may touch
_UPDATABLE_COLUMNS = (
    "name", "slug", "latitude", "longitude", "city", "state", "country",
    "star_rating", "description", "images", "amenities", "name_embedding",
    "cross_reference_id", "match_confidence", "provider_count", "ad_approvable",
)

_HOTEL_COLUMNS = """
    id, name, normalized_name, slug, latitude, longitude, city, state, country,
    star_rating, description, images, amenities, name_embedding::text AS name_embedding,
    cross_reference_id, match_confidence, provider_count, ad_approvable,
    created_at, updated_at
"""

_MAPPING_COLUMNS = """
    canonical_hotel_id, provider_id, provider_hotel_id, match_confidence,
    match_method, include_in_ads, verified, verified_by, verified_at,
    raw_provider_data::text AS raw_provider_data, created_at, updated_at
"""


def vector_literal(vector: List[float]) -> str:
    """pgvector text form: '[0.1,0.2,0.3]'."""
    return "[" + ",".join(repr(float(x)) for x in vector) + "]"


def parse_vector(text: Optional[str]) -> List[float]:
    if not text:
        return []
    return [float(x) for x in text.strip("[]").split(",") if x]


def _row_to_hotel(row: asyncpg.Record) -> CanonicalHotel:
    return CanonicalHotel(
        id=row["id"],
        name=row["name"],
        normalized_name=row["normalized_name"],
        slug=row["slug"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        city=row["city"],
        state=row["state"],
        country=row["country"],
        star_rating=row["star_rating"],
        description=row["description"],
        images=list(row["images"] or []),
        amenities=list(row["amenities"] or []),
        name_embedding=parse_vector(row["name_embedding"]),
        cross_reference_id=row["cross_reference_id"],
        match_confidence=row["match_confidence"],
        provider_count=row["provider_count"],
        ad_approvable=row["ad_approvable"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_mapping(row: asyncpg.Record) -> ProviderMapping:
    return ProviderMapping(
        canonical_hotel_id=row["canonical_hotel_id"],
        provider_id=row["provider_id"],
        provider_hotel_id=row["provider_hotel_id"],
        match_confidence=row["match_confidence"],
        match_method=MatchMethod(row["match_method"]),
        include_in_ads=row["include_in_ads"],
        verified=row["verified"],
        verified_by=row["verified_by"],
        verified_at=row["verified_at"],
        raw_provider_data=json.loads(row["raw_provider_data"] or "{}"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _raise_conflict(error: asyncpg.UniqueViolationError, hotel: Dict[str, Any]):
    constraint = getattr(error, "constraint_name", None)
    if constraint == CROSS_REFERENCE_CONSTRAINT:
        raise CrossReferenceConflictError(hotel.get("cross_reference_id")) from error
    if constraint == SLUG_CONSTRAINT:
        raise SlugConflictError(hotel.get("slug")) from error
    raise error


class PostgresCanonicalStore:
    """Canonical store on Postgres with the pgvector extension."""

    def __init__(self, pool: asyncpg.Pool, dimension: int = EMBEDDING_DIMENSION):
        self._pool = pool
        self.dimension = dimension

    @classmethod
    async def connect(
        cls,
        dsn: str = DATABASE_URL,
        dimension: int = EMBEDDING_DIMENSION,
        min_size: int = 1,
        max_size: int = 10,
    ) -> "PostgresCanonicalStore":
        """Factory: open a connection pool."""
        if not dsn:
            raise CollaboratorUnavailable("store", "DATABASE_URL is not set")
        try:
            pool = await asyncpg.create_pool(
                dsn=dsn,
                min_size=min_size,
                max_size=max_size,
                command_timeout=60,
                max_inactive_connection_lifetime=300,
            )
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
            raise CollaboratorUnavailable("store", f"cannot connect: {e}") from e
        logger.info(f"Connected canonical store (pool {min_size}-{max_size})")
        return cls(pool, dimension)

    async def close(self) -> None:
        await self._pool.close()

    @asynccontextmanager
    async def _conn(self, transaction: bool = False):
        try:
            async with self._pool.acquire() as conn:
                if transaction:
                    async with conn.transaction():
                        yield conn
                else:
                    yield conn
        except (
            OSError,
            asyncio.TimeoutError,
            asyncpg.InterfaceError,
            asyncpg.PostgresConnectionError,
        ) as e:
            raise CollaboratorUnavailable("store", str(e)) from e

    async def create_schema(self) -> None:
        async with self._conn() as conn:
            await conn.execute(SCHEMA_SQL.format(dimension=self.dimension))
        logger.info("Canonical store schema ready")

    # -- canonical hotels ---------------------------------------------------

    async def insert_canonical_hotel(self, hotel: CanonicalHotel) -> str:
        canonical_id = hotel.id or str(uuid.uuid4())
        values = {
            "slug": hotel.slug,
            "cross_reference_id": hotel.cross_reference_id,
        }
        try:
            async with self._conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO canonical_hotels (
                        id, name, normalized_name, slug, latitude, longitude, city, state,
                        country, star_rating, description, images, amenities, name_embedding,
                        cross_reference_id, match_confidence, provider_count, ad_approvable
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13,
                        $14::text::vector, $15, $16, $17, $18
                    )
                    """,
                    canonical_id, hotel.name, normalize_name(hotel.name), hotel.slug,
                    hotel.latitude, hotel.longitude, hotel.city, hotel.state, hotel.country,
                    hotel.star_rating, hotel.description, list(hotel.images),
                    list(hotel.amenities),
                    vector_literal(hotel.name_embedding) if hotel.name_embedding else None,
                    hotel.cross_reference_id, hotel.match_confidence, hotel.provider_count,
                    hotel.ad_approvable,
                )
        except asyncpg.UniqueViolationError as e:
            _raise_conflict(e, values)
        logger.debug(f"Inserted canonical hotel {canonical_id} ({hotel.slug})")
        return canonical_id

    async def update_canonical_hotel(self, canonical_id: str, **changes) -> CanonicalHotel:
        unknown = set(changes) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        if changes.get("cross_reference_id"):
            changes["match_confidence"] = 1.0
            changes["ad_approvable"] = True
        if "name" in changes:
            changes["normalized_name"] = normalize_name(changes["name"])

        assignments = []
        args: List[Any] = [canonical_id]
        for column, value in changes.items():
            args.append(vector_literal(value) if column == "name_embedding" else value)
            cast = "::text::vector" if column == "name_embedding" else ""
            assignments.append(f"{column} = ${len(args)}{cast}")
        assignments.append("updated_at = now()")

        try:
            async with self._conn() as conn:
                row = await conn.fetchrow(
                    f"UPDATE canonical_hotels SET {', '.join(assignments)} "
                    f"WHERE id = $1 RETURNING {_HOTEL_COLUMNS}",
                    *args,
                )
        except asyncpg.UniqueViolationError as e:
            _raise_conflict(e, changes)
        if row is None:
            raise KeyError(f"Unknown canonical hotel: {canonical_id}")
        return _row_to_hotel(row)

    async def _fetch_hotel(self, where: str, value: str) -> Optional[CanonicalHotel]:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                f"SELECT {_HOTEL_COLUMNS} FROM canonical_hotels WHERE {where} = $1", value
            )
        return _row_to_hotel(row) if row else None

    async def get_canonical_hotel(self, canonical_id: str) -> Optional[CanonicalHotel]:
        return await self._fetch_hotel("id", canonical_id)

    async def get_canonical_hotel_by_slug(self, slug: str) -> Optional[CanonicalHotel]:
        return await self._fetch_hotel("slug", slug)

    async def get_canonical_hotel_by_cross_reference(self, cross_reference_id: str) -> Optional[CanonicalHotel]:
        return await self._fetch_hotel("cross_reference_id", cross_reference_id)

    # -- search -------------------------------------------------------------

    async def vector_search(
        self, query_vector: List[float], similarity_floor: float, top_k: int
    ) -> List[VectorCandidate]:
        async with self._conn() as conn:
            rows = await conn.fetch(
                """
                SELECT id, name, latitude, longitude,
                       1 - (name_embedding <=> $1::text::vector) AS similarity
                FROM canonical_hotels
                WHERE name_embedding IS NOT NULL
                  AND 1 - (name_embedding <=> $1::text::vector) >= $2
                ORDER BY name_embedding <=> $1::text::vector, created_at
                LIMIT $3
                """,
                vector_literal(query_vector), similarity_floor, top_k,
            )
        return [
            VectorCandidate(
                id=r["id"],
                name=r["name"],
                latitude=r["latitude"],
                longitude=r["longitude"],
                similarity=float(r["similarity"]),
            )
            for r in rows
        ]

    async def geo_radius_search(
        self, latitude: float, longitude: float, radius_km: float, limit: int
    ) -> List[GeoCandidate]:
        async with self._conn() as conn:
            rows = await conn.fetch(
                """
                SELECT id, name, latitude, longitude, distance_km FROM (
                    SELECT id, name, latitude, longitude, created_at,
                        2 * $5 * asin(least(1.0, sqrt(
                            power(sin(radians(latitude - $1) / 2), 2)
                            + cos(radians($1)) * cos(radians(latitude))
                            * power(sin(radians(longitude - $2) / 2), 2)
                        ))) AS distance_km
                    FROM canonical_hotels
                    WHERE latitude IS NOT NULL AND longitude IS NOT NULL
                ) nearby
                WHERE distance_km <= $3
                ORDER BY distance_km, created_at
                LIMIT $4
                """,
                latitude, longitude, radius_km, limit, EARTH_RADIUS_KM,
            )
        return [
            GeoCandidate(id=r["id"], name=r["name"], latitude=r["latitude"], longitude=r["longitude"])
            for r in rows
        ]

    # -- provider mappings --------------------------------------------------

    async def get_mapping(self, provider_id: str, provider_hotel_id: str) -> Optional[ProviderMapping]:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                f"SELECT {_MAPPING_COLUMNS} FROM provider_mappings "
                "WHERE provider_id = $1 AND provider_hotel_id = $2",
                provider_id, provider_hotel_id,
            )
        return _row_to_mapping(row) if row else None

    async def upsert_mapping(self, mapping: ProviderMapping) -> ProviderMapping:
        async with self._conn(transaction=True) as conn:
            previous = await conn.fetchval(
                "SELECT canonical_hotel_id FROM provider_mappings "
                "WHERE provider_id = $1 AND provider_hotel_id = $2 FOR UPDATE",
                mapping.provider_id, mapping.provider_hotel_id,
            )
            row = await conn.fetchrow(
                f"""
                INSERT INTO provider_mappings (
                    canonical_hotel_id, provider_id, provider_hotel_id, match_confidence,
                    match_method, include_in_ads, verified, verified_by, verified_at,
                    raw_provider_data
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
                ON CONFLICT (provider_id, provider_hotel_id) DO UPDATE SET
                    canonical_hotel_id = EXCLUDED.canonical_hotel_id,
                    match_confidence = EXCLUDED.match_confidence,
                    match_method = EXCLUDED.match_method,
                    include_in_ads = EXCLUDED.include_in_ads,
                    verified = EXCLUDED.verified,
                    verified_by = EXCLUDED.verified_by,
                    verified_at = EXCLUDED.verified_at,
                    raw_provider_data = EXCLUDED.raw_provider_data,
                    updated_at = now()
                RETURNING {_MAPPING_COLUMNS}
                """,
                mapping.canonical_hotel_id, mapping.provider_id, mapping.provider_hotel_id,
                mapping.match_confidence, mapping.match_method.value, mapping.include_in_ads,
                mapping.verified, mapping.verified_by, mapping.verified_at,
                json.dumps(mapping.raw_provider_data, default=str),
            )

            touched = {mapping.canonical_hotel_id}
            if previous:
                touched.add(previous)
            await conn.execute(
                """
                UPDATE canonical_hotels c SET
                    provider_count = (
                        SELECT count(*) FROM provider_mappings m WHERE m.canonical_hotel_id = c.id
                    ),
                    updated_at = now()
                WHERE c.id = ANY($1::text[])
                """,
                list(touched),
            )
        return _row_to_mapping(row)

    async def list_mappings(self, canonical_id: str) -> List[ProviderMapping]:
        async with self._conn() as conn:
            rows = await conn.fetch(
                f"SELECT {_MAPPING_COLUMNS} FROM provider_mappings "
                "WHERE canonical_hotel_id = $1 ORDER BY created_at",
                canonical_id,
            )
        return [_row_to_mapping(r) for r in rows]

    async def count_canonical_hotels(self) -> int:
        async with self._conn() as conn:
            return await conn.fetchval("SELECT count(*) FROM canonical_hotels")

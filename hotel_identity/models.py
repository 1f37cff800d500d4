"""Data models shared by the matcher, factory, store and merger."""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple

# Payload keys that carry an industry cross-reference id (GIATA code)
CROSS_REFERENCE_KEYS = ("crossReferenceId", "cross_reference_id", "giataId", "giata_id", "giata")
RATE_KEY_KEYS = ("rateKey", "rate_key")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MatchMethod(str, Enum):
    """How a provider mapping was established."""
    CACHE = "cache"
    RAG = "rag"
    GPS = "gps"
    INITIAL = "initial"


class MatchOutcome(str, Enum):
    """How a match call was resolved."""
    CACHE = "cache"
    RAG = "rag"
    GPS = "gps"
    NO_MATCH = "no_match"


# ========================================================================
# PROVIDER INPUT
# ========================================================================


@dataclass(frozen=True)
class ProviderHotelRecord:
    """One hotel as returned by one provider for one search."""
    provider_id: str
    provider_hotel_id: str
    name: str
    address: str = ""
    city: str = ""
    country: str = ""
    state: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    star_rating: Optional[float] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    price: float = 0.0
    currency: str = "USD"
    images: Tuple[str, ...] = ()
    amenities: Tuple[str, ...] = ()
    description: Optional[str] = None
    cross_reference_id: Optional[str] = None
    rate_key: Optional[str] = None
    raw_metadata: str = "{}"  # opaque provider payload, JSON encoded

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def comparison_text(self) -> str:
        """Text used to embed the hotel: name, address, city, state, country."""
        parts = [self.name, self.address, self.city, self.state or "", self.country]
        return ", ".join(p.strip() for p in parts if p and p.strip())

    def snapshot(self) -> Dict[str, Any]:
        """Plain dict copy kept on the provider mapping for re-matching."""
        return asdict(self)

    @classmethod
    def from_provider_payload(cls, payload: Dict[str, Any], provider_id: Optional[str] = None) -> "ProviderHotelRecord":
        """
        Build a record from a loosely-typed provider payload.

        Well-known fields are pulled out explicitly; the provider-specific
        ``metadata`` map is kept only as an opaque JSON blob.

        Accepts camelCase (``providerHotelId``) or snake_case keys.
        """
        def pick(*keys, default=None):
            for key in keys:
                if key in payload and payload[key] is not None:
                    return payload[key]
            return default

        metadata = pick("metadata", default={}) or {}
        if not isinstance(metadata, dict):
            metadata = {"value": metadata}

        cross_reference_id = pick(*CROSS_REFERENCE_KEYS)
        if cross_reference_id is None:
            cross_reference_id = next(
                (metadata[k] for k in CROSS_REFERENCE_KEYS if metadata.get(k)), None
            )
        rate_key = pick(*RATE_KEY_KEYS)
        if rate_key is None:
            rate_key = next((metadata[k] for k in RATE_KEY_KEYS if metadata.get(k)), None)

        latitude = pick("latitude", "lat")
        longitude = pick("longitude", "lng", "lon")
        star_rating = pick("starRating", "star_rating")
        rating = pick("rating")
        review_count = pick("reviewCount", "review_count")

        return cls(
            provider_id=str(pick("providerId", "provider_id", default=provider_id or "")),
            provider_hotel_id=str(pick("providerHotelId", "provider_hotel_id", "hotelCode", "hotel_code", default="")),
            name=str(pick("name", default="") or "").strip(),
            address=str(pick("address", default="") or ""),
            city=str(pick("city", default="") or ""),
            country=str(pick("country", default="") or ""),
            state=pick("state"),
            latitude=float(latitude) if latitude is not None else None,
            longitude=float(longitude) if longitude is not None else None,
            star_rating=float(star_rating) if star_rating is not None else None,
            rating=float(rating) if rating is not None else None,
            review_count=int(review_count) if review_count is not None else None,
            price=float(pick("price", default=0.0)),
            currency=str(pick("currency", default="USD")),
            images=tuple(pick("images", default=[]) or []),
            amenities=tuple(pick("amenities", default=[]) or []),
            description=pick("description"),
            cross_reference_id=str(cross_reference_id) if cross_reference_id else None,
            rate_key=str(rate_key) if rate_key else None,
            raw_metadata=json.dumps(metadata, sort_keys=True, default=str),
        )


@dataclass
class RoomOffer:
    """A bookable room from a single provider's detail response."""
    room_id: str
    room_type: str
    price: float
    currency: str
    max_occupancy: int = 2
    description: Optional[str] = None
    bed_type: Optional[str] = None
    available: bool = True
    amenities: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HotelDetails:
    """Detail-page payload: the record plus rooms and policies."""
    record: ProviderHotelRecord
    rooms: List[RoomOffer] = field(default_factory=list)
    policies: Dict[str, Any] = field(default_factory=dict)
    contact_info: Dict[str, Any] = field(default_factory=dict)


# ========================================================================
# PERSISTENT ENTITIES
# ========================================================================


@dataclass
class CanonicalHotel:
    """The single deduplicated representation of a physical property."""
    id: str
    name: str
    normalized_name: str
    slug: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    city: str = ""
    state: Optional[str] = None
    country: str = ""
    star_rating: Optional[float] = None
    description: str = ""
    images: List[str] = field(default_factory=list)
    amenities: List[str] = field(default_factory=list)
    name_embedding: List[float] = field(default_factory=list)
    cross_reference_id: Optional[str] = None
    match_confidence: float = 1.0
    provider_count: int = 0
    ad_approvable: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.cross_reference_id:
            self.match_confidence = 1.0
            self.ad_approvable = True


@dataclass
class ProviderMapping:
    """Link from one provider's hotel id to a canonical hotel."""
    canonical_hotel_id: str
    provider_id: str
    provider_hotel_id: str
    match_confidence: float
    match_method: MatchMethod
    include_in_ads: bool = False
    verified: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    raw_provider_data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    # Advertising requires near-certainty
    INCLUDE_IN_ADS_MIN_CONFIDENCE = 0.98

    def __post_init__(self):
        self.match_method = MatchMethod(self.match_method)
        if self.match_confidence < self.INCLUDE_IN_ADS_MIN_CONFIDENCE:
            self.include_in_ads = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.provider_id, self.provider_hotel_id)


@dataclass(frozen=True)
class VectorCandidate:
    """Row returned by the store's vector similarity search."""
    id: str
    name: str
    latitude: Optional[float]
    longitude: Optional[float]
    similarity: float


@dataclass(frozen=True)
class GeoCandidate:
    """Row returned by the store's geo-radius search."""
    id: str
    name: str
    latitude: float
    longitude: float


# ========================================================================
# MATCH RESULT
# ========================================================================


@dataclass
class MatchDiagnostics:
    """Score breakdown for the winning candidate."""
    embedding_score: Optional[float] = None
    location_score: Optional[float] = None
    name_score: Optional[float] = None
    candidate_count: int = 0
    distance_km: Optional[float] = None


@dataclass
class MatchResult:
    """Outcome of matching one provider record."""
    canonical_id: Optional[str]
    confidence: float
    method: MatchOutcome
    should_advertise: bool
    diagnostics: Optional[MatchDiagnostics] = None

    @property
    def matched(self) -> bool:
        return self.canonical_id is not None and self.method != MatchOutcome.NO_MATCH

    @classmethod
    def no_match(cls, diagnostics: Optional[MatchDiagnostics] = None) -> "MatchResult":
        return cls(
            canonical_id=None,
            confidence=0.0,
            method=MatchOutcome.NO_MATCH,
            should_advertise=False,
            diagnostics=diagnostics,
        )


# ========================================================================
# MERGED VIEWS
# ========================================================================


@dataclass
class MatchedRecord:
    """A provider record together with how it matched."""
    record: ProviderHotelRecord
    match: MatchResult
    provider_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.provider_name or self.record.provider_id


@dataclass
class UnifiedImage:
    url: str
    source: str
    is_primary: bool


@dataclass
class ProviderOffer:
    provider_id: str
    provider_name: str
    provider_hotel_id: str
    price: float
    confidence: float


@dataclass
class DataSources:
    """Which provider contributed which field."""
    pricing: str
    images: List[str] = field(default_factory=list)
    description: List[str] = field(default_factory=list)
    amenities: List[str] = field(default_factory=list)


@dataclass
class UnifiedListing:
    """One search-result row per canonical hotel."""
    canonical_id: Optional[str]
    name: str
    price: float
    currency: str
    selected_provider: ProviderOffer
    images: List[UnifiedImage]
    description: str
    amenities: List[str]
    all_offers: List[ProviderOffer]
    data_sources: DataSources
    star_rating: Optional[float] = None
    primary_source: Optional[str] = None


@dataclass
class UnifiedDetails(UnifiedListing):
    """Detail-page view; rooms and policies come from one provider only."""
    primary_provider: str = ""
    rooms: List[RoomOffer] = field(default_factory=list)
    policies: Dict[str, Any] = field(default_factory=dict)
    address: str = ""
    city: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    contact_info: Dict[str, Any] = field(default_factory=dict)


def mapping_to_dict(mapping: ProviderMapping) -> Dict[str, Any]:
    """JSON-ready dict for a provider mapping."""
    data = asdict(mapping)
    data["match_method"] = mapping.match_method.value
    for key in ("created_at", "updated_at", "verified_at"):
        if data[key] is not None:
            data[key] = data[key].isoformat()
    return data


def mapping_from_dict(data: Dict[str, Any]) -> ProviderMapping:
    """Inverse of mapping_to_dict."""
    values = dict(data)
    for key in ("created_at", "updated_at", "verified_at"):
        if isinstance(values.get(key), str):
            values[key] = datetime.fromisoformat(values[key])
    return ProviderMapping(**values)

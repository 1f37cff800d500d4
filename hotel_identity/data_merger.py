"""
Data merger: combines matched provider records for one canonical hotel
into a single display listing or detail view.

Pricing always comes from the cheapest offer. Content (images, amenities,
description) only comes from trusted records: those carrying the
cross-reference id or matched with confidence >= 0.99. Rooms and policies
on the detail view come from the booking provider alone and are never mixed.
"""

import re
from typing import Iterable, List, Optional, Sequence

from config.logging_config import get_logger
from config.settings import MergeConfig
from hotel_identity.models import (
    DataSources,
    HotelDetails,
    MatchedRecord,
    ProviderHotelRecord,
    ProviderOffer,
    UnifiedDetails,
    UnifiedImage,
    UnifiedListing,
)

logger = get_logger(__name__)

DEFAULT_MERGE_CONFIG = MergeConfig()

_WORD_START = re.compile(r"\b\w")


# ========================================================================
# FIELD RULES
# ========================================================================


def normalize_amenity(amenity: str) -> str:
    """Title-case an amenity and collapse whitespace: ' free  WIFI' -> 'Free Wifi'."""
    text = " ".join(amenity.split()).lower()
    return _WORD_START.sub(lambda m: m.group(0).upper(), text)


def data_quality_score(record: ProviderHotelRecord) -> int:
    """Completeness score used to pick the primary record of a listing."""
    score = 0
    if record.description and len(record.description) > 50:
        score += 3
    if len(record.images) >= 1:
        score += 2
    if len(record.images) > 3:
        score += 2
    if len(record.amenities) >= 1:
        score += 1
    if len(record.amenities) > 5:
        score += 2
    if record.star_rating is not None:
        score += 1
    if record.rating is not None:
        score += 1
    if record.has_coordinates:
        score += 1
    return score


def select_primary_record(records: Sequence[MatchedRecord]) -> MatchedRecord:
    """Highest data-quality score; ties go to the first seen."""
    if not records:
        raise ValueError("Cannot select a primary record from an empty list")
    best = records[0]
    best_score = data_quality_score(best.record)
    for matched in records[1:]:
        score = data_quality_score(matched.record)
        if score > best_score:
            best, best_score = matched, score
    return best


def is_trusted(matched: MatchedRecord, config: MergeConfig = DEFAULT_MERGE_CONFIG) -> bool:
    """Trusted records may contribute images, amenities and description."""
    if config.use_cross_reference_for_trust and matched.record.cross_reference_id:
        return True
    return matched.match.confidence >= config.trusted_confidence_threshold


def merge_images(
    records: Sequence[MatchedRecord], per_provider_limit: Optional[int] = None
) -> List[UnifiedImage]:
    """
    Union of image URLs, deduplicated by exact URL and tagged with the
    source provider. Images of the first record are marked primary.
    """
    seen = set()
    images = []
    for index, matched in enumerate(records):
        urls = list(matched.record.images)
        if per_provider_limit is not None:
            urls = urls[:per_provider_limit]
        for url in urls:
            if not url or url in seen:
                continue
            seen.add(url)
            images.append(UnifiedImage(url=url, source=matched.display_name, is_primary=index == 0))
    return images


def merge_amenities(records: Iterable[ProviderHotelRecord]) -> List[str]:
    """Normalized, deduplicated and alphabetically sorted amenity union."""
    amenities = set()
    for record in records:
        for amenity in record.amenities:
            if amenity and amenity.strip():
                amenities.add(normalize_amenity(amenity))
    return sorted(amenities)


def best_description(records: Iterable[ProviderHotelRecord]) -> str:
    """Longest non-empty description; the first seen wins on equal length."""
    best = ""
    for record in records:
        description = (record.description or "").strip()
        if len(description) > len(best):
            best = description
    return best


def should_show_price_comparison(
    offers: Sequence[ProviderOffer], threshold: float = DEFAULT_MERGE_CONFIG.price_comparison_threshold
) -> bool:
    """True when the most expensive offer is at least ``threshold`` above the cheapest."""
    if len(offers) < 2:
        return False
    prices = [offer.price for offer in offers]
    cheapest, most_expensive = min(prices), max(prices)
    if cheapest <= 0:
        return most_expensive > cheapest
    return (most_expensive - cheapest) / cheapest >= threshold


def all_have_matching_cross_reference(records: Sequence[MatchedRecord]) -> bool:
    """At least two records, and every cross-reference id present is the same."""
    if len(records) < 2:
        return False
    ids = [m.record.cross_reference_id for m in records if m.record.cross_reference_id]
    if not ids:
        return False
    return all(xref == ids[0] for xref in ids)


def _offer(matched: MatchedRecord, confidence: Optional[float] = None) -> ProviderOffer:
    return ProviderOffer(
        provider_id=matched.record.provider_id,
        provider_name=matched.display_name,
        provider_hotel_id=matched.record.provider_hotel_id,
        price=matched.record.price,
        confidence=matched.match.confidence if confidence is None else confidence,
    )


# ========================================================================
# ENTRY POINTS
# ========================================================================


def merge_hotel_listings(
    matched_records: Sequence[MatchedRecord], config: MergeConfig = DEFAULT_MERGE_CONFIG
) -> UnifiedListing:
    """
    Merge every matched record of one canonical hotel into a search listing.

    The cheapest record sets price and selected provider. Name and star
    rating come from the record with the best data-quality score. A group
    without any trusted record falls back to the primary record's content
    so a standalone listing still renders.
    """
    if not matched_records:
        raise ValueError("merge_hotel_listings needs at least one record")

    by_price = sorted(matched_records, key=lambda m: m.record.price)
    cheapest = by_price[0]
    primary = select_primary_record(matched_records)

    trusted = [m for m in matched_records if is_trusted(m, config)]
    if not trusted:
        trusted = [primary]
    # Best-quality trusted record first; its images are the primary ones
    trusted.sort(key=lambda m: -data_quality_score(m.record))

    images = merge_images(trusted)
    amenity_sources = [m for m in trusted if m.record.amenities]
    canonical_id = next((m.match.canonical_id for m in matched_records if m.match.canonical_id), None)

    return UnifiedListing(
        canonical_id=canonical_id,
        name=primary.record.name,
        price=cheapest.record.price,
        currency=cheapest.record.currency,
        selected_provider=_offer(cheapest),
        images=images,
        description=best_description(m.record for m in trusted),
        amenities=merge_amenities(m.record for m in trusted),
        all_offers=[_offer(m) for m in by_price],
        data_sources=DataSources(
            pricing=cheapest.display_name,
            images=list(dict.fromkeys(image.source for image in images)),
            description=[m.display_name for m in trusted if m.record.description],
            amenities=[m.display_name for m in amenity_sources],
        ),
        star_rating=primary.record.star_rating,
        primary_source=primary.display_name,
    )


def merge_hotel_details(
    primary: MatchedRecord,
    details: HotelDetails,
    others: Sequence[MatchedRecord] = (),
    config: MergeConfig = DEFAULT_MERGE_CONFIG,
) -> UnifiedDetails:
    """
    Detail view for the provider the user books through.

    Rooms, policies, contact info and location are copied from ``details``
    only. Trusted other providers may add up to ``max_images_per_provider``
    images each, plus amenities, and a description when the primary has none.
    """
    record = details.record
    booking = MatchedRecord(record=record, match=primary.match, provider_name=primary.provider_name)
    trusted_others = [m for m in others if is_trusted(m, config)]

    images = merge_images([booking])
    seen = {image.url for image in images}
    for matched in trusted_others:
        for image in merge_images([matched], per_provider_limit=config.max_images_per_provider):
            if image.url in seen:
                continue
            seen.add(image.url)
            images.append(UnifiedImage(url=image.url, source=image.source, is_primary=False))

    description = (record.description or "").strip()
    description_sources = [booking.display_name] if description else []
    if not description:
        description = best_description(m.record for m in trusted_others)
        description_sources = [
            m.display_name for m in trusted_others
            if description and (m.record.description or "").strip() == description
        ][:1]

    amenity_sources = [m for m in [booking] + trusted_others if m.record.amenities]
    amenity_records = [record] + [m.record for m in trusted_others]
    all_offers = sorted(
        [_offer(booking, confidence=1.0)] + [_offer(m) for m in others],
        key=lambda offer: offer.price,
    )

    return UnifiedDetails(
        canonical_id=primary.match.canonical_id,
        name=record.name,
        price=record.price,
        currency=record.currency,
        selected_provider=_offer(booking, confidence=1.0),
        images=images,
        description=description,
        amenities=merge_amenities(amenity_records),
        all_offers=all_offers,
        data_sources=DataSources(
            pricing=booking.display_name,
            images=list(dict.fromkeys(image.source for image in images)),
            description=description_sources,
            amenities=[m.display_name for m in amenity_sources],
        ),
        star_rating=record.star_rating,
        primary_source=booking.display_name,
        primary_provider=record.provider_id,
        rooms=list(details.rooms),
        policies=dict(details.policies),
        address=record.address,
        city=record.city,
        latitude=record.latitude,
        longitude=record.longitude,
        contact_info=dict(details.contact_info),
    )

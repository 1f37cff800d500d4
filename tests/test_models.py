"""Tests for record parsing and entity invariants."""

import json

import pytest

from conftest import make_record
from hotel_identity.models import (
    CanonicalHotel,
    MatchMethod,
    MatchOutcome,
    MatchResult,
    ProviderHotelRecord,
    ProviderMapping,
    mapping_from_dict,
    mapping_to_dict,
)


def test_from_provider_payload_camel_case():
    record = ProviderHotelRecord.from_provider_payload({
        "providerId": "hotelbeds",
        "providerHotelId": 5662,
        "name": "  Apartamentos Soldoiro ",
        "lat": "37.0871",
        "lng": -8.247,
        "starRating": 3,
        "price": 118.5,
        "currency": "EUR",
        "images": ["https://img/1.jpg"],
        "metadata": {"giataId": 12345, "rateKey": "RK-1", "board": "BB"},
    })

    assert record.provider_hotel_id == "5662"
    assert record.name == "Apartamentos Soldoiro"
    assert record.latitude == pytest.approx(37.0871)
    assert record.star_rating == 3.0
    assert record.images == ("https://img/1.jpg",)
    assert record.cross_reference_id == "12345"
    assert record.rate_key == "RK-1"
    assert json.loads(record.raw_metadata)["board"] == "BB"


def test_from_provider_payload_snake_case_and_default_provider():
    record = ProviderHotelRecord.from_provider_payload(
        {"provider_hotel_id": "X1", "name": "Hotel X", "cross_reference_id": "G-5"},
        provider_id="expedia",
    )
    assert record.provider_id == "expedia"
    assert record.cross_reference_id == "G-5"
    assert record.has_coordinates is False
    assert record.currency == "USD"


def test_comparison_text_skips_blank_parts():
    record = make_record(address=" ", state=None, country="ES")
    assert record.comparison_text() == "Grand Hotel Central, Barcelona, ES"


def test_records_are_immutable():
    record = make_record()
    with pytest.raises(AttributeError):
        record.name = "Other"


@pytest.mark.parametrize("confidence, requested, expected", [
    (1.0, True, True),
    (0.98, True, True),
    (0.979, True, False),
    (1.0, False, False),
])
def test_mapping_include_in_ads_gate(confidence, requested, expected):
    mapping = ProviderMapping(
        canonical_hotel_id="c-1",
        provider_id="amadeus",
        provider_hotel_id="H1",
        match_confidence=confidence,
        match_method="gps",
        include_in_ads=requested,
    )
    assert mapping.include_in_ads is expected
    assert mapping.match_method == MatchMethod.GPS


def test_cross_reference_forces_canonical_trust():
    hotel = CanonicalHotel(
        id="c-1", name="Hotel Arts", normalized_name="hotel arts", slug="hotel-arts",
        match_confidence=0.8, cross_reference_id="G-1",
    )
    assert hotel.match_confidence == 1.0
    assert hotel.ad_approvable is True


def test_mapping_dict_round_trip():
    mapping = ProviderMapping(
        canonical_hotel_id="c-1",
        provider_id="amadeus",
        provider_hotel_id="H1",
        match_confidence=0.99,
        match_method=MatchMethod.RAG,
        include_in_ads=True,
        raw_provider_data={"name": "Hotel Arts"},
    )

    data = mapping_to_dict(mapping)
    assert data["match_method"] == "rag"
    assert isinstance(data["created_at"], str)

    restored = mapping_from_dict(json.loads(json.dumps(data)))
    assert restored == mapping


def test_no_match_result():
    result = MatchResult.no_match()
    assert result.method == MatchOutcome.NO_MATCH
    assert result.confidence == 0.0
    assert result.matched is False

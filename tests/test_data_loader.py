"""Unit tests for data loader module."""

import json

import pytest
from pathlib import Path

from hotel_identity.data_loader import DataLoader, DataLoaderException


def _write(tmp_path, payload, name="records.json"):
    path = tmp_path / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def sample_json_file(tmp_path):
    """Create a sample provider file for testing."""
    return _write(tmp_path, {
        "hotels": [
            {
                "providerId": "hotelbeds",
                "providerHotelId": "HB005662",
                "name": "Apartamentos Soldoiro",
                "city": "Albufeira",
                "latitude": 37.0871,
                "longitude": -8.2470,
                "price": 118.5,
                "metadata": {"giataId": "12345"},
            },
            {
                "providerId": "hotelbeds",
                "providerHotelId": "HB000001",
                "name": "Hotel Sem Coordenadas",
                "price": 90,
            },
        ]
    })


def test_load_provider_records(sample_json_file):
    """Test loading a file wrapped in a "hotels" object."""
    loader = DataLoader()
    records, validation = loader.load_provider_records(sample_json_file)

    assert [r.provider_hotel_id for r in records] == ["HB005662", "HB000001"]
    assert records[0].cross_reference_id == "12345"
    assert validation.total_records == 2
    assert validation.valid_records == 2
    assert loader.get_stats() == {
        "records_loaded": 2,
        "records_skipped": 0,
        "records_with_coordinates": 1,
        "records_with_cross_reference": 1,
    }


def test_default_provider_id(tmp_path):
    """Test payloads without providerId take the default."""
    path = _write(tmp_path, [{"providerHotelId": "X1", "name": "Hotel X"}])
    records, _ = DataLoader().load_provider_records(path, provider_id="expedia")
    assert records[0].provider_id == "expedia"


def test_invalid_records_are_skipped(tmp_path):
    """Test lenient mode skips bad entries with warnings."""
    path = _write(tmp_path, [
        {"providerId": "a", "providerHotelId": "1", "name": "Valid"},
        {"providerId": "a", "providerHotelId": "2", "name": "   "},
        {"providerId": "a", "name": "No id"},
        {"providerId": "a", "providerHotelId": "3", "name": "Bad price", "price": "cheap"},
        "not a dict",
    ])
    loader = DataLoader()
    records, validation = loader.load_provider_records(path)

    assert len(records) == 1
    assert validation.is_valid is True
    assert len(validation.warnings) == 4
    assert loader.get_stats()["records_skipped"] == 4


def test_strict_mode_raises(tmp_path):
    """Test strict mode fails on the first file with invalid entries."""
    path = _write(tmp_path, [{"providerId": "a", "providerHotelId": "1", "name": ""}])
    with pytest.raises(DataLoaderException):
        DataLoader(strict_mode=True).load_provider_records(path)


def test_load_file_not_found():
    """Test error handling for missing file."""
    with pytest.raises(DataLoaderException):
        DataLoader().load_provider_records(Path("/nonexistent/file.json"))


def test_load_invalid_json(tmp_path):
    """Test error handling for invalid JSON."""
    test_file = tmp_path / "invalid.json"
    test_file.write_text("invalid json content")
    with pytest.raises(DataLoaderException):
        DataLoader().load_provider_records(test_file)


def test_load_wrong_top_level_type(tmp_path):
    """Test a JSON object without a hotels list is rejected."""
    path = _write(tmp_path, {"results": []})
    with pytest.raises(DataLoaderException):
        DataLoader().load_provider_records(path)


def test_reset_stats(sample_json_file):
    """Test statistics can be reset between files."""
    loader = DataLoader()
    loader.load_provider_records(sample_json_file)
    loader.reset_stats()
    assert all(value == 0 for value in loader.get_stats().values())

"""
Data Loader Module
==================
Loads and validates provider hotel payloads from JSON files and turns them
into ProviderHotelRecord objects.
"""
import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Any, Tuple, Optional

from config.logging_config import get_logger
from hotel_identity.exceptions import HotelIdentityError
from hotel_identity.models import ProviderHotelRecord

logger = get_logger(__name__)


@dataclass
class ValidationResult:
    """Result of data validation."""
    is_valid: bool
    errors: List[str]
    warnings: List[str]
    total_records: int
    valid_records: int


class DataLoaderException(HotelIdentityError):
    """Custom exception for data loading errors."""
    pass


class DataLoader:
    """
    Load and validate provider search results from JSON files.

    ACCEPTED FORMAT (a list, or an object with a "hotels" list):
    [
        {
            "providerId": "hotelbeds",
            "providerHotelId": "HB005662",
            "name": "Apartamentos Soldoiro",
            "address": "Rua do Soldoiro 7",
            "city": "Albufeira",
            "country": "PT",
            "latitude": 37.0871,
            "longitude": -8.2470,
            "starRating": 3,
            "price": 118.5,
            "currency": "EUR",
            "images": ["https://..."],
            "amenities": ["pool", "free wifi"],
            "metadata": {"giataId": "12345", "rateKey": "..."}
        }
    ]
    """

    def __init__(self, strict_mode: bool = False):
        self.strict_mode = strict_mode
        self.stats = {
            'records_loaded': 0,
            'records_skipped': 0,
            'records_with_coordinates': 0,
            'records_with_cross_reference': 0,
        }

    def load_provider_records(
        self, file_path: Path, provider_id: Optional[str] = None
    ) -> Tuple[List[ProviderHotelRecord], ValidationResult]:
        """
        Load provider records from ``file_path``.

        Args:
            file_path: JSON file with provider hotel payloads
            provider_id: Default provider id for payloads that carry none

        Returns:
            (records, validation result)

        Raises:
            DataLoaderException: unreadable file, or invalid entries in strict mode
        """
        logger.info(f"Loading provider records from: {file_path}")
        raw_data = self._load_json_file(file_path, "Provider records")

        if isinstance(raw_data, dict) and isinstance(raw_data.get("hotels"), list):
            raw_data = raw_data["hotels"]
        if not isinstance(raw_data, list):
            raise DataLoaderException(
                f"Provider records must be a list, got {type(raw_data).__name__}"
            )

        records = []
        errors = []
        warnings = []

        for idx, payload in enumerate(raw_data):
            validation_errors = self._validate_payload(payload, idx, provider_id)

            if validation_errors:
                error_msg = f"Record #{idx}: {', '.join(validation_errors)}"
                errors.append(error_msg)
                self.stats['records_skipped'] += 1

                if self.strict_mode:
                    logger.error(error_msg)
                else:
                    logger.warning(error_msg)
                    warnings.append(error_msg)
                continue

            try:
                record = ProviderHotelRecord.from_provider_payload(payload, provider_id=provider_id)
            except (TypeError, ValueError) as e:
                error_msg = f"Record #{idx}: cannot convert payload ({e})"
                errors.append(error_msg)
                warnings.append(error_msg)
                self.stats['records_skipped'] += 1
                logger.warning(error_msg)
                continue

            records.append(record)
            self.stats['records_loaded'] += 1
            if record.has_coordinates:
                self.stats['records_with_coordinates'] += 1
            if record.cross_reference_id:
                self.stats['records_with_cross_reference'] += 1

        validation_result = ValidationResult(
            is_valid=len(errors) == 0 if self.strict_mode else True,
            errors=errors,
            warnings=warnings,
            total_records=len(raw_data),
            valid_records=len(records),
        )

        logger.info(
            f"Loaded {len(records)}/{len(raw_data)} provider records. "
            f"With coordinates: {self.stats['records_with_coordinates']}. "
            f"With cross-reference: {self.stats['records_with_cross_reference']}. "
            f"Errors: {len(errors)}"
        )

        if self.strict_mode and errors:
            raise DataLoaderException(
                f"Provider record validation failed with {len(errors)} errors"
            )

        return records, validation_result

    def _validate_payload(self, payload: Any, idx: int, provider_id: Optional[str]) -> List[str]:
        errors = []

        if not isinstance(payload, dict):
            errors.append(f"Must be a dict, got {type(payload).__name__}")
            return errors

        if not (payload.get('providerId') or payload.get('provider_id') or provider_id):
            errors.append("Missing providerId")
        if not any(payload.get(k) for k in ('providerHotelId', 'provider_hotel_id', 'hotelCode', 'hotel_code')):
            errors.append("Missing providerHotelId")

        name = payload.get('name')
        if not isinstance(name, str) or not name.strip():
            errors.append("Missing or empty 'name'")

        price = payload.get('price')
        if price is not None and not isinstance(price, (int, float)):
            errors.append(f"'price' must be a number, got {type(price).__name__}")

        return errors

    def _load_json_file(self, file_path: Path, data_type: str) -> Any:
        """
        Load and parse JSON file with error handling.

        Raises:
            DataLoaderException: If file cannot be loaded or parsed
        """
        if not isinstance(file_path, Path):
            file_path = Path(file_path)

        if not file_path.exists():
            raise DataLoaderException(
                f"{data_type} file not found: {file_path}"
            )

        if not file_path.is_file():
            raise DataLoaderException(
                f"{data_type} path is not a file: {file_path}"
            )

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise DataLoaderException(
                f"Invalid JSON in {data_type} file: {file_path}. Error: {e}"
            ) from e
        except UnicodeDecodeError as e:
            raise DataLoaderException(
                f"Encoding error in {data_type} file: {file_path}. Error: {e}"
            ) from e

    def get_stats(self) -> Dict[str, int]:
        """Get loading statistics."""
        return self.stats.copy()

    def reset_stats(self):
        """Reset loading statistics."""
        for key in self.stats:
            self.stats[key] = 0

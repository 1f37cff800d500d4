"""Configuration settings for the hotel identity resolution engine."""

import os
from dataclasses import dataclass
from pathlib import Path

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Data paths
DATA_DIR = Path(os.getenv("HOTEL_IDENTITY_DATA_DIR", PROJECT_ROOT / "data"))
INPUT_DIR = DATA_DIR / "inputs"
OUTPUT_DIR = DATA_DIR / "outputs"
LOGS_DIR = DATA_DIR / "logs"

# Output files
INGESTION_REPORT_FILE = OUTPUT_DIR / "ingestion_report.json"

# Log files
MATCH_AUDIT_FILE = LOGS_DIR / "match_audit.jsonl"
MATCH_ERRORS_FILE = LOGS_DIR / "match_errors.log"

# Embedding service configuration
EMBEDDING_BACKEND = os.getenv("HOTEL_IDENTITY_EMBEDDING_BACKEND", "sentence-transformers")
EMBEDDING_MODEL = os.getenv("HOTEL_IDENTITY_EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
EMBEDDING_DIMENSION = int(os.getenv("HOTEL_IDENTITY_EMBEDDING_DIMENSION", "384"))
EMBEDDING_CACHE_SIZE = int(os.getenv("HOTEL_IDENTITY_EMBEDDING_CACHE_SIZE", "2048"))
GOOGLE_EMBEDDING_MODEL = os.getenv("HOTEL_IDENTITY_GOOGLE_EMBEDDING_MODEL", "models/text-embedding-004")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")

# Canonical store / mapping cache
DATABASE_URL = os.getenv("DATABASE_URL", "")
REDIS_URL = os.getenv("REDIS_URL", "")
MAPPING_CACHE_TTL_SECONDS = int(os.getenv("HOTEL_IDENTITY_MAPPING_CACHE_TTL", "86400"))
MAPPING_CACHE_MAX_ENTRIES = int(os.getenv("HOTEL_IDENTITY_MAPPING_CACHE_MAX_ENTRIES", "100000"))
MAPPING_CACHE_KEY_PREFIX = "hotel-mapping:"

# Matching
COLLABORATOR_TIMEOUT_SECONDS = float(os.getenv("HOTEL_IDENTITY_COLLABORATOR_TIMEOUT", "10"))
MATCH_CONCURRENCY = int(os.getenv("HOTEL_IDENTITY_MATCH_CONCURRENCY", "8"))

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class MatchingConfig:
    """Weights, distance bands and decision thresholds for the matcher.

    Defaults are tuning values, not physical constants. Swap the whole
    object to try different weights without touching the pipeline.
    """

    # Stage 2 (embedding / RAG)
    rag_top_k: int = 10
    rag_similarity_floor: float = 0.70
    embedding_weight: float = 0.40
    location_weight: float = 0.30
    name_weight: float = 0.30
    rag_accept_threshold: float = 0.80
    rag_advertise_threshold: float = 0.99

    # Location score bands: (max distance km, score), checked in order
    location_bands: tuple = ((0.05, 1.00), (0.1, 0.95), (0.5, 0.75), (1.0, 0.50))
    location_score_far: float = 0.0
    location_score_unknown: float = 0.50

    # Stage 3 (GPS + name)
    gps_radius_km: float = 0.5
    gps_candidate_limit: int = 10
    gps_proximity_km: float = 0.1
    gps_proximity_bonus: float = 0.20
    gps_accept_threshold: float = 0.95
    gps_advertise_threshold: float = 0.98

    # Collaborator calls
    collaborator_timeout_seconds: float = COLLABORATOR_TIMEOUT_SECONDS

    # Canonical hotel creation
    slug_max_length: int = 100
    max_slug_attempts: int = 1000


@dataclass(frozen=True)
class MergeConfig:
    """Rules for combining provider content into one listing."""

    use_cross_reference_for_trust: bool = True
    trusted_confidence_threshold: float = 0.99
    max_images_per_provider: int = 3
    price_comparison_threshold: float = 0.10


# Create necessary directories if they don't exist
for directory in [DATA_DIR, INPUT_DIR, OUTPUT_DIR, LOGS_DIR]:
    directory.mkdir(parents=True, exist_ok=True)

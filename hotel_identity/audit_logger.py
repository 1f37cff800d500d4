"""Audit logging module: JSONL trail of match and creation decisions."""

import json
from pathlib import Path
from typing import Dict, Any, Optional
from config.logging_config import get_logger
from config.settings import MATCH_AUDIT_FILE
from hotel_identity.models import MatchResult, ProviderHotelRecord, utc_now

logger = get_logger(__name__)


class AuditLogger:
    """Log match decisions and canonical hotel creation for audit trail."""

    def __init__(self, audit_file: Path = MATCH_AUDIT_FILE):
        """Initialize audit logger."""
        self.audit_file = Path(audit_file)
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)

    def log_event(self, event_type: str, data: Dict[str, Any]):
        """Log a structured audit event."""
        event = {
            "timestamp": utc_now().isoformat(),
            "event_type": event_type,
            "data": data,
        }

        try:
            with open(self.audit_file, "a") as f:
                f.write(json.dumps(event, default=str) + "\n")
            logger.debug(f"Audit event logged: {event_type}")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")

    def log_match_decision(self, record: ProviderHotelRecord, result: MatchResult):
        """Log the outcome of one match call."""
        diagnostics = result.diagnostics
        self.log_event(
            "match_decision",
            {
                "provider_id": record.provider_id,
                "provider_hotel_id": record.provider_hotel_id,
                "name": record.name,
                "canonical_id": result.canonical_id,
                "method": result.method.value,
                "confidence": round(result.confidence, 4),
                "should_advertise": result.should_advertise,
                "candidate_count": diagnostics.candidate_count if diagnostics else None,
            },
        )

    def log_canonical_created(
        self, canonical_id: str, slug: str, record: ProviderHotelRecord, slug_attempts: int
    ):
        """Log creation of a new canonical hotel."""
        self.log_event(
            "canonical_created",
            {
                "canonical_id": canonical_id,
                "slug": slug,
                "slug_attempts": slug_attempts,
                "provider_id": record.provider_id,
                "provider_hotel_id": record.provider_hotel_id,
                "name": record.name,
                "cross_reference_id": record.cross_reference_id,
            },
        )

    def log_canonical_enriched(self, canonical_id: str, fields: Dict[str, Any], source: Optional[str]):
        """Log fields filled on an existing canonical hotel."""
        self.log_event(
            "canonical_enriched",
            {"canonical_id": canonical_id, "fields": sorted(fields), "source": source},
        )

    def log_ingestion_start(self, metadata: Dict[str, Any]):
        """Log catalog ingestion start."""
        self.log_event("ingestion_start", metadata)

    def log_ingestion_complete(self, metadata: Dict[str, Any]):
        """Log catalog ingestion completion."""
        self.log_event("ingestion_complete", metadata)

    def log_error(self, error_type: str, details: Dict[str, Any]):
        """Log processing error."""
        self.log_event("error", {"error_type": error_type, "details": details})

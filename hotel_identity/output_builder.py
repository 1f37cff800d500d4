"""Output builder module for listing views and ingestion reports."""

import json
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Any, Optional

from config.logging_config import get_logger
from hotel_identity.data_merger import should_show_price_comparison
from hotel_identity.models import UnifiedListing, utc_now

logger = get_logger(__name__)


class OutputBuilder:
    """Build and structure JSON output from merged listings and run stats."""

    @staticmethod
    def listing_to_dict(listing: UnifiedListing) -> Dict[str, Any]:
        """Plain-dict view of a listing, with the price-comparison flag."""
        data = asdict(listing)
        data["show_price_comparison"] = should_show_price_comparison(listing.all_offers)
        return data

    @staticmethod
    def build_search_output(listings: List[UnifiedListing]) -> Dict[str, Any]:
        """Build the aggregated search result document."""
        output = {
            "metadata": {
                "generated_at": utc_now().isoformat(),
                "total_listings": len(listings),
                "merged_listings": sum(1 for l in listings if len(l.all_offers) > 1),
                "standalone_listings": sum(1 for l in listings if l.canonical_id is None),
            },
            "listings": [OutputBuilder.listing_to_dict(l) for l in listings],
        }
        logger.info(
            f"Built output with {output['metadata']['merged_listings']} "
            f"merged listings out of {output['metadata']['total_listings']}"
        )
        return output

    @staticmethod
    def build_ingestion_report(stats: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Build the report written after a catalog ingestion run."""
        total = stats.get("total", 0)
        resolved = stats.get("cached", 0) + stats.get("rag", 0) + stats.get("gps", 0) + stats.get("created", 0)
        return {
            "metadata": {
                "generated_at": utc_now().isoformat(),
                **(metadata or {}),
            },
            "stats": dict(stats),
            "resolution_rate": round(resolved / total, 4) if total else 0.0,
        }

    @staticmethod
    def validate_output(output: Dict[str, Any]) -> bool:
        """Validate output structure."""
        if "metadata" not in output or not ({"listings", "stats"} & output.keys()):
            logger.error("Invalid output structure")
            return False
        return True

    @staticmethod
    def save_json(path: Path, data: Dict[str, Any]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        logger.info(f"Saved output to {path}")
        return path

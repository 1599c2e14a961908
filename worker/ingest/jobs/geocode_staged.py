"""CLI job that geocodes staged records still missing coordinates."""

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from typing import List, Optional

from ingest.core.config import Settings, get_settings
from ingest.core.db import get_store
from ingest.core.errors import ConfigError, GeocodingError
from ingest.core.models import StagingStatus
from ingest.core.store import STAGED_TABLE, Store
from ingest.etl.normalize import NO_COORDINATES_FLAG
from ingest.vendors.geocoder import Geocoder

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (StagingStatus.PENDING_REVIEW.value, StagingStatus.FLAGGED.value)


@dataclass
class GeocodeSummary:
    checked: int = 0
    geocoded: int = 0
    no_match: int = 0
    failed: int = 0


def records_missing_coordinates(store: Store, limit: Optional[int] = None) -> List[dict]:
    rows = []
    for status in _OPEN_STATUSES:
        rows.extend(store.find_many(STAGED_TABLE, {"status": status, "lat": None}, order_by="-confidence"))
    rows = [row for row in rows if (row.get("city") or "").strip()]
    return rows[:limit] if limit else rows


def geocode_staged_job(
    *,
    limit: Optional[int] = None,
    dry_run: bool = False,
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    geocoder: Optional[Geocoder] = None,
) -> GeocodeSummary:
    settings = settings or get_settings()
    store = store or get_store(settings)
    geocoder = geocoder or Geocoder(settings)
    summary = GeocodeSummary()

    rows = records_missing_coordinates(store, limit)
    logger.info("Found %d staged records without coordinates", len(rows))
    for index, row in enumerate(rows):
        summary.checked += 1
        if dry_run:
            print(f"would geocode {row['name']} ({row.get('city')}, {row.get('state')})")
            continue
        if index:
            time.sleep(settings.geocoder_min_interval_seconds)

        try:
            coordinates = geocoder.geocode(row.get("street"), row.get("city"), row.get("state"), row.get("zip"))
        except GeocodingError as exc:
            logger.warning("Geocoding %s failed: %s", row["name"], exc)
            summary.failed += 1
            continue
        if coordinates is None:
            logger.info("No match for %s", row["name"])
            summary.no_match += 1
            continue

        flags = [flag for flag in row.get("flags") or [] if flag != NO_COORDINATES_FLAG]
        store.update(STAGED_TABLE, row["id"], {"lat": coordinates.lat, "lng": coordinates.lng, "flags": flags})
        summary.geocoded += 1
        logger.info("Geocoded %s to %.5f,%.5f", row["name"], coordinates.lat, coordinates.lng)

    print(f"Checked {summary.checked}, geocoded {summary.geocoded}, no match {summary.no_match}, failed {summary.failed}")
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Geocode staged businesses that have no coordinates")
    parser.add_argument("--limit", type=int, help="Maximum number of records to geocode")
    parser.add_argument("--dry-run", action="store_true", help="List records without calling the geocoder")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)
    try:
        geocode_staged_job(limit=args.limit, dry_run=args.dry_run)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())

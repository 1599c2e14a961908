"""Bulk import of businesses from CSV or JSON files.

Imported rows become raw candidates, so they go through the same normalize,
score and stage path as scraped listings.
"""

import csv
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from ingest.core.config import ScraperConfig
from ingest.core.models import Coordinates, RawCandidate, SourceId
from ingest.etl.normalize import clean_text
from ingest.sources.base import SourceAdapter

logger = logging.getLogger(__name__)

COLUMN_ALIASES = {
    "name": "name",
    "business_name": "name",
    "businessname": "name",
    "address": "address",
    "street": "address",
    "street_address": "address",
    "city": "city",
    "state": "state",
    "zip": "zip",
    "zipcode": "zip",
    "zip_code": "zip",
    "postal_code": "zip",
    "phone": "phone",
    "phone_number": "phone",
    "telephone": "phone",
    "email": "email",
    "email_address": "email",
    "website": "website",
    "url": "website",
    "web": "website",
    "category": "category",
    "type": "category",
    "business_type": "category",
    "description": "description",
    "about": "description",
    "tags": "tags",
    "latitude": "latitude",
    "lat": "latitude",
    "longitude": "longitude",
    "lng": "longitude",
    "lon": "longitude",
}


def canonical_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map aliased column names onto candidate fields; unknown columns are dropped."""
    mapped: Dict[str, Any] = {}
    for key, value in row.items():
        field = COLUMN_ALIASES.get(str(key or "").strip().lower())
        if field is None or value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        mapped.setdefault(field, value)
    return mapped


def _coordinates(row: Dict[str, Any]) -> Optional[Coordinates]:
    try:
        lat = float(row["latitude"])
        lng = float(row["longitude"])
    except (KeyError, TypeError, ValueError):
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return Coordinates(lat=lat, lng=lng)


def _tags(value: Any) -> tuple:
    if isinstance(value, (list, tuple)):
        return tuple(str(tag).strip() for tag in value if str(tag).strip())
    if isinstance(value, str):
        return tuple(tag.strip() for tag in value.split(",") if tag.strip())
    return ()


def candidate_from_row(row: Dict[str, Any], source: SourceId, source_url: str) -> Optional[RawCandidate]:
    fields = canonical_row(row)
    name = clean_text(str(fields.get("name") or ""))
    if not name:
        return None
    zip_code = fields.get("zip")
    return RawCandidate(
        name=name,
        source=source,
        source_url=source_url,
        address=fields.get("address"),
        city=fields.get("city"),
        state=fields.get("state"),
        zip=str(zip_code) if zip_code is not None else None,
        coordinates=_coordinates(fields),
        phone=str(fields["phone"]) if fields.get("phone") is not None else None,
        website=fields.get("website"),
        email=fields.get("email"),
        description=fields.get("description"),
        category_hint=fields.get("category"),
        products=_tags(fields.get("tags")),
    )


def read_csv_rows(path: Path) -> List[Dict[str, Any]]:
    with path.open(newline="", encoding="utf-8-sig") as handle:
        return list(csv.DictReader(handle))


def read_json_rows(path: Path) -> List[Dict[str, Any]]:
    """Accept either a bare list of businesses or ``{"source": ..., "businesses": [...]}``."""
    with path.open(encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, dict):
        if payload.get("source"):
            logger.info("Importing JSON export from %s", payload["source"])
        payload = payload.get("businesses", [])
    if not isinstance(payload, list):
        raise ValueError("expected a list of businesses")
    return [row for row in payload if isinstance(row, dict)]


class FileImportAdapter(SourceAdapter):
    """Reads ``config.import_file`` as CSV or JSON depending on the source id."""

    def __init__(self, source_id: SourceId, **kwargs) -> None:
        if source_id not in (SourceId.CSV_IMPORT, SourceId.JSON_IMPORT):
            raise ValueError(f"{source_id} is not a file import source")
        super().__init__(**kwargs)
        self.source_id = source_id
        self.display_name = "CSV import" if source_id is SourceId.CSV_IMPORT else "JSON import"
        self.description = f"Bulk {self.display_name} of admin-supplied businesses"

    def _read_rows(self, path: Path) -> Iterable[Dict[str, Any]]:
        if self.source_id is SourceId.CSV_IMPORT:
            return read_csv_rows(path)
        return read_json_rows(path)

    async def iter_candidates(self, config: ScraperConfig) -> AsyncIterator[RawCandidate]:
        if not config.import_file:
            self.record_error("no import file given", kind="configuration")
            return
        path = Path(config.import_file)
        try:
            rows = list(self._read_rows(path))
        except (OSError, ValueError, csv.Error) as exc:
            self.record_error(f"cannot read {path}: {exc}", kind="configuration")
            return

        logger.info("Importing %d rows from %s", len(rows), path)
        source_url = path.resolve().as_uri()
        for number, row in enumerate(rows, start=1):
            candidate = candidate_from_row(row, self.source_id, source_url)
            if candidate is None:
                self.record_error(f"row {number}: missing required field 'name'", kind="validation")
                continue
            yield candidate

"""Core data models shared by the ingestion pipeline."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


class SourceId(str, enum.Enum):
    HFSAA = "hfsaa"
    HMS = "hms"
    IFANCA = "ifanca"
    ZABIHAH = "zabihah"
    CSV_IMPORT = "csv_import"
    JSON_IMPORT = "json_import"


class StagingStatus(str, enum.Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FLAGGED = "FLAGGED"

    def can_transition_to(self, target: "StagingStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    StagingStatus.PENDING_REVIEW: {StagingStatus.APPROVED, StagingStatus.REJECTED, StagingStatus.FLAGGED},
    StagingStatus.FLAGGED: {StagingStatus.PENDING_REVIEW},
    StagingStatus.APPROVED: set(),
    StagingStatus.REJECTED: set(),
}


class SourceRunState(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True, slots=True)
class ParsedAddress:
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.city and self.state)


@dataclass(frozen=True, slots=True)
class Signal:
    keyword: str
    weight: int
    tier: str


@dataclass(frozen=True, slots=True)
class SignalAnalysis:
    score: int
    signals: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RawCandidate:
    """A business exactly as an adapter found it, before any normalization."""

    name: str
    source: SourceId
    source_url: str
    address: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    description: Optional[str] = None
    category_hint: Optional[str] = None
    region: Optional[str] = None
    certifier: Optional[str] = None
    products: Tuple[str, ...] = ()

    def signal_text(self) -> str:
        """Text the signal analyzer scores: name, description, hints and products."""
        parts = [self.name, self.description, self.category_hint, self.certifier, *self.products]
        return " ".join(part for part in parts if part)


@dataclass(frozen=True, slots=True)
class ScrapedEstablishment:
    """A normalized, scored candidate ready for staging."""

    name: str
    source: SourceId
    source_url: str
    address: Optional[str]
    street: Optional[str]
    city: Optional[str]
    state: Optional[str]
    zip: Optional[str]
    coordinates: Optional[Coordinates]
    phone: Optional[str]
    website: Optional[str]
    email: Optional[str]
    description: Optional[str]
    category: str
    services: Tuple[str, ...]
    signals: Tuple[str, ...]
    confidence: int
    flags: Tuple[str, ...] = ()

    def to_row(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zip": self.zip,
            "lat": self.coordinates.lat if self.coordinates else None,
            "lng": self.coordinates.lng if self.coordinates else None,
            "phone": self.phone,
            "website": self.website,
            "email": self.email,
            "description": self.description,
            "category": self.category,
            "services": list(self.services),
            "source": self.source.value,
            "source_url": self.source_url,
            "signals": list(self.signals),
            "confidence": self.confidence,
            "flags": list(self.flags),
        }


def _coordinates_from_row(row: Dict[str, Any]) -> Optional[Coordinates]:
    lat, lng = row.get("lat"), row.get("lng")
    if lat is None or lng is None:
        return None
    return Coordinates(lat=float(lat), lng=float(lng))


@dataclass(slots=True)
class StagedRecord:
    id: str
    name: str
    source: SourceId
    source_url: str
    status: StagingStatus
    scraped_at: datetime
    confidence: int = 0
    address: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    description: Optional[str] = None
    category: str = "OTHER"
    services: List[str] = field(default_factory=list)
    signals: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_note: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StagedRecord":
        return cls(
            id=str(row["id"]),
            name=row["name"],
            source=SourceId(row["source"]),
            source_url=row.get("source_url") or "",
            status=StagingStatus(row["status"]),
            scraped_at=row["scraped_at"],
            confidence=int(row.get("confidence") or 0),
            address=row.get("address"),
            street=row.get("street"),
            city=row.get("city"),
            state=row.get("state"),
            zip=row.get("zip"),
            coordinates=_coordinates_from_row(row),
            phone=row.get("phone"),
            website=row.get("website"),
            email=row.get("email"),
            description=row.get("description"),
            category=row.get("category") or "OTHER",
            services=list(row.get("services") or []),
            signals=list(row.get("signals") or []),
            flags=list(row.get("flags") or []),
            reviewed_at=row.get("reviewed_at"),
            reviewed_by=row.get("reviewed_by"),
            review_note=row.get("review_note"),
        )


@dataclass(slots=True)
class LiveBusinessRecord:
    id: str
    name: str
    slug: str
    category: str
    scraped_business_id: str
    scraped_from: SourceId
    confidence_score: int
    scraped_at: datetime
    description: Optional[str] = None
    services: List[str] = field(default_factory=list)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    status: str = "PUBLISHED"
    needs_geocoding: bool = False

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row.pop("coordinates")
        row["lat"] = self.coordinates.lat if self.coordinates else None
        row["lng"] = self.coordinates.lng if self.coordinates else None
        row["scraped_from"] = self.scraped_from.value
        return row


@dataclass(frozen=True, slots=True)
class ScraperError:
    source: str
    message: str
    kind: str = "transient"
    retryable: bool = False
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ScraperStats:
    attempted: int = 0
    succeeded: int = 0
    staged: int = 0
    skipped: int = 0
    errored: int = 0
    duplicates: int = 0
    conflicts: int = 0
    geocoded: int = 0
    geocode_failed: int = 0
    by_source: Dict[str, int] = field(default_factory=dict)

    def count_source(self, source: SourceId) -> None:
        self.by_source[source.value] = self.by_source.get(source.value, 0) + 1


@dataclass(slots=True)
class SourceRun:
    source: SourceId
    state: SourceRunState = SourceRunState.PENDING
    candidates: int = 0
    errors: List[ScraperError] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass(slots=True)
class RunReport:
    stats: ScraperStats = field(default_factory=ScraperStats)
    errors: List[ScraperError] = field(default_factory=list)
    runs: Dict[SourceId, SourceRun] = field(default_factory=dict)
    establishments: List[ScrapedEstablishment] = field(default_factory=list)
    stage_results: List[Any] = field(default_factory=list)
    dry_run: bool = False

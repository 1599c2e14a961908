"""Staging of scraped establishments and their promotion into the live catalog.

Every check-then-write sequence runs inside one store transaction that locks
every duplicate criterion of the record (and, when publishing, its base slug),
so two workers can never stage or publish the same business twice or hand out
the same slug.
"""

import enum
import logging
import re
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Optional, Tuple

from ingest.core.errors import IngestError, InvalidTransition
from ingest.core.models import LiveBusinessRecord, ScrapedEstablishment, StagedRecord, StagingStatus, utcnow
from ingest.core.store import LIVE_TABLE, STAGED_TABLE, Store
from ingest.pipeline.dedup import DuplicateMatch, differing_fields, find_duplicate, lock_keys

logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 50
MISSING_COORDINATES_WARNING = "promoted without coordinates; marked as needing geocoding"


class StageOutcome(str, enum.Enum):
    STAGED = "STAGED"
    DUPLICATE = "DUPLICATE"
    CONFLICT = "CONFLICT"


@dataclass(frozen=True)
class StageResult:
    outcome: StageOutcome
    record_id: Optional[str] = None
    match: Optional[DuplicateMatch] = None
    differing: Tuple[str, ...] = ()


class PromotionOutcome(str, enum.Enum):
    PROMOTED = "PROMOTED"
    CONFLICT = "CONFLICT"
    FAILED = "FAILED"
    INVALID = "INVALID"


@dataclass(frozen=True)
class PromotionResult:
    outcome: PromotionOutcome
    staged_id: str
    business_id: Optional[str] = None
    slug: Optional[str] = None
    existing_id: Optional[str] = None
    message: Optional[str] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.outcome is PromotionOutcome.PROMOTED


class _PromotionConflict(IngestError):
    def __init__(self, match: DuplicateMatch) -> None:
        super().__init__(f"matches {match.table} record {match.record_id} on {match.matched_on}")
        self.match = match


class _PromotionRejected(IngestError):
    pass


def slugify(name: str) -> str:
    base = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return base[:SLUG_MAX_LENGTH].rstrip("-") or "business"


def generate_slug(reader, name: str) -> str:
    """Slug from ``name``; a random hex suffix is added until no live business uses it."""
    base = slugify(name)
    slug = base
    while reader.find_first(LIVE_TABLE, {"slug": slug}) is not None:
        slug = f"{base}-{secrets.token_hex(4)}"
    return slug


def slug_lock_key(name: Optional[str]) -> str:
    return f"slug:{slugify(name)}"


def staged_lock_key(staged_id: str) -> str:
    return f"staged:{staged_id}"


def build_live_record(staged: StagedRecord, slug: str) -> LiveBusinessRecord:
    return LiveBusinessRecord(
        id=str(uuid.uuid4()),
        name=staged.name,
        slug=slug,
        category=staged.category,
        scraped_business_id=staged.id,
        scraped_from=staged.source,
        confidence_score=staged.confidence,
        scraped_at=staged.scraped_at,
        description=staged.description,
        services=list(staged.services),
        address=staged.street or staged.address,
        city=staged.city,
        state=staged.state,
        zip=staged.zip,
        coordinates=staged.coordinates,
        phone=staged.phone,
        email=staged.email,
        website=staged.website,
        needs_geocoding=staged.coordinates is None,
    )


class StagingService:
    def __init__(self, store: Store) -> None:
        self.store = store

    def stage(self, establishment: ScrapedEstablishment) -> StageResult:
        """Insert ``establishment`` as PENDING_REVIEW unless it duplicates an existing record.

        Identical matches are discarded. Matches whose fields differ are
        reported as conflicts for a manual merge; nothing is overwritten.
        """
        row = establishment.to_row()
        with self.store.transaction(*lock_keys(establishment)) as tx:
            match = find_duplicate(tx, establishment, (STAGED_TABLE, LIVE_TABLE))
            if match is not None:
                differing = tuple(differing_fields(row, match.record))
                if not differing:
                    logger.debug("Discarding duplicate of %s record %s: %s", match.table, match.record_id, establishment.name)
                    return StageResult(StageOutcome.DUPLICATE, match.record_id, match)
                logger.warning(
                    "%s conflicts with %s record %s (matched on %s; differs in %s); needs manual merge",
                    establishment.name,
                    match.table,
                    match.record_id,
                    match.matched_on,
                    ", ".join(differing),
                )
                return StageResult(StageOutcome.CONFLICT, match.record_id, match, differing)

            row.update(status=StagingStatus.PENDING_REVIEW.value, scraped_at=utcnow())
            created = tx.create(STAGED_TABLE, row)
        logger.info("Staged %s (%s) as %s", establishment.name, establishment.source.value, created["id"])
        return StageResult(StageOutcome.STAGED, str(created["id"]))


class PromotionService:
    """Moves reviewed staged records through the review state machine."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def promote(self, staged_id: str, reviewed_by: Optional[str] = None, note: Optional[str] = None) -> PromotionResult:
        """Publish a PENDING_REVIEW record as a live business, all or nothing.

        A live business matching the record aborts the promotion with a
        CONFLICT result and leaves the staged record untouched. Any other
        failure rolls back every write and comes back as FAILED.
        """
        staged_id = str(staged_id)
        peek = self.store.get(STAGED_TABLE, staged_id)
        if peek is None:
            return PromotionResult(PromotionOutcome.INVALID, staged_id, message="staged record not found")

        warnings: Tuple[str, ...] = ()
        try:
            keys = lock_keys(StagedRecord.from_row(peek)) + (staged_lock_key(staged_id), slug_lock_key(peek.get("name")))
            with self.store.transaction(*keys) as tx:
                row = tx.get(STAGED_TABLE, staged_id)
                if row is None:
                    raise _PromotionRejected("staged record not found")
                staged = StagedRecord.from_row(row)
                if not staged.status.can_transition_to(StagingStatus.APPROVED):
                    raise _PromotionRejected(f"staged record is {staged.status.value}, not PENDING_REVIEW")

                existing = tx.find_first(LIVE_TABLE, {"scraped_business_id": staged.id})
                if existing is not None:
                    raise _PromotionConflict(DuplicateMatch(LIVE_TABLE, str(existing["id"]), "scraped_business_id", existing))
                match = find_duplicate(tx, staged, (LIVE_TABLE,))
                if match is not None:
                    raise _PromotionConflict(match)

                slug = generate_slug(tx, staged.name)
                live = build_live_record(staged, slug)
                tx.create(LIVE_TABLE, live.to_row())
                tx.update(
                    STAGED_TABLE,
                    staged.id,
                    {
                        "status": StagingStatus.APPROVED.value,
                        "reviewed_at": utcnow(),
                        "reviewed_by": reviewed_by,
                        "review_note": note,
                    },
                )
                if live.needs_geocoding:
                    warnings = (MISSING_COORDINATES_WARNING,)
        except _PromotionRejected as exc:
            return PromotionResult(PromotionOutcome.INVALID, staged_id, message=str(exc))
        except _PromotionConflict as exc:
            logger.warning("Promotion of %s aborted: %s", staged_id, exc)
            return PromotionResult(
                PromotionOutcome.CONFLICT, staged_id, existing_id=exc.match.record_id, message=str(exc)
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Promotion of %s failed and was rolled back", staged_id)
            return PromotionResult(PromotionOutcome.FAILED, staged_id, message=str(exc))

        for warning in warnings:
            logger.warning("%s: %s", staged_id, warning)
        logger.info("Promoted %s to live business %s (%s)", staged_id, live.id, slug)
        return PromotionResult(PromotionOutcome.PROMOTED, staged_id, business_id=live.id, slug=slug, warnings=warnings)

    def review(
        self,
        staged_id: str,
        status: StagingStatus,
        reviewed_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> StagedRecord:
        """Reject, flag or re-open a staged record. Approval goes through ``promote``."""
        status = StagingStatus(status)
        if status is StagingStatus.APPROVED:
            raise ValueError("approve staged records with promote()")

        with self.store.transaction(staged_lock_key(str(staged_id))) as tx:
            row = tx.get(STAGED_TABLE, str(staged_id))
            if row is None:
                raise KeyError(f"no staged record with id {staged_id}")
            current = StagingStatus(row["status"])
            if not current.can_transition_to(status):
                raise InvalidTransition(current, status)
            updated = tx.update(
                STAGED_TABLE,
                str(staged_id),
                {"status": status.value, "reviewed_at": utcnow(), "reviewed_by": reviewed_by, "review_note": note},
            )
        logger.info("Staged record %s moved from %s to %s", staged_id, current.value, status.value)
        return StagedRecord.from_row(updated)

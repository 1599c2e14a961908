"""CLI job that promotes high-confidence staged records into the live catalog."""

import argparse
import logging
import sys
from typing import List, Optional

from ingest.core.config import get_settings
from ingest.core.db import get_store
from ingest.core.errors import ConfigError
from ingest.core.models import StagedRecord, StagingStatus
from ingest.core.store import STAGED_TABLE, Store
from ingest.pipeline.promotion import PromotionOutcome, PromotionResult, PromotionService

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 60


def pending_candidates(store: Store, min_confidence: int, limit: Optional[int] = None) -> List[StagedRecord]:
    """PENDING_REVIEW records at or above ``min_confidence``, most confident first."""
    rows = store.find_many(STAGED_TABLE, {"status": StagingStatus.PENDING_REVIEW.value}, order_by="-confidence")
    records = [StagedRecord.from_row(row) for row in rows if int(row.get("confidence") or 0) >= min_confidence]
    return records[:limit] if limit else records


def approve_batch_job(
    *,
    min_confidence: int = DEFAULT_MIN_CONFIDENCE,
    limit: Optional[int] = None,
    dry_run: bool = False,
    reviewed_by: str = "batch-approval",
    store: Optional[Store] = None,
) -> List[PromotionResult]:
    store = store or get_store(get_settings())
    records = pending_candidates(store, min_confidence, limit)
    logger.info("Found %d pending records with confidence >= %d", len(records), min_confidence)

    if dry_run:
        for record in records:
            print(f"would promote [{record.confidence:3d}] {record.name} ({record.city}, {record.state}) {record.id}")
        return []

    service = PromotionService(store)
    results = []
    for record in records:
        result = service.promote(record.id, reviewed_by=reviewed_by, note=f"batch approval, confidence >= {min_confidence}")
        results.append(result)
        if result.outcome is PromotionOutcome.PROMOTED:
            suffix = f" ({'; '.join(result.warnings)})" if result.warnings else ""
            print(f"promoted  {record.name} -> {result.slug}{suffix}")
        elif result.outcome is PromotionOutcome.CONFLICT:
            print(f"conflict  {record.name}: matches live business {result.existing_id}")
        else:
            print(f"{result.outcome.value.lower():9s} {record.name}: {result.message}")

    promoted = sum(1 for result in results if result.outcome is PromotionOutcome.PROMOTED)
    conflicts = sum(1 for result in results if result.outcome is PromotionOutcome.CONFLICT)
    failed = len(results) - promoted - conflicts
    print(f"\nPromoted {promoted}, conflicts {conflicts}, failed {failed}")
    return results


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Promote pending staged businesses above a confidence threshold")
    parser.add_argument(
        "--min-confidence",
        type=int,
        default=DEFAULT_MIN_CONFIDENCE,
        help="Minimum confidence score to promote",
    )
    parser.add_argument("--limit", type=int, help="Maximum number of records to promote")
    parser.add_argument("--dry-run", action="store_true", help="List what would be promoted")
    parser.add_argument("--reviewed-by", default="batch-approval", help="Reviewer recorded on promoted records")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)
    try:
        results = approve_batch_job(
            min_confidence=args.min_confidence,
            limit=args.limit,
            dry_run=args.dry_run,
            reviewed_by=args.reviewed_by,
        )
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    return 1 if any(result.outcome is PromotionOutcome.FAILED for result in results) else 0


if __name__ == "__main__":
    sys.exit(main())

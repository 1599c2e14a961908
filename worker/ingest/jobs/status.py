"""CLI job that summarizes the staging queue and the live catalog."""

import argparse
import logging
import sys
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ingest.core.config import get_settings
from ingest.core.db import get_store
from ingest.core.errors import ConfigError
from ingest.core.store import LIVE_TABLE, STAGED_TABLE, Store

logger = logging.getLogger(__name__)


@dataclass
class StatusSummary:
    staged: Dict[str, Dict[str, int]] = field(default_factory=dict)
    live_total: int = 0
    live_scraped: int = 0


def staged_counts(store: Store) -> Dict[str, Dict[str, int]]:
    """Staged record counts keyed by source, then by review status."""
    counts: Dict[str, Counter] = {}
    for row in store.find_many(STAGED_TABLE):
        source = row.get("source") or "unknown"
        counts.setdefault(source, Counter())[row.get("status") or "unknown"] += 1
    return {source: dict(sorted(statuses.items())) for source, statuses in sorted(counts.items())}


def status_job(store: Optional[Store] = None) -> StatusSummary:
    store = store or get_store(get_settings())
    live = store.find_many(LIVE_TABLE)
    summary = StatusSummary(
        staged=staged_counts(store),
        live_total=len(live),
        live_scraped=sum(1 for row in live if row.get("scraped_business_id")),
    )

    print("Staged businesses by source and status")
    if not summary.staged:
        print("  (none)")
    for source, statuses in summary.staged.items():
        print(f"  {source}:")
        for status, count in statuses.items():
            print(f"    {status}: {count}")
    print("\nLive businesses")
    print(f"  total:   {summary.live_total}")
    print(f"  scraped: {summary.live_scraped}")
    return summary


def build_parser() -> argparse.ArgumentParser:
    return argparse.ArgumentParser(description="Show staged record counts and live catalog size")


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    build_parser().parse_args(argv)
    try:
        status_job()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())

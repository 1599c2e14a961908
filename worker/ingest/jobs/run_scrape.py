"""CLI job that scrapes the selected directories and stages what it finds for review."""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from ingest.core.config import ScraperConfig, Settings, get_settings
from ingest.core.db import get_store
from ingest.core.errors import ConfigError
from ingest.core.models import RunReport
from ingest.core.store import Store
from ingest.pipeline.orchestrator import Orchestrator
from ingest.sources.registry import resolve_sources

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def run_scrape_job(config: ScraperConfig, *, settings: Optional[Settings] = None, store: Optional[Store] = None) -> RunReport:
    settings = settings or get_settings()
    # Fail on bad source selection before opening a database connection.
    resolve_sources(config.sources, import_file=config.import_file)
    if store is None and not config.dry_run:
        store = get_store(settings)
    orchestrator = Orchestrator(settings, store)
    return asyncio.run(orchestrator.run(config))


def format_report(report: RunReport) -> List[str]:
    stats = report.stats
    lines = []
    if report.dry_run:
        lines.append(f"Dry run: {len(report.establishments)} establishments would be staged")
        for item in report.establishments:
            place = ", ".join(filter(None, (item.city, item.state))) or "unknown location"
            lines.append(f"  [{item.confidence:3d}] {item.name} ({place}) {item.category} via {item.source.value}")
            if item.flags:
                lines.append(f"        flags: {'; '.join(item.flags)}")
    lines.append("")
    lines.append("Summary")
    lines.append(f"  attempted:      {stats.attempted}")
    lines.append(f"  succeeded:      {stats.succeeded}")
    lines.append(f"  staged:         {stats.staged}")
    lines.append(f"  duplicates:     {stats.duplicates}")
    lines.append(f"  conflicts:      {stats.conflicts}")
    lines.append(f"  errored:        {stats.errored}")
    lines.append(f"  geocoded:       {stats.geocoded}")
    lines.append(f"  geocode failed: {stats.geocode_failed}")
    for source, run in report.runs.items():
        lines.append(f"  {source.value}: {run.state.value} ({run.candidates} candidates, {len(run.errors)} errors)")
    if report.errors:
        lines.append("")
        lines.append(f"Errors ({len(report.errors)})")
        for error in report.errors:
            lines.append(f"  [{error.source}] {error.kind}: {error.message}")
    return lines


def _csv_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scrape halal and Muslim business directories into the review queue")
    parser.add_argument("--sources", type=_csv_list, help="Comma-separated sources, e.g. hfsaa,ifanca (default: all)")
    parser.add_argument("--region", help="Only scrape chapters in this region, e.g. Chicago")
    parser.add_argument("--state", help="Only scrape chapters in this two-letter state")
    parser.add_argument("--max", dest="max_results", type=int, help="Maximum results per source")
    parser.add_argument("--dry-run", action="store_true", help="Run the full pipeline without writing anything")
    parser.add_argument("--verbose", action="store_true", help="Log every record and debug output")
    parser.add_argument("--skip-geocoding", action="store_true", help="Do not geocode addresses")
    parser.add_argument("--concurrency", type=int, help="Sources scraped at the same time")
    parser.add_argument("--rate-limit", dest="rate_limit_seconds", type=float, help="Seconds between requests to one source")
    parser.add_argument("--timeout", dest="timeout_seconds", type=float, help="Network timeout in seconds")
    parser.add_argument("--ignore-robots", action="store_true", help="Do not consult robots.txt")
    parser.add_argument("--import-file", help="CSV or JSON file for csv_import/json_import")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

    try:
        config = ScraperConfig.build(
            sources=args.sources,
            region=args.region,
            state=args.state,
            max_results=args.max_results,
            dry_run=args.dry_run,
            verbose=args.verbose,
            skip_geocoding=args.skip_geocoding,
            concurrency=args.concurrency,
            rate_limit_seconds=args.rate_limit_seconds,
            timeout_seconds=args.timeout_seconds,
            respect_robots_txt=not args.ignore_robots,
            import_file=args.import_file,
        )
        report = run_scrape_job(config)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED

    for line in format_report(report):
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())

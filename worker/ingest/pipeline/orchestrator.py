"""Runs the selected source adapters and pushes their candidates through the pipeline."""

import asyncio
import logging
from contextlib import aclosing
from typing import Callable, Optional

from ingest.core.config import ScraperConfig, Settings
from ingest.core.errors import ConfigError, StructuralError
from ingest.core.models import (
    RawCandidate,
    RunReport,
    ScraperError,
    SourceId,
    SourceRun,
    SourceRunState,
    utcnow,
)
from ingest.core.store import Store
from ingest.etl.normalize import Normalizer
from ingest.etl.signals import analyze
from ingest.etl.transform import build_establishment
from ingest.pipeline.promotion import StageOutcome, StagingService
from ingest.sources.base import SourceAdapter
from ingest.sources.browser import BrowserPool
from ingest.sources.registry import create_adapter, requires_browser, resolve_sources
from ingest.vendors.geocoder import Geocoder

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[SourceId, Settings, Optional[BrowserPool]], SourceAdapter]


class Orchestrator:
    """Runs one task per source, at most ``config.concurrency`` at a time.

    A source that fails is marked FAILED with its error recorded; the others
    carry on. In a dry run every candidate goes through the whole pipeline but
    nothing is written.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[Store],
        geocoder: Optional[Geocoder] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        *,
        normalizer: Optional[Normalizer] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.geocoder = geocoder
        self.adapter_factory = adapter_factory or create_adapter
        self.normalizer = normalizer
        self.staging = StagingService(store) if store is not None else None

    def _build_normalizer(self, config: ScraperConfig) -> Normalizer:
        geocoder = self.geocoder
        if geocoder is None and not config.skip_geocoding:
            geocoder = Geocoder(self.settings, timeout=config.timeout_seconds)
        return Normalizer(
            geocoder,
            min_interval=self.settings.geocoder_min_interval_seconds,
            max_attempts=config.max_attempts,
            phone_region=config.phone_region,
        )

    async def run(self, config: ScraperConfig) -> RunReport:
        sources = resolve_sources(config.sources, import_file=config.import_file)
        if not config.dry_run and self.staging is None:
            raise ValueError("a store is required unless this is a dry run")

        report = RunReport(dry_run=config.dry_run)
        report.runs = {source: SourceRun(source=source) for source in sources}
        normalizer = self.normalizer or self._build_normalizer(config)
        semaphore = asyncio.Semaphore(config.concurrency)

        browser_pool = None
        if any(requires_browser(source) for source in sources):
            browser_pool = BrowserPool(max_contexts=config.concurrency)

        logger.info(
            "Starting run: sources=%s region=%s state=%s dry_run=%s",
            ",".join(source.value for source in sources),
            config.region,
            config.state,
            config.dry_run,
        )
        try:
            await asyncio.gather(
                *(self._run_source(source, config, normalizer, browser_pool, semaphore, report) for source in sources)
            )
        finally:
            if browser_pool is not None:
                await browser_pool.close()

        stats = report.stats
        logger.info(
            "Run finished: attempted=%d succeeded=%d staged=%d duplicates=%d conflicts=%d errored=%d geocoded=%d geocode_failed=%d",
            stats.attempted,
            stats.succeeded,
            stats.staged,
            stats.duplicates,
            stats.conflicts,
            stats.errored,
            stats.geocoded,
            stats.geocode_failed,
        )
        return report

    async def _run_source(
        self,
        source: SourceId,
        config: ScraperConfig,
        normalizer: Normalizer,
        browser_pool: Optional[BrowserPool],
        semaphore: asyncio.Semaphore,
        report: RunReport,
    ) -> None:
        run = report.runs[source]
        async with semaphore:
            run.state = SourceRunState.RUNNING
            run.started_at = utcnow()
            logger.info("Scraping %s", source.value)
            adapter = None
            failure = None
            try:
                adapter = self.adapter_factory(source, self.settings, browser_pool)
                async with aclosing(adapter.scrape(config)) as candidates:
                    async for raw in candidates:
                        run.candidates += 1
                        await self._process(raw, config, normalizer, report)
            except StructuralError as exc:
                failure = ScraperError(source=source.value, message=str(exc), kind="structural")
                logger.error("%s stopped: %s", source.value, exc)
            except ConfigError as exc:
                failure = ScraperError(source=source.value, message=str(exc), kind="configuration")
                logger.error("%s cannot run: %s", source.value, exc)
            except Exception as exc:  # noqa: BLE001
                failure = ScraperError(source=source.value, message=f"{type(exc).__name__}: {exc}", kind="transient")
                logger.exception("%s failed", source.value)
            finally:
                if adapter is not None:
                    run.errors.extend(adapter.errors)
                if failure is not None:
                    run.errors.append(failure)
                report.errors.extend(run.errors)
                run.finished_at = utcnow()

            run.state = SourceRunState.FAILED if failure is not None else SourceRunState.COMPLETED
            logger.info(
                "%s %s: %d candidates, %d errors",
                source.value,
                run.state.value.lower(),
                run.candidates,
                len(run.errors),
            )

    async def _process(self, raw: RawCandidate, config: ScraperConfig, normalizer: Normalizer, report: RunReport) -> None:
        stats = report.stats
        stats.attempted += 1
        try:
            contact = await normalizer.normalize(raw, skip_geocoding=config.skip_geocoding)
            analysis = analyze(raw.signal_text())
            establishment = build_establishment(raw, contact, analysis)
        except Exception as exc:  # noqa: BLE001
            stats.errored += 1
            report.errors.append(ScraperError(source=raw.source.value, message=f"{raw.name}: {exc}", kind="validation"))
            logger.exception("Could not process %s from %s", raw.name, raw.source.value)
            return

        if contact.geocode_status == "resolved":
            stats.geocoded += 1
        elif contact.geocode_status in ("failed", "no_match"):
            stats.geocode_failed += 1

        log = logger.info if config.verbose else logger.debug
        log(
            "%s [%s] confidence=%d signals=%s flags=%s",
            establishment.name,
            establishment.source.value,
            establishment.confidence,
            ",".join(establishment.signals) or "-",
            "; ".join(establishment.flags) or "-",
        )

        stats.succeeded += 1
        stats.count_source(raw.source)
        report.establishments.append(establishment)
        if config.dry_run:
            return

        try:
            result = await asyncio.to_thread(self.staging.stage, establishment)
        except Exception as exc:  # noqa: BLE001
            stats.errored += 1
            report.errors.append(
                ScraperError(source=raw.source.value, message=f"staging {raw.name} failed: {exc}", kind="transient", retryable=True)
            )
            logger.exception("Staging %s failed", raw.name)
            return

        report.stage_results.append(result)
        if result.outcome is StageOutcome.STAGED:
            stats.staged += 1
        elif result.outcome is StageOutcome.DUPLICATE:
            stats.duplicates += 1
            stats.skipped += 1
        else:
            stats.conflicts += 1

"""Maps source ids onto adapter classes."""

import logging
from pathlib import Path
from typing import Iterable, Optional, Tuple

from ingest.core.config import Settings, coerce_source
from ingest.core.errors import ConfigError
from ingest.core.models import SourceId
from ingest.sources.base import SourceAdapter
from ingest.sources.browser import BrowserPool
from ingest.sources.file_import import FileImportAdapter
from ingest.sources.hfsaa import HfsaaSource
from ingest.sources.hms import HmsSource
from ingest.sources.ifanca import IfancaSource
from ingest.sources.zabihah import ZabihahSource

logger = logging.getLogger(__name__)

SCRAPER_CLASSES = {
    SourceId.HFSAA: HfsaaSource,
    SourceId.IFANCA: IfancaSource,
    SourceId.HMS: HmsSource,
    SourceId.ZABIHAH: ZabihahSource,
}
FILE_SOURCES = (SourceId.CSV_IMPORT, SourceId.JSON_IMPORT)
IMPLEMENTED_SOURCES: Tuple[SourceId, ...] = tuple(SCRAPER_CLASSES) + FILE_SOURCES


def _file_source_for(import_file: str) -> SourceId:
    suffix = Path(import_file).suffix.lower()
    if suffix == ".csv":
        return SourceId.CSV_IMPORT
    if suffix == ".json":
        return SourceId.JSON_IMPORT
    raise ConfigError(f"Cannot tell the import format of {import_file!r}; use a .csv or .json file")


def resolve_sources(names: Optional[Iterable] = None, *, import_file: Optional[str] = None) -> Tuple[SourceId, ...]:
    """Resolve the sources to run.

    Without an explicit list every directory scraper runs, unless an
    ``import_file`` is given, in which case only that file is imported.
    """
    if names:
        resolved = tuple(dict.fromkeys(coerce_source(name) for name in names))
    elif import_file:
        resolved = (_file_source_for(import_file),)
    else:
        resolved = tuple(SCRAPER_CLASSES)

    unsupported = [source.value for source in resolved if source not in IMPLEMENTED_SOURCES]
    if unsupported:
        raise ConfigError(f"No adapter is implemented for: {', '.join(unsupported)}")
    if not resolved:
        raise ConfigError("No sources selected")
    if any(source in FILE_SOURCES for source in resolved) and not import_file:
        raise ConfigError("csv_import and json_import need --import-file")
    return resolved


def requires_browser(source_id: SourceId) -> bool:
    adapter_class = SCRAPER_CLASSES.get(source_id)
    return bool(adapter_class and adapter_class.requires_browser)


def create_adapter(source_id: SourceId, settings: Settings, browser_pool: Optional[BrowserPool] = None) -> SourceAdapter:
    if source_id in FILE_SOURCES:
        return FileImportAdapter(source_id)
    adapter_class = SCRAPER_CLASSES.get(source_id)
    if adapter_class is None:
        raise ConfigError(f"No adapter is implemented for {source_id.value}")
    if adapter_class.requires_browser:
        if browser_pool is None:
            raise ConfigError(f"{source_id.value} needs a browser pool")
        return adapter_class(browser_pool)
    logger.debug("Creating %s adapter (user agent %s)", source_id.value, settings.scraper_user_agent)
    return adapter_class()

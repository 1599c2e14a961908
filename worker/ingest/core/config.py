"""Application configuration helpers."""

import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional, Tuple

from dotenv import load_dotenv

from ingest.core.errors import ConfigError
from ingest.core.models import SourceId

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "MuslimDirectoryBot/1.0 (+https://muslimdirectory.app/about/bot)"
_STATE_CODE = re.compile(r"^[A-Z]{2}$")


@dataclass(frozen=True)
class Settings:
    database_url: str
    store_backend: str = "memory"
    mapbox_access_token: str = ""
    geocoder_user_agent: str = DEFAULT_USER_AGENT
    geocoder_min_interval_seconds: float = 1.1
    scraper_user_agent: str = DEFAULT_USER_AGENT
    rate_limit_seconds: float = 2.0
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    concurrency: int = 1
    default_phone_region: str = "US"


def _float_env(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _int_env(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    store_backend = (os.getenv("STORE_BACKEND") or ("postgres" if database_url else "memory")).strip().lower()
    mapbox_access_token = os.getenv("MAPBOX_ACCESS_TOKEN", "")
    geocoder_user_agent = os.getenv("GEOCODER_USER_AGENT", DEFAULT_USER_AGENT)
    scraper_user_agent = os.getenv("SCRAPER_USER_AGENT", DEFAULT_USER_AGENT)
    default_phone_region = (os.getenv("DEFAULT_PHONE_REGION") or "US").strip().upper()

    if store_backend not in {"memory", "postgres"}:
        raise ConfigError(f"STORE_BACKEND must be 'memory' or 'postgres', got {store_backend!r}")
    if store_backend == "postgres" and not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if store_backend == "memory":
        logger.warning("Using the in-memory store; staged records will not outlive this process.")
    if not mapbox_access_token:
        logger.info("MAPBOX_ACCESS_TOKEN is not configured; geocoding falls back to Nominatim.")

    return Settings(
        database_url=database_url,
        store_backend=store_backend,
        mapbox_access_token=mapbox_access_token,
        geocoder_user_agent=geocoder_user_agent,
        geocoder_min_interval_seconds=_float_env("GEOCODER_MIN_INTERVAL_SECONDS", "1.1"),
        scraper_user_agent=scraper_user_agent,
        rate_limit_seconds=_float_env("SCRAPER_RATE_LIMIT_SECONDS", "2.0"),
        timeout_seconds=_float_env("SCRAPER_TIMEOUT_SECONDS", "30"),
        max_attempts=_int_env("SCRAPER_MAX_ATTEMPTS", "3"),
        concurrency=_int_env("SCRAPER_CONCURRENCY", "1"),
        default_phone_region=default_phone_region,
    )


def coerce_source(value) -> SourceId:
    if isinstance(value, SourceId):
        return value
    try:
        return SourceId(str(value).strip().lower())
    except ValueError as exc:
        known = ", ".join(source.value for source in SourceId)
        raise ConfigError(f"Unknown source {value!r}; expected one of: {known}") from exc


@dataclass(frozen=True)
class ScraperConfig:
    """Per-run options, validated once before any source is touched.

    An empty ``sources`` tuple means "every implemented source".
    """

    sources: Tuple[SourceId, ...] = ()
    region: Optional[str] = None
    state: Optional[str] = None
    max_results: Optional[int] = None
    dry_run: bool = False
    verbose: bool = False
    skip_geocoding: bool = False
    rate_limit_seconds: float = 2.0
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    concurrency: int = 1
    respect_robots_txt: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    import_file: Optional[str] = None
    phone_region: str = "US"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.state is not None and not _STATE_CODE.match(self.state):
            raise ConfigError(f"state must be a two-letter code, got {self.state!r}")
        if self.max_results is not None and self.max_results <= 0:
            raise ConfigError("max_results must be positive")
        if self.rate_limit_seconds < 0:
            raise ConfigError("rate_limit_seconds cannot be negative")
        if self.timeout_seconds <= 0:
            raise ConfigError("timeout_seconds must be positive")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")
        for source in self.sources:
            if not isinstance(source, SourceId):
                raise ConfigError(f"sources must be SourceId values, got {source!r}")

    @property
    def timeout_ms(self) -> float:
        return self.timeout_seconds * 1000

    @classmethod
    def build(
        cls,
        *,
        sources: Optional[Iterable] = None,
        region: Optional[str] = None,
        state: Optional[str] = None,
        settings: Optional[Settings] = None,
        **overrides,
    ) -> "ScraperConfig":
        """Build a config from CLI-style values, filling gaps from process settings."""
        settings = settings or get_settings()
        resolved = tuple(dict.fromkeys(coerce_source(name) for name in (sources or ()) if str(name).strip()))
        region_value = region.strip() if region and region.strip() else None
        state_value = state.strip().upper() if state and state.strip() else None

        values = {
            "rate_limit_seconds": settings.rate_limit_seconds,
            "timeout_seconds": settings.timeout_seconds,
            "max_attempts": settings.max_attempts,
            "concurrency": settings.concurrency,
            "user_agent": settings.scraper_user_agent,
            "phone_region": settings.default_phone_region,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(sources=resolved, region=region_value, state=state_value, **values)

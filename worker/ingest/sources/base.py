"""Shared scraping contract for static-HTML and headless-browser sources."""

from __future__ import annotations

import abc
import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar
from urllib import robotparser
from urllib.parse import urlparse, urlunparse

import requests
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ingest.core.config import ScraperConfig
from ingest.core.errors import StructuralError, TransientError
from ingest.core.models import Coordinates, RawCandidate, ScraperError, SourceId
from ingest.core.throttle import RETRY_BASE_DELAY_SECONDS, RateLimiter, retry_async
from ingest.sources.browser import BrowserPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACCEPT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass(frozen=True)
class Chapter:
    """A regional listing page of a directory."""

    region: str
    url: str
    state: str
    city: Optional[str] = None
    coordinates: Optional[Coordinates] = None


def filter_chapters(chapters: Sequence[Chapter], config: ScraperConfig) -> List[Chapter]:
    filtered = list(chapters)
    if config.region:
        region = config.region.lower()
        filtered = [c for c in filtered if region in c.region.lower() or c.region.lower() in region]
    if config.state:
        filtered = [c for c in filtered if c.state.upper() == config.state]
    return filtered


class SourceAdapter(abc.ABC):
    """One external directory.

    ``scrape`` is a lazy async generator. Calling it again re-runs the whole
    fetch from the start. Non-fatal problems are collected on ``errors``;
    ``StructuralError`` escapes when the page layout is no longer recognised.
    """

    source_id: SourceId
    display_name: str
    description: str
    requires_browser = False
    chapters: Sequence[Chapter] = ()
    retry_base_delay = RETRY_BASE_DELAY_SECONDS

    def __init__(self, *, session: Optional[requests.Session] = None) -> None:
        self.session = session or requests.Session()
        self.errors: List[ScraperError] = []
        self.config: Optional[ScraperConfig] = None
        self.limiter: Optional[RateLimiter] = None
        self._robots: Dict[str, Optional[robotparser.RobotFileParser]] = {}

    async def scrape(self, config: ScraperConfig) -> AsyncIterator[RawCandidate]:
        self.errors = []
        self.config = config
        self.limiter = RateLimiter(config.rate_limit_seconds, name=self.source_id.value)
        self._robots = {}
        self.session.headers.update({"User-Agent": config.user_agent, **ACCEPT_HEADERS})

        yielded = 0
        async with aclosing(self.iter_candidates(config)) as candidates:
            async for candidate in candidates:
                yield candidate
                yielded += 1
                if config.max_results and yielded >= config.max_results:
                    logger.info("%s reached max_results=%d", self.source_id.value, config.max_results)
                    return

    @abc.abstractmethod
    def iter_candidates(self, config: ScraperConfig) -> AsyncIterator[RawCandidate]:
        """Yield raw candidates for this source."""

    def record_error(self, message: str, *, kind: str = "transient", retryable: bool = False) -> ScraperError:
        error = ScraperError(source=self.source_id.value, message=message, kind=kind, retryable=retryable)
        self.errors.append(error)
        logger.warning("[%s] %s", self.source_id.value, message)
        return error

    def require(self, found: bool, what: str, url: str) -> None:
        if not found:
            raise StructuralError(f"{self.display_name}: expected {what} not found on {url}")

    def target_chapters(self, config: ScraperConfig) -> List[Chapter]:
        selected = filter_chapters(self.chapters, config)
        if self.chapters and not selected:
            logger.warning("%s has no chapters matching region=%s state=%s", self.display_name, config.region, config.state)
        return selected

    async def with_retries(self, operation: Callable[[], Awaitable[T]], description: str) -> Optional[T]:
        """Run ``operation`` under the retry policy.

        Returns None after recording an error once retries are exhausted.
        """
        attempts = self.config.max_attempts if self.config else 1
        try:
            return await retry_async(operation, attempts=attempts, description=description, base_delay=self.retry_base_delay)
        except TransientError as exc:
            self.record_error(f"{description} failed after {attempts} attempts: {exc}", kind="transient", retryable=True)
            return None

    async def allowed_by_robots(self, url: str) -> bool:
        if self.config is None or not self.config.respect_robots_txt:
            return True
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        if origin not in self._robots:
            if self.limiter is not None:
                await self.limiter.acquire()
            self._robots[origin] = await asyncio.to_thread(self._load_robot_rules, origin)
        rules = self._robots[origin]
        if rules is None:
            return True
        allowed = rules.can_fetch(self.config.user_agent, url)
        if not allowed:
            self.record_error(f"robots.txt disallows {url}", kind="robots")
        return allowed

    def _load_robot_rules(self, origin: str) -> Optional[robotparser.RobotFileParser]:
        robots_url = urlunparse((*urlparse(origin)[:2], "/robots.txt", "", "", ""))
        parser_obj = robotparser.RobotFileParser()
        parser_obj.set_url(robots_url)
        try:
            response = self.session.get(robots_url, timeout=self.config.timeout_seconds if self.config else 10)
        except requests.RequestException as exc:
            logger.debug("Unable to read robots.txt from %s: %s", robots_url, exc)
            return None
        if response.status_code >= 400:
            return None
        parser_obj.parse(response.text.splitlines())
        return parser_obj


class StaticSourceAdapter(SourceAdapter):
    """Source whose listings are present in the served HTML."""

    def _get(self, url: str) -> requests.Response:
        timeout = self.config.timeout_seconds if self.config else 30
        try:
            response = self.session.get(url, timeout=timeout, allow_redirects=True)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientError(f"{type(exc).__name__} fetching {url}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"HTTP {response.status_code} fetching {url}")
        return response

    async def fetch_soup(self, url: str) -> Optional[BeautifulSoup]:
        """Fetch ``url`` politely and parse it, or None if it could not be fetched."""
        if not await self.allowed_by_robots(url):
            return None

        async def attempt() -> requests.Response:
            await self.limiter.acquire()
            return await asyncio.to_thread(self._get, url)

        response = await self.with_retries(attempt, f"GET {url}")
        if response is None:
            return None
        if response.status_code >= 400:
            self.record_error(f"HTTP {response.status_code} fetching {url}", kind="http")
            return None
        return BeautifulSoup(response.text, "html.parser")


class BrowserSourceAdapter(SourceAdapter):
    """Source that needs JavaScript rendering; pages come from the shared pool."""

    requires_browser = True

    def __init__(self, browser_pool: BrowserPool, *, session: Optional[requests.Session] = None) -> None:
        super().__init__(session=session)
        self.browser_pool = browser_pool

    async def goto(self, page: Page, url: str, *, wait_until: str = "networkidle") -> bool:
        """Navigate under the rate limiter and retry policy; False when it never loaded."""
        if not await self.allowed_by_robots(url):
            return False

        async def attempt() -> bool:
            await self.limiter.acquire()
            try:
                await page.goto(url, wait_until=wait_until, timeout=self.config.timeout_ms)
            except PlaywrightTimeoutError as exc:
                raise TransientError(f"navigation timeout for {url}") from exc
            except PlaywrightError as exc:
                if "net::" in str(exc):
                    raise TransientError(f"network error loading {url}: {exc}") from exc
                raise
            return True

        return bool(await self.with_retries(attempt, f"load {url}"))

    async def within_timeout(self, awaitable: Awaitable[T], what: str) -> T:
        """Await a page operation that has no timeout of its own."""
        timeout = self.config.timeout_seconds if self.config else 30
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"{what} timed out after {timeout:g}s") from exc

    async def evaluate(self, page: Page, expression: str):
        return await self.within_timeout(page.evaluate(expression), f"script on {page.url}")

    async def wait_for_selector(self, page: Page, selector: str, timeout_ms: Optional[float] = None) -> bool:
        if timeout_ms is None:
            timeout_ms = self.config.timeout_ms if self.config else 30000
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def scroll_to_bottom(self, page: Page, *, max_scrolls: int = 50, scroll_delay: float = 1.5) -> int:
        """Scroll until the page height stops growing; returns the number of scrolls."""
        previous_height = 0
        scrolls = 0
        while scrolls < max_scrolls:
            await self.evaluate(page, "window.scrollTo(0, document.body.scrollHeight)")
            await asyncio.sleep(scroll_delay)
            current_height = await self.evaluate(page, "document.body.scrollHeight")
            if current_height == previous_height:
                break
            previous_height = current_height
            scrolls += 1
        return scrolls

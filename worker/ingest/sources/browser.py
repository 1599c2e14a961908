"""Shared headless browser for sources that need JavaScript rendering."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
VIEWPORT = {"width": 1280, "height": 800}
LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]


class BrowserPool:
    """One Chromium process, handed out as isolated contexts.

    The browser is launched on first use. ``context()`` is the only way to get
    a context and it always closes it, whether the caller finishes, raises or
    is cancelled. At most ``max_contexts`` contexts are open at once.
    """

    def __init__(self, *, max_contexts: int = 1, headless: bool = True, user_agent: str = BROWSER_USER_AGENT) -> None:
        self.headless = headless
        self.user_agent = user_agent
        self._semaphore = asyncio.Semaphore(max_contexts)
        self._launch_lock = asyncio.Lock()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self.open_contexts = 0

    async def _ensure_browser(self) -> Browser:
        async with self._launch_lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
                logger.info("Playwright browser launched")
            return self._browser

    @asynccontextmanager
    async def context(self, **options: Any) -> AsyncIterator[BrowserContext]:
        async with self._semaphore:
            browser = await self._ensure_browser()
            options.setdefault("user_agent", self.user_agent)
            options.setdefault("viewport", VIEWPORT)
            browser_context = await browser.new_context(**options)
            self.open_contexts += 1
            try:
                yield browser_context
            finally:
                self.open_contexts -= 1
                await browser_context.close()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
            logger.info("Playwright browser closed")
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def __aenter__(self) -> "BrowserPool":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

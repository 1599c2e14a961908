"""Rate limiting and retry helpers for outbound requests."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ingest.core.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_DELAY_SECONDS = 30.0


class RateLimiter:
    """Enforces a minimum interval between successive acquisitions.

    The lock is held across the wait, so concurrent callers queue up and each
    one starts at least ``interval`` seconds after the previous one.
    """

    def __init__(self, interval: float, *, name: str = "default") -> None:
        if interval < 0:
            raise ValueError("interval cannot be negative")
        self.interval = interval
        self.name = name
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None

    async def acquire(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            if self._last is not None:
                wait_for = self.interval - (loop.time() - self._last)
                if wait_for > 0:
                    logger.debug("Rate limiter %s sleeping %.2fs", self.name, wait_for)
                    await asyncio.sleep(wait_for)
            self._last = loop.time()

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


def backoff_delay(attempt: int, base: float = RETRY_BASE_DELAY_SECONDS) -> float:
    """Exponential backoff with jitter for the given 1-based attempt."""
    delay = min(RETRY_MAX_DELAY_SECONDS, base * (2 ** (attempt - 1)))
    return delay + random.uniform(0, base / 2)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    description: str,
    base_delay: float = RETRY_BASE_DELAY_SECONDS,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` transient failures occur.

    Only exceptions listed in ``retry_on`` are retried; the last one is re-raised
    once attempts are exhausted. Anything else propagates immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= attempts:
                logger.error("%s failed after %s attempts: %s", description, attempt, exc)
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning("%s failed (attempt %s/%s): %s; retrying in %.1fs", description, attempt, attempts, exc, delay)
            await asyncio.sleep(delay)

"""
Pacing helpers for automation calls.

``RateLimiter`` spaces calls to the filing source and caps how many run at
once. It is an explicit object handed to the scan and the worker (tests pass
``NoopLimiter``). ``human_delay`` sleeps a random, human-looking interval
between UI steps.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar

from lienflow.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Limiter(Protocol):
    async def schedule(self, fn: Callable[[], Awaitable[T]]) -> T: ...


class RateLimiter:
    """
    Minimum spacing plus a concurrency cap for automation calls.

    Args:
        min_interval_ms: Minimum time between the starts of two calls
        max_concurrent: Maximum calls in flight
    """

    def __init__(self, min_interval_ms: int = 1200, max_concurrent: int = 1) -> None:
        self._min_interval = min_interval_ms / 1000
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self._last_start = 0.0

    async def _wait_turn(self) -> None:
        async with self._lock:
            wait = self._last_start + self._min_interval - time.monotonic()
            if wait > 0:
                logger.debug("Rate limit wait", seconds=round(wait, 3))
                await asyncio.sleep(wait)
            self._last_start = time.monotonic()

    async def schedule(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` once the limiter allows it."""
        async with self._semaphore:
            await self._wait_turn()
            return await fn()


class NoopLimiter:
    """Limiter that runs everything immediately."""

    async def schedule(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await fn()


async def human_delay(min_ms: int = 800, max_ms: int = 1800) -> None:
    """Sleep a random interval between ``min_ms`` and ``max_ms``."""
    if max_ms <= 0:
        return
    low, high = sorted((max(min_ms, 0), max_ms))
    await asyncio.sleep(random.randint(low, high) / 1000)

import asyncio
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, Dict, Optional

import httpx

from .logging import get_logger

logger = get_logger(__name__)


class RequestRateLimiter:
    """Sliding-window limit on API calls per client."""

    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, Deque[float]] = defaultdict(deque)

    def is_allowed(self, identifier: str) -> bool:
        now = time.monotonic()
        history = self.requests[identifier]
        while history and history[0] < now - self.window_seconds:
            history.popleft()

        if len(history) >= self.max_requests:
            logger.warning("Rate limit exceeded", extra={'client': identifier})
            return False

        history.append(now)
        return True

    def reset(self) -> None:
        self.requests.clear()


_rate_limiter: Optional[RequestRateLimiter] = None


def get_rate_limiter(max_requests: int = 30, window_seconds: int = 60) -> RequestRateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RequestRateLimiter(max_requests=max_requests, window_seconds=window_seconds)
        logger.info(f"Initialized rate limiter: {max_requests} requests per {window_seconds}s")
    return _rate_limiter


class FetchLimiter:
    """Caps in-flight remote fetches, overall and per host.

    One limiter belongs to one report session and so to one event loop.
    """

    def __init__(self, max_concurrent: int = 8, per_host: int = 4):
        if max_concurrent < 1 or per_host < 1:
            raise ValueError("Concurrency limits must be at least 1")
        self.max_concurrent = max_concurrent
        self.per_host = per_host
        self._global = asyncio.Semaphore(max_concurrent)
        self._hosts: Dict[str, asyncio.Semaphore] = {}

    def _host_semaphore(self, url: str) -> asyncio.Semaphore:
        try:
            host = httpx.URL(url).host or url
        except httpx.InvalidURL:
            host = url
        semaphore = self._hosts.get(host)
        if semaphore is None:
            semaphore = self._hosts[host] = asyncio.Semaphore(self.per_host)
        return semaphore

    @asynccontextmanager
    async def slot(self, url: str) -> AsyncIterator[None]:
        # Waiters on a busy host hold no global slot.
        async with self._host_semaphore(url):
            async with self._global:
                yield

"""
Rate limiting helpers.

RequestPacer paces outbound Nuvemshop calls. SlidingWindowRateLimiter caps
inbound webhook calls per identifier and keeps its own table bounded.
"""

import asyncio
import time
from collections import deque
from typing import Deque, Dict, Optional

import structlog

logger = structlog.get_logger()


class RequestPacer:
    """Delay-based pacing: each call to wait() returns no sooner than 1/rps after the previous one."""

    def __init__(self, requests_per_second: float, clock=time.monotonic, sleep=asyncio.sleep):
        self.interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        if self.interval <= 0:
            return

        async with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.interval
            delay = slot - now

        if delay > 0:
            await self._sleep(delay)


class SlidingWindowRateLimiter:
    """
    In-memory sliding-window limiter keyed by an identifier (store id, client IP).

    Identifiers with no request inside the window are swept at most once per
    window, and at most max_identifiers are tracked; past that the least
    recently seen identifiers are dropped.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        max_identifiers: int = 10000,
        clock=time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_identifiers = max_identifiers
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def is_allowed(self, identifier: str) -> bool:
        now = self._clock()
        window_start = now - self.window_seconds
        if now - self._last_sweep >= self.window_seconds:
            self.cleanup()

        # Re-inserting keeps dict order least recently seen first
        requests = self._requests.pop(identifier, None) or deque()
        self._requests[identifier] = requests
        while requests and requests[0] <= window_start:
            requests.popleft()

        if len(requests) >= self.max_requests:
            logger.warning(
                "Webhook rate limit exceeded",
                identifier=identifier,
                max_requests=self.max_requests,
            )
            return False

        requests.append(now)
        self._evict_overflow()
        return True

    def cleanup(self) -> None:
        """Drop identifiers with no requests inside the current window."""
        now = self._clock()
        window_start = now - self.window_seconds
        for identifier in list(self._requests):
            requests = self._requests[identifier]
            while requests and requests[0] <= window_start:
                requests.popleft()
            if not requests:
                del self._requests[identifier]
        self._last_sweep = now

    def _evict_overflow(self) -> None:
        if len(self._requests) <= self.max_identifiers:
            return
        self.cleanup()
        overflow = len(self._requests) - self.max_identifiers
        if overflow > 0:
            for identifier in list(self._requests)[:overflow]:
                del self._requests[identifier]
            logger.warning("Rate limiter evicted identifiers", evicted=overflow, tracked=len(self._requests))

    def reset(self, identifier: Optional[str] = None) -> None:
        if identifier is None:
            self._requests.clear()
        else:
            self._requests.pop(identifier, None)

"""
Stale-while-revalidate cache for dashboard reads.

Each entry stores a value and the time it was fetched. Reads against a policy
return a fresh value directly, return a stale value while refreshing it in the
background, or block on a fetch when nothing usable is cached. Entries past
their policy's stale window are swept periodically, and the oldest entries are
evicted once max_entries is reached.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class CachePolicy:
    """TTL policy for one data category."""

    ttl_seconds: float
    stale_ttl_seconds: float = 0.0  # how long past ttl a value may still be served

    @property
    def max_age_seconds(self) -> float:
        return self.ttl_seconds + self.stale_ttl_seconds


CACHE_POLICIES: Dict[str, CachePolicy] = {
    "user_profile": CachePolicy(ttl_seconds=2 * 60 * 60, stale_ttl_seconds=24 * 60 * 60),
    "deals": CachePolicy(ttl_seconds=5 * 60, stale_ttl_seconds=60 * 60),
    "static": CachePolicy(ttl_seconds=30 * 60, stale_ttl_seconds=6 * 60 * 60),
    "api": CachePolicy(ttl_seconds=5 * 60, stale_ttl_seconds=30 * 60),
}


@dataclass
class CacheEntry:
    value: Any
    fetched_at: float
    expires_at: float  # past this the entry is unusable under its policy


class StaleWhileRevalidateCache:
    """In-process cache with per-policy TTLs and deduplicated background refresh."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 1000,
        sweep_interval_seconds: float = 60.0,
    ):
        self._clock = clock
        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds
        self._last_sweep = clock()
        self._entries: Dict[str, CacheEntry] = {}
        self._refreshing: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def _resolve_policy(self, policy: "CachePolicy | str") -> CachePolicy:
        if isinstance(policy, CachePolicy):
            return policy
        return CACHE_POLICIES[policy]

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        policy: "CachePolicy | str" = "api",
    ) -> Any:
        """
        Return the cached value for key, fetching or refreshing as the policy dictates.

        Args:
            key: Cache key
            fetcher: Coroutine factory producing the authoritative value
            policy: CachePolicy or the name of one in CACHE_POLICIES

        Returns:
            The cached or freshly fetched value
        """
        resolved = self._resolve_policy(policy)
        entry = self._entries.get(key)

        if entry is not None:
            age = self._clock() - entry.fetched_at
            if age <= resolved.ttl_seconds:
                return entry.value
            if age <= resolved.max_age_seconds:
                self._schedule_refresh(key, fetcher, resolved)
                return entry.value

        value = await fetcher()
        self.set(key, value, resolved)
        return value

    def get(self, key: str, policy: "CachePolicy | str" = "api") -> Optional[Any]:
        """Return a fresh cached value or None."""
        resolved = self._resolve_policy(policy)
        entry = self._entries.get(key)
        if entry is None or self._clock() - entry.fetched_at > resolved.ttl_seconds:
            return None
        return entry.value

    def set(self, key: str, value: Any, policy: "CachePolicy | str" = "api") -> None:
        now = self._clock()
        if now - self._last_sweep >= self.sweep_interval_seconds:
            self.prune()

        # Re-inserting keeps dict order oldest write first
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(
            value=value,
            fetched_at=now,
            expires_at=now + self._resolve_policy(policy).max_age_seconds,
        )

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            for doomed in list(self._entries)[:overflow]:
                del self._entries[doomed]
            logger.debug("Cache evicted oldest entries", evicted=overflow)

    def prune(self) -> int:
        """Drop entries that are past their stale window. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if entry.expires_at < now]
        for k in expired:
            del self._entries[k]
        self._last_sweep = now
        return len(expired)

    def invalidate(self, key: Optional[str] = None, prefix: Optional[str] = None) -> int:
        """Drop one key or every key starting with prefix. Returns how many were removed."""
        if key is not None:
            return 1 if self._entries.pop(key, None) is not None else 0

        if prefix is not None:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

        return 0

    def clear(self) -> None:
        self._entries.clear()

    def _schedule_refresh(self, key: str, fetcher: Callable[[], Awaitable[Any]], policy: CachePolicy) -> None:
        if key in self._refreshing:
            return

        self._refreshing.add(key)
        task = asyncio.create_task(self._refresh(key, fetcher, policy))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _refresh(self, key: str, fetcher: Callable[[], Awaitable[Any]], policy: CachePolicy) -> None:
        try:
            value = await fetcher()
            self.set(key, value, policy)
            logger.debug("Cache entry revalidated", key=key)
        except Exception as e:
            # Keep serving the stale value
            logger.warning("Background cache refresh failed", key=key, error=str(e))
        finally:
            self._refreshing.discard(key)

    async def drain(self) -> None:
        """Wait for in-flight background refreshes (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


response_cache = StaleWhileRevalidateCache()

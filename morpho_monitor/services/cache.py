"""Caching service for reducing RPC calls.

This module provides a TTL cache whose expired entries stay readable, and the
per-wallet position cache built on it: fresh entries are served without
touching the chain, and an expired entry is served as a degraded fallback
when a refetch fails.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from morpho_monitor.services.metrics import record_cache_lookup

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """Cache entry with TTL tracking."""
    value: T
    created_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl_seconds


class TTLCache(Generic[T]):
    """Generic TTL-based cache.

    Expired entries are not evicted on read; ``get_entry`` still returns
    them so callers can fall back to stale data.
    """

    def __init__(self, default_ttl_seconds: float = 60.0, clock: Callable[[], float] = time.time):
        self._cache: Dict[str, CacheEntry[T]] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._hits = 0
        self._misses = 0

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> Optional[T]:
        """Get value from cache if present and not expired."""
        entry = self._cache.get(key)
        if entry is None or entry.is_expired(self._clock()):
            self._misses += 1
            return None

        self._hits += 1
        return entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry[T]]:
        """Get the entry regardless of age."""
        return self._cache.get(key)

    def set(self, key: str, value: T, ttl_seconds: float | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        self._cache[key] = CacheEntry(
            value=value,
            created_at=self._clock(),
            ttl_seconds=ttl,
        )

    def delete(self, key: str) -> bool:
        """Delete an entry from the cache.

        Returns:
            True if entry was deleted, False if not found
        """
        if key in self._cache:
            del self._cache[key]
            return True
        return False

    def clear(self) -> int:
        """Clear all entries from the cache.

        Returns:
            Number of entries cleared
        """
        count = len(self._cache)
        self._cache.clear()
        return count

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0

        return {
            "entries": len(self._cache),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate_percent": hit_rate,
        }


@dataclass
class CachedValue(Generic[T]):
    """A value handed out by the position cache, flagged when served stale."""
    value: T
    fetched_at: float
    stale: bool = False


class PositionCache(Generic[T]):
    """Cache for wallet positions keyed by lower-cased address."""

    DEFAULT_TTL = 60.0

    def __init__(self, ttl_seconds: float = DEFAULT_TTL, clock: Callable[[], float] = time.time):
        self._cache: TTLCache[T] = TTLCache(default_ttl_seconds=ttl_seconds, clock=clock)

    def _make_key(self, wallet_address: str) -> str:
        return wallet_address.lower()

    async def get_or_fetch(
        self,
        wallet_address: str,
        fetcher: Callable[[str], Awaitable[T]],
        force: bool = False,
    ) -> CachedValue[T]:
        """
        Return fresh cached positions, or fetch and cache them.

        If the fetch raises and an older entry exists, that entry is returned
        with ``stale=True`` and the error is only logged. Without an entry
        the error propagates. ``force`` skips the freshness check but keeps
        the existing entry as a fallback.
        """
        key = self._make_key(wallet_address)

        cached = None if force else self._cache.get(key)
        if cached is not None:
            record_cache_lookup("hit")
            return CachedValue(value=cached, fetched_at=self._cache.get_entry(key).created_at)

        record_cache_lookup("miss")
        try:
            value = await fetcher(wallet_address)
        except Exception as e:
            entry = self._cache.get_entry(key)
            if entry is None:
                raise
            record_cache_lookup("stale")
            logger.warning(
                f"Fetching positions for {wallet_address} failed ({e}); "
                f"serving snapshot from {self._cache.now() - entry.created_at:.0f}s ago"
            )
            return CachedValue(value=entry.value, fetched_at=entry.created_at, stale=True)

        self._cache.set(key, value)
        return CachedValue(value=value, fetched_at=self._cache.get_entry(key).created_at)

    def peek(self, wallet_address: str) -> Optional[T]:
        """Return the cached value for a wallet regardless of age, without fetching."""
        entry = self._cache.get_entry(self._make_key(wallet_address))
        return entry.value if entry is not None else None

    def invalidate(self, wallet_address: str | None = None) -> int:
        """Drop one wallet's entry, or every entry when no address is given."""
        if wallet_address is None:
            return self._cache.clear()
        return int(self._cache.delete(self._make_key(wallet_address)))

    def get_stats(self) -> Dict[str, Any]:
        return self._cache.get_stats()

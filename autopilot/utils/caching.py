"""Caching layer for idempotent collaborator lookups.

Provides an async-compatible in-memory cache with per-entry TTL, size-bounded
LRU eviction and hit/miss statistics. Designed for use in async contexts
where the cache is shared by many concurrent workflow runs.

Key Features:
    - Per-entry TTL; expired entries are never returned
    - Eviction of the least recently used 10% of entries at capacity
    - Approximate memory accounting for monitoring
    - Optional background sweep of expired entries
    - Cache statistics (hits, misses, hit ratio, evictions, expirations)

Key Exports:
    CacheManager: TTL and LRU cache owned by one resilient client.
    CacheEntry: A stored value with its bookkeeping.
    CacheKeyBuilder: Helper for consistent cache key generation.
    estimate_size: Approximate size of a value in bytes.

Example:
    >>> from autopilot.utils.caching import CacheManager
    >>>
    >>> cache = CacheManager(default_ttl=300, max_size=100, name="analyzer")
    >>> await cache.set("issue:123", analysis)
    >>> analysis = await cache.get("issue:123")

Thread Safety:
    Mutating operations use asyncio.Lock, making them safe for concurrent
    access from multiple async tasks. The cache is not designed for
    multi-process scenarios.

Performance Notes:
    - Cache keys are hashed using MD5 (non-cryptographic, for speed)
    - Eviction is O(n log n) when the cache is full (sorts by recency)
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel

from autopilot.config.settings import CacheConfig

log = structlog.get_logger(__name__)

EVICTION_FRACTION = 0.1


def estimate_size(value: Any) -> int:
    """Approximate the memory footprint of a value in bytes.

    Only the relative ordering of sizes matters, so a cheap heuristic is
    used: strings count two bytes per character, numbers 8, booleans 4 and
    structured values two bytes per character of their JSON form.
    """
    if isinstance(value, str):
        return len(value) * 2
    if isinstance(value, bool):
        return 4
    if isinstance(value, (int, float)):
        return 8
    if isinstance(value, BaseModel):
        return len(value.model_dump_json()) * 2
    try:
        return len(json.dumps(value, default=str)) * 2
    except (TypeError, ValueError):
        return 1024


@dataclass
class CacheEntry:
    """A cached value and its bookkeeping."""

    value: Any
    created_at: float
    ttl: float
    last_accessed: float
    size: int
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return self.ttl <= 0 or now - self.created_at > self.ttl


class CacheManager:
    """Async cache with TTL and LRU eviction.

    Attributes:
        name: Cache name used in logs and metrics
        default_ttl: TTL applied when ``set`` is given none
        max_size: Maximum number of entries
        enabled: A disabled cache stores nothing and always misses

    Example:
        >>> cache = CacheManager(default_ttl=60, max_size=1000)
        >>> await cache.set("key", {"data": "value"})
        >>> await cache.get("key")
        {'data': 'value'}
        >>> stats = cache.get_stats()
        >>> print(f"Hit ratio: {stats['hit_ratio']:.2%}")

    Note:
        ``None`` is the miss sentinel; cache a wrapper object if ``None``
        is a meaningful value.
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_size: int = 1000,
        enabled: bool = True,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.name = name
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.enabled = enabled
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task[None] | None = None
        self._reset_counters()

    @classmethod
    def from_config(
        cls, config: CacheConfig, name: str = "default", clock: Callable[[], float] = time.monotonic
    ) -> CacheManager:
        return cls(
            default_ttl=config.default_ttl,
            max_size=config.max_size,
            enabled=config.enabled,
            name=name,
            clock=clock,
        )

    def _reset_counters(self) -> None:
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    async def get(self, key: str) -> Any | None:
        """Get a value from the cache.

        Expired entries are removed and reported as a miss.

        Args:
            key: The cache key to look up

        Returns:
            The cached value, or None on a miss
        """
        if not self.enabled:
            self._misses += 1
            return None

        async with self._lock:
            entry = self._entries.get(key)
            now = self._clock()
            if entry is not None:
                if not entry.is_expired(now):
                    entry.access_count += 1
                    entry.last_accessed = now
                    self._hits += 1
                    log.debug("cache_hit", cache=self.name, key=key)
                    return entry.value
                del self._entries[key]
                self._expirations += 1
                log.debug("cache_expired", cache=self.name, key=key)

            self._misses += 1
            log.debug("cache_miss", cache=self.name, key=key)
            return None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set a value in the cache.

        Setting an existing key replaces the value and restarts its TTL.
        When a new key arrives at capacity, the least recently used tenth
        of the entries (at least one) is evicted first.

        Args:
            key: The cache key
            value: The value to cache
            ttl: Lifetime in seconds, defaults to ``default_ttl``
        """
        if not self.enabled:
            return

        async with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict()

            now = self._clock()
            self._entries[key] = CacheEntry(
                value=value,
                created_at=now,
                ttl=self.default_ttl if ttl is None else ttl,
                last_accessed=now,
                size=estimate_size(value),
            )
            log.debug("cache_set", cache=self.name, key=key)

    def _evict(self) -> None:
        # Caller must hold the lock.
        count = max(1, math.floor(self.max_size * EVICTION_FRACTION))
        victims = sorted(
            self._entries.items(),
            key=lambda item: (item[1].last_accessed, item[1].access_count),
        )[:count]
        for key, _ in victims:
            del self._entries[key]
        self._evictions += len(victims)
        log.debug("cache_evicted", cache=self.name, count=len(victims))

    async def delete(self, key: str) -> bool:
        """Delete a value from the cache.

        Returns:
            True if the key existed and was deleted, False otherwise
        """
        async with self._lock:
            if key in self._entries:
                del self._entries[key]
                log.debug("cache_delete", cache=self.name, key=key)
                return True
            return False

    async def has(self, key: str) -> bool:
        """Check for a live entry without touching hit statistics."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._expirations += 1
                return False
            return True

    async def clear(self) -> None:
        """Remove all entries and reset statistics."""
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._reset_counters()
            log.info("cache_cleared", cache=self.name, entries_cleared=count)

    async def cleanup(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
        if expired:
            log.debug("cache_swept", cache=self.name, removed=len(expired))
        return len(expired)

    def keys(self) -> list[str]:
        return list(self._entries)

    def size(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics.

        Reading statistics never changes cache state.

        Returns:
            Dictionary containing entries, max_size, hits, misses, hit_ratio,
            evictions, expirations and memory_usage (approximate bytes)
        """
        total = self._hits + self._misses
        return {
            "name": self.name,
            "enabled": self.enabled,
            "entries": len(self._entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_ratio": self._hits / total if total else 0.0,
            "evictions": self._evictions,
            "expirations": self._expirations,
            "memory_usage": sum(entry.size for entry in self._entries.values()),
        }

    # -------------------------------------------------------------------------
    # Background sweep
    # -------------------------------------------------------------------------

    def start_sweeper(self, interval: float) -> None:
        """Start a background task that removes expired entries periodically.

        Requires a running event loop. Calling it again while a sweeper is
        running does nothing.
        """
        if interval <= 0 or not self.enabled:
            return
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(interval))

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.cleanup()

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None


class CacheKeyBuilder:
    """Helper for building consistent cache keys.

    Example:
        >>> key = CacheKeyBuilder.build_namespaced_key("analyzer", 123, "Test Issue")
        >>> print(key)  # "analyzer:a1b2c3..."
    """

    @staticmethod
    def build_key(*parts: Any) -> str:
        """Build a cache key from multiple parts.

        Joins parts with colons and hashes the result for a fixed-length
        key that's safe to use regardless of input length.

        Returns:
            MD5 hash of the joined parts (32 hex characters)
        """
        key_str = ":".join(str(part) for part in parts)
        return hashlib.md5(key_str.encode(), usedforsecurity=False).hexdigest()

    @staticmethod
    def build_namespaced_key(namespace: str, *parts: Any) -> str:
        """Build a key in the format "namespace:hash"."""
        return f"{namespace}:{CacheKeyBuilder.build_key(*parts)}"

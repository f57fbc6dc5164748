"""
Query cache for metadata reads.

A thread-safe LRU cache with TTL expiry and dependency-based invalidation.
Each entry can be registered against the identities it was computed from
(a conversation id, a file path, ...); a write to one of those identities
drops every entry that depends on it.
"""

import time
import logging
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Hashable, Iterable, Set, Tuple

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: Hashable
    value: Any
    inserted_at: float
    last_access_at: float


@dataclass
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    hit_rate: float


class QueryCache:
    """
    LRU + TTL cache with an explicit dependency -> key index.

    Attributes:
        max_size: Maximum number of entries (strict LRU eviction beyond it)
        ttl_ms: Entry lifetime in milliseconds
    """

    def __init__(self, max_size: int = 100, ttl_ms: int = 300_000):
        """
        Initialize the cache.

        Args:
            max_size: Maximum cache size (default: 100 entries)
            ttl_ms: Time-to-live in milliseconds (default: 5 minutes)
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_ms = ttl_ms
        self._entries: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._dependents: Dict[Hashable, Set[Hashable]] = {}
        self._depends_on: Dict[Hashable, Set[Hashable]] = {}
        self._lock = Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @staticmethod
    def _now_ms() -> float:
        return time.monotonic() * 1000

    def get(self, key: Hashable) -> Tuple[bool, Any]:
        """
        Get a value from the cache.

        Returns:
            Tuple of (found, value). If not found or expired, returns (False, None).
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return False, None

            now = self._now_ms()
            if now - entry.inserted_at > self.ttl_ms:
                self._remove(key)
                self._misses += 1
                return False, None

            entry.last_access_at = now
            self._entries.move_to_end(key)
            self._hits += 1
            return True, entry.value

    def set(self, key: Hashable, value: Any, depends_on: Iterable[Hashable] = ()) -> None:
        """
        Insert or overwrite a value.

        Args:
            key: The cache key (must be hashable)
            value: The value to cache
            depends_on: Identities whose mutation must invalidate this entry
        """
        with self._lock:
            now = self._now_ms()
            if key in self._entries:
                self._remove(key)
            elif len(self._entries) >= self.max_size:
                oldest, _ = next(iter(self._entries.items()))
                self._remove(oldest)
                self._evictions += 1

            self._entries[key] = CacheEntry(key=key, value=value, inserted_at=now, last_access_at=now)

            deps = set(depends_on)
            if deps:
                self._depends_on[key] = deps
                for dep in deps:
                    self._dependents.setdefault(dep, set()).add(key)

    def _remove(self, key: Hashable) -> None:
        """Drop an entry and its dependency links. Must be called with lock held."""
        self._entries.pop(key, None)
        for dep in self._depends_on.pop(key, ()):
            keys = self._dependents.get(dep)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._dependents[dep]

    def invalidate(self, key: Hashable) -> bool:
        """Remove a specific key. Returns True if it was present."""
        with self._lock:
            present = key in self._entries
            self._remove(key)
            return present

    def invalidate_dependency(self, *dependencies: Hashable) -> int:
        """
        Remove every entry registered against any of the given identities.

        Returns:
            Number of entries removed
        """
        with self._lock:
            keys: Set[Hashable] = set()
            for dep in dependencies:
                keys |= self._dependents.get(dep, set())
            for key in keys:
                self._remove(key)
        if keys:
            logger.debug(f"Invalidated {len(keys)} cache entries for {dependencies}")
        return len(keys)

    def clear(self) -> int:
        """Drop all entries and reset statistics. Returns the number of entries cleared."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._dependents.clear()
            self._depends_on.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            return count

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                size=len(self._entries),
                max_size=self.max_size,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                hit_rate=self._hits / total if total > 0 else 0.0,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries


def make_cache_key(operation: str, *args, **kwargs) -> Tuple:
    """
    Create a hashable cache key for an operation and its arguments.

    Lists, dicts and sets are converted so they can be hashed.
    """
    def make_hashable(obj):
        if isinstance(obj, list):
            return tuple(make_hashable(x) for x in obj)
        if isinstance(obj, dict):
            return tuple(sorted((k, make_hashable(v)) for k, v in obj.items()))
        if isinstance(obj, set):
            return frozenset(make_hashable(x) for x in obj)
        return obj

    hashable_args = tuple(make_hashable(a) for a in args)
    hashable_kwargs = tuple(sorted((k, make_hashable(v)) for k, v in kwargs.items()))
    return (operation, hashable_args, hashable_kwargs)


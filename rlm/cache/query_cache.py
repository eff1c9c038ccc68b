"""
LRU query cache with TTL expiry and optional fuzzy matching.

Keys have the form ``<mode>:<sorted agent ids>:<normalized query>``. Keys
capture document identity only, not content, so the pipeline invalidates
the whole cache whenever the loaded document set changes.
"""

from __future__ import annotations

import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from ..config.loader import CacheConfig

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCTUATION = re.compile(r"[?!.]+$")
_POLITENESS = re.compile(r"\b(please|can you|could you|would you)\b", re.IGNORECASE)


def normalize_query(query: str) -> str:
    """Lower-case, collapse whitespace, drop trailing punctuation and politeness."""
    normalized = _WHITESPACE.sub(" ", query.lower().strip())
    normalized = _TRAILING_PUNCTUATION.sub("", normalized)
    normalized = _POLITENESS.sub("", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def levenshtein_similarity(a: str, b: str) -> float:
    """1 - edit_distance / max_len, in [0, 1]."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    previous = list(range(len(a) + 1))
    for j, char_b in enumerate(b, 1):
        current = [j]
        for i, char_a in enumerate(a, 1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                current[i - 1] + 1,
                previous[i] + 1,
                previous[i - 1] + cost,
            ))
        previous = current

    return 1 - previous[-1] / max(len(a), len(b))


@dataclass
class CacheEntry:
    """A cached pipeline result."""

    key: str
    value: Any
    created_at: float
    last_accessed_at: float
    expires_at: float
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def touch(self, now: float) -> None:
        self.last_accessed_at = now
        self.hit_count += 1


@dataclass
class CacheStats:
    """Counters for cache behaviour."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    fuzzy_hits: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests


@dataclass
class QueryCache:
    """
    In-memory LRU cache for pipeline results.

    ``clock`` returns seconds and defaults to time.monotonic; tests inject
    a fake clock to step past TTLs.

    Usage:
        cache = QueryCache(CacheConfig(default_ttl=60))
        key = cache.generate_key("What was decided?", ["m1", "m2"])
        if (hit := cache.get(key)) is None:
            cache.set(key, result)
    """

    config: CacheConfig = field(default_factory=CacheConfig)
    clock: Callable[[], float] = time.monotonic
    stats: CacheStats = field(default_factory=CacheStats)

    def __post_init__(self):
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def generate_key(
        self,
        query: str,
        active_agent_ids: Iterable[str] = (),
        mode: str = "rlm",
    ) -> str:
        normalized = normalize_query(query) if self.config.normalize_queries else query
        return f"{self._prefix(active_agent_ids, mode)}{normalized}"

    @staticmethod
    def _prefix(active_agent_ids: Iterable[str], mode: str) -> str:
        return f"{mode}:{','.join(sorted(active_agent_ids))}:"

    def get(self, key: str, count_miss: bool = True) -> Any | None:
        """
        Return the cached value, or None on a miss or expiry.

        ``count_miss=False`` leaves the miss counter to the caller, which
        lookup() uses so a fuzzy fallback is counted as one request.
        """
        now = self.clock()
        entry = self._entries.get(key)

        if entry is None:
            if count_miss:
                self.stats.misses += 1
            return None

        if entry.is_expired(now):
            del self._entries[key]
            self.stats.expirations += 1
            if count_miss:
                self.stats.misses += 1
            logger.debug(f"Cache entry expired: {key[:50]}")
            return None

        entry.touch(now)
        self._entries.move_to_end(key)
        self.stats.hits += 1
        logger.info(f"Cache HIT for key: {key[:50]}")
        return entry.value

    def get_fuzzy(
        self,
        query: str,
        active_agent_ids: Iterable[str] = (),
        mode: str = "rlm",
    ) -> Any | None:
        """
        Best same-context entry whose query similarity meets the threshold.

        Always None when fuzzy matching is disabled.
        """
        if not self.config.enable_fuzzy_match:
            return None

        now = self.clock()
        normalized = normalize_query(query)
        prefix = self._prefix(active_agent_ids, mode)

        best_key: str | None = None
        best_similarity = 0.0
        for key, entry in self._entries.items():
            if entry.is_expired(now) or not key.startswith(prefix):
                continue
            similarity = levenshtein_similarity(normalized, key[len(prefix):])
            if similarity >= self.config.fuzzy_threshold and similarity > best_similarity:
                best_key = key
                best_similarity = similarity

        if best_key is None:
            return None

        entry = self._entries[best_key]
        entry.touch(now)
        self._entries.move_to_end(best_key)
        self.stats.hits += 1
        self.stats.fuzzy_hits += 1
        logger.info(f"Cache FUZZY HIT ({best_similarity:.1%} similarity)")
        return entry.value

    def lookup(
        self,
        query: str,
        active_agent_ids: Iterable[str] = (),
        mode: str = "rlm",
    ) -> Any | None:
        """Exact lookup with fuzzy fallback, counted as a single request."""
        key = self.generate_key(query, active_agent_ids, mode)
        value = self.get(key, count_miss=False)
        if value is None:
            value = self.get_fuzzy(query, active_agent_ids, mode)
        if value is None:
            self.stats.misses += 1
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value, evicting the least recently used entry at capacity."""
        now = self.clock()
        if ttl is None:
            ttl = self.config.default_ttl

        if key not in self._entries and len(self._entries) >= self.config.max_entries:
            self._evict_lru()

        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            last_accessed_at=now,
            expires_at=now + ttl,
        )
        self._entries.move_to_end(key)
        logger.debug(f"Cache SET key: {key[:50]} (TTL: {ttl:.0f}s)")

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        oldest_key, _ = self._entries.popitem(last=False)
        self.stats.evictions += 1
        logger.debug(f"Cache EVICT LRU entry: {oldest_key[:50]}")

    def has(self, key: str) -> bool:
        """True if a live entry exists. Does not count as a hit or miss."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self.clock()):
            del self._entries[key]
            self.stats.expirations += 1
            return False
        return True

    def invalidate(self) -> int:
        """Drop every entry. Returns the number removed."""
        size = len(self._entries)
        self._entries.clear()
        if size:
            logger.info(f"Cache cleared ({size} entries)")
        return size

    clear = invalidate

    def clear_expired(self) -> int:
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self.stats.expirations += len(expired)
        return len(expired)

    def entries(self) -> list[dict]:
        """Debug view of the current entries."""
        now = self.clock()
        return [
            {
                "key": key[:80] + ("..." if len(key) > 80 else ""),
                "is_expired": entry.is_expired(now),
                "hit_count": entry.hit_count,
                "age_seconds": round(now - entry.created_at),
                "ttl_remaining_seconds": max(0, round(entry.expires_at - now)),
            }
            for key, entry in self._entries.items()
        ]

    def reset_stats(self) -> None:
        self.stats = CacheStats()

    def get_stats(self) -> dict:
        return {
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "evictions": self.stats.evictions,
            "expirations": self.stats.expirations,
            "fuzzy_hits": self.stats.fuzzy_hits,
            "size": len(self._entries),
            "max_size": self.config.max_entries,
            "hit_rate": round(self.stats.hit_rate, 3),
            "total_requests": self.stats.total_requests,
        }

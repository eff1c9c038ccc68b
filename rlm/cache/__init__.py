"""Query result cache."""

from .query_cache import (
    CacheEntry,
    CacheStats,
    QueryCache,
    levenshtein_similarity,
    normalize_query,
)

__all__ = [
    "CacheEntry",
    "CacheStats",
    "QueryCache",
    "levenshtein_similarity",
    "normalize_query",
]

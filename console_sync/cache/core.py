"""
Core cache data structures.
"""
from dataclasses import dataclass
from typing import Any, Optional
from enum import Enum


class CacheSource(Enum):
    """Where the value handed to a reader came from."""
    FRESH = "fresh"        # Within TTL
    STALE = "stale"        # Past TTL, revalidating in the background
    UPSTREAM = "upstream"  # Fetched from the backend for this call
    MISS = "miss"          # Nothing to show yet


@dataclass
class CacheEntry:
    """
    The last successfully fetched payload for a query key.

    fetched_at is epoch seconds as reported by the store's clock; ttl_ms is
    how long the value counts as fresh.
    """
    value: Any
    fetched_at: float
    ttl_ms: int

    def age_ms(self, now: float) -> float:
        """Milliseconds since data was fetched."""
        return (now - self.fetched_at) * 1000.0

    def is_fresh(self, now: float, ttl_ms: Optional[int] = None) -> bool:
        """
        Check if data is within its TTL.

        A reader may ask for a shorter TTL than the one stored with the
        entry; the stricter of the two applies.
        """
        limit = self.ttl_ms if ttl_ms is None else min(self.ttl_ms, ttl_ms)
        return self.age_ms(now) < limit


@dataclass
class CacheRead:
    """
    Result of a non-blocking cache read.

    value is None when nothing usable is cached. error carries the most
    recent refresh failure for the key so the view can decide whether to
    show a banner next to the (possibly stale) value.
    """
    value: Any
    is_stale: bool
    refreshing: bool
    error: Optional[BaseException] = None
    fetched_at: Optional[float] = None
    age_ms: Optional[float] = None

    @property
    def has_value(self) -> bool:
        return self.fetched_at is not None and self.value is not None

    @property
    def cache_source(self) -> CacheSource:
        if self.fetched_at is None or self.value is None:
            return CacheSource.MISS
        return CacheSource.STALE if self.is_stale else CacheSource.FRESH

    def to_dict(self) -> dict:
        """Convert to a dictionary describing cache status."""
        result = {
            "cacheSource": self.cache_source.value,
            "refreshing": self.refreshing,
            "error": str(self.error) if self.error else None,
        }
        if self.age_ms is not None:
            result["ageMs"] = round(self.age_ms, 1)
        return result


@dataclass
class CacheEvent:
    """Notification sent to subscribers after a refresh succeeds or fails."""
    key: str
    value: Any = None
    fetched_at: Optional[float] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

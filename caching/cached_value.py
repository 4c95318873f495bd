"""
Cached value object with TTL
Keeps the last fetched value and when it was fetched, so callers can fall back to it
"""

import time
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    value: T
    fetched_at: float
    ttl: float

    def is_fresh(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.fetched_at < self.ttl

    def age(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return now - self.fetched_at


async def cache_or_fetch(
    cached: Optional[CachedValue[T]],
    fetch: Callable[[], Awaitable[T]],
    ttl: float,
    now: Optional[float] = None,
) -> CachedValue[T]:
    """Return ``cached`` while fresh, otherwise fetch and wrap a new value. Fetch errors propagate."""
    now = time.time() if now is None else now
    if cached is not None and cached.is_fresh(now):
        logger.debug(f"Cache hit (age {cached.age(now):.0f}s)")
        return cached
    value = await fetch()
    return CachedValue(value=value, fetched_at=now, ttl=ttl)

"""
In-memory cache with TTL support for provider catalogs and credit lookups.
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar
from utils.logger import app_logger

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


class TTLCache(Generic[T]):
    """
    Process-local cache with per-entry expiry and LRU-style size bound.
    """

    def __init__(self, ttl: float, max_size: int = 256, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            ttl: Seconds an entry stays valid
            max_size: Maximum number of entries kept
            clock: Time source, injectable for tests
        """
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[T]] = {}

    def get(self, key: Hashable) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None

        # Move to the end so eviction drops the least recently used key
        self._entries.pop(key)
        self._entries[key] = entry
        return entry.value

    def set(self, key: Hashable, value: T, ttl: Optional[float] = None) -> None:
        if key in self._entries:
            self._entries.pop(key)
        elif len(self._entries) >= self._max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            app_logger.debug(f"Cache evicted {oldest!r}")

        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + (ttl if ttl is not None else self._ttl))

    def clear(self) -> None:
        self._entries.clear()


class RequestCache:
    """
    Request-scoped memo for async lookups.
    Avoids repeating the same query several times within one request.
    """

    def __init__(self):
        self._values: dict[Hashable, Any] = {}

    async def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        if key in self._values:
            return self._values[key]

        value = await loader()
        self._values[key] = value
        return value

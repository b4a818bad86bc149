"""
In-memory TTL cache used for Strava responses (activity lists, activity
details, insights, photos).

Entries remember how much data was requested when they were stored. A
later request for more than that is a miss, so a 20-item list is never
served to a caller asking for 200.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float
    requested_size: int = 0

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at

    def covers(self, requested_size: int) -> bool:
        return requested_size <= self.requested_size


class TTLCache(Generic[T]):
    def __init__(self, name: str, default_ttl: float, clock: Callable[[], float] = time.time):
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry[T]] = {}

    def get(self, key: str, requested_size: int = 0) -> Optional[T]:
        """Return the cached value if fresh and large enough, else None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            logger.debug(f"{self.name} cache expired for {key}")
            return None
        if not entry.covers(requested_size):
            logger.debug(
                f"{self.name} cache for {key} too small "
                f"({entry.requested_size} < {requested_size})"
            )
            return None
        return entry.value

    def get_stale(self, key: str, requested_size: int = 0) -> Optional[T]:
        """Return the value regardless of expiry; used when upstream fails."""
        entry = self._entries.get(key)
        if entry is None or not entry.covers(requested_size):
            return None
        return entry.value

    def set(self, key: str, value: T, ttl: Optional[float] = None, requested_size: int = 0) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(
            value=value,
            expires_at=self._clock() + ttl,
            requested_size=requested_size,
        )

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

"""
Shared Data Service.

Per-user activity cache shared by every route in the process so that
near-simultaneous requests for one user don't each hit Strava.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .single_flight import SingleFlight
from .strava_client import is_degraded

logger = logging.getLogger(__name__)

DEFAULT_TTL = 15 * 60  # 15 minutes
DEFAULT_MAX_AGE = 5 * 60


@dataclass
class _UserActivities:
    activities: List[Dict[str, Any]]
    fetched_at: float
    ttl: float


class SharedDataService:
    def __init__(self, default_ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self._clock = clock
        self._cache: Dict[str, _UserActivities] = {}
        self._last_fetch: Dict[str, float] = {}
        self._flights = SingleFlight()

    def get_activities(self, user_id: str) -> Optional[List[Dict[str, Any]]]:
        entry = self._cache.get(user_id)
        if entry is None:
            return None

        age = self._clock() - entry.fetched_at
        if age >= entry.ttl:
            logger.debug(f"Shared activities cache expired for user {user_id}")
            return None

        logger.debug(f"Serving shared activities cache for user {user_id} ({len(entry.activities)} items, {age:.0f}s old)")
        return entry.activities

    def set_activities(self, user_id: str, activities: List[Dict[str, Any]], ttl: Optional[float] = None) -> None:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        self._cache[user_id] = _UserActivities(activities=activities, fetched_at=now, ttl=ttl)
        self._last_fetch[user_id] = now
        logger.debug(f"Cached {len(activities)} shared activities for user {user_id} (ttl={ttl}s)")

    def should_fetch(self, user_id: str, max_age: float = DEFAULT_MAX_AGE) -> bool:
        """
        Advisory check: False while another request fetched (or started
        fetching) for this user less than ``max_age`` seconds ago. Prefer
        ``get_or_fetch`` which actually deduplicates.
        """
        last = self._last_fetch.get(user_id)
        if last is None:
            return True
        return self._clock() - last >= max_age

    def mark_fetch_in_progress(self, user_id: str) -> None:
        self._last_fetch[user_id] = self._clock()

    async def get_or_fetch(self, user_id: str,
                           fetch: Callable[[], Awaitable[List[Dict[str, Any]]]],
                           ttl: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Return cached activities, or run ``fetch`` once for all concurrent
        callers. Degraded results are handed back but not cached, so the next
        request asks Strava again.
        """
        cached = self.get_activities(user_id)
        if cached is not None:
            return cached

        async def _load():
            # Another flight may have filled the cache between our check and now.
            cached = self.get_activities(user_id)
            if cached is not None:
                return cached
            self.mark_fetch_in_progress(user_id)
            activities = await fetch()
            if is_degraded(activities):
                logger.info(f"Not caching degraded activities for user {user_id}")
            else:
                self.set_activities(user_id, activities, ttl)
            return activities

        return await self._flights.run(user_id, _load)

    def clear_user(self, user_id: str) -> None:
        self._cache.pop(user_id, None)
        self._last_fetch.pop(user_id, None)
        logger.debug(f"Cleared shared cache for user {user_id}")

    def clear_all(self) -> None:
        self._cache.clear()
        self._last_fetch.clear()
        logger.debug("Cleared all shared cache")

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "total_users": len(self._cache),
            "users": [
                {
                    "user_id": user_id,
                    "activities_count": len(entry.activities),
                    "age": now - entry.fetched_at,
                    "is_expired": now - entry.fetched_at >= entry.ttl,
                }
                for user_id, entry in self._cache.items()
            ],
        }

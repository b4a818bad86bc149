"""
Strava API client with caching and rate-limit handling.

Read paths prefer stale data over errors: a 429 from Strava degrades to
the last cached response (or an empty result), and other failures fall
back to stale cache before surfacing as ``StravaUnavailable``.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..errors import StravaReauthRequired, StravaUnavailable
from .cache import TTLCache
from .request_queue import StravaRequestQueue
from .retry import RetryPolicy, parse_retry_after

logger = logging.getLogger(__name__)

STRAVA_API_BASE_URL = "https://www.strava.com/api/v3"

DEFAULT_TIMEOUT = 12.0  # seconds
ACTIVITIES_TTL = 5 * 60
DETAILS_TTL = 30 * 60

class ActivityList(list):
    """
    Activity list that remembers whether it is a fallback (stale cache, or
    empty after a 429) rather than a fresh Strava response. Callers must not
    cache degraded lists as if they were fresh.
    """

    def __init__(self, items=(), degraded: bool = False):
        super().__init__(items)
        self.degraded = degraded


def is_degraded(value: Any) -> bool:
    return getattr(value, "degraded", False)


# Fields copied from the detailed activity onto the summary record
DETAIL_GEO_FIELDS = (
    "start_latlng",
    "end_latlng",
    "map",
    "start_latitude",
    "start_longitude",
    "end_latitude",
    "end_longitude",
)


class StravaClient:
    def __init__(self, http: httpx.AsyncClient,
                 queue: Optional[StravaRequestQueue] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 detail_concurrency: int = 5,
                 default_timeout: float = DEFAULT_TIMEOUT,
                 clock: Callable[[], float] = time.time):
        self._http = http
        self.queue = queue
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self.detail_concurrency = max(1, detail_concurrency)
        self.default_timeout = default_timeout
        self.activities_cache: TTLCache[List[Dict[str, Any]]] = TTLCache("activities", ACTIVITIES_TTL, clock)
        self.details_cache: TTLCache[Dict[str, Any]] = TTLCache("activity-details", DETAILS_TTL, clock)

    @staticmethod
    def _headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def fetch_activities(self, access_token: str, count_hint: int = 10, *,
                               cache_key: Optional[str] = None,
                               ttl: Optional[float] = None,
                               after: Optional[int] = None,
                               before: Optional[int] = None,
                               timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Fetch the athlete's activity list (one page of ``count_hint`` items).
        Fallback results (stale cache, empty after a 429) come back as an
        ``ActivityList`` with ``degraded`` set.
        """
        if cache_key:
            cached = self.activities_cache.get(cache_key, count_hint)
            if cached is not None:
                logger.info(f"Serving cached Strava activities for {cache_key} ({len(cached)} items)")
                return cached

        params: Dict[str, Any] = {"per_page": count_hint}
        if after is not None:
            params["after"] = after
        if before is not None:
            params["before"] = before

        logger.info(f"Strava API: GET /athlete/activities {params}")
        try:
            response = await asyncio.wait_for(
                self._http.get(
                    f"{STRAVA_API_BASE_URL}/athlete/activities",
                    params=params,
                    headers=self._headers(access_token),
                ),
                timeout=timeout or self.default_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Strava activities fetch timed out after {timeout or self.default_timeout}s")
            return self._stale_or_raise(cache_key, count_hint, StravaUnavailable("Strava request timed out"))
        except httpx.HTTPError as e:
            logger.error(f"Strava API connection error: {e}")
            return self._stale_or_raise(cache_key, count_hint, StravaUnavailable(f"Connection error: {e}"))

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            logger.warning(f"Strava rate limited activities fetch (retry-after={retry_after})")
            stale = self.activities_cache.get_stale(cache_key, count_hint) if cache_key else None
            if stale is not None:
                logger.info(f"Serving stale activities for {cache_key} after 429")
                return ActivityList(stale, degraded=True)
            return ActivityList(degraded=True)

        if response.status_code != 200:
            logger.error(f"Strava activities fetch failed: {response.status_code} {response.text}")
            if response.status_code == 401:
                error = StravaReauthRequired()
            else:
                error = StravaUnavailable(f"Strava API error: {response.status_code}")
            return self._stale_or_raise(cache_key, count_hint, error)

        activities = response.json()
        logger.info(f"Fetched {len(activities)} activities from Strava")
        if cache_key:
            self.activities_cache.set(cache_key, activities, ttl=ttl, requested_size=count_hint)
        return activities

    def _stale_or_raise(self, cache_key: Optional[str], count_hint: int, error: Exception):
        if cache_key:
            stale = self.activities_cache.get_stale(cache_key, count_hint)
            if stale is not None:
                logger.warning(f"Serving stale activities for {cache_key}: {error}")
                return ActivityList(stale, degraded=True)
        raise error

    async def fetch_activity_details(self, access_token: str, activity_id: int) -> Optional[Dict[str, Any]]:
        """
        Detailed activity (GPS, map polyline). Returns None if Strava keeps
        rate limiting us after all retry attempts.
        """
        cache_key = str(activity_id)
        cached = self.details_cache.get(cache_key)
        if cached is not None:
            return cached

        async def _get():
            return await self._http.get(
                f"{STRAVA_API_BASE_URL}/activities/{activity_id}",
                headers=self._headers(access_token),
            )

        try:
            response = await self.retry_policy.send(_get, f"GET /activities/{activity_id}")
        except httpx.HTTPError as e:
            logger.error(f"Strava connection error fetching activity {activity_id}: {e}")
            stale = self.details_cache.get_stale(cache_key)
            if stale is not None:
                return stale
            raise StravaUnavailable(f"Connection error: {e}") from e

        if response.status_code == 429:
            stale = self.details_cache.get_stale(cache_key)
            if stale is None:
                logger.warning(f"Giving up on details for activity {activity_id} (rate limited)")
            return stale

        if response.status_code != 200:
            logger.error(f"Strava activity details fetch failed for {activity_id}: {response.status_code}")
            stale = self.details_cache.get_stale(cache_key)
            if stale is not None:
                return stale
            if response.status_code == 401:
                raise StravaReauthRequired()
            raise StravaUnavailable(f"Strava API error: {response.status_code}")

        details = response.json()
        self.details_cache.set(cache_key, details)
        return details

    async def fetch_activities_with_details(self, access_token: str, count_hint: int = 10,
                                            **fetch_opts) -> List[Dict[str, Any]]:
        """
        Activity list enriched with geographic fields from each activity's
        detail record. One failing detail call leaves that activity in its
        basic form and does not affect the others.

        With a queue the detail calls run one at a time through it; without
        one, at most ``detail_concurrency`` run at once.
        """
        activities = await self.fetch_activities(access_token, count_hint, **fetch_opts)
        semaphore = asyncio.Semaphore(self.detail_concurrency)

        async def _details(activity_id):
            if self.queue is not None:
                return await self.queue.enqueue(
                    lambda: self.fetch_activity_details(access_token, activity_id),
                    request_id=f"activity_{activity_id}",
                )
            async with semaphore:
                return await self.fetch_activity_details(access_token, activity_id)

        async def _enrich(activity: Dict[str, Any]) -> Dict[str, Any]:
            try:
                details = await _details(activity["id"])
            except Exception as e:
                logger.warning(f"Failed to fetch details for activity {activity.get('id')}, using basic data: {e}")
                return activity
            if not details:
                return activity
            merged = dict(activity)
            for f in DETAIL_GEO_FIELDS:
                merged[f] = details.get(f)
            return merged

        results = await asyncio.gather(*[_enrich(a) for a in activities], return_exceptions=True)
        return ActivityList(
            (r for r in results if not isinstance(r, BaseException)),
            degraded=is_degraded(activities),
        )

    async def fetch_activity_photos(self, access_token: str, activity_id: int) -> List[Dict[str, Any]]:
        async def _get():
            return await self._http.get(
                f"{STRAVA_API_BASE_URL}/activities/{activity_id}/photos",
                params={"size": 600, "photo_sources": "true"},
                headers=self._headers(access_token),
            )

        try:
            response = await self.retry_policy.send(_get, f"GET /activities/{activity_id}/photos")
        except httpx.HTTPError as e:
            raise StravaUnavailable(f"Connection error: {e}") from e

        if response.status_code == 429:
            return []
        if response.status_code != 200:
            raise StravaUnavailable(f"Photo fetch failed: {response.status_code} {response.text}")
        return response.json()

    def clear_cache_prefix(self, prefix: str) -> None:
        self.activities_cache.delete_prefix(prefix)

"""
Process-wide service objects, built once by the app lifespan and reached
from routes through ``request.app.state.services``.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .llm_provider import LLMProvider
from .rate_limit import RateLimiter
from .services.cache import TTLCache
from .services.request_queue import StravaRequestQueue
from .services.retry import RetryPolicy
from .services.shared_data import SharedDataService
from .services.strava_client import StravaClient
from .services.token_manager import AccountStore, SqlAccountStore, TokenManager

logger = logging.getLogger(__name__)

INSIGHTS_TTL = 2 * 60
PHOTOS_TTL = 10 * 60


@dataclass
class Services:
    settings: Settings
    http: httpx.AsyncClient
    session_factory: sessionmaker
    rate_limiter: RateLimiter
    shared_data: SharedDataService
    queue: StravaRequestQueue
    strava: StravaClient
    tokens: TokenManager
    insights_cache: TTLCache
    photos_cache: TTLCache
    llm_factory: Callable[[], LLMProvider]
    _llm: Optional[LLMProvider] = field(default=None, repr=False)

    def get_llm(self) -> LLMProvider:
        if self._llm is None:
            self._llm = self.llm_factory()
        return self._llm

    def forget_user(self, user_id: int) -> None:
        """Drop every per-user cache entry, e.g. after disconnecting Strava."""
        self.shared_data.clear_user(str(user_id))
        self.strava.clear_cache_prefix(f"activities:{user_id}:")
        self.insights_cache.delete(f"insights:{user_id}")
        self.photos_cache.delete(f"photos:{user_id}")

    async def aclose(self) -> None:
        logger.info("Shutting down services")
        self.queue.clear()
        await self.rate_limiter.stop_sweeper()
        await self.http.aclose()


def build_services(settings: Settings, session_factory: sessionmaker,
                   http: Optional[httpx.AsyncClient] = None,
                   account_store: Optional[AccountStore] = None,
                   llm_factory: Optional[Callable[[], LLMProvider]] = None,
                   clock: Optional[Callable[[], float]] = None,
                   retry_policy: Optional[RetryPolicy] = None) -> Services:
    http = http or httpx.AsyncClient(timeout=30.0)
    clock_kw = {"clock": clock} if clock else {}

    queue = StravaRequestQueue(delay=settings.STRAVA_QUEUE_DELAY)
    strava = StravaClient(
        http,
        queue=queue,
        retry_policy=retry_policy,
        detail_concurrency=settings.STRAVA_DETAIL_CONCURRENCY,
        default_timeout=settings.STRAVA_REQUEST_TIMEOUT,
        **clock_kw,
    )
    tokens = TokenManager(
        account_store or SqlAccountStore(session_factory),
        http,
        client_id=settings.STRAVA_CLIENT_ID,
        client_secret=settings.STRAVA_CLIENT_SECRET,
        **clock_kw,
    )

    return Services(
        settings=settings,
        http=http,
        session_factory=session_factory,
        rate_limiter=RateLimiter(**clock_kw),
        shared_data=SharedDataService(default_ttl=settings.SHARED_CACHE_TTL_SECONDS, **clock_kw),
        queue=queue,
        strava=strava,
        tokens=tokens,
        insights_cache=TTLCache("insights", INSIGHTS_TTL, **clock_kw),
        photos_cache=TTLCache("photos", PHOTOS_TTL, **clock_kw),
        llm_factory=llm_factory or (lambda: LLMProvider(settings, http)),
    )

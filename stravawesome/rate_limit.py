"""
In-memory rate limiter for API routes.

Fixed window per client identifier: the window opens on the first request
and the count resets once ``reset_at`` has passed. State is per process.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import Request
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: float
    max_requests: int


@dataclass
class RateLimitWindow:
    count: int
    reset_at: float


class RateLimits:
    # Strict limit for authentication endpoints
    AUTH = RateLimitConfig(window_seconds=15 * 60, max_requests=5)
    # Standard limit for API endpoints
    API = RateLimitConfig(window_seconds=60, max_requests=30)
    # Generous limit for data fetching
    DATA = RateLimitConfig(window_seconds=60, max_requests=60)
    # Strict limit for AI/expensive operations
    AI = RateLimitConfig(window_seconds=60, max_requests=10)


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def check(self, identifier: str, config: RateLimitConfig) -> bool:
        """Count a request; True if allowed, False if over the limit."""
        now = self._clock()
        window = self._windows.get(identifier)

        if window is None or now >= window.reset_at:
            self._windows[identifier] = RateLimitWindow(count=1, reset_at=now + config.window_seconds)
            return True

        if window.count < config.max_requests:
            window.count += 1
            return True

        reset = datetime.fromtimestamp(window.reset_at, timezone.utc).isoformat()
        logger.warning(
            f"Rate limit exceeded for {identifier}: {window.count}/{config.max_requests} (resets {reset})"
        )
        return False

    def get_info(self, identifier: str, config: RateLimitConfig) -> Dict[str, float]:
        now = self._clock()
        window = self._windows.get(identifier)
        if window is None or now >= window.reset_at:
            return {
                "limit": config.max_requests,
                "remaining": config.max_requests,
                "reset": now + config.window_seconds,
            }
        return {
            "limit": config.max_requests,
            "remaining": max(0, config.max_requests - window.count),
            "reset": window.reset_at,
        }

    def seconds_until_reset(self, identifier: str) -> int:
        window = self._windows.get(identifier)
        if window is None:
            return 0
        return max(0, math.ceil(window.reset_at - self._clock()))

    def clear(self, identifier: str) -> None:
        self._windows.pop(identifier, None)

    def sweep(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for k in expired:
            del self._windows[k]
        if expired:
            logger.debug(f"Rate limiter sweep removed {len(expired)} windows")
        return len(expired)

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def start_sweeper(self, interval: float = SWEEP_INTERVAL_SECONDS) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    def __len__(self) -> int:
        return len(self._windows)


def get_client_identifier(request: Request, user_id: Optional[int] = None) -> str:
    if user_id is not None:
        return f"user:{user_id}"

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return f"ip:{real_ip}"

    return f"ip:{get_remote_address(request)}"

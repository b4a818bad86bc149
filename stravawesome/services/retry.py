"""
Retry policy for outbound Strava calls.

Only rate-limit responses (429) are retried. The delay before the next
attempt honours the ``Retry-After`` header when Strava sends one and
falls back to exponential backoff otherwise; both are clamped to
``max_delay``.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given as seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retry_statuses: Tuple[int, ...] = (429,)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int, response: httpx.Response) -> float:
        retry_after = parse_retry_after(response.headers.get("retry-after"))
        if retry_after is not None:
            return min(retry_after, self.max_delay)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def send(self, request_fn: Callable[[], Awaitable[httpx.Response]],
                   description: str = "request") -> httpx.Response:
        """
        Call ``request_fn`` until it returns a non-retryable response or the
        attempts run out. The last response is returned either way; network
        errors propagate to the caller.
        """
        attempt = 1
        while True:
            response = await request_fn()
            if response.status_code not in self.retry_statuses or attempt >= self.max_attempts:
                if response.status_code in self.retry_statuses and self.max_attempts > 1:
                    logger.warning(f"{description}: still rate limited after {attempt} attempts")
                return response

            delay = self.delay_for(attempt, response)
            logger.warning(
                f"{description}: HTTP {response.status_code}, retrying in {delay:.1f}s "
                f"(attempt {attempt}/{self.max_attempts})"
            )
            await self.sleep(delay)
            attempt += 1

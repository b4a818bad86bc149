import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class SingleFlight:
    """
    Coalesce concurrent calls for the same key.

    The first caller for a key starts the work; anyone arriving while it is
    in flight awaits the same future and gets the same result or exception.
    If the leader is cancelled, waiting callers run the work again instead
    of inheriting the cancellation.
    """

    def __init__(self):
        self._inflight: Dict[Hashable, asyncio.Future] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def run(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        existing = self._inflight.get(key)
        while existing is not None:
            logger.debug(f"Joining in-flight call for {key!r}")
            try:
                return await asyncio.shield(existing)
            except asyncio.CancelledError:
                if not existing.cancelled():
                    # We were cancelled ourselves
                    raise
                logger.debug(f"Leader for {key!r} was cancelled, retrying")
            existing = self._inflight.get(key)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a leader-only failure doesn't warn at GC.
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)

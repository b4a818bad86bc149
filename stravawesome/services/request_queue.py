"""
Strava request queue.

Serialises outbound calls so consecutive requests are spaced at least
``delay`` seconds apart. Higher priority runs first; equal priorities run
in arrival order.
"""
import asyncio
import heapq
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class QueueCleared(Exception):
    pass


@dataclass(order=True)
class QueuedCall:
    sort_key: tuple
    id: str = field(compare=False)
    priority: int = field(compare=False)
    enqueued_at: float = field(compare=False)
    execute: Callable[[], Awaitable[Any]] = field(compare=False, repr=False)
    future: asyncio.Future = field(compare=False, repr=False)


class StravaRequestQueue:
    def __init__(self, delay: float = 0.12):
        self.delay = delay
        self._heap: List[QueuedCall] = []
        self._counter = itertools.count()
        self._processing = False
        self._last_request_time = 0.0
        self._drain_task: Optional[asyncio.Task] = None

    async def enqueue(self, fn: Callable[[], Awaitable[Any]], priority: int = 0,
                      request_id: Optional[str] = None) -> Any:
        loop = asyncio.get_running_loop()
        call = QueuedCall(
            sort_key=(-priority, next(self._counter)),
            id=request_id or f"req_{uuid.uuid4().hex[:12]}",
            priority=priority,
            enqueued_at=loop.time(),
            execute=fn,
            future=loop.create_future(),
        )
        heapq.heappush(self._heap, call)
        logger.debug(f"Request queued: {call.id} (priority={priority}, queue={len(self._heap)})")

        if not self._processing:
            self._processing = True
            self._drain_task = asyncio.create_task(self._drain())
        return await call.future

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while self._heap:
                call = heapq.heappop(self._heap)
                if call.future.done():
                    # Caller went away (cancelled) before its turn.
                    continue

                wait = self.delay - (loop.time() - self._last_request_time)
                if wait > 0:
                    await asyncio.sleep(wait)

                logger.debug(f"Processing queued request {call.id} (remaining={len(self._heap)})")
                try:
                    result = await call.execute()
                except Exception as e:
                    logger.error(f"Queued request {call.id} failed: {e}")
                    if not call.future.done():
                        call.future.set_exception(e)
                else:
                    if not call.future.done():
                        call.future.set_result(result)
                    logger.debug(f"Request {call.id} completed in {loop.time() - call.enqueued_at:.3f}s")
                finally:
                    self._last_request_time = loop.time()
        finally:
            self._processing = False

    def get_status(self) -> Dict[str, Any]:
        return {
            "queue_length": len(self._heap),
            "processing": self._processing,
            "last_request_time": self._last_request_time,
        }

    def clear(self) -> None:
        pending, self._heap = self._heap, []
        for call in pending:
            if not call.future.done():
                call.future.set_exception(QueueCleared("Queue cleared"))

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from visualgen.core import config

logger = logging.getLogger(__name__)


class CallClass(str, Enum):
    CONTENT = "content"
    IMAGE = "image"
    WORD = "word"


def default_intervals() -> Dict[CallClass, float]:
    return {
        CallClass.CONTENT: config.CONTENT_INTERVAL,
        CallClass.IMAGE: config.IMAGE_INTERVAL,
        CallClass.WORD: config.WORD_INTERVAL,
    }


class RatePacer:
    """Minimum spacing between calls of the same class.

    One clock per call class, shared by every worker in the process. A paced
    call holds its class until it completes, and the next one is released
    once ``interval`` has passed since that completion. ``wait`` alone spaces
    starts, for gates that do not wrap a call.
    """

    def __init__(
        self,
        intervals: Optional[Dict[CallClass, float]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._intervals = dict(default_intervals())
        if intervals:
            self._intervals.update(intervals)
        self._clock = clock
        self._sleep = sleep
        self._locks: Dict[CallClass, asyncio.Lock] = {
            call_class: asyncio.Lock() for call_class in CallClass
        }
        self._last: Dict[CallClass, float] = {}

    def interval(self, call_class: CallClass) -> float:
        return self._intervals.get(call_class, 0.0)

    async def _await_turn(self, call_class: CallClass) -> None:
        interval = self.interval(call_class)
        last = self._last.get(call_class)
        if last is not None and interval > 0:
            remaining = last + interval - self._clock()
            if remaining > 0:
                logger.debug(f"pacing {call_class.value}: waiting {remaining:.2f}s")
                await self._sleep(remaining)
        self._last[call_class] = self._clock()

    async def wait(self, call_class: CallClass) -> None:
        async with self._locks[call_class]:
            await self._await_turn(call_class)

    def mark(self, call_class: CallClass) -> None:
        now = self._clock()
        self._last[call_class] = max(self._last.get(call_class, now), now)

    @asynccontextmanager
    async def pace(self, call_class: CallClass) -> AsyncIterator[None]:
        if self.interval(call_class) <= 0:
            yield
            return
        async with self._locks[call_class]:
            await self._await_turn(call_class)
            try:
                yield
            finally:
                self.mark(call_class)

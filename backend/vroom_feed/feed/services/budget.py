"""Per-request time budget for feed assembly."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, TypeVar

T = TypeVar("T")


class RequestBudget:
    """Tracks the page deadline and caps each downstream read by it."""

    def __init__(self, total_seconds: float, downstream_seconds: float) -> None:
        self.total_seconds = total_seconds
        self.downstream_seconds = downstream_seconds
        self._started = time.perf_counter()

    def elapsed(self) -> float:
        return time.perf_counter() - self._started

    def elapsed_ms(self) -> float:
        return self.elapsed() * 1000.0

    def remaining(self) -> float:
        return max(0.0, self.total_seconds - self.elapsed())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def timeout(self) -> float:
        return min(self.downstream_seconds, self.remaining())

    async def run(self, awaitable: Awaitable[T], *, floor: float = 0.0) -> T:
        """Await ``awaitable`` under the downstream deadline.

        ``floor`` keeps a minimum allowance for bookkeeping writes issued after
        the page budget is spent.
        """

        timeout = max(self.timeout(), floor)
        if timeout <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise asyncio.TimeoutError()
        return await asyncio.wait_for(awaitable, timeout=timeout)


__all__ = ["RequestBudget"]

"""One-shot delayed sell timers driven by an injectable clock."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

SellAction = Callable[[str, int], Awaitable[Any]]


class Clock(Protocol):
    def time(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def time(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, float(seconds)))


def epoch_ms(clock: Clock) -> int:
    return int(clock.time() * 1000)


class DelayedSellScheduler:
    """Runs `action(token, attempt)` once per `arm` call, `delay_seconds` after arming.

    There is no deduplication here: arming a token twice yields two timers.
    """

    def __init__(self, action: SellAction, delay_seconds: float, clock: Clock | None = None) -> None:
        self.action = action
        self.delay_seconds = max(0.0, float(delay_seconds))
        self.clock: Clock = clock or SystemClock()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def arm(self, token_address: str, *, delay_seconds: float | None = None, attempt: int = 0) -> asyncio.Task[None]:
        key = normalize_address(token_address)
        delay = self.delay_seconds if delay_seconds is None else max(0.0, float(delay_seconds))
        due_at = self.clock.time() + delay
        logger.info("SELL_ARMED token=%s delay=%.0fs due_ts=%.0f attempt=%s", key, delay, due_at, attempt)
        task = asyncio.create_task(self._fire(key, delay, attempt), name=f"sell:{key}:{attempt}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fire(self, token_address: str, delay: float, attempt: int) -> None:
        await self.clock.sleep(delay)
        try:
            await self.action(token_address, attempt)
        except Exception:
            logger.exception("SELL_TIMER_ERROR token=%s attempt=%s", token_address, attempt)

    async def wait_idle(self) -> None:
        """Wait until every armed timer (including ones armed meanwhile) has finished."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding timers on shutdown; the next start re-arms them from the store."""
        tasks = list(self._tasks)
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("SELL_TIMERS_CANCELLED count=%s", len(tasks))

"""
Live TOTP codes.

One asyncio task per watched item id. Each task ticks once a second,
reports the seconds left in the current 30 second window, and fetches a new
code from bw exactly once when a new window starts.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from bw_cli import BitwardenError

logger = logging.getLogger(__name__)

PERIOD = 30
TICK_SECONDS = 1

UpdateCallback = Callable[[str, str, int], object]


def seconds_remaining(now: float, period: int = PERIOD) -> int:
    return period - int(now) % period


def epoch_of(now: float, period: int = PERIOD) -> int:
    return int(now) // period


class TotpScheduler:
    """Registry of per-item refresh timers keyed by item id."""

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[str]],
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        period: int = PERIOD,
    ):
        self._fetch = fetch
        self._clock = clock
        self._sleep = sleep
        self.period = period
        self._codes: dict[str, tuple[str, int]] = {}
        self._listeners: dict[str, UpdateCallback] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def watched(self) -> set[str]:
        return set(self._tasks)

    def countdown(self) -> int:
        return seconds_remaining(self._clock(), self.period)

    def cached(self, item_id: str) -> str | None:
        """Code for the current window, if one was fetched."""
        entry = self._codes.get(item_id)
        if entry and entry[0] and entry[1] == epoch_of(self._clock(), self.period):
            return entry[0]
        return None

    async def _refresh(self, item_id: str) -> str:
        epoch = epoch_of(self._clock(), self.period)
        try:
            code = await self._fetch(item_id)
        except BitwardenError:
            # Remember the failure so the next attempt waits for a new window
            self._codes[item_id] = ("", epoch)
            raise
        self._codes[item_id] = (code, epoch)
        return code

    def subscribe(self, item_id: str, on_update: UpdateCallback) -> asyncio.Task:
        """Start live updates for item_id. A second call only swaps the callback."""
        self._listeners[item_id] = on_update
        task = self._tasks.get(item_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._run(item_id))
        self._tasks[item_id] = task
        logger.debug("TOTP timer started for %s", item_id)
        return task

    def unsubscribe(self, item_id: str) -> None:
        self._listeners.pop(item_id, None)
        self._codes.pop(item_id, None)
        task = self._tasks.pop(item_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug("TOTP timer stopped for %s", item_id)

    def retain_only(self, visible_ids) -> None:
        """Stop timers and drop codes for items that are no longer shown."""
        visible = set(visible_ids)
        for item_id in list(self._tasks):
            if item_id not in visible:
                self.unsubscribe(item_id)
        for item_id in list(self._codes):
            if item_id not in visible:
                del self._codes[item_id]

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for item_id in list(self._tasks):
            self.unsubscribe(item_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _try_refresh(self, item_id: str) -> None:
        try:
            await self._refresh(item_id)
        except BitwardenError as e:
            logger.warning("Cannot fetch TOTP for %s: %s", item_id, e.message)

    async def _emit(self, item_id: str) -> None:
        listener = self._listeners.get(item_id)
        if listener is None:
            return
        code = self._codes.get(item_id, ("", 0))[0]
        result = listener(item_id, code, self.countdown())
        if asyncio.iscoroutine(result):
            await result

    async def _run(self, item_id: str) -> None:
        try:
            if self.cached(item_id) is None:
                await self._try_refresh(item_id)
            await self._emit(item_id)
            while True:
                await self._sleep(TICK_SECONDS)
                last_epoch = self._codes.get(item_id, ("", -1))[1]
                if epoch_of(self._clock(), self.period) != last_epoch:
                    await self._try_refresh(item_id)
                await self._emit(item_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("TOTP timer for %s failed", item_id)
        finally:
            if self._tasks.get(item_id) is asyncio.current_task():
                del self._tasks[item_id]

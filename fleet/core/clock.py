"""Time sources and periodic timers.

Every timer in the orchestrator goes through a ``Clock`` so tests can drive
heartbeats, backoff waits and delay steps with ``ManualClock`` instead of real
time.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Clock:
    """Abstract time source. ``now`` returns epoch seconds."""

    def now(self) -> float:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self.now(), tz=timezone.utc)


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0))


class ManualClock(Clock):
    """Virtual clock whose time only moves when ``advance`` is awaited."""

    def __init__(self, start: Optional[float] = None) -> None:
        self._now = time.time() if start is None else start
        self._sleepers: List[Tuple[float, int, asyncio.Future[None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._seq), future))
        await future

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper that falls due on the way."""
        target = self._now + seconds
        await self._settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self._now = max(self._now, deadline)
            future.set_result(None)
            # Woken coroutines may register new sleepers before the target.
            await self._settle()
        self._now = target
        await self._settle()

    @staticmethod
    async def _settle(rounds: int = 10) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)


async def wait_with_timeout(clock: Clock, event: asyncio.Event, timeout: float) -> bool:
    """Wait for ``event`` at most ``timeout`` clock seconds. Returns whether it was set."""
    if event.is_set():
        return True
    waiter = asyncio.ensure_future(event.wait())
    timer = asyncio.ensure_future(clock.sleep(timeout))
    try:
        await asyncio.wait({waiter, timer}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for pending in (waiter, timer):
            if not pending.done():
                pending.cancel()
    return event.is_set()


class Ticker:
    """Runs ``callback`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        clock: Clock,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        *,
        name: str = "ticker",
    ) -> None:
        self._clock = clock
        self._interval = interval
        self._callback = callback
        self._name = name
        self._stop_event = asyncio.Event()
        self._runner: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._runner = asyncio.create_task(self._run(), name=self._name)

    async def stop(self) -> None:
        if self._runner is None:
            return
        self._stop_event.set()
        self._runner.cancel()
        try:
            await self._runner
        except asyncio.CancelledError:
            pass
        self._runner = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self._clock.sleep(self._interval)
            if self._stop_event.is_set():
                break
            try:
                await self._callback()
            except Exception:  # noqa: BLE001
                logger.exception("%s tick failed", self._name)

"""Fixed-interval pass scheduler with an explicit cancellation token."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from loguru import logger

PassFn = Callable[[], Awaitable[object]]


class PassScheduler:
    """Runs ``pass_fn`` now, then every ``interval`` seconds until stopped.

    The next wait starts only after the previous pass returns, so passes
    never overlap and a slow pass simply delays the following one.
    ``stop()`` sets the cancellation event: the wait ends at once, an
    in-flight pass runs to completion. ``running`` reports False as soon as
    ``stop()`` returns. A ``start()`` issued while the stopped loop still
    finishes its pass begins a new loop that waits for the old one first.
    """

    def __init__(
        self,
        pass_fn: PassFn,
        interval: float,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pass_fn = pass_fn
        self._interval = interval
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._next_run_at: float | None = None
        self._ticks = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and not self._stop_event.is_set()
        )

    @property
    def next_run_at(self) -> float | None:
        """Epoch seconds of the next scheduled tick while waiting, else None."""
        return self._next_run_at if self.running else None

    @property
    def ticks(self) -> int:
        return self._ticks

    def start(self) -> bool:
        """Returns False when already running."""
        if self.running:
            return False
        previous = self._task if self._task is not None and not self._task.done() else None
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(self._stop_event, previous), name="battle-monitor-scheduler"
        )
        return True

    def stop(self) -> bool:
        """Returns False when not running or already stopping."""
        if not self.running:
            return False
        self._stop_event.set()
        self._next_run_at = None
        return True

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def tick(self) -> None:
        """Run one pass; errors are logged and never end the schedule."""
        self._ticks += 1
        try:
            await self._pass_fn()
        except Exception as e:
            logger.exception(f"[MONITOR] Scheduled pass {self._ticks} crashed: {e}")

    async def _run(self, stop_event: asyncio.Event, previous: asyncio.Task | None) -> None:
        if previous is not None:
            # a stopped loop still finishing its pass
            await asyncio.gather(previous, return_exceptions=True)
        while not stop_event.is_set():
            await self.tick()
            if stop_event.is_set():
                break
            self._next_run_at = self._clock() + self._interval
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        if stop_event is self._stop_event:
            self._next_run_at = None

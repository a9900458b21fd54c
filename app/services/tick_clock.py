"""
Tick Clocks for the Metering Engine
===================================

PURPOSE:
    The metering loop never calls asyncio.sleep directly; it awaits
    ``clock.sleep(interval)``. Production uses AsyncioTickClock (wall time).
    Tests use ManualTickClock, where time only moves when the test calls
    ``advance()``, so tick-by-tick behavior is deterministic.

PHASE: ST-04 - Metering
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Protocol


class TickClock(Protocol):
    async def sleep(self, seconds: float) -> None: ...


class AsyncioTickClock:
    """Real-time clock backed by asyncio.sleep."""

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualTickClock:
    """Virtual clock: every pending sleep completes once per ``advance()`` step.

    A released task runs its tick (which may hop to a worker thread) before
    ``advance()`` moves on: each step waits until every released task has
    either gone back to sleep or finished.

    Usage::

        clock = ManualTickClock()
        engine = MeteringEngine(..., clock=clock)
        await engine.start_session(...)
        await clock.advance(3)   # three ticks elapse
    """

    def __init__(self, step_timeout_s: float = 5.0) -> None:
        self._waiters: Dict[asyncio.Future, Optional[asyncio.Task]] = {}
        self._step_timeout_s = step_timeout_s
        self.ticks_elapsed = 0

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._waiters[future] = asyncio.current_task()
        try:
            await future
        finally:
            self._waiters.pop(future, None)

    @property
    def pending(self) -> int:
        return len([f for f in self._waiters if not f.done()])

    async def settle(self, rounds: int = 20) -> None:
        """Yield to the loop ``rounds`` times so freshly started tasks reach their first sleep."""
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, ticks: int = 1, settle_rounds: int = 20) -> None:
        """Release every pending sleep ``ticks`` times, waiting for each step to land."""
        for _ in range(ticks):
            await self.settle(settle_rounds)
            waiters, self._waiters = self._waiters, {}
            if not waiters:
                break
            released = [task for task in waiters.values() if task is not None]
            for future in waiters:
                if not future.done():
                    future.set_result(None)
            self.ticks_elapsed += 1
            await self._wait_rearmed(released)

    async def _wait_rearmed(self, tasks: List[asyncio.Task]) -> None:
        deadline = time.monotonic() + self._step_timeout_s
        while True:
            await self.settle()
            sleeping = {task for task in self._waiters.values()}
            if all(task.done() or task in sleeping for task in tasks):
                return
            if time.monotonic() > deadline:
                raise TimeoutError(f"ticks did not settle within {self._step_timeout_s}s")
            await asyncio.sleep(0.001)

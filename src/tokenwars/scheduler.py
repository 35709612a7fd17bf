"""Clock and one-shot timer abstraction.

Everything time-driven in the engine (phase transitions, sampler ticks,
automation ticks) goes through a ``Scheduler``. Production code uses
``AsyncioScheduler``; tests drive ``SimulatedScheduler`` by hand so phase
transitions can be exercised without waiting on a real clock.
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[Any] | Any]


def utcnow() -> datetime:
    return datetime.now(UTC)


class TimerHandle(Protocol):
    """Cancellable handle for a scheduled call."""

    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """Clock plus ``schedule_at(when, fn)``."""

    def now(self) -> datetime: ...

    def schedule_at(self, when: datetime, callback: TimerCallback) -> TimerHandle: ...


class ScheduledCall:
    """A pending one-shot call."""

    def __init__(self, when: datetime, callback: TimerCallback) -> None:
        self.when = when
        self.callback = callback
        self.fired = False
        self._cancelled = False
        self._loop_handle: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> bool:
        return not self._cancelled and not self.fired

    def cancel(self) -> None:
        self._cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
            self._loop_handle = None

    def __repr__(self) -> str:
        return f"ScheduledCall(when={self.when.isoformat()}, pending={self.pending})"


async def _invoke(call: ScheduledCall) -> None:
    """Run a callback, logging rather than propagating failures."""
    try:
        result = call.callback()
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Scheduled callback failed (due %s)", call.when.isoformat())


class AsyncioScheduler:
    """Scheduler backed by the running event loop.

    Callbacks may be plain functions or coroutine functions. Each firing runs
    in its own task, so a slow callback never delays other timers.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._tasks: set[asyncio.Task[None]] = set()

    def now(self) -> datetime:
        return self._clock()

    def schedule_at(self, when: datetime, callback: TimerCallback) -> ScheduledCall:
        loop = asyncio.get_running_loop()
        call = ScheduledCall(when, callback)
        delay = max(0.0, (when - self.now()).total_seconds())
        call._loop_handle = loop.call_later(delay, self._fire, call)
        return call

    def schedule_in(self, delay: timedelta, callback: TimerCallback) -> ScheduledCall:
        return self.schedule_at(self.now() + delay, callback)

    def _fire(self, call: ScheduledCall) -> None:
        call._loop_handle = None
        if call.cancelled:
            return
        call.fired = True
        task = asyncio.get_running_loop().create_task(_invoke(call))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for callbacks that are currently running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()


class SimulatedScheduler:
    """Manually advanced clock for deterministic tests.

    Example:
        ```python
        scheduler = SimulatedScheduler(start=t0)
        scheduler.schedule_at(t0 + timedelta(minutes=5), callback)
        await scheduler.advance(timedelta(minutes=5))  # callback runs here
        ```
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or utcnow()
        self._queue: list[tuple[datetime, int, ScheduledCall]] = []
        self._counter = itertools.count()

    def now(self) -> datetime:
        return self._now

    def schedule_at(self, when: datetime, callback: TimerCallback) -> ScheduledCall:
        call = ScheduledCall(when, callback)
        heapq.heappush(self._queue, (when, next(self._counter), call))
        return call

    def schedule_in(self, delay: timedelta, callback: TimerCallback) -> ScheduledCall:
        return self.schedule_at(self._now + delay, callback)

    def pending(self) -> list[ScheduledCall]:
        return sorted((c for _, _, c in self._queue if c.pending), key=lambda c: c.when)

    async def advance_to(self, target: datetime) -> int:
        """Move the clock to ``target``, firing due calls in time order.

        Calls scheduled by callbacks are honoured if they fall due before
        ``target``. Returns the number of callbacks run.
        """
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            when, _, call = heapq.heappop(self._queue)
            if not call.pending:
                continue
            self._now = max(self._now, when)
            call.fired = True
            await _invoke(call)
            fired += 1
        self._now = max(self._now, target)
        return fired

    async def advance(self, delta: timedelta) -> int:
        return await self.advance_to(self._now + delta)

    async def run_pending(self) -> int:
        """Fire every call already due at the current instant."""
        return await self.advance_to(self._now)

"""Wall-clock anchored countdown for a running exam session.

Architecture note:
    Remaining time is always derived from the instant the session started,
    never from a counter decremented on every tick. A tick that fires late
    (suspended laptop, throttled background tab) therefore cannot hand the
    student extra time; the next tick simply observes the true remainder.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
import logging
import math

from exam_app.constants.exam_constants import TICK_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


class SessionClock:
    def __init__(self, duration_minutes: int, started_at: datetime) -> None:
        self._total_seconds = duration_minutes * 60
        self._started_at = started_at

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def total_seconds(self) -> int:
        return self._total_seconds

    def elapsed_seconds(self, now: datetime) -> int:
        return math.floor((now - self._started_at).total_seconds())

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, self._total_seconds - self.elapsed_seconds(now))


def format_remaining(seconds: int) -> str:
    """Render seconds as ``M:SS`` for countdown displays."""
    minutes, remainder = divmod(max(0, seconds), 60)
    return f"{minutes}:{remainder:02d}"


class ExamTimer:
    """Periodic tick that fires ``on_expire`` once the clock reaches zero."""

    def __init__(
        self,
        clock: SessionClock,
        now: Clock,
        on_expire: Callable[[], Awaitable[None]],
        on_tick: Callable[[int], None] | None = None,
        interval_seconds: float = TICK_INTERVAL_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._now = now
        self._on_expire = on_expire
        self._on_tick = on_tick
        self._interval = interval_seconds
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._cancelled = False

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("Timer already started.")
        self._task = asyncio.get_running_loop().create_task(self._run(), name="exam-timer")

    def cancel(self) -> None:
        self._cancelled = True
        task = self._task
        if task is None or task.done():
            return
        # The expiry callback runs inside the timer task and ends the session,
        # which cancels the timer; that task must be allowed to finish.
        if task is asyncio.current_task():
            return
        task.cancel()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._cancelled

    async def tick(self) -> int:
        """Evaluate the clock once; fires expiry when no time is left."""
        remaining = self._clock.remaining_seconds(self._now())
        if self._on_tick is not None:
            self._on_tick(remaining)
        if remaining <= 0 and not self._cancelled:
            logger.info("Exam time is up; submitting automatically.")
            self._cancelled = True
            await self._on_expire()
        return remaining

    async def _run(self) -> None:
        while not self._cancelled:
            remaining = await self.tick()
            if remaining <= 0:
                return
            await self._sleep(min(self._interval, remaining))

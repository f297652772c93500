"""
Timing policy for the sync scheduler.

``SyncWindow`` answers "may we act now"; ``RecurringTimer`` answers "when do we
wake up". Keeping them apart lets a paused or out-of-window tick cost nothing
but a clock read.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class SyncWindow:
    """
    Daily active window in local hours, ``start_hour`` inclusive to
    ``end_hour`` exclusive. The window may wrap midnight (06 -> 02).
    ``start_hour == end_hour`` means always active.
    """

    def __init__(self, start_hour: int, end_hour: int, tz: str = "UTC") -> None:
        if not (0 <= start_hour <= 23 and 0 <= end_hour <= 23):
            raise ValueError("window hours must be within 0..23")
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.tz = ZoneInfo(tz)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SyncWindow:
        settings = settings or get_settings()
        return cls(
            settings.sync_window_start_hour,
            settings.sync_window_end_hour,
            settings.sync_timezone,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        hour = now.astimezone(self.tz).hour

        if self.start_hour == self.end_hour:
            return True
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour


TickCallback = Callable[[], Awaitable[object]]


class RecurringTimer:
    """
    Fires ``callback`` every ``interval_s`` seconds until stopped.

    Each tick is awaited before the next sleep, so ticks of one timer never
    overlap. Errors escaping the callback are logged and the timer keeps going.
    ``cancel()`` stops future ticks only: a tick already running is shielded
    from the cancellation and runs to completion.
    """

    def __init__(
        self,
        interval_s: float,
        callback: TickCallback,
        name: str = "timer",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._interval = interval_s
        self._callback = callback
        self._name = name
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._tick: Optional[asyncio.Task[None]] = None

    @property
    def is_armed(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> Optional[asyncio.Task[None]]:
        """The tick currently running, if any."""
        if self._tick is None or self._tick.done():
            return None
        return self._tick

    def arm(self) -> None:
        if self.is_armed:
            return
        self._task = asyncio.create_task(self._loop(), name=self._name)

    async def cancel(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if self.in_flight is not None:
            logger.info("timer_cancelled_mid_tick", timer=self._name)

    async def _loop(self) -> None:
        while True:
            await self._sleep(self._interval)
            self._tick = asyncio.create_task(self._run_tick(), name=f"{self._name}-tick")
            await asyncio.shield(self._tick)

    async def _run_tick(self) -> None:
        try:
            await self._callback()
        except Exception as exc:
            logger.error("timer_tick_error", timer=self._name, error=str(exc), exc_info=True)

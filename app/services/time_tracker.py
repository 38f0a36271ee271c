"""
Session Time Tracker - Elapsed-time accounting for live class sessions.

NO DICTIONARIES - Snapshots are returned as SessionDuration dataclasses.

SessionClock is pure: every method takes the instant it should be evaluated
at, so the arithmetic can be tested without a real clock. Seconds are whole
numbers; fractions are floored at each pause/resume boundary.
"""

import asyncio
import contextlib
import math
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from structlog import get_logger

from app.models.domain import SessionDuration, TrackerData
from app.services.pricing import is_completion_unlocked

logger = get_logger(__name__)


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _whole_seconds(start: datetime, end: datetime) -> int:
    """Floor of the seconds between two instants, never negative."""
    return max(0, math.floor((end - start).total_seconds()))


class SessionClock:
    """
    Active/paused time accumulator for one session.

    While running, active time is the base offset plus the live segment
    since start_time. Pausing folds the live segment into the base; resuming
    adds the pause length to total_paused_seconds and restarts the segment.
    """

    def __init__(
        self,
        start_time: datetime,
        total_active_seconds: int = 0,
        total_paused_seconds: int = 0,
        pause_time: datetime | None = None,
        resume_time: datetime | None = None,
        is_active: bool = True,
    ) -> None:
        self.start_time = start_time
        self.total_active_seconds = total_active_seconds
        self.total_paused_seconds = total_paused_seconds
        self.pause_time = pause_time
        self.resume_time = resume_time
        self.is_active = is_active

    @classmethod
    def from_tracker(cls, tracker: TrackerData) -> "SessionClock":
        """Rebuild a clock from a persisted tracker row."""
        return cls(
            start_time=tracker.start_time,
            total_active_seconds=tracker.total_active_seconds,
            total_paused_seconds=tracker.total_paused_seconds,
            pause_time=tracker.pause_time,
            resume_time=tracker.resume_time,
            is_active=tracker.is_active,
        )

    def active_seconds(self, now: datetime) -> int:
        """Active (non-paused) seconds as of now."""
        if not self.is_active:
            return self.total_active_seconds
        return self.total_active_seconds + _whole_seconds(self.start_time, now)

    def pause(self, now: datetime) -> int:
        """
        Freeze active time.

        Returns:
            Active seconds at the moment of pausing

        Raises:
            ValueError: Clock is already paused or stopped
        """
        if not self.is_active:
            raise ValueError("Cannot pause a clock that is not running")
        self.total_active_seconds += _whole_seconds(self.start_time, now)
        self.pause_time = now
        self.is_active = False
        return self.total_active_seconds

    def resume(self, now: datetime) -> int:
        """
        Restart active time after a pause.

        Returns:
            Total paused seconds after accumulating this pause

        Raises:
            ValueError: Clock is running or was never paused
        """
        if self.is_active or self.pause_time is None:
            raise ValueError("Cannot resume a clock that is not paused")
        self.total_paused_seconds += _whole_seconds(self.pause_time, now)
        self.start_time = now
        self.resume_time = now
        self.is_active = True
        return self.total_paused_seconds

    def stop(self, now: datetime) -> int:
        """Fold any live segment into the base and stop. Returns final active seconds."""
        if self.is_active:
            self.total_active_seconds += _whole_seconds(self.start_time, now)
            self.is_active = False
        return self.total_active_seconds

    def snapshot(self, now: datetime) -> SessionDuration:
        """Elapsed-time view as of now."""
        active = self.active_seconds(now)
        return SessionDuration(
            total_seconds=active + self.total_paused_seconds,
            active_seconds=active,
            paused_seconds=self.total_paused_seconds,
            is_active=self.is_active,
            completion_unlocked=is_completion_unlocked(active),
        )


class SessionTicker:
    """
    Fixed-cadence driver for a live clock display.

    Owns at most one asyncio task. The task is cancelled on stop() and when
    the ticker is used as an async context manager and the block exits.
    An exception from on_tick ends the task; it is logged and handed to
    on_error so the consumer can close its stream.
    """

    def __init__(
        self,
        on_tick: Callable[[], Awaitable[None]],
        interval_seconds: float = 1.0,
        on_error: Callable[[Exception], Awaitable[None]] | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"Tick interval must be positive: {interval_seconds}")
        self._on_tick = on_tick
        self._on_error = on_error
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking. Starting a running ticker is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the tick task and wait for it to finish."""
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            try:
                await self._on_tick()
            except Exception as exc:
                logger.error("session_tick_failed", error=str(exc), error_type=type(exc).__name__)
                if self._on_error is not None:
                    await self._on_error(exc)
                return
            await asyncio.sleep(self._interval)

    async def __aenter__(self) -> "SessionTicker":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

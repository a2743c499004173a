"""
Recurring poll timers with single-flight slots.

A PollHandle is one recurring timer. A PollSlot holds at most one handle and
always cancels the previous occupant before arming a new one, so "at most one
armed timer per (feed, purpose)" holds by construction.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Set

from config import settings

logger = logging.getLogger(__name__)


class PollPurpose(str, Enum):
    OFFLINE = "offline-poll"
    LIVENESS = "liveness-poll"
    DURATION = "duration-tick"
    BREAK = "break-poll"


def default_intervals() -> Dict[PollPurpose, float]:
    return {
        PollPurpose.OFFLINE: settings.OFFLINE_POLL_INTERVAL,
        PollPurpose.LIVENESS: settings.LIVENESS_POLL_INTERVAL,
        PollPurpose.DURATION: settings.DURATION_TICK_INTERVAL,
        PollPurpose.BREAK: settings.BREAK_POLL_INTERVAL,
    }


PollCallback = Callable[["PollHandle"], Awaitable[None]]


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class PollHandle:
    """One recurring timer.

    Each tick runs the callback in its own task, so a hung request delays only
    that tick's decision and the next tick still fires on schedule.
    cancel() stops the timer and every in-flight tick except the caller's own.
    """

    def __init__(
        self,
        name: str,
        purpose: PollPurpose,
        interval: float,
        callback: PollCallback,
        fire_immediately: bool = False,
        start_delay: Optional[float] = None,
        on_cancel: Optional[Callable[["PollHandle"], None]] = None,
    ):
        self.name = name
        self.purpose = purpose
        self.interval = interval
        self.callback = callback
        self.fire_immediately = fire_immediately
        self.start_delay = start_delay
        self.tick_count = 0
        self._on_cancel = on_cancel
        self._task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self._started = False
        self._cancelled = False

    def __repr__(self):
        state = "cancelled" if self._cancelled else ("armed" if self._started else "new")
        return f"<PollHandle {self.name} every {self.interval}s {state}>"

    @property
    def active(self) -> bool:
        return self._started and not self._cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self):
        if self._started or self._cancelled:
            return
        self._started = True
        self._task = asyncio.create_task(self._run(), name=f"poll:{self.name}")

    async def _run(self):
        if self.start_delay is not None:
            delay = self.start_delay
        else:
            delay = 0 if self.fire_immediately else self.interval
        try:
            while not self._cancelled:
                await asyncio.sleep(delay)
                if self._cancelled:
                    break
                self._spawn_tick()
                delay = self.interval
        except asyncio.CancelledError:
            pass

    def _spawn_tick(self):
        self.tick_count += 1
        task = asyncio.create_task(self._tick(), name=f"tick:{self.name}")
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def _tick(self):
        try:
            await self.callback(self)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Poll {self.name} tick failed: {e}")

    def cancel(self):
        if self._cancelled:
            return
        self._cancelled = True
        current = _current_task()
        if self._task and self._task is not current:
            self._task.cancel()
        for task in list(self._ticks):
            if task is not current:
                task.cancel()
        if self._on_cancel:
            self._on_cancel(self)
        logger.debug(f"Cancelled poller {self.name}")


class PollSlot:
    """Holds at most one poll handle for a single (owner, purpose) pair."""

    def __init__(self, purpose: PollPurpose):
        self.purpose = purpose
        self._handle: Optional[PollHandle] = None

    @property
    def handle(self) -> Optional[PollHandle]:
        return self._handle

    @property
    def armed(self) -> bool:
        return self._handle is not None and self._handle.active

    def arm(self, handle: PollHandle) -> PollHandle:
        self.clear()
        self._handle = handle
        handle.start()
        return handle

    def clear(self):
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def owns(self, handle: Optional[PollHandle]) -> bool:
        return handle is not None and handle is self._handle and not handle.cancelled


class PollScheduler:
    """Creates poll handles with fixed per-purpose intervals and tracks them
    so a page teardown can cancel everything that is still armed."""

    def __init__(self, intervals: Optional[Dict[PollPurpose, float]] = None):
        self.intervals = default_intervals()
        if intervals:
            self.intervals.update(intervals)
        self._handles: Set[PollHandle] = set()

    def interval_for(self, purpose: PollPurpose) -> float:
        return self.intervals[purpose]

    def create(
        self,
        name: str,
        purpose: PollPurpose,
        callback: PollCallback,
        fire_immediately: bool = False,
        start_delay: Optional[float] = None,
    ) -> PollHandle:
        handle = PollHandle(
            name=name,
            purpose=purpose,
            interval=self.interval_for(purpose),
            callback=callback,
            fire_immediately=fire_immediately,
            start_delay=start_delay,
            on_cancel=self._forget,
        )
        self._handles.add(handle)
        return handle

    def _forget(self, handle: PollHandle):
        self._handles.discard(handle)

    @property
    def active_handles(self) -> Set[PollHandle]:
        return {h for h in self._handles if h.active}

    def cancel_all(self):
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()

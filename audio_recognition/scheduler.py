"""
Scheduler Module

Small timer primitives on top of the asyncio event loop. The orchestrator
uses a one-shot timer for the periodic cycle (re-armed on every fire or
pre-emption) and a repeating one-second ticker for the countdown.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional

from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ScheduleState:
    """
    Observable view of the periodic schedule.

    Attributes:
        interval_seconds: Seconds between periodic cycles
        seconds_until_next: Countdown to the next periodic cycle (None when stopped)
    """
    interval_seconds: float
    seconds_until_next: Optional[int] = None


class Timer:
    """
    Cancellable timer bound to the event loop.

    One-shot by default; with repeat=True it re-arms itself from its own
    deadline so ticks do not drift.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, delay: float,
                 callback: Callable[..., Any], args: tuple = (), repeat: bool = False):
        self._loop = loop
        self._interval = delay
        self._callback = callback
        self._args = args
        self._repeat = repeat
        self._cancelled = False
        self.deadline = loop.time() + delay
        self._handle: Optional[asyncio.TimerHandle] = loop.call_at(self.deadline, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        if self._repeat:
            self.deadline += self._interval
            self._handle = self._loop.call_at(self.deadline, self._fire)
        else:
            self._handle = None
        try:
            self._callback(*self._args)
        except Exception as e:
            logger.error(f"Timer callback failed: {e}", exc_info=True)

    @property
    def active(self) -> bool:
        return not self._cancelled and self._handle is not None

    def remaining(self) -> float:
        """Seconds until the next fire (0 once fired or cancelled)."""
        if not self.active:
            return 0.0
        return max(0.0, self.deadline - self._loop.time())

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class Scheduler:
    """Creates timers on the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def time(self) -> float:
        return self.loop.time()

    def fire_after(self, delay: float, callback: Callable[..., Any], *args: Any) -> Timer:
        """Run callback once after delay seconds."""
        return Timer(self.loop, max(0.0, delay), callback, args)

    def every(self, interval: float, callback: Callable[..., Any], *args: Any) -> Timer:
        """Run callback every interval seconds until cancelled."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        return Timer(self.loop, interval, callback, args, repeat=True)


def countdown_seconds(timer: Optional[Timer]) -> Optional[int]:
    """Whole seconds left on a timer, rounded up (None without a timer)."""
    if timer is None or not timer.active:
        return None
    return int(math.ceil(timer.remaining()))

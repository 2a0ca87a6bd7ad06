"""
Time Window Gate - Daily Trading Windows

Up to three independently configurable daily windows in exchange-local time.

RULES:
- A window is active if start <= now < end
- start > end crosses midnight: active if now >= start OR now < end
- Weekends and configured holidays are never trading days
- No enabled windows -> trading allowed around the clock
- Leaving all windows raises a one-shot flatten flag
- Switching directly from one window into another does not flatten
- Entries are blocked in the last `approach_minutes` of a window
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import List, Optional
from zoneinfo import ZoneInfo

from .config import TimeWindowConfig, hhmm_to_minutes, in_clock_window
from .models import ensure_utc


MINUTES_PER_DAY = 24 * 60


class WindowTransition(Enum):
    NONE = "NONE"
    ENTERED = "ENTERED"
    EXITED = "EXITED"
    SWITCHED = "SWITCHED"


@dataclass
class TradingWindow:
    """Static window definition plus its derived active flag."""
    name: str
    enabled: bool
    start_hhmm: int
    end_hhmm: int
    is_active: bool = False

    @property
    def start_minute(self) -> int:
        return hhmm_to_minutes(self.start_hhmm)

    @property
    def end_minute(self) -> int:
        return hhmm_to_minutes(self.end_hhmm)

    @property
    def crosses_midnight(self) -> bool:
        return self.start_minute > self.end_minute

    def contains(self, minute: int) -> bool:
        return self.enabled and in_clock_window(minute, self.start_minute, self.end_minute)

    def minutes_until_end(self, minute: int) -> int:
        return (self.end_minute - minute) % MINUTES_PER_DAY

    def minutes_until_start(self, minute: int) -> int:
        return (self.start_minute - minute) % MINUTES_PER_DAY

    def __str__(self) -> str:
        state = "enabled" if self.enabled else "disabled"
        return f"{self.name} {self.start_hhmm:04d}-{self.end_hhmm:04d} ({state})"


@dataclass(frozen=True)
class WindowEvent:
    """Result of one gate update."""
    transition: WindowTransition
    timestamp: datetime
    previous: Optional[str] = None
    current: Optional[str] = None
    reason: str = ""


class TimeWindowGate:
    """
    Trading-allowed predicate and forced-flatten signal.

    update() must be called on every bar and tick so transitions are seen.
    """

    def __init__(
        self,
        config: TimeWindowConfig,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.tz = ZoneInfo(config.timezone)
        self.windows: List[TradingWindow] = [
            TradingWindow(w.name, w.enabled, w.start_hhmm, w.end_hhmm)
            for w in config.windows
        ]
        self.holidays = set(config.holidays)

        self._current: Optional[str] = None
        self._in_window = False
        self._should_flatten = False
        self.exit_reason = ""
        self.last_transition: Optional[datetime] = None

        enabled = [str(w) for w in self.windows if w.enabled]
        if enabled:
            self.logger.info(f"Time windows: {', '.join(enabled)}")
        else:
            self.logger.info("No trading windows enabled - trading allowed around the clock")

    # ========================================================================
    # QUERIES
    # ========================================================================

    def has_enabled_windows(self) -> bool:
        return any(w.enabled for w in self.windows)

    def local_time(self, when: datetime) -> datetime:
        return ensure_utc(when).astimezone(self.tz)

    def is_trading_day(self, local_date: date) -> bool:
        return local_date.weekday() < 5 and local_date not in self.holidays

    def window_at(self, when: datetime) -> Optional[TradingWindow]:
        """First enabled window containing `when` on a trading day."""
        local = self.local_time(when)
        if not self.is_trading_day(local.date()):
            return None
        minute = local.hour * 60 + local.minute
        for window in self.windows:
            if window.contains(minute):
                return window
        return None

    def is_trading_allowed(self, when: datetime) -> bool:
        """Pure predicate; does not record transitions."""
        if not self.has_enabled_windows():
            return True
        return self.window_at(when) is not None

    def entries_allowed(self, when: datetime) -> bool:
        """Trading allowed and not in the closing minutes of the active window."""
        return self.is_trading_allowed(when) and not self.is_approaching_end(when)

    @property
    def active_window(self) -> Optional[TradingWindow]:
        for window in self.windows:
            if window.is_active:
                return window
        return None

    @property
    def in_window(self) -> bool:
        return self._in_window

    @property
    def should_flatten(self) -> bool:
        return self._should_flatten

    def minutes_until_end(self, when: datetime) -> Optional[int]:
        window = self.window_at(when)
        if window is None:
            return None
        local = self.local_time(when)
        return window.minutes_until_end(local.hour * 60 + local.minute)

    def minutes_until_start(self, when: datetime) -> Optional[int]:
        """Minutes until the next enabled window opens (None if none enabled)."""
        local = self.local_time(when)
        minute = local.hour * 60 + local.minute
        waits = [w.minutes_until_start(minute) for w in self.windows if w.enabled]
        return min(waits) if waits else None

    def is_approaching_end(self, when: datetime, minutes: Optional[int] = None) -> bool:
        threshold = self.config.approach_minutes if minutes is None else minutes
        remaining = self.minutes_until_end(when)
        return remaining is not None and 0 <= remaining <= threshold

    def status(self, when: datetime) -> str:
        window = self.window_at(when)
        if window is not None:
            return f"In {window.name}, {self.minutes_until_end(when)} minutes remaining"
        if not self.has_enabled_windows():
            return "No trading windows enabled - trading around the clock"
        return f"Outside trading hours. Next window in {self.minutes_until_start(when)} minutes"

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def update(self, when: datetime) -> WindowEvent:
        """Recompute active flags and record enter/exit/switch transitions."""
        window = self.window_at(when)
        for w in self.windows:
            w.is_active = w is window

        if not self.has_enabled_windows():
            return WindowEvent(WindowTransition.NONE, when)

        current = window.name if window is not None else None
        previous = self._current
        event = WindowEvent(WindowTransition.NONE, when, previous, current)
        local = self.local_time(when)

        if current is not None and not self._in_window:
            self.last_transition = when
            self.logger.info(f"Entering trading window: {current} at {local:%H:%M:%S} {self.tz.key}")
            event = WindowEvent(WindowTransition.ENTERED, when, previous, current)

        elif current is None and self._in_window:
            reason = "Weekend/Holiday" if not self.is_trading_day(local.date()) else "Window ended"
            self.logger.info(f"Exiting trading window: {previous} - Reason: {reason}")
            self._should_flatten = True
            self.exit_reason = reason
            event = WindowEvent(WindowTransition.EXITED, when, previous, None, reason)

        elif current is not None and current != previous:
            self.last_transition = when
            self.logger.info(f"Switching from {previous} to {current} at {local:%H:%M:%S} {self.tz.key}")
            event = WindowEvent(WindowTransition.SWITCHED, when, previous, current)

        self._in_window = current is not None
        self._current = current
        return event

    def consume_flatten(self) -> Optional[str]:
        """
        Take the flatten signal.

        Returns the exit reason exactly once per window exit, else None.
        """
        if not self._should_flatten:
            return None
        reason = self.exit_reason
        self._should_flatten = False
        self.exit_reason = ""
        return reason

"""
Session Level Engine - Support/Resistance From Fixed Daily Sessions

Tracks the running high/low of three fixed clock sessions and uses them
as take-profit targets.

SESSION DEFINITIONS (exchange-local, America/New_York):
- PRIOR_DAY: 09:30 - 17:00  (regular hours)
- OVERNIGHT: 18:00 - 04:00  (crosses midnight)
- MORNING:   04:00 - 09:30  (pre-market)

Windows are half-open and mutually exclusive. Bars outside all three
(17:00 - 18:00) update nothing.

ROTATION:
- When a bar's local date differs from the current trading date, every
  valid session is archived (history capped at 30) and all three reset.
- A reset session has no high/low (invalid), never zero.

TAKE PROFIT RULES:
1. Candidates: valid session highs (long) or lows (short)
2. Fewer than 3 candidates -> add levels from the 9 most recent archived sessions
3. No levels beyond price -> alternate target (price +/- alt ticks)
4. Nearest level beyond price, if at least min TP ticks away
5. Else next-nearest, if at least min TP ticks away
6. Else alternate target
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .config import SessionConfig, hhmm_to_minutes, in_clock_window
from .models import Bar, Side, ensure_utc


class SessionType(Enum):
    PRIOR_DAY = "PRIOR_DAY"
    OVERNIGHT = "OVERNIGHT"
    MORNING = "MORNING"


class TakeProfitSource(Enum):
    """Where the selected take-profit level came from."""
    NEAREST = "NEAREST"
    NEXT_NEAREST = "NEXT_NEAREST"
    ALTERNATE = "ALTERNATE"


@dataclass
class TradingSession:
    """Running high/low of one session for the current trading date."""
    session_type: SessionType
    start_utc: Optional[datetime] = None
    end_utc: Optional[datetime] = None
    high: float = -math.inf
    low: float = math.inf
    is_valid: bool = False
    bar_count: int = 0

    def update(self, high: float, low: float) -> None:
        self.high = max(self.high, high)
        self.low = min(self.low, low)
        self.is_valid = True
        self.bar_count += 1

    def reset(self, start_utc: Optional[datetime], end_utc: Optional[datetime]) -> None:
        self.start_utc = start_utc
        self.end_utc = end_utc
        self.high = -math.inf
        self.low = math.inf
        self.is_valid = False
        self.bar_count = 0

    @property
    def range(self) -> float:
        return self.high - self.low if self.is_valid else 0.0


@dataclass(frozen=True)
class ArchivedSession:
    """Immutable copy of a session taken at rotation."""
    session_type: SessionType
    trading_date: date
    high: float
    low: float
    bar_count: int


@dataclass(frozen=True)
class TakeProfitSelection:
    price: float
    source: TakeProfitSource
    candidates: int


class SessionTracker:
    """
    Maintains the three sessions for the current trading date plus history.

    Owned by the bar pipeline; not thread-safe.
    """

    def __init__(
        self,
        config: SessionConfig,
        tick_size: float,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.tick_size = tick_size
        self.logger = logger or logging.getLogger(__name__)
        self.tz = ZoneInfo(config.timezone)

        self._sessions: Dict[SessionType, TradingSession] = {
            t: TradingSession(t) for t in SessionType
        }
        self._history: deque = deque(maxlen=config.history_size)
        self._trading_date: Optional[date] = None
        self.rejected_bars = 0

        self._windows = {
            SessionType.PRIOR_DAY: (
                hhmm_to_minutes(config.prior_day_start), hhmm_to_minutes(config.prior_day_end)
            ),
            SessionType.OVERNIGHT: (
                hhmm_to_minutes(config.overnight_start), hhmm_to_minutes(config.overnight_end)
            ),
            SessionType.MORNING: (
                hhmm_to_minutes(config.morning_start), hhmm_to_minutes(config.morning_end)
            ),
        }

    # ========================================================================
    # STATE ACCESS
    # ========================================================================

    @property
    def trading_date(self) -> Optional[date]:
        return self._trading_date

    @property
    def sessions(self) -> Dict[SessionType, TradingSession]:
        return self._sessions

    @property
    def history(self) -> List[ArchivedSession]:
        """Archived sessions, oldest first."""
        return list(self._history)

    def has_valid_session_data(self) -> bool:
        return any(s.is_valid for s in self._sessions.values())

    # ========================================================================
    # UPDATE
    # ========================================================================

    def session_for(self, local_time: time) -> Optional[SessionType]:
        """Which session window a local clock time falls in."""
        minute = local_time.hour * 60 + local_time.minute
        for session_type, (start, end) in self._windows.items():
            if in_clock_window(minute, start, end):
                return session_type
        return None

    def update(self, bar: Bar) -> Optional[SessionType]:
        """
        Apply a closed bar.

        Returns the session updated, or None when the bar falls outside
        all sessions or was rejected.
        """
        if bar.high <= 0 or bar.low <= 0:
            self.rejected_bars += 1
            self.logger.warning(
                f"Session tracker rejected bar at {bar.closed_at}: high={bar.high} low={bar.low}"
            )
            return None

        local = ensure_utc(bar.closed_at).astimezone(self.tz)
        if self._trading_date is None or local.date() != self._trading_date:
            self._rotate(local.date())

        session_type = self.session_for(local.time())
        if session_type is None:
            return None

        self._sessions[session_type].update(bar.high, bar.low)
        return session_type

    def _rotate(self, new_date: date) -> None:
        """Archive valid sessions and reset all three for the new trading date."""
        archived = 0
        if self._trading_date is not None:
            for session in self._sessions.values():
                if session.is_valid:
                    self._history.append(ArchivedSession(
                        session_type=session.session_type,
                        trading_date=self._trading_date,
                        high=session.high,
                        low=session.low,
                        bar_count=session.bar_count,
                    ))
                    archived += 1

        bounds = self._session_bounds(new_date)
        for session_type, session in self._sessions.items():
            session.reset(*bounds[session_type])

        self.logger.info(
            f"Sessions rotated: {self._trading_date} -> {new_date} "
            f"(archived={archived}, history={len(self._history)})"
        )
        self._trading_date = new_date

    def _session_bounds(self, trading_date: date) -> Dict[SessionType, Tuple[datetime, datetime]]:
        """UTC bounds of each session relative to a trading date."""
        prior = previous_trading_day(trading_date)
        cfg = self.config

        def at(day: date, hhmm: int) -> datetime:
            hours, minutes = divmod(hhmm, 100)
            local = datetime.combine(day, time(hours, minutes), tzinfo=self.tz)
            return local.astimezone(ZoneInfo("UTC"))

        return {
            SessionType.PRIOR_DAY: (at(prior, cfg.prior_day_start), at(prior, cfg.prior_day_end)),
            SessionType.OVERNIGHT: (at(prior, cfg.overnight_start), at(trading_date, cfg.overnight_end)),
            SessionType.MORNING: (at(trading_date, cfg.morning_start), at(trading_date, cfg.morning_end)),
        }

    # ========================================================================
    # LEVELS
    # ========================================================================

    def _levels(self, side: Side) -> List[float]:
        """Candidate levels for a side: current sessions first, then history."""
        levels: List[float] = []
        for session in self._sessions.values():
            if session.is_valid:
                levels.append(session.high if side is Side.LONG else session.low)

        if len(levels) < self.config.min_levels:
            recent = list(self._history)[-self.config.history_lookup:]
            for archived in reversed(recent):
                level = archived.high if side is Side.LONG else archived.low
                if level not in levels:
                    levels.append(level)

        return levels

    def alternate_target(self, price: float, side: Side) -> float:
        return price + side.sign * self.config.alt_tp_ticks * self.tick_size

    def select_take_profit(self, price: float, side: Side) -> TakeProfitSelection:
        """Choose a take-profit level for a position entered at `price`."""
        levels = self._levels(side)
        min_distance = self.config.min_tp_ticks * self.tick_size

        beyond = sorted(
            (lvl for lvl in levels if (lvl - price) * side.sign > 0),
            key=lambda lvl: abs(lvl - price),
        )

        for source, level in zip((TakeProfitSource.NEAREST, TakeProfitSource.NEXT_NEAREST), beyond):
            if abs(level - price) >= min_distance - 1e-9:
                return TakeProfitSelection(level, source, len(levels))

        return TakeProfitSelection(
            self.alternate_target(price, side), TakeProfitSource.ALTERNATE, len(levels)
        )

    def closest_levels(self, price: float) -> Tuple[Optional[float], Optional[float]]:
        """Nearest resistance above and support below price."""
        above = [lvl for lvl in self._levels(Side.LONG) if lvl > price]
        below = [lvl for lvl in self._levels(Side.SHORT) if lvl < price]
        return (min(above) if above else None, max(below) if below else None)

    def summary(self) -> Dict:
        return {
            "trading_date": self._trading_date.isoformat() if self._trading_date else None,
            "history": len(self._history),
            "sessions": {
                t.value: {
                    "valid": s.is_valid,
                    "high": s.high if s.is_valid else None,
                    "low": s.low if s.is_valid else None,
                    "bars": s.bar_count,
                }
                for t, s in self._sessions.items()
            },
        }


# ============================================================================
# HELPERS
# ============================================================================

def previous_trading_day(day: date) -> date:
    """Previous weekday."""
    prior = day - timedelta(days=1)
    while prior.weekday() >= 5:
        prior -= timedelta(days=1)
    return prior

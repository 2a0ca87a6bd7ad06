"""
Risk Governor - Daily Loss Halting and Order Size Validation

RISK RULES:
1. One DailyRiskTracker per period; a period rotates on
   - a new exchange-local date, or
   - entry into a newly active enabled trading window
   With no enabled windows, rotation is calendar-day only.
2. Halt new entries when |realized + unrealized| >= max daily loss
3. A halt persists until the next rotation
4. Every read checks for rotation first (no stale halts)

ORDER SIZE RULES:
- requested > max order size                          -> REJECT
- open + requested > max order size x exposure multiple -> REJECT
- requested x price x margin rate > balance            -> REJECT
"""

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .config import RiskConfig
from .models import ensure_utc
from .time_filter import TimeWindowGate


class SizeCheck(Enum):
    """Result of an order size validation."""
    ALLOWED = "ALLOWED"
    BLOCKED_ORDER_SIZE = "BLOCKED_ORDER_SIZE"
    BLOCKED_EXPOSURE = "BLOCKED_EXPOSURE"
    BLOCKED_MARGIN = "BLOCKED_MARGIN"
    BLOCKED_INVALID = "BLOCKED_INVALID"


@dataclass
class DailyRiskTracker:
    """PnL and trade statistics for one risk period."""
    date: date
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    trade_count: int = 0
    win_count: int = 0
    loss_count: int = 0
    max_drawdown: float = 0.0       # Most negative total seen
    max_profit: float = 0.0         # Most positive total seen
    is_halted: bool = False
    halt_reason: Optional[str] = None
    period_name: Optional[str] = None

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    @property
    def win_rate(self) -> float:
        """Win rate in percent."""
        if self.trade_count == 0:
            return 0.0
        return self.win_count / self.trade_count * 100.0

    def track_extremes(self) -> None:
        total = self.total_pnl
        self.max_drawdown = min(self.max_drawdown, total)
        self.max_profit = max(self.max_profit, total)


class RiskGovernor:
    """
    Per-period loss governor.

    Thread-safe: realized PnL arrives from fill callbacks while the bar
    pipeline reads the halt state.
    """

    def __init__(
        self,
        config: RiskConfig,
        gate: Optional[TimeWindowGate] = None,
        timezone_name: str = "America/New_York",
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.gate = gate
        self.tz = ZoneInfo(timezone_name)
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()

        self.tracker: Optional[DailyRiskTracker] = None
        self.history: deque = deque(maxlen=config.history_size)

        # Lifetime statistics
        self.total_realized_pnl = 0.0
        self.total_trades = 0
        self.consecutive_losses = 0
        self.max_consecutive_losses = 0

        self.logger.info(
            f"Risk governor initialized - Max daily loss: ${config.max_daily_loss:.2f}, "
            f"Max order size: {config.max_order_size}"
        )

    # ========================================================================
    # ROTATION
    # ========================================================================

    def _window_name(self, when: datetime) -> Optional[str]:
        if self.gate is None or not self.gate.has_enabled_windows():
            return None
        window = self.gate.window_at(when)
        return window.name if window is not None else None

    def _needs_rotation(self, when: datetime) -> bool:
        local_date = ensure_utc(when).astimezone(self.tz).date()
        if self.tracker is None or local_date != self.tracker.date:
            return True

        window = self._window_name(when)
        return window is not None and window != self.tracker.period_name

    def check_rotation(self, when: datetime) -> bool:
        """Rotate the tracker if a new period has begun. Returns True on rotation."""
        with self._lock:
            if not self._needs_rotation(when):
                return False
            self._rotate(when)
            return True

    def _rotate(self, when: datetime) -> None:
        previous = self.tracker
        if previous is not None:
            self.history.append(previous)
            if previous.trade_count > 0:
                self.logger.info(
                    f"[RISK RESET] {previous.date} {previous.period_name or ''} | "
                    f"PnL: ${previous.total_pnl:.2f} | Trades: {previous.trade_count} | "
                    f"Wins: {previous.win_count} | Losses: {previous.loss_count} | "
                    f"Win rate: {previous.win_rate:.1f}% | Max DD: ${previous.max_drawdown:.2f}"
                )
            if previous.is_halted:
                self.logger.info(f"Trading resumed - new risk period (was: {previous.halt_reason})")

        self.tracker = DailyRiskTracker(
            date=ensure_utc(when).astimezone(self.tz).date(),
            period_name=self._window_name(when),
        )
        self.logger.debug(f"Risk tracking reset for {self.tracker.date} {self.tracker.period_name or ''}")

    # ========================================================================
    # HALTING
    # ========================================================================

    def should_halt_trading(self, when: Optional[datetime] = None) -> bool:
        """True while the current period's loss cap is breached."""
        when = when or datetime.now(timezone.utc)
        with self._lock:
            self.check_rotation(when)
            tracker = self.tracker

            if tracker.is_halted:
                return True

            limit = self.config.max_daily_loss
            if limit > 0 and abs(tracker.total_pnl) >= limit:
                tracker.is_halted = True
                tracker.halt_reason = f"Max daily loss reached: ${tracker.total_pnl:.2f}"
                self.logger.warning(f"TRADING HALTED: {tracker.halt_reason}")
                return True

            return False

    @property
    def is_halted(self) -> bool:
        """Halt flag without rotation check. Prefer should_halt_trading()."""
        return bool(self.tracker and self.tracker.is_halted)

    # ========================================================================
    # PNL UPDATES
    # ========================================================================

    def record_realized(self, pnl: float, when: Optional[datetime] = None) -> None:
        """Record a closed position's realized PnL."""
        when = when or datetime.now(timezone.utc)
        with self._lock:
            self.check_rotation(when)
            tracker = self.tracker

            tracker.realized_pnl += pnl
            tracker.trade_count += 1
            self.total_realized_pnl += pnl
            self.total_trades += 1

            if pnl > 0:
                tracker.win_count += 1
                self.consecutive_losses = 0
            elif pnl < 0:
                tracker.loss_count += 1
                self.consecutive_losses += 1
                self.max_consecutive_losses = max(self.max_consecutive_losses, self.consecutive_losses)

            tracker.track_extremes()

        self.logger.info(
            f"Realized PnL: ${pnl:.2f} | Period total: ${tracker.total_pnl:.2f} | "
            f"Trades: {tracker.trade_count}"
        )

    def update_unrealized(self, pnl: float, when: Optional[datetime] = None) -> None:
        """Replace the open-position PnL mark."""
        when = when or datetime.now(timezone.utc)
        with self._lock:
            self.check_rotation(when)
            self.tracker.unrealized_pnl = pnl
            self.tracker.track_extremes()

    # ========================================================================
    # SIZE VALIDATION
    # ========================================================================

    def validate_position_size(
        self,
        requested: float,
        open_quantity: float,
        price: float,
        balance: Optional[float] = None,
    ) -> Tuple[SizeCheck, str]:
        """Check a requested order size against the exposure caps."""
        cfg = self.config
        balance = cfg.account_balance if balance is None else balance

        if requested <= 0:
            return SizeCheck.BLOCKED_INVALID, f"Invalid order size {requested}"

        if requested > cfg.max_order_size:
            return SizeCheck.BLOCKED_ORDER_SIZE, (
                f"Requested {requested} exceeds max order size {cfg.max_order_size}"
            )

        exposure_cap = cfg.max_order_size * cfg.exposure_multiple
        if open_quantity + requested > exposure_cap:
            return SizeCheck.BLOCKED_EXPOSURE, (
                f"Total exposure {open_quantity + requested} exceeds cap {exposure_cap}"
            )

        margin = requested * price * cfg.margin_rate
        if margin > balance:
            return SizeCheck.BLOCKED_MARGIN, (
                f"Estimated margin ${margin:.2f} exceeds balance ${balance:.2f}"
            )

        return SizeCheck.ALLOWED, ""

    # ========================================================================
    # REPORTING
    # ========================================================================

    def remaining_loss_allowance(self, when: Optional[datetime] = None) -> float:
        when = when or datetime.now(timezone.utc)
        with self._lock:
            self.check_rotation(when)
            if self.config.max_daily_loss <= 0:
                return float('inf')
            return max(0.0, self.config.max_daily_loss - abs(self.tracker.total_pnl))

    def statistics(self, when: Optional[datetime] = None) -> Dict:
        """Current period and lifetime figures. With when, a period rollover is applied first."""
        with self._lock:
            if when is not None:
                self.check_rotation(when)
            tracker = self.tracker
            return {
                "period_date": tracker.date.isoformat() if tracker else None,
                "period_name": tracker.period_name if tracker else None,
                "period_pnl": tracker.total_pnl if tracker else 0.0,
                "realized_pnl": tracker.realized_pnl if tracker else 0.0,
                "unrealized_pnl": tracker.unrealized_pnl if tracker else 0.0,
                "period_trades": tracker.trade_count if tracker else 0,
                "win_rate": tracker.win_rate if tracker else 0.0,
                "is_halted": self.is_halted,
                "halt_reason": tracker.halt_reason if tracker else None,
                "total_realized_pnl": self.total_realized_pnl,
                "total_trades": self.total_trades,
                "consecutive_losses": self.consecutive_losses,
                "max_consecutive_losses": self.max_consecutive_losses,
            }

    def daily_summary(self) -> List[Dict]:
        """Archived periods plus the live one."""
        with self._lock:
            trackers = list(self.history) + ([self.tracker] if self.tracker else [])
        summary = []
        for t in trackers:
            row = asdict(t)
            row["date"] = t.date.isoformat()
            row["total_pnl"] = t.total_pnl
            row["win_rate"] = t.win_rate
            summary.append(row)
        return summary

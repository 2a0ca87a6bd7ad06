"""
Order Gate - Duplicate Suppression and Runaway Protection

Every position-opening order must pass the gate. Exits never do.

SUPPRESSION RULES (checked in order):
1. Runaway halt active                         -> BLOCK (until next day)
2. Waiting for fill (latch, expires after 30s) -> BLOCK
3. Last order less than throttle seconds ago   -> BLOCK
4. Same side + reason within 30s               -> BLOCK
5. Same signal key within cooldown (5s)        -> BLOCK
6. Daily order count at ceiling (50)           -> HALT strategy
   (raises RunawayHaltError once; later calls return RUNAWAY_HALT)

A rejected order releases the latch and gives back its daily count.
Retries happen only on the next natural decision cycle.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Optional
from zoneinfo import ZoneInfo

import numpy as np

from .config import OrderConfig
from .errors import RunawayHaltError
from .models import Side, ensure_utc


class GateVerdict(Enum):
    ALLOWED = "ALLOWED"
    WAITING_FOR_FILL = "WAITING_FOR_FILL"
    THROTTLED = "THROTTLED"
    DUPLICATE = "DUPLICATE"
    COOLDOWN = "COOLDOWN"
    RUNAWAY_HALT = "RUNAWAY_HALT"

    @property
    def allowed(self) -> bool:
        return self is GateVerdict.ALLOWED


@dataclass(frozen=True)
class OrderStamp:
    side: Side
    reason: str
    timestamp: datetime


class OrderGate:
    """Latch, throttle, duplicate and daily-ceiling bookkeeping."""

    def __init__(
        self,
        config: OrderConfig,
        timezone_name: str = "America/New_York",
        logger: Optional[logging.Logger] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config
        self.tz = ZoneInfo(timezone_name)
        self.logger = logger or logging.getLogger(__name__)
        self.rng = rng or np.random.default_rng()
        self._lock = threading.Lock()

        self._waiting_since: Optional[datetime] = None
        self._last_order: Optional[OrderStamp] = None
        self._cooldowns: Dict[str, datetime] = {}
        self._day: Optional[date] = None
        self.daily_order_count = 0
        self.is_halted = False
        self.halt_reason: Optional[str] = None

    # ========================================================================
    # DAILY ROTATION
    # ========================================================================

    def _rotate_if_new_day(self, now: datetime) -> None:
        today = ensure_utc(now).astimezone(self.tz).date()
        if self._day == today:
            return
        if self._day is not None:
            self.logger.info(
                f"Order counters reset for {today} (previous day orders: {self.daily_order_count})"
            )
        if self.is_halted:
            self.logger.warning(f"Runaway halt cleared for new trading day: {self.halt_reason}")
        self._day = today
        self.daily_order_count = 0
        self._cooldowns.clear()
        self.is_halted = False
        self.halt_reason = None

    # ========================================================================
    # LATCH
    # ========================================================================

    def is_waiting_for_fill(self, now: datetime) -> bool:
        with self._lock:
            return self._latch_active(now)

    def _latch_active(self, now: datetime) -> bool:
        if self._waiting_since is None:
            return False
        waited = (ensure_utc(now) - self._waiting_since).total_seconds()
        if waited > self.config.fill_timeout_seconds:
            self.logger.warning(
                f"Fill confirmation not received after {waited:.0f}s - releasing order latch"
            )
            self._waiting_since = None
            return False
        return True

    def release(self) -> None:
        """Fill confirmed; allow the next order."""
        with self._lock:
            self._waiting_since = None

    def on_rejected(self, reason: str) -> None:
        """Order refused by the boundary: release latch and give back the count."""
        with self._lock:
            self._waiting_since = None
            self.daily_order_count = max(0, self.daily_order_count - 1)
        self.logger.warning(f"Order rejected: {reason} - latch released")

    # ========================================================================
    # ACQUIRE
    # ========================================================================

    def _verdict(self, side: Side, reason: str, signal_key: str, now: datetime) -> GateVerdict:
        cfg = self.config
        if self.is_halted:
            return GateVerdict.RUNAWAY_HALT

        if self._latch_active(now):
            return GateVerdict.WAITING_FOR_FILL

        last = self._last_order
        if last is not None:
            elapsed = (now - last.timestamp).total_seconds()
            if elapsed < cfg.throttle_seconds:
                return GateVerdict.THROTTLED
            if last.side is side and last.reason == reason and elapsed < cfg.duplicate_window_seconds:
                return GateVerdict.DUPLICATE

        cooled = self._cooldowns.get(signal_key)
        if cooled is not None and (now - cooled).total_seconds() < cfg.signal_cooldown_seconds:
            return GateVerdict.COOLDOWN

        if self.daily_order_count >= cfg.max_daily_orders:
            self.is_halted = True
            self.halt_reason = (
                f"Daily order ceiling reached ({self.daily_order_count}) - possible runaway"
            )
            raise RunawayHaltError(self.halt_reason)

        return GateVerdict.ALLOWED

    def try_acquire(
        self,
        side: Side,
        reason: str,
        signal_key: str,
        now: Optional[datetime] = None,
    ) -> GateVerdict:
        """
        Check every suppression rule and, if allowed, record the order
        and set the waiting-for-fill latch in one step.
        """
        now = ensure_utc(now or datetime.now(timezone.utc))
        with self._lock:
            self._rotate_if_new_day(now)
            verdict = self._verdict(side, reason, signal_key, now)
            if not verdict.allowed:
                return verdict

            self._waiting_since = now
            self._last_order = OrderStamp(side, reason, now)
            self._cooldowns[signal_key] = now
            self.daily_order_count += 1

        self.logger.debug(
            f"Order slot acquired: {side.value} {reason} ({self.daily_order_count} today)"
        )
        return verdict

    # ========================================================================
    # SLIPPAGE
    # ========================================================================

    def slippage_allowance(self, atr: float, tick_size: float) -> float:
        """ATR x multiplier with +/- jitter, rounded to the tick grid (min 1 tick)."""
        if not atr > 0:
            return tick_size
        jitter = self.rng.uniform(-self.config.slippage_jitter, self.config.slippage_jitter)
        raw = atr * self.config.slippage_atr_multiplier * (1.0 + jitter)
        return max(tick_size, round(raw / tick_size) * tick_size)

    def status(self, when: Optional[datetime] = None) -> Dict:
        with self._lock:
            if when is not None:
                self._rotate_if_new_day(when)
            return {
                "daily_orders": self.daily_order_count,
                "waiting_for_fill": self._waiting_since is not None,
                "is_halted": self.is_halted,
                "halt_reason": self.halt_reason,
            }

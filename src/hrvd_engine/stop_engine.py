"""
Trailing Stop Engine - ATR Stop Loss Per Open Position

STOP FORMULA:
- Long:  previous bar low  - ATR x multiplier
- Short: previous bar high + ATR x multiplier
- Distance from entry clamped to [min_stop_ticks, max_stop_ticks]
- No previous bar or ATR <= 0 -> entry -/+ min_stop_ticks

TRAILING (RATCHET):
- Recomputed every bar; stored only if more favorable
  (higher for longs, lower for shorts). Never gives back.

HIT TESTS:
- Long:  stop hit if price <= stop, target hit if price >= target
- Short: stop hit if price >= stop, target hit if price <= target

Registry mutation is guarded by a lock: fills arrive on the order
worker thread while ticks check hits on the feed thread.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .config import StopConfig
from .errors import UnknownPositionError
from .models import ProtectiveLevels, Side


@dataclass
class StopLossRecord:
    """Stop/target state for one open position."""
    position_id: str
    side: Side
    entry_price: float
    initial_stop: float
    current_stop: float
    take_profit: float
    entry_time: datetime
    last_update: datetime
    update_count: int = 0
    is_trailing: bool = False

    @property
    def levels(self) -> ProtectiveLevels:
        return ProtectiveLevels(self.position_id, self.current_stop, self.take_profit)

    def is_more_favorable(self, stop: float) -> bool:
        if self.side is Side.LONG:
            return stop > self.current_stop
        return stop < self.current_stop


class TrailingStopEngine:
    """
    ATR stop computation and per-position ratchet.

    At most one record per position id.
    """

    def __init__(
        self,
        config: StopConfig,
        tick_size: float,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.tick_size = tick_size
        self.logger = logger or logging.getLogger(__name__)
        self._records: Dict[str, StopLossRecord] = {}
        self._lock = threading.Lock()

    # ========================================================================
    # COMPUTATION
    # ========================================================================

    def compute_stop(
        self,
        side: Side,
        entry_price: float,
        previous_high: Optional[float],
        previous_low: Optional[float],
        atr: Optional[float],
    ) -> float:
        """ATR stop from the previous bar, clamped to the tick distance band."""
        min_distance = self.config.min_stop_ticks * self.tick_size
        max_distance = self.config.max_stop_ticks * self.tick_size

        if previous_high is None or previous_low is None or atr is None or not atr > 0:
            self.logger.debug("No previous bar or ATR, using min stop distance")
            return entry_price - side.sign * min_distance

        offset = atr * self.config.atr_multiplier
        if side is Side.LONG:
            raw_stop = previous_low - offset
        else:
            raw_stop = previous_high + offset

        distance = (entry_price - raw_stop) * side.sign
        clamped = min(max_distance, max(min_distance, distance))
        if clamped != distance:
            self.logger.debug(
                f"{side.value} SL distance {distance / self.tick_size:.1f} ticks "
                f"clamped to {clamped / self.tick_size:.1f}"
            )

        return self._round_to_tick(entry_price - side.sign * clamped)

    def _round_to_tick(self, price: float) -> float:
        return round(round(price / self.tick_size) * self.tick_size, 10)

    # ========================================================================
    # REGISTRY
    # ========================================================================

    def register(
        self,
        position_id: str,
        side: Side,
        entry_price: float,
        take_profit: float,
        previous_high: Optional[float] = None,
        previous_low: Optional[float] = None,
        atr: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> StopLossRecord:
        """Create the stop record for a newly opened position."""
        now = now or datetime.now(timezone.utc)
        stop = self.compute_stop(side, entry_price, previous_high, previous_low, atr)
        record = StopLossRecord(
            position_id=position_id,
            side=side,
            entry_price=entry_price,
            initial_stop=stop,
            current_stop=stop,
            take_profit=take_profit,
            entry_time=now,
            last_update=now,
        )

        with self._lock:
            if position_id in self._records:
                self.logger.warning(f"Stop record for {position_id} replaced")
            self._records[position_id] = record

        self.logger.info(
            f"[SL REGISTERED] {side.value} {position_id} | Entry: {entry_price:.2f} | "
            f"SL: {stop:.2f} | TP: {take_profit:.2f}"
        )
        return replace(record)

    def update(
        self,
        position_id: str,
        previous_high: float,
        previous_low: float,
        atr: float,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Recompute the stop and keep it only if more favorable.

        Returns True if the stop moved.
        """
        with self._lock:
            record = self._records.get(position_id)
            if record is None:
                raise UnknownPositionError(position_id)

            candidate = self.compute_stop(
                record.side, record.entry_price, previous_high, previous_low, atr
            )
            if not record.is_more_favorable(candidate):
                return False

            old_stop = record.current_stop
            record.current_stop = candidate
            record.last_update = now or datetime.now(timezone.utc)
            record.update_count += 1
            record.is_trailing = True

        self.logger.info(
            f"[SL UPDATE] {record.side.value} {position_id} | {old_stop:.2f} -> {candidate:.2f} | "
            f"Distance: {abs(record.entry_price - candidate):.2f}"
        )
        return True

    def update_all(
        self,
        previous_high: float,
        previous_low: float,
        atr: float,
        now: Optional[datetime] = None,
    ) -> List[ProtectiveLevels]:
        """
        Trail every open position.

        A failure on one position is logged and does not stop the others.
        Returns levels for the positions whose stop moved.
        """
        moved = []
        for position_id in self.position_ids():
            try:
                if self.update(position_id, previous_high, previous_low, atr, now):
                    moved.append(self.levels(position_id))
            except Exception:
                self.logger.exception(f"Stop update failed for {position_id}")
        return moved

    def remove(self, position_id: str) -> Optional[StopLossRecord]:
        with self._lock:
            record = self._records.pop(position_id, None)
        if record is not None:
            self.logger.info(f"[SL REMOVED] {position_id}")
        return record

    def clear_all(self) -> None:
        with self._lock:
            count = len(self._records)
            self._records.clear()
        self.logger.info(f"All stop records cleared ({count})")

    # ========================================================================
    # QUERIES
    # ========================================================================

    def position_ids(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def get(self, position_id: str) -> Optional[StopLossRecord]:
        """Copy of the record, or None."""
        with self._lock:
            record = self._records.get(position_id)
            return replace(record) if record is not None else None

    def levels(self, position_id: str) -> ProtectiveLevels:
        with self._lock:
            record = self._records.get(position_id)
            if record is None:
                raise UnknownPositionError(position_id)
            return record.levels

    def is_stop_hit(self, position_id: str, price: float) -> bool:
        record = self.get(position_id)
        if record is None:
            return False
        if record.side is Side.LONG:
            return price <= record.current_stop
        return price >= record.current_stop

    def is_take_profit_hit(self, position_id: str, price: float) -> bool:
        record = self.get(position_id)
        if record is None:
            return False
        if record.side is Side.LONG:
            return price >= record.take_profit
        return price <= record.take_profit

    def statistics(self) -> Dict:
        with self._lock:
            records = list(self._records.values())

        stats = {
            "active_positions": len(records),
            "trailing_stops": sum(1 for r in records if r.is_trailing),
            "total_updates": sum(r.update_count for r in records),
        }
        if records:
            stats["avg_distance_ticks"] = sum(
                abs(r.entry_price - r.current_stop) / self.tick_size for r in records
            ) / len(records)
        return stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

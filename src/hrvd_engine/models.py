"""
Core Data Model

Immutable market events (Bar, Tick), the explicit measured-vs-estimated
volume delta, open positions, and the intents handed to the order boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from .errors import InvalidBarError


def ensure_utc(ts: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class Side(Enum):
    """Trade direction."""
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> 'Side':
        return Side.SHORT if self is Side.LONG else Side.LONG

    @property
    def sign(self) -> int:
        """+1 for long, -1 for short."""
        return 1 if self is Side.LONG else -1


class PositionState(Enum):
    """Net position state of the engine."""
    FLAT = "FLAT"
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def for_side(cls, side: Side) -> 'PositionState':
        return cls.LONG if side is Side.LONG else cls.SHORT

    @property
    def side(self) -> Optional[Side]:
        if self is PositionState.LONG:
            return Side.LONG
        if self is PositionState.SHORT:
            return Side.SHORT
        return None


class IntentKind(Enum):
    """Kind of decided action."""
    ENTRY = "ENTRY"
    STACK = "STACK"
    EXIT = "EXIT"
    REVERSAL = "REVERSAL"

    @property
    def opens_position(self) -> bool:
        return self is not IntentKind.EXIT


class VolumeDeltaSource(Enum):
    """Where a bar's volume delta came from."""
    MEASURED = "MEASURED"
    ESTIMATED = "ESTIMATED"


def estimate_volume_delta(high: float, low: float, close: float, volume: float) -> float:
    """
    Estimate buy-minus-sell volume from the close location within the range.

    bullish = clamp((close - low) / (high - low), 0, 1)
    delta = bullish * volume - (1 - bullish) * volume

    Returns 0 for a zero or negative range.
    """
    price_range = high - low
    if price_range <= 0:
        return 0.0

    bullish = min(1.0, max(0.0, (close - low) / price_range))
    return bullish * volume - (1.0 - bullish) * volume


@dataclass(frozen=True)
class VolumeDelta:
    """Volume delta with explicit provenance."""
    value: float
    source: VolumeDeltaSource

    @property
    def is_measured(self) -> bool:
        return self.source is VolumeDeltaSource.MEASURED


@dataclass(frozen=True)
class Bar:
    """
    Immutable closed bar.

    measured_delta is the buy-minus-sell volume reported by the feed.
    When absent, volume_delta falls back to the close-location estimate.
    """
    timestamp: datetime               # Bar open time, UTC
    open: float
    high: float
    low: float
    close: float
    volume: float
    measured_delta: Optional[float] = None
    close_time: Optional[datetime] = None

    def __post_init__(self):
        if self.high < self.low:
            raise InvalidBarError(
                f"Bar at {self.timestamp}: high {self.high} < low {self.low}"
            )
        if self.volume < 0:
            raise InvalidBarError(f"Bar at {self.timestamp}: negative volume")

    @property
    def volume_delta(self) -> VolumeDelta:
        if self.measured_delta is not None:
            return VolumeDelta(self.measured_delta, VolumeDeltaSource.MEASURED)
        return VolumeDelta(
            estimate_volume_delta(self.high, self.low, self.close, self.volume),
            VolumeDeltaSource.ESTIMATED,
        )

    @property
    def closed_at(self) -> datetime:
        """Close time when known, else open time."""
        return self.close_time or self.timestamp

    @property
    def body(self) -> float:
        """Absolute open-to-close move."""
        return abs(self.close - self.open)


@dataclass(frozen=True)
class Tick:
    """Trade/quote update used for intra-bar stop and target monitoring."""
    timestamp: datetime
    price: float
    bid: float = 0.0
    ask: float = 0.0

    def price_for(self, side: Side) -> float:
        """
        Price a position of this side would exit at.

        Longs are checked against the bid, shorts against the ask.
        Missing quotes fall back to the last trade price.
        """
        quote = self.bid if side is Side.LONG else self.ask
        return quote if quote > 0 else self.price


@dataclass
class Position:
    """Open position as confirmed by the order boundary."""
    position_id: str
    side: Side
    quantity: float
    entry_price: float
    entry_time: datetime

    def unrealized_pnl(self, price: float, point_value: float) -> float:
        return (price - self.entry_price) * self.side.sign * self.quantity * point_value


@dataclass(frozen=True)
class PositionIntent:
    """
    Decided action handed to the order-placement boundary.

    Never persisted. EXIT intents list the positions to close;
    an empty tuple means all positions on that side.
    """
    side: Side
    kind: IntentKind
    price: float
    quantity: float
    reason: str
    timestamp: datetime
    position_ids: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            "side": self.side.value,
            "kind": self.kind.value,
            "price": self.price,
            "quantity": self.quantity,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "position_ids": list(self.position_ids),
        }


@dataclass(frozen=True)
class ProtectiveLevels:
    """Stop/target request the boundary keeps in sync with broker orders."""
    position_id: str
    stop_price: float
    target_price: float


@dataclass
class Decision:
    """All intents emitted for one evaluation cycle, in order."""
    timestamp: datetime
    intents: list = field(default_factory=list)
    blocked_reason: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return not self.intents

    @property
    def kinds(self) -> list:
        return [i.kind for i in self.intents]

"""
Bar Replay

Drives a TradingEngine over historical bars with an immediate-fill
simulated broker. Identical decision path to live trading: every intent
goes through the order mailbox and every fill comes back through the
position callbacks.

DataFrames must have: open, high, low, close, volume, plus a 'timestamp'
column or a DatetimeIndex. An optional 'delta' column supplies measured
volume delta; otherwise it is estimated from the close location.
"""

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .config import EngineConfig, DEFAULT_CONFIG
from .engine import TradingEngine
from .errors import OrderRejectedError
from .models import Bar, IntentKind, PositionIntent, ProtectiveLevels


logger = logging.getLogger(__name__)


# ============================================================================
# DATA CONVERSION
# ============================================================================

def _to_utc(value) -> datetime:
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert("UTC").to_pydatetime()


def infer_bar_duration(times) -> Optional[timedelta]:
    """Median positive spacing of the timestamps, or None with fewer than two bars."""
    stamps = pd.Series(pd.to_datetime(list(times), utc=True)).sort_values()
    deltas = stamps.diff().dropna()
    deltas = deltas[deltas > pd.Timedelta(0)]
    if deltas.empty:
        return None
    return deltas.median().to_pytimedelta()


def frame_to_bars(df: pd.DataFrame, bar_duration: Optional[timedelta] = None) -> List[Bar]:
    """
    Convert an OHLCV DataFrame into Bars.

    Naive timestamps are taken as UTC and mark the bar open. Each bar's
    close_time is its open time plus bar_duration; without one the
    duration is the median timestamp spacing. Pass timedelta(0) to keep
    open times as close times.
    """
    if "timestamp" in df.columns:
        times = df["timestamp"]
    elif isinstance(df.index, pd.DatetimeIndex):
        times = df.index.to_series()
    else:
        raise ValueError("DataFrame needs a 'timestamp' column or a DatetimeIndex")

    missing = [c for c in ("open", "high", "low", "close", "volume") if c not in df.columns]
    if missing:
        raise ValueError(f"DataFrame missing columns: {missing}")

    if bar_duration is None:
        bar_duration = infer_bar_duration(times)

    has_delta = "delta" in df.columns
    bars = []
    for ts, row in zip(times, df.itertuples(index=False)):
        opened = _to_utc(ts)
        delta = getattr(row, "delta") if has_delta else None
        bars.append(Bar(
            timestamp=opened,
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
            measured_delta=None if delta is None or pd.isna(delta) else float(delta),
            close_time=opened + bar_duration if bar_duration else None,
        ))
    return bars


# ============================================================================
# SIMULATED BROKER
# ============================================================================

@dataclass
class ReplayTrade:
    """Round trip recorded by the simulated broker."""
    position_id: str
    side: str
    quantity: float
    entry_time: datetime
    entry_price: float

    exit_time: Optional[datetime] = None
    exit_price: Optional[float] = None
    exit_reason: str = ""
    pnl: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    @property
    def won(self) -> bool:
        return self.pnl > 0


class SimulatedBroker:
    """
    Fills every order immediately at the intent price.

    Entries may be filled with ATR-based slippage against the trader.
    Exits fill at the intent price (the stop or target for protective
    exits, the bar close otherwise).
    """

    def __init__(self, point_value: float, apply_slippage: bool = False, reject_entries: bool = False):
        self.point_value = point_value
        self.apply_slippage = apply_slippage
        self.reject_entries = reject_entries
        self.engine: Optional[TradingEngine] = None

        self.protection: Dict[str, ProtectiveLevels] = {}
        self.closed: List[ReplayTrade] = []
        self.open: Dict[str, ReplayTrade] = {}
        self._ids = itertools.count(1)

    def submit(self, intent: PositionIntent) -> None:
        if self.engine is None:
            raise OrderRejectedError("Broker not attached to an engine")

        if intent.kind is IntentKind.EXIT:
            self._close(intent)
            return

        if self.reject_entries:
            raise OrderRejectedError("Entries disabled")

        price = intent.price
        if self.apply_slippage:
            atr = self.engine.atr.value
            tick = self.engine.config.instrument.tick_size
            price += intent.side.sign * self.engine.order_gate.slippage_allowance(atr, tick)

        position_id = f"SIM-{next(self._ids):05d}"
        self.open[position_id] = ReplayTrade(
            position_id=position_id,
            side=intent.side.value,
            quantity=intent.quantity,
            entry_time=intent.timestamp,
            entry_price=price,
        )
        self.engine.on_position_opened(position_id, intent.side, intent.quantity, price, intent.timestamp)

    def _close(self, intent: PositionIntent) -> None:
        for position_id in intent.position_ids:
            trade = self.open.pop(position_id, None)
            if trade is None:
                raise OrderRejectedError(f"Unknown position {position_id}")
            sign = 1 if trade.side == "LONG" else -1
            trade.exit_time = intent.timestamp
            trade.exit_price = intent.price
            trade.exit_reason = intent.reason
            trade.pnl = (intent.price - trade.entry_price) * sign * trade.quantity * self.point_value
            self.closed.append(trade)
            self.protection.pop(position_id, None)
            self.engine.on_position_closed(position_id, trade.pnl, intent.timestamp)

    def update_protection(self, levels: ProtectiveLevels) -> None:
        if levels.position_id in self.open:
            self.protection[levels.position_id] = levels


# ============================================================================
# REPLAY
# ============================================================================

@dataclass
class ReplayResult:
    """Replay summary."""
    trades: List[ReplayTrade]
    equity_curve: List[float]

    bars: int = 0
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    total_pnl: float = 0.0
    max_drawdown: float = 0.0
    avg_trade: float = 0.0
    exit_reasons: Dict[str, int] = field(default_factory=dict)
    blocked_reasons: Dict[str, int] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        """One row per trade."""
        return pd.DataFrame([t.__dict__ for t in self.trades])


class BarReplay:
    """Replay historical bars through a TradingEngine."""

    def __init__(
        self,
        config: EngineConfig = DEFAULT_CONFIG,
        apply_slippage: bool = False,
        seed: Optional[int] = None,
    ):
        self.config = config
        self.broker = SimulatedBroker(config.instrument.point_value, apply_slippage=apply_slippage)
        self.engine = TradingEngine(config, sink=self.broker, rng=np.random.default_rng(seed))
        self.broker.engine = self.engine

    def run(self, df: pd.DataFrame, bar_duration: Optional[timedelta] = None) -> ReplayResult:
        """Replay every bar; open trades are closed at the last bar."""
        bars = frame_to_bars(df, bar_duration)
        equity_curve: List[float] = []
        blocked: Dict[str, int] = {}

        for bar in bars:
            decision = self.engine.on_bar(bar)
            if decision.blocked_reason:
                blocked[decision.blocked_reason] = blocked.get(decision.blocked_reason, 0) + 1
            self.engine.process_orders()

            realized = sum(t.pnl for t in self.broker.closed)
            point_value = self.config.instrument.point_value
            unrealized = sum(
                (bar.close - t.entry_price) * (1 if t.side == "LONG" else -1) * t.quantity * point_value
                for t in self.broker.open.values()
            )
            equity_curve.append(realized + unrealized)

        if bars and self.broker.open:
            self.engine.flatten_all("End of replay", bars[-1].closed_at)
            self.engine.process_orders()

        logger.info(
            f"Replay complete: {len(bars)} bars, {len(self.broker.closed)} trades, "
            f"{self.engine.rejections} rejections"
        )
        return self._compute_results(len(bars), equity_curve, blocked)

    def _compute_results(
        self,
        bar_count: int,
        equity_curve: List[float],
        blocked: Dict[str, int],
    ) -> ReplayResult:
        trades = list(self.broker.closed)
        if not trades:
            return ReplayResult(
                trades=[], equity_curve=equity_curve, bars=bar_count, blocked_reasons=blocked
            )

        pnls = np.array([t.pnl for t in trades])
        wins = pnls[pnls > 0]
        losses = pnls[pnls <= 0]
        gross_profit = wins.sum() if len(wins) else 0.0
        gross_loss = abs(losses.sum()) if len(losses) else 0.0

        max_dd = 0.0
        if equity_curve:
            equity = np.array(equity_curve)
            running_max = np.maximum.accumulate(np.maximum(equity, 0.0))
            max_dd = float(np.max(running_max - equity))

        exit_reasons: Dict[str, int] = {}
        for trade in trades:
            exit_reasons[trade.exit_reason] = exit_reasons.get(trade.exit_reason, 0) + 1

        return ReplayResult(
            trades=trades,
            equity_curve=equity_curve,
            bars=bar_count,
            total_trades=len(trades),
            wins=len(wins),
            losses=len(losses),
            win_rate=len(wins) / len(trades),
            profit_factor=gross_profit / gross_loss if gross_loss > 0 else float("inf"),
            total_pnl=float(pnls.sum()),
            max_drawdown=max_dd,
            avg_trade=float(pnls.mean()),
            exit_reasons=exit_reasons,
            blocked_reasons=blocked,
        )


def print_summary(result: ReplayResult) -> None:
    """Print a replay summary."""
    print()
    print("=" * 60)
    print("REPLAY SUMMARY")
    print("=" * 60)
    print(f"Bars:           {result.bars}")
    print(f"Total Trades:   {result.total_trades}")
    print(f"Wins / Losses:  {result.wins} / {result.losses}")
    print(f"Win Rate:       {result.win_rate:.2%}")
    print(f"Profit Factor:  {result.profit_factor:.2f}")
    print(f"Total PnL:      ${result.total_pnl:,.2f}")
    print(f"Avg Trade:      ${result.avg_trade:,.2f}")
    print(f"Max Drawdown:   ${result.max_drawdown:,.2f}")
    if result.exit_reasons:
        print("-" * 60)
        print("EXIT REASONS")
        for reason, count in sorted(result.exit_reasons.items(), key=lambda kv: -kv[1]):
            print(f"  {reason:<40} {count:>5}")
    if result.blocked_reasons:
        print("-" * 60)
        print("BLOCKED ENTRIES")
        for reason, count in sorted(result.blocked_reasons.items(), key=lambda kv: -kv[1]):
            print(f"  {reason:<40} {count:>5}")
    print("=" * 60)

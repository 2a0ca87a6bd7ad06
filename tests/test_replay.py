"""
Tests for bar replay and the simulated broker.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hrvd_engine.config import EngineConfig, SignalConfig, TimeWindowConfig
from hrvd_engine.replay import BarReplay, frame_to_bars, infer_bar_duration, print_summary
from hrvd_engine.signal_engine import SignalAggregator, SignalCalculator


START = pd.Timestamp("2026-01-13 14:30")   # naive, read as UTC


# ============================================================================
# FIXTURES
# ============================================================================

def make_frame(n=300, seed=11, start_price=20000.0):
    rng = np.random.default_rng(seed)
    close = start_price + np.cumsum(rng.normal(0, 2.0, n))
    open_ = np.concatenate([[start_price], close[:-1]])
    spread = np.abs(rng.normal(0, 1.5, n))
    return pd.DataFrame({
        "timestamp": pd.date_range(START, periods=n, freq="1min"),
        "open": open_,
        "high": np.maximum(open_, close) + spread,
        "low": np.minimum(open_, close) - spread,
        "close": close,
        "volume": rng.integers(200, 2000, n).astype(float),
    })


class Scripted(SignalCalculator):
    """Votes long on the listed bar indexes, short on the others listed."""

    def __init__(self, name, long_at=(), short_at=()):
        super().__init__()
        self.name = name
        self.long_at = set(long_at)
        self.short_at = set(short_at)
        self.index = -1

    def update(self, bar, history):
        self.index += 1
        self._long_ok = self.index in self.long_at
        self._short_ok = self.index in self.short_at


def scripted_replay(long_at=(), exit_long_at=()):
    config = EngineConfig(
        signals=SignalConfig(entry_signals=("VD_STRENGTH",), exit_signals=("VD_DIVERGENCE",)),
        time_windows=TimeWindowConfig(windows=()),
    )
    replay = BarReplay(config, seed=1)
    replay.engine.signals = SignalAggregator(config.signals, calculators={
        "VD_STRENGTH": Scripted("VD_STRENGTH", long_at=long_at),
        "VD_DIVERGENCE": Scripted("VD_DIVERGENCE", short_at=exit_long_at),
    })
    return replay


def flat_frame(n=20, price=100.0):
    return pd.DataFrame({
        "timestamp": pd.date_range(START, periods=n, freq="1min"),
        "open": price,
        "high": price + 0.5,
        "low": price - 0.5,
        "close": price,
        "volume": 1000.0,
    })


# ============================================================================
# FRAME CONVERSION
# ============================================================================

class TestFrameToBars:

    def test_timestamp_column(self):
        bars = frame_to_bars(make_frame(5))
        assert len(bars) == 5
        assert bars[0].timestamp == datetime(2026, 1, 13, 14, 30, tzinfo=timezone.utc)
        assert bars[0].measured_delta is None

    def test_datetime_index_and_delta(self):
        df = flat_frame(3).set_index("timestamp")
        df["delta"] = [50.0, np.nan, -20.0]
        bars = frame_to_bars(df, bar_duration=timedelta(minutes=1))

        assert [b.measured_delta for b in bars] == [50.0, None, -20.0]
        assert bars[0].closed_at == datetime(2026, 1, 13, 14, 31, tzinfo=timezone.utc)

    def test_close_time_inferred_from_spacing(self):
        bars = frame_to_bars(flat_frame(3))
        assert bars[0].timestamp == datetime(2026, 1, 13, 14, 30, tzinfo=timezone.utc)
        assert bars[0].closed_at == datetime(2026, 1, 13, 14, 31, tzinfo=timezone.utc)

    def test_median_spacing_ignores_gaps(self):
        times = list(pd.date_range(START, periods=4, freq="5min")) + [START + pd.Timedelta(hours=2)]
        assert infer_bar_duration(times) == timedelta(minutes=5)
        assert infer_bar_duration([START]) is None

    def test_zero_duration_keeps_open_time(self):
        bars = frame_to_bars(flat_frame(3), bar_duration=timedelta(0))
        assert bars[1].closed_at == bars[1].timestamp

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="volume"):
            frame_to_bars(flat_frame(3).drop(columns=["volume"]))

    def test_missing_time(self):
        with pytest.raises(ValueError):
            frame_to_bars(flat_frame(3).drop(columns=["timestamp"]))


# ============================================================================
# REPLAY
# ============================================================================

class TestBarReplay:

    def test_random_walk_accounting(self):
        replay = BarReplay(EngineConfig(), seed=5)
        result = replay.run(make_frame())

        assert result.bars == 300
        assert len(result.equity_curve) == 300
        assert not replay.broker.open
        assert all(not t.is_open for t in result.trades)
        assert result.total_trades == result.wins + result.losses
        assert result.total_pnl == pytest.approx(sum(t.pnl for t in result.trades))
        assert 0.0 <= result.win_rate <= 1.0
        assert result.max_drawdown >= 0.0
        assert len(result.to_frame()) == result.total_trades

    def test_scripted_round_trip(self):
        df = flat_frame(20)
        df.loc[10:, ["open", "close"]] = 102.0
        df.loc[10:, "high"] = 102.5
        df.loc[10:, "low"] = 101.5

        replay = scripted_replay(long_at={3}, exit_long_at={12})
        result = replay.run(df)

        assert result.total_trades == 1
        trade = result.trades[0]
        assert trade.side == "LONG"
        assert trade.entry_price == 100.0
        assert trade.exit_price == 102.0
        assert trade.exit_reason == "LONG exit signal"
        # 2 points at 2.0 per point
        assert trade.pnl == pytest.approx(4.0)
        assert result.profit_factor == float("inf")
        assert result.exit_reasons == {"LONG exit signal": 1}

    def test_open_trade_closed_at_end(self):
        replay = scripted_replay(long_at={2})
        result = replay.run(flat_frame(10))

        assert result.total_trades == 1
        assert result.trades[0].exit_reason == "End of replay"
        assert not replay.engine.state.positions

    def test_empty_frame(self):
        result = BarReplay(EngineConfig()).run(flat_frame(0))
        assert result.bars == 0
        assert result.trades == []

    def test_print_summary(self, capsys):
        result = scripted_replay(long_at={2}).run(flat_frame(10))
        print_summary(result)
        out = capsys.readouterr().out
        assert "REPLAY SUMMARY" in out
        assert "End of replay" in out

"""
End-to-end tests for the driving loop.

Signals are replaced with switchable calculators so each bar's votes are
chosen by the test; everything else (gate, sessions, stops, risk, order
gate, mailbox, simulated broker) is the real thing.
"""

import logging
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hrvd_engine.config import (
    EngineConfig,
    OrderConfig,
    SignalConfig,
    TimeWindowConfig,
    TradingWindowConfig,
)
from hrvd_engine.engine import TradingEngine
from hrvd_engine.errors import IllegalTransitionError, OrderRejectedError
from hrvd_engine.models import Bar, IntentKind, Side, Tick
from hrvd_engine.replay import SimulatedBroker
from hrvd_engine.signal_engine import SignalAggregator, SignalCalculator


T0 = datetime(2026, 1, 13, 15, 0, tzinfo=timezone.utc)   # Tuesday 10:00 New York

ENTRY = "VD_STRENGTH"
EXIT = "VD_DIVERGENCE"


# ============================================================================
# HELPERS
# ============================================================================

class Switch(SignalCalculator):
    """Calculator whose vote is flipped by the test between bars."""

    def __init__(self, name):
        super().__init__()
        self.name = name

    def set(self, long_ok=False, short_ok=False):
        self._long_ok = long_ok
        self._short_ok = short_ok

    def update(self, bar, history):
        pass


class RecordingSink:
    """Order sink that accepts entries without filling them."""

    def __init__(self, reject_exits=False):
        self.reject_exits = reject_exits
        self.submitted = []
        self.levels = []

    def submit(self, intent):
        if self.reject_exits and intent.kind is IntentKind.EXIT:
            raise OrderRejectedError("Broker offline")
        self.submitted.append(intent)

    def update_protection(self, levels):
        self.levels.append(levels)


def make_bar(minute=0, close=100.0, high=None, low=None):
    high = close + 0.5 if high is None else high
    low = close - 0.5 if low is None else low
    return Bar(T0 + timedelta(minutes=minute), close, high, low, close, 1000.0)


def make_config(orders=None, windows=()):
    return EngineConfig(
        signals=SignalConfig(entry_signals=(ENTRY,), exit_signals=(EXIT,)),
        time_windows=TimeWindowConfig(windows=tuple(windows)),
        orders=orders or OrderConfig(),
    )


class Rig:
    """TradingEngine with switchable votes and a simulated broker."""

    def __init__(self, config=None, sink=None, reject_entries=False):
        config = config or make_config()
        self.entry = Switch(ENTRY)
        self.exit = Switch(EXIT)

        if sink is None:
            self.broker = SimulatedBroker(config.instrument.point_value, reject_entries=reject_entries)
            sink = self.broker
        else:
            self.broker = None
        self.sink = sink

        self.engine = TradingEngine(config, sink=sink, rng=np.random.default_rng(3))
        self.engine.signals = SignalAggregator(
            config.signals, calculators={ENTRY: self.entry, EXIT: self.exit}
        )
        if self.broker is not None:
            self.broker.engine = self.engine

    def bar(self, minute, long_ok=False, short_ok=False, exit_long=False, exit_short=False, **kwargs):
        self.entry.set(long_ok=long_ok, short_ok=short_ok)
        # Exit votes: bearish closes longs, bullish closes shorts
        self.exit.set(long_ok=exit_short, short_ok=exit_long)
        decision = self.engine.on_bar(make_bar(minute, **kwargs))
        self.engine.process_orders()
        return decision


@pytest.fixture
def rig():
    return Rig()


# ============================================================================
# ENTRY, FILL AND REVERSAL
# ============================================================================

class TestFillCycle:

    def test_entry_fills_and_registers_protection(self, rig):
        decision = rig.bar(0, long_ok=True)
        assert decision.kinds == [IntentKind.ENTRY]

        engine = rig.engine
        assert engine.state.describe() == "LONG(1)"
        assert engine.state.pending is None
        assert list(engine.state.positions) == ["SIM-00001"]

        levels = rig.broker.protection["SIM-00001"]
        assert levels.stop_price < 100.0 < levels.target_price
        assert engine.stops.get("SIM-00001") is not None

    def test_exit_signal_closes_position(self, rig):
        rig.bar(0, long_ok=True)
        decision = rig.bar(1, exit_long=True)

        assert decision.kinds == [IntentKind.EXIT]
        assert rig.engine.state.describe() == "FLAT"
        assert rig.broker.closed[0].exit_reason == "LONG exit signal"
        assert len(rig.engine.stops) == 0

    def test_reversal_long_to_short(self, rig):
        rig.bar(0, long_ok=True)
        decision = rig.bar(1, short_ok=True)

        assert decision.kinds == [IntentKind.EXIT, IntentKind.REVERSAL]
        assert rig.engine.state.describe() == "SHORT(1)"
        assert list(rig.engine.state.positions) == ["SIM-00002"]
        assert rig.broker.closed[0].exit_reason == "Reversal to SHORT"

    def test_reversal_with_shared_entry_and_exit_calculator(self):
        # Default signal sets list the same calculators for entries and exits
        config = EngineConfig()
        assert ENTRY in config.signals.entry_signals and ENTRY in config.signals.exit_signals

        broker = SimulatedBroker(config.instrument.point_value)
        engine = TradingEngine(config, sink=broker, rng=np.random.default_rng(3))
        vote = Switch(ENTRY)
        engine.signals = SignalAggregator(config.signals, calculators={ENTRY: vote})
        broker.engine = engine

        vote.set(long_ok=True)
        engine.on_bar(make_bar(0))
        engine.process_orders()
        assert engine.state.describe() == "LONG(1)"

        vote.set(short_ok=True)
        decision = engine.on_bar(make_bar(1))
        engine.process_orders()

        assert decision.kinds == [IntentKind.EXIT, IntentKind.REVERSAL]
        assert engine.state.describe() == "SHORT(1)"
        assert broker.closed[0].exit_reason == "Reversal to SHORT"

    def test_realized_pnl_reaches_risk(self, rig):
        rig.bar(0, long_ok=True)
        rig.bar(1, close=101.0, exit_long=True)

        # 1 point on a 2.0 point value contract
        assert rig.broker.closed[0].pnl == pytest.approx(2.0)
        assert rig.engine.risk.tracker.realized_pnl == pytest.approx(2.0)

    def test_stop_hit_on_tick(self, rig):
        rig.bar(0, long_ok=True)
        stop = rig.broker.protection["SIM-00001"].stop_price

        quiet = rig.engine.on_tick(Tick(T0 + timedelta(seconds=90), stop + 0.25))
        assert quiet == []

        intents = rig.engine.on_tick(Tick(T0 + timedelta(seconds=95), stop - 0.25))
        assert [i.reason for i in intents] == ["Stop loss hit (tick)"]
        rig.engine.process_orders()
        assert rig.engine.state.describe() == "FLAT"

    def test_window_exit_on_tick(self):
        window = TradingWindowConfig("Period 1", enabled=True, start_hhmm=930, end_hhmm=1130)
        rig = Rig(make_config(windows=[window]))
        rig.bar(0, long_ok=True)
        assert rig.engine.state.describe() == "LONG(1)"

        # 11:31 New York
        intents = rig.engine.on_tick(Tick(T0 + timedelta(minutes=91), 100.0))
        assert len(intents) == 1
        assert intents[0].reason == "Time window exit (tick): Window ended"
        rig.engine.process_orders()
        assert rig.engine.state.describe() == "FLAT"


# ============================================================================
# REJECTIONS AND HALTS
# ============================================================================

class TestRejections:

    def test_rejected_entry_releases_latch(self):
        rig = Rig(reject_entries=True)
        rig.bar(0, long_ok=True)

        engine = rig.engine
        assert engine.rejections == 1
        assert engine.state.pending is None
        assert engine.order_gate.daily_order_count == 0
        assert not engine.order_gate.is_waiting_for_fill(T0)
        assert engine.state.describe() == "FLAT"

    def test_rejected_exit_keeps_position(self):
        sink = RecordingSink(reject_exits=True)
        rig = Rig(sink=sink)
        engine = rig.engine
        engine.on_position_opened("P1", Side.LONG, 1.0, 100.0, T0)

        decision = engine.flatten_all("Manual flatten", T0)
        assert decision.kinds == [IntentKind.EXIT]
        assert engine.state.live_positions() == []

        engine.process_orders()
        assert engine.rejections == 1
        assert not engine.state.closing
        assert engine.state.describe() == "LONG(1)"
        assert [lv.position_id for lv in sink.levels] == ["P1"]

    def test_runaway_ceiling_halts_and_flattens(self, caplog):
        rig = Rig(make_config(OrderConfig(max_daily_orders=1, enable_stacking=True, max_stack=3)))
        rig.bar(0, long_ok=True)

        with caplog.at_level(logging.CRITICAL):
            decision = rig.bar(1, long_ok=True)

        assert "STRATEGY HALTED" in caplog.text
        assert decision.kinds == [IntentKind.EXIT]
        assert decision.intents[0].reason == "Runaway protection"
        assert rig.engine.is_halted
        assert rig.engine.state.describe() == "FLAT"

        assert rig.bar(2, long_ok=True).is_noop

    def test_status_clears_halts_after_rollover(self):
        rig = Rig(make_config(OrderConfig(max_daily_orders=1, enable_stacking=True, max_stack=3)))
        rig.bar(0, long_ok=True)
        rig.bar(1, long_ok=True)
        rig.engine.risk.record_realized(-1500.0, T0 + timedelta(minutes=1))
        assert rig.engine.risk.should_halt_trading(T0 + timedelta(minutes=1))

        same_day = rig.engine.status(T0 + timedelta(minutes=2))
        assert same_day["is_halted"]
        assert same_day["risk"]["is_halted"]

        next_day = rig.engine.status(T0 + timedelta(days=1))
        assert not next_day["is_halted"]
        assert not next_day["orders"]["is_halted"]
        assert not next_day["risk"]["is_halted"]
        assert next_day["risk"]["period_pnl"] == 0.0

    def test_duplicate_open_is_illegal(self):
        rig = Rig(sink=RecordingSink())
        rig.engine.on_position_opened("P1", Side.LONG, 1.0, 100.0, T0)
        with pytest.raises(IllegalTransitionError):
            rig.engine.on_position_opened("P1", Side.LONG, 1.0, 100.0, T0)


# ============================================================================
# WIRING
# ============================================================================

class TestWiring:

    def test_outbox_without_sink(self):
        config = make_config()
        engine = TradingEngine(config)
        entry = Switch(ENTRY)
        entry.set(long_ok=True)
        engine.signals = SignalAggregator(config.signals, calculators={ENTRY: entry})

        engine.on_bar(make_bar(0))
        assert [i.kind for i in engine.outbox] == [IntentKind.ENTRY]
        assert engine.process_orders() == 0
        assert engine.intents_emitted == 1

    def test_component_fault_is_isolated(self, rig, monkeypatch):
        def broken(bar):
            raise RuntimeError("bad session data")

        monkeypatch.setattr(rig.engine.sessions, "update", broken)
        decision = rig.bar(0, long_ok=True)
        assert rig.engine.faults == 1
        assert decision.kinds == [IntentKind.ENTRY]

    def test_bars_feed_history(self, rig):
        for minute in range(3):
            rig.bar(minute)
        assert rig.engine.state.bars_processed == 3
        assert rig.engine.state.last_bar.timestamp == T0 + timedelta(minutes=2)

    def test_status(self, rig):
        rig.bar(0, long_ok=True)
        status = rig.engine.status(T0 + timedelta(minutes=1))
        assert status["state"] == "LONG(1)"
        assert status["open_positions"] == 1
        assert status["intents_emitted"] == 1
        assert status["is_halted"] is False
        assert status["window"] is None
        for key in ("risk", "orders", "stops", "sessions"):
            assert key in status

"""
Tests for the ATR trailing stop engine.
"""

from datetime import datetime, timezone

import numpy as np
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hrvd_engine.config import StopConfig
from hrvd_engine.errors import UnknownPositionError
from hrvd_engine.models import Side
from hrvd_engine.stop_engine import TrailingStopEngine


T0 = datetime(2026, 1, 13, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def stops():
    # 4-20 ticks at 0.25 = 1.0-5.0 points
    return TrailingStopEngine(StopConfig(atr_multiplier=1.0, min_stop_ticks=4, max_stop_ticks=20), 0.25)


# ============================================================================
# COMPUTATION
# ============================================================================

class TestComputeStop:

    def test_long_below_previous_low(self, stops):
        assert stops.compute_stop(Side.LONG, 100.0, 101.0, 99.0, 1.0) == 98.0

    def test_short_above_previous_high(self, stops):
        assert stops.compute_stop(Side.SHORT, 100.0, 101.0, 99.0, 1.0) == 102.0

    def test_clamped_to_max_distance(self, stops):
        assert stops.compute_stop(Side.LONG, 100.0, 101.0, 90.0, 1.0) == 95.0

    def test_clamped_to_min_distance(self, stops):
        assert stops.compute_stop(Side.LONG, 100.0, 101.0, 100.5, 0.1) == 99.0

    def test_fallback_without_atr(self, stops):
        assert stops.compute_stop(Side.LONG, 100.0, 101.0, 99.0, None) == 99.0
        assert stops.compute_stop(Side.SHORT, 100.0, None, None, 1.0) == 101.0

    def test_rounded_to_tick(self, stops):
        stop = stops.compute_stop(Side.LONG, 100.0, 101.0, 99.1, 0.33)
        assert stop == pytest.approx(98.75)


# ============================================================================
# RATCHET
# ============================================================================

class TestRatchet:

    def test_long_only_tightens(self, stops):
        stops.register("L1", Side.LONG, 100.0, 110.0, 101.0, 99.0, 1.0, T0)
        assert stops.get("L1").current_stop == 98.0

        assert stops.update("L1", 101.5, 99.5, 1.0, T0)
        assert stops.get("L1").current_stop == 98.5

        assert not stops.update("L1", 99.0, 96.0, 1.0, T0)
        record = stops.get("L1")
        assert record.current_stop == 98.5
        assert record.initial_stop == 98.0
        assert record.is_trailing
        assert record.update_count == 1

    def test_short_only_tightens(self, stops):
        stops.register("S1", Side.SHORT, 100.0, 90.0, 101.0, 99.0, 1.0, T0)
        assert stops.get("S1").current_stop == 102.0

        assert stops.update("S1", 100.5, 98.5, 1.0, T0)
        assert stops.get("S1").current_stop == 101.5
        assert not stops.update("S1", 104.0, 101.0, 1.0, T0)

    @pytest.mark.parametrize("side", [Side.LONG, Side.SHORT])
    def test_monotonic_over_random_bars(self, stops, side):
        rng = np.random.default_rng(42)
        stops.register("P", side, 100.0, 100.0 + side.sign * 10, 101.0, 99.0, 1.0, T0)

        previous = stops.get("P").current_stop
        close = 100.0
        for _ in range(200):
            close += rng.normal(0, 0.5)
            high, low = close + abs(rng.normal(0, 0.5)), close - abs(rng.normal(0, 0.5))
            stops.update("P", high, low, float(rng.uniform(0.2, 3.0)), T0)
            current = stops.get("P").current_stop
            assert (current - previous) * side.sign >= 0
            previous = current

    def test_stop_never_passes_entry_minimum(self, stops):
        stops.register("L1", Side.LONG, 100.0, 110.0, 101.0, 99.0, 1.0, T0)
        stops.update("L1", 120.0, 119.0, 0.5, T0)
        assert stops.get("L1").current_stop == 99.0


# ============================================================================
# HITS AND REGISTRY
# ============================================================================

class TestHitsAndRegistry:

    def test_long_hits(self, stops):
        stops.register("L1", Side.LONG, 100.0, 110.0, 101.0, 99.0, 1.0, T0)
        assert stops.is_stop_hit("L1", 98.0)
        assert not stops.is_stop_hit("L1", 98.25)
        assert stops.is_take_profit_hit("L1", 110.0)
        assert not stops.is_take_profit_hit("L1", 109.75)

    def test_short_hits(self, stops):
        stops.register("S1", Side.SHORT, 100.0, 90.0, 101.0, 99.0, 1.0, T0)
        assert stops.is_stop_hit("S1", 102.0)
        assert stops.is_take_profit_hit("S1", 89.5)
        assert not stops.is_take_profit_hit("S1", 90.25)

    def test_unknown_position(self, stops):
        with pytest.raises(UnknownPositionError):
            stops.update("nope", 101.0, 99.0, 1.0, T0)
        assert not stops.is_stop_hit("nope", 0.0)

    def test_update_all_reports_moved(self, stops):
        stops.register("L1", Side.LONG, 100.0, 110.0, 101.0, 99.0, 1.0, T0)
        stops.register("S1", Side.SHORT, 100.0, 90.0, 101.0, 99.0, 1.0, T0)

        moved = stops.update_all(101.5, 99.5, 1.0, T0)
        assert [m.position_id for m in moved] == ["L1"]
        assert moved[0].stop_price == 98.5
        assert moved[0].target_price == 110.0

    def test_get_returns_copy(self, stops):
        stops.register("L1", Side.LONG, 100.0, 110.0, 101.0, 99.0, 1.0, T0)
        stops.get("L1").current_stop = 0.0
        assert stops.get("L1").current_stop == 98.0

    def test_remove_and_clear(self, stops):
        stops.register("L1", Side.LONG, 100.0, 110.0, now=T0)
        stops.register("L2", Side.LONG, 100.0, 110.0, now=T0)
        assert stops.remove("L1") is not None
        assert stops.remove("L1") is None
        assert len(stops) == 1

        stops.clear_all()
        assert len(stops) == 0
        assert stops.statistics()["active_positions"] == 0

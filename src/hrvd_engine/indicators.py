"""
Indicator Math

numpy implementations of the rolling statistics the calculators and the
stop engine need. All functions return NaN when the input is too short
rather than raising; callers treat NaN as "not ready".
"""

import math
from collections import deque
from typing import Optional, Sequence

import numpy as np


# ============================================================================
# ROLLING BASELINES
# ============================================================================

def rolling_mean(values: Sequence[float], window: int) -> float:
    """Mean of the last `window` values."""
    if window <= 0 or len(values) < window:
        return float('nan')
    return float(np.mean(np.asarray(values[-window:], dtype=float)))


def rolling_median(values: Sequence[float], window: int) -> float:
    """Median of the last `window` values."""
    if window <= 0 or len(values) < window:
        return float('nan')
    return float(np.median(np.asarray(values[-window:], dtype=float)))


def baseline(values: Sequence[float], window: int, use_median: bool) -> float:
    """Mean or median of the last `window` values (global switch)."""
    if use_median:
        return rolling_median(values, window)
    return rolling_mean(values, window)


# ============================================================================
# MOVING AVERAGES
# ============================================================================

def wma(values: Sequence[float], period: int) -> float:
    """Linearly weighted moving average of the last `period` values."""
    if period <= 0 or len(values) < period:
        return float('nan')

    data = np.asarray(values[-period:], dtype=float)
    weights = np.arange(1, period + 1, dtype=float)
    return float(np.dot(data, weights) / weights.sum())


def hma(values: Sequence[float], period: int) -> float:
    """
    Hull moving average.

    HMA(n) = WMA(2 * WMA(n/2) - WMA(n), sqrt(n))

    Needs period + sqrt(period) - 1 values.
    """
    if period < 2:
        return float('nan')

    half = max(1, period // 2)
    root = max(1, int(math.sqrt(period)))
    needed = period + root - 1
    if len(values) < needed:
        return float('nan')

    data = np.asarray(values[-needed:], dtype=float)
    raw = np.empty(root)
    for i in range(root):
        end = len(data) - root + 1 + i
        window = data[:end]
        raw[i] = 2.0 * wma(window, half) - wma(window, period)

    return wma(raw, root)


def hma_required_length(period: int) -> int:
    """Number of values hma() needs for `period`."""
    return period + max(1, int(math.sqrt(period))) - 1


# ============================================================================
# AVERAGE TRUE RANGE
# ============================================================================

def true_range(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> np.ndarray:
    """True range series. The first element uses high - low."""
    highs = np.asarray(highs, dtype=float)
    lows = np.asarray(lows, dtype=float)
    closes = np.asarray(closes, dtype=float)

    tr = highs - lows
    if len(closes) > 1:
        prev_close = closes[:-1]
        tr[1:] = np.maximum.reduce([
            highs[1:] - lows[1:],
            np.abs(highs[1:] - prev_close),
            np.abs(lows[1:] - prev_close),
        ])
    return tr


def atr_from_bars(bars: Sequence, period: int) -> float:
    """Simple-average ATR over the last `period` bars of a bar sequence."""
    if period <= 0 or len(bars) < period + 1:
        return float('nan')

    recent = bars[-(period + 1):]
    tr = true_range(
        np.array([b.high for b in recent]),
        np.array([b.low for b in recent]),
        np.array([b.close for b in recent]),
    )
    return float(np.mean(tr[1:]))


class SimpleAtr:
    """Streaming ATR as a simple moving average of true range."""

    def __init__(self, period: int = 14):
        self.period = period
        self._ranges: deque = deque(maxlen=period)
        self._prev_close: Optional[float] = None

    @property
    def is_ready(self) -> bool:
        return len(self._ranges) >= self.period

    @property
    def value(self) -> float:
        if not self.is_ready:
            return float('nan')
        return float(np.mean(self._ranges))

    def update(self, high: float, low: float, close: float) -> float:
        if self._prev_close is None:
            tr = high - low
        else:
            tr = max(high - low, abs(high - self._prev_close), abs(low - self._prev_close))
        self._ranges.append(tr)
        self._prev_close = close
        return self.value


class EmaAtr:
    """Streaming ATR with exponential smoothing, seeded by the first SMA."""

    def __init__(self, period: int = 14):
        self.period = period
        self._alpha = 2.0 / (period + 1)
        self._seed: list = []
        self._value: float = float('nan')
        self._prev_close: Optional[float] = None

    @property
    def is_ready(self) -> bool:
        return not math.isnan(self._value)

    @property
    def value(self) -> float:
        return self._value

    def update(self, high: float, low: float, close: float) -> float:
        if self._prev_close is None:
            tr = high - low
        else:
            tr = max(high - low, abs(high - self._prev_close), abs(low - self._prev_close))
        self._prev_close = close

        if not self.is_ready:
            self._seed.append(tr)
            if len(self._seed) >= self.period:
                self._value = float(np.mean(self._seed))
                self._seed = []
            return self._value

        self._value = (tr - self._value) * self._alpha + self._value
        return self._value


def make_atr(period: int, mode: str = "simple"):
    """Factory for the configured ATR flavor."""
    if mode == "ema":
        return EmaAtr(period)
    return SimpleAtr(period)

"""
Signal Engine - Volume/Price Signal Calculators and Voting

Six independent calculators, each following the same pattern:
current bar value vs. a rolling baseline, compared against a threshold multiple.

Calculators (closed set, registered by name):
- RVOL:            relative volume, smoothed and ATR-normalized, first difference
- VD_STRENGTH:     |volume delta| vs. baseline |volume delta|
- VD_PRICE_RATIO:  |open - close| / |volume delta| vs. baseline ratio
- CUSTOM_HMA:      close vs. Hull MA whose period shrinks as ATR grows
- VD_VOLUME_RATIO: |volume delta| / volume vs. baseline ratio
- VD_DIVERGENCE:   price direction disagrees with volume delta sign

VOTING RULES:
1. Entry long  = count(entry-enabled calculators voting long)  >= entry_required
2. Entry short = count(entry-enabled calculators voting short) >= entry_required
3. Exit long   = count(exit-enabled calculators voting SHORT)  >= exit_required
4. Exit short  = count(exit-enabled calculators voting LONG)   >= exit_required
5. Required counts have a floor of 1.

Insufficient history is never an error: the calculator reports neutral.
"""

import logging
import math
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from .config import SignalConfig, SIGNAL_NAMES
from .indicators import atr_from_bars, baseline, hma, hma_required_length
from .models import Bar


# ============================================================================
# SNAPSHOT
# ============================================================================

@dataclass(frozen=True)
class SignalVote:
    """One calculator's output for one bar."""
    name: str
    long_ok: bool
    short_ok: bool
    value: float


@dataclass(frozen=True)
class SignalSnapshot:
    """
    Immutable per-bar record of every calculator vote and the aggregated result.

    Produced once per bar close; used for diagnostics and decision making.
    """
    timestamp: datetime
    price: float
    votes: Tuple[SignalVote, ...]
    entry_long: bool
    entry_short: bool
    exit_long: bool
    exit_short: bool
    rvol_ok: bool
    atr: float

    @property
    def has_contradiction(self) -> bool:
        return self.entry_long and self.entry_short

    def vote(self, name: str) -> Optional[SignalVote]:
        for v in self.votes:
            if v.name == name:
                return v
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "price": self.price,
            "entry_long": self.entry_long,
            "entry_short": self.entry_short,
            "exit_long": self.exit_long,
            "exit_short": self.exit_short,
            "rvol_ok": self.rvol_ok,
            "atr": self.atr,
            "votes": {
                v.name: {"long": v.long_ok, "short": v.short_ok, "value": v.value}
                for v in self.votes
            },
        }


# ============================================================================
# CALCULATORS
# ============================================================================

class SignalCalculator(ABC):
    """
    Common calculator capability.

    update() receives the bar that just closed and the bars closed before it.
    """

    name: str = ""

    def __init__(self):
        self._long_ok = False
        self._short_ok = False
        self._value = 0.0

    @property
    def long_ok(self) -> bool:
        return self._long_ok

    @property
    def short_ok(self) -> bool:
        return self._short_ok

    @property
    def value(self) -> float:
        return self._value

    def reset(self) -> None:
        """Report neutral until the next successful update."""
        self._long_ok = False
        self._short_ok = False

    def vote(self) -> SignalVote:
        return SignalVote(self.name, self._long_ok, self._short_ok, self._value)

    def _set_direction(self, strong: bool, direction: float) -> None:
        self._long_ok = strong and direction > 0
        self._short_ok = strong and direction < 0

    @abstractmethod
    def update(self, bar: Bar, history: Sequence[Bar]) -> None:
        ...


class RvolCalculator(SignalCalculator):
    """
    Relative volume.

    rvol_short = volume / baseline(volume, short window)
    rvol_long  = volume / baseline(volume, long window)
    smoothed   = (rvol_short + rvol_long + HMA(rvol_short series)) / 3
    normalized = smoothed / ATR
    Direction is the sign of the normalized first difference; strength
    requires |difference| > threshold.
    """

    name = "RVOL"

    def __init__(self, config: SignalConfig):
        super().__init__()
        self.config = config
        self.rvol_short = 0.0
        self.rvol_long = 0.0
        self.difference = 0.0
        self._normalized: Optional[float] = None
        self._previous: Optional[float] = None
        self._series: deque = deque(maxlen=hma_required_length(config.rvol_hma_period))

    @property
    def rvol_ok(self) -> bool:
        """Either relative-volume ratio exceeds the threshold."""
        th = self.config.rvol_threshold
        return self.rvol_short > th or self.rvol_long > th

    def update(self, bar: Bar, history: Sequence[Bar]) -> None:
        cfg = self.config
        if len(history) < max(cfg.rvol_short_window, cfg.rvol_long_window):
            self.reset()
            self.rvol_short = self.rvol_long = 0.0
            return

        volumes = [b.volume for b in history]
        avg_short = baseline(volumes, cfg.rvol_short_window, cfg.use_median)
        avg_long = baseline(volumes, cfg.rvol_long_window, cfg.use_median)
        self.rvol_short = bar.volume / avg_short if avg_short > 0 else 0.0
        self.rvol_long = bar.volume / avg_long if avg_long > 0 else 0.0

        self._series.append(self.rvol_short)
        smooth = hma(list(self._series), cfg.rvol_hma_period)
        if math.isnan(smooth):
            smooth = self.rvol_short
        smoothed = (self.rvol_short + self.rvol_long + smooth) / 3.0

        atr = atr_from_bars(list(history) + [bar], cfg.atr_period)
        normalized = smoothed / atr if atr > 0 else smoothed

        self._previous = self._normalized
        self._normalized = normalized
        self._value = normalized

        if self._previous is None:
            self.reset()
            return

        self.difference = normalized - self._previous
        self._set_direction(abs(self.difference) > cfg.rvol_threshold, self.difference)


class VolumeDeltaStrengthCalculator(SignalCalculator):
    """|delta| > baseline(|delta|) x threshold; direction = sign(delta)."""

    name = "VD_STRENGTH"

    def __init__(self, config: SignalConfig):
        super().__init__()
        self.config = config

    def update(self, bar: Bar, history: Sequence[Bar]) -> None:
        cfg = self.config
        if len(history) < cfg.vd_lookback:
            self.reset()
            return

        delta = bar.volume_delta.value
        self._value = delta

        magnitudes = [abs(b.volume_delta.value) for b in history]
        base = baseline(magnitudes, cfg.vd_lookback, cfg.use_median)
        self._set_direction(abs(delta) > base * cfg.vd_strength_threshold, delta)


class VolumeDeltaPriceRatioCalculator(SignalCalculator):
    """
    Price move per unit of volume delta.

    ratio = |open - close| / |delta|
    Mean baseline is aggregate move / aggregate |delta| over the lookback;
    median baseline is the median of per-bar ratios.
    """

    name = "VD_PRICE_RATIO"

    def __init__(self, config: SignalConfig):
        super().__init__()
        self.config = config

    def update(self, bar: Bar, history: Sequence[Bar]) -> None:
        cfg = self.config
        delta = bar.volume_delta.value
        if len(history) < cfg.vd_lookback or delta == 0:
            self.reset()
            return

        ratio = bar.body / abs(delta)
        self._value = ratio

        window = history[-cfg.vd_lookback:]
        if cfg.use_median:
            ratios = [b.body / abs(b.volume_delta.value) for b in window if b.volume_delta.value != 0]
            base = float(np.median(ratios)) if ratios else float('nan')
        else:
            total_delta = sum(abs(b.volume_delta.value) for b in window)
            base = sum(b.body for b in window) / total_delta if total_delta > 0 else float('nan')

        if math.isnan(base):
            self.reset()
            return

        self._set_direction(ratio > base * cfg.vd_price_ratio_threshold, delta)


class CustomHmaCalculator(SignalCalculator):
    """
    Close vs. an ATR-adjusted Hull MA.

    period = clamp(int(base_period / ATR), min_period, max_period)
    Long above the average, short below.
    """

    name = "CUSTOM_HMA"

    def __init__(self, config: SignalConfig):
        super().__init__()
        self.config = config
        self.period: Optional[int] = None

    def update(self, bar: Bar, history: Sequence[Bar]) -> None:
        cfg = self.config
        bars = list(history) + [bar]
        atr = atr_from_bars(bars, cfg.atr_period)
        if math.isnan(atr) or atr <= 0:
            self.reset()
            return

        self.period = int(min(cfg.hma_max_period, max(cfg.hma_min_period, int(cfg.hma_base_period / atr))))
        average = hma([b.close for b in bars], self.period)
        if math.isnan(average):
            self.reset()
            return

        self._value = average
        self._set_direction(True, bar.close - average)


class VolumeDeltaVolumeRatioCalculator(SignalCalculator):
    """|delta| / volume vs. baseline ratio; direction = sign(delta)."""

    name = "VD_VOLUME_RATIO"

    def __init__(self, config: SignalConfig):
        super().__init__()
        self.config = config

    def update(self, bar: Bar, history: Sequence[Bar]) -> None:
        cfg = self.config
        delta = bar.volume_delta.value
        if len(history) < cfg.vd_lookback or bar.volume <= 0 or delta == 0:
            self.reset()
            return

        ratio = abs(delta) / bar.volume
        self._value = ratio

        window = history[-cfg.vd_lookback:]
        if cfg.use_median:
            ratios = [abs(b.volume_delta.value) / b.volume for b in window if b.volume > 0]
            base = float(np.median(ratios)) if ratios else float('nan')
        else:
            total_volume = sum(b.volume for b in window)
            base = (
                sum(abs(b.volume_delta.value) for b in window) / total_volume
                if total_volume > 0 else float('nan')
            )

        if math.isnan(base):
            self.reset()
            return

        self._set_direction(ratio > base * cfg.vd_volume_ratio_threshold, delta)


class VolumeDeltaDivergenceCalculator(SignalCalculator):
    """
    Price direction disagreeing with volume delta.

    Long:  price not rising, buyers in control (delta > 0)
    Short: price rising, sellers in control (delta < 0)
    """

    name = "VD_DIVERGENCE"

    def __init__(self, config: Optional[SignalConfig] = None):
        super().__init__()
        self.config = config

    def update(self, bar: Bar, history: Sequence[Bar]) -> None:
        if not history:
            self.reset()
            return

        delta = bar.volume_delta.value
        self._value = delta
        rising = bar.close > history[-1].close
        self._long_ok = (not rising) and delta > 0
        self._short_ok = rising and delta < 0


CALCULATOR_TYPES = {
    RvolCalculator.name: RvolCalculator,
    VolumeDeltaStrengthCalculator.name: VolumeDeltaStrengthCalculator,
    VolumeDeltaPriceRatioCalculator.name: VolumeDeltaPriceRatioCalculator,
    CustomHmaCalculator.name: CustomHmaCalculator,
    VolumeDeltaVolumeRatioCalculator.name: VolumeDeltaVolumeRatioCalculator,
    VolumeDeltaDivergenceCalculator.name: VolumeDeltaDivergenceCalculator,
}


def build_calculators(config: SignalConfig) -> Dict[str, SignalCalculator]:
    """Instantiate every known calculator, keyed by name."""
    calculators: Dict[str, SignalCalculator] = {}
    for name in SIGNAL_NAMES:
        calculators[name] = CALCULATOR_TYPES[name](config)
    return calculators


# ============================================================================
# AGGREGATOR
# ============================================================================

class SignalAggregator:
    """
    N-of-M voting over the enabled calculators.

    Vote functions are pure reads of calculator state: calling them
    repeatedly between updates yields identical results.
    """

    def __init__(
        self,
        config: SignalConfig,
        logger: Optional[logging.Logger] = None,
        calculators: Optional[Dict[str, SignalCalculator]] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self._calculators: Dict[str, SignalCalculator] = (
            calculators if calculators is not None else build_calculators(config)
        )
        self._entry_enabled: Set[str] = set(config.entry_signals)
        self._exit_enabled: Set[str] = set(config.exit_signals)
        self.entry_required = max(1, config.entry_required)
        self.exit_required = max(1, config.exit_required)

        self._timestamp: Optional[datetime] = None
        self._price: float = 0.0
        self._atr: float = float('nan')
        self.fault_count = 0

        self._check_configuration()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    @property
    def calculators(self) -> Dict[str, SignalCalculator]:
        return dict(self._calculators)

    def register(self, calculator: SignalCalculator) -> None:
        """Add or replace a calculator at runtime."""
        self._calculators[calculator.name] = calculator
        self.logger.info(f"Signal calculator registered: {calculator.name}")

    def unregister(self, name: str) -> None:
        self._calculators.pop(name, None)
        self._check_configuration()

    def set_enabled(self, name: str, entry: bool, exit: bool) -> None:
        """Enable or disable a calculator for entry and exit voting."""
        for enabled, flag in ((self._entry_enabled, entry), (self._exit_enabled, exit)):
            if flag:
                enabled.add(name)
            else:
                enabled.discard(name)
        self._check_configuration()

    def _active(self, enabled: Iterable[str]) -> List[SignalCalculator]:
        return [self._calculators[n] for n in sorted(enabled) if n in self._calculators]

    def _check_configuration(self) -> None:
        if not self._active(self._entry_enabled):
            self.logger.warning(
                f"No entry signals enabled (required={self.entry_required}); entries will never fire"
            )
        if not self._active(self._exit_enabled):
            self.logger.warning(
                f"No exit signals enabled (required={self.exit_required}); signal exits will never fire"
            )

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, bar: Bar, history: Sequence[Bar]) -> None:
        """
        Feed the closed bar to every enabled calculator.

        A failing calculator is logged and reported neutral; the rest still run.
        """
        self._timestamp = bar.closed_at
        self._price = bar.close
        self._atr = atr_from_bars(list(history) + [bar], self.config.atr_period)

        for calculator in self._active(self._entry_enabled | self._exit_enabled):
            try:
                calculator.update(bar, history)
            except Exception:
                self.fault_count += 1
                calculator.reset()
                self.logger.exception(f"Signal calculator {calculator.name} failed; reporting neutral")

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def _count(self, enabled: Set[str], long_vote: bool) -> int:
        calculators = self._active(enabled)
        if long_vote:
            return sum(1 for c in calculators if c.long_ok)
        return sum(1 for c in calculators if c.short_ok)

    def entry_long(self) -> bool:
        return self._count(self._entry_enabled, long_vote=True) >= self.entry_required

    def entry_short(self) -> bool:
        return self._count(self._entry_enabled, long_vote=False) >= self.entry_required

    def exit_long(self) -> bool:
        """Exit a long on bearish votes from the exit set."""
        return self._count(self._exit_enabled, long_vote=False) >= self.exit_required

    def exit_short(self) -> bool:
        """Exit a short on bullish votes from the exit set."""
        return self._count(self._exit_enabled, long_vote=True) >= self.exit_required

    def has_contradiction(self) -> bool:
        return self.entry_long() and self.entry_short()

    @property
    def rvol_ok(self) -> bool:
        rvol = self._calculators.get(RvolCalculator.name)
        return bool(rvol is not None and rvol.rvol_ok)

    def snapshot(self) -> SignalSnapshot:
        """Freeze the current cycle's votes."""
        return SignalSnapshot(
            timestamp=self._timestamp or datetime.min,
            price=self._price,
            votes=tuple(c.vote() for c in self._active(self._entry_enabled | self._exit_enabled)),
            entry_long=self.entry_long(),
            entry_short=self.entry_short(),
            exit_long=self.exit_long(),
            exit_short=self.exit_short(),
            rvol_ok=self.rvol_ok,
            atr=self._atr,
        )

"""
HRVD Engine Configuration

Single source of truth for all engine parameters.
Every component receives its own frozen section; EngineConfig aggregates them.

Defaults mirror the production strategy settings (MNQ futures, 1-minute bars).
"""

from dataclasses import dataclass, field, asdict, fields
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from .errors import ConfigurationError


SIGNAL_NAMES: Tuple[str, ...] = (
    "RVOL",
    "VD_STRENGTH",
    "VD_PRICE_RATIO",
    "CUSTOM_HMA",
    "VD_VOLUME_RATIO",
    "VD_DIVERGENCE",
)


@dataclass(frozen=True)
class InstrumentConfig:
    """Instrument contract details."""
    symbol: str = "MNQ"
    tick_size: float = 0.25
    point_value: float = 2.0          # Dollars per 1.0 price move per contract
    contract_size: float = 1.0        # Quantity per order


@dataclass(frozen=True)
class SignalConfig:
    """Signal calculator parameters and voting rules."""
    # Relative volume
    rvol_short_window: int = 10
    rvol_long_window: int = 20
    rvol_hma_period: int = 14
    rvol_threshold: float = 1.0

    # Volume delta family
    vd_lookback: int = 20
    vd_strength_threshold: float = 1.2
    vd_price_ratio_threshold: float = 1.5
    vd_volume_ratio_threshold: float = 1.3
    use_median: bool = False          # Global baseline switch: mean or median

    # ATR-adjusted moving average
    hma_base_period: float = 20.0
    hma_min_period: int = 2
    hma_max_period: int = 100
    atr_period: int = 14

    # Voting
    entry_signals: Tuple[str, ...] = ("RVOL", "VD_STRENGTH", "VD_PRICE_RATIO", "CUSTOM_HMA")
    exit_signals: Tuple[str, ...] = ("RVOL", "VD_STRENGTH", "CUSTOM_HMA")
    entry_required: int = 1
    exit_required: int = 1


@dataclass(frozen=True)
class SessionConfig:
    """Session level tracking. Clock times are HHMM in exchange-local time."""
    timezone: str = "America/New_York"
    prior_day_start: int = 930
    prior_day_end: int = 1700
    overnight_start: int = 1800
    overnight_end: int = 400
    morning_start: int = 400
    morning_end: int = 930

    history_size: int = 30            # Archived sessions kept
    history_lookup: int = 9           # Most recent archived sessions used for TP
    min_levels: int = 3               # Below this, supplement from history

    min_tp_ticks: int = 8
    alt_tp_ticks: int = 12


@dataclass(frozen=True)
class TradingWindowConfig:
    """One daily trading window."""
    name: str
    enabled: bool = False
    start_hhmm: int = 930
    end_hhmm: int = 1130


def _default_windows() -> Tuple[TradingWindowConfig, ...]:
    return (
        TradingWindowConfig(name="Period 1", enabled=False, start_hhmm=930, end_hhmm=1130),
        TradingWindowConfig(name="Period 2", enabled=False, start_hhmm=1300, end_hhmm=1500),
        TradingWindowConfig(name="Period 3", enabled=False, start_hhmm=400, end_hhmm=929),
    )


@dataclass(frozen=True)
class TimeWindowConfig:
    """Trading window gate parameters."""
    timezone: str = "America/New_York"
    windows: Tuple[TradingWindowConfig, ...] = field(default_factory=_default_windows)
    approach_minutes: int = 5         # Block entries this close to a window end
    holidays: Tuple[date, ...] = ()   # Explicit non-trading dates


@dataclass(frozen=True)
class StopConfig:
    """ATR trailing stop parameters."""
    atr_period: int = 14
    atr_mode: str = "simple"          # "simple" (SMA of TR) or "ema"
    atr_multiplier: float = 1.0
    min_stop_ticks: int = 4
    max_stop_ticks: int = 20


@dataclass(frozen=True)
class RiskConfig:
    """Daily loss governor and exposure caps."""
    max_daily_loss: float = 1000.0    # 0 disables halting
    max_order_size: float = 10.0
    exposure_multiple: float = 3.0    # Total exposure cap = max_order_size * multiple
    margin_rate: float = 0.05
    account_balance: float = 50000.0
    history_size: int = 30


@dataclass(frozen=True)
class OrderConfig:
    """Order-intent state machine and duplicate suppression."""
    max_stack: int = 3
    enable_stacking: bool = False
    allow_reversal: bool = True

    throttle_seconds: float = 1.0
    fill_timeout_seconds: float = 30.0
    duplicate_window_seconds: float = 30.0
    signal_cooldown_seconds: float = 5.0
    max_daily_orders: int = 50

    slippage_atr_multiplier: float = 0.1
    slippage_jitter: float = 0.2
    mailbox_size: int = 16

    @property
    def effective_max_stack(self) -> int:
        """Stack ceiling honoring the stacking switch."""
        return self.max_stack if self.enable_stacking else 1


@dataclass(frozen=True)
class LoggingConfig:
    """Logging sinks."""
    level: str = "INFO"
    log_file: Optional[str] = None
    verbose: bool = False


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    instrument: InstrumentConfig = field(default_factory=InstrumentConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    time_windows: TimeWindowConfig = field(default_factory=TimeWindowConfig)
    stops: StopConfig = field(default_factory=StopConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    orders: OrderConfig = field(default_factory=OrderConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, config: Dict) -> 'EngineConfig':
        """Build configuration from a nested dictionary (missing keys use defaults)."""
        config = config or {}
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise ConfigurationError(f"Unknown config sections: {sorted(unknown)}")

        signals = dict(config.get('signals', {}))
        for key in ('entry_signals', 'exit_signals'):
            if key in signals:
                signals[key] = tuple(signals[key])

        windows_cfg = dict(config.get('time_windows', {}))
        if 'windows' in windows_cfg:
            windows_cfg['windows'] = tuple(
                TradingWindowConfig(**w) for w in windows_cfg['windows']
            )
        if 'holidays' in windows_cfg:
            windows_cfg['holidays'] = tuple(
                d if isinstance(d, date) else date.fromisoformat(str(d))
                for d in windows_cfg['holidays']
            )

        try:
            return cls(
                instrument=InstrumentConfig(**config.get('instrument', {})),
                signals=SignalConfig(**signals),
                sessions=SessionConfig(**config.get('sessions', {})),
                time_windows=TimeWindowConfig(**windows_cfg),
                stops=StopConfig(**config.get('stops', {})),
                risk=RiskConfig(**config.get('risk', {})),
                orders=OrderConfig(**config.get('orders', {})),
                logging=LoggingConfig(**config.get('logging', {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration key: {e}") from e

    @classmethod
    def from_yaml(cls, path) -> 'EngineConfig':
        """Load configuration from YAML file."""
        with open(path, 'r') as f:
            config = yaml.safe_load(f)

        return cls.from_dict(config or {})

    def to_dict(self) -> Dict:
        """Convert to plain nested dictionary."""
        config = asdict(self)
        for key in ('entry_signals', 'exit_signals'):
            config['signals'][key] = list(config['signals'][key])
        config['time_windows']['windows'] = [dict(w) for w in config['time_windows']['windows']]
        config['time_windows']['holidays'] = [
            d.isoformat() for d in self.time_windows.holidays
        ]
        return config

    def to_yaml(self, path) -> None:
        """Save configuration to YAML file."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def validate(self) -> Tuple[bool, List[str]]:
        """Validate configuration. Returns (is_valid, errors)."""
        errors = []

        if self.instrument.tick_size <= 0:
            errors.append("tick_size must be positive")

        # Signals
        for key in ('entry_signals', 'exit_signals'):
            for name in getattr(self.signals, key):
                if name not in SIGNAL_NAMES:
                    errors.append(f"{key}: unknown signal '{name}'")

        if self.signals.entry_required < 1 or self.signals.exit_required < 1:
            errors.append("entry_required and exit_required must be at least 1")

        if self.signals.rvol_short_window < 1 or self.signals.rvol_long_window < 1:
            errors.append("RVOL windows must be at least 1")

        if self.signals.vd_lookback < 1:
            errors.append("vd_lookback must be at least 1")

        if self.signals.hma_min_period > self.signals.hma_max_period:
            errors.append("hma_min_period must be <= hma_max_period")

        # Stops
        if self.stops.min_stop_ticks < 1:
            errors.append("min_stop_ticks must be at least 1")

        if self.stops.max_stop_ticks < self.stops.min_stop_ticks:
            errors.append("max_stop_ticks must be >= min_stop_ticks")

        if self.stops.atr_mode not in ("simple", "ema"):
            errors.append("atr_mode must be 'simple' or 'ema'")

        # Sessions
        if self.sessions.min_tp_ticks < 0 or self.sessions.alt_tp_ticks < 1:
            errors.append("min_tp_ticks must be >= 0 and alt_tp_ticks >= 1")

        # Windows
        if len(self.time_windows.windows) > 3:
            errors.append("At most three trading windows are supported")

        for window in self.time_windows.windows:
            for value in (window.start_hhmm, window.end_hhmm):
                if not _valid_hhmm(value):
                    errors.append(f"{window.name}: invalid HHMM value {value}")

        # Risk
        if self.risk.max_daily_loss < 0:
            errors.append("max_daily_loss must be >= 0")

        if self.risk.max_order_size <= 0:
            errors.append("max_order_size must be positive")

        # Orders
        if self.orders.max_stack < 1:
            errors.append("max_stack must be at least 1")

        if self.orders.max_daily_orders < 1:
            errors.append("max_daily_orders must be at least 1")

        if self.orders.mailbox_size < 1:
            errors.append("mailbox_size must be at least 1")

        return len(errors) == 0, errors

    def validated(self) -> 'EngineConfig':
        """Return self, raising ConfigurationError if invalid."""
        is_valid, errors = self.validate()
        if not is_valid:
            raise ConfigurationError("; ".join(errors))
        return self


def _valid_hhmm(value: int) -> bool:
    hours, minutes = divmod(int(value), 100)
    return 0 <= hours <= 23 and 0 <= minutes <= 59


def hhmm_to_minutes(value: int) -> int:
    """Convert HHMM integer (e.g. 1730) to minute-of-day."""
    hours, minutes = divmod(int(value), 100)
    return hours * 60 + minutes


def in_clock_window(minute: int, start: int, end: int) -> bool:
    """
    Half-open minute-of-day window test.

    start > end crosses midnight: active if minute >= start or minute < end.
    """
    if start > end:
        return minute >= start or minute < end
    return start <= minute < end


# Default configuration instance
DEFAULT_CONFIG = EngineConfig()

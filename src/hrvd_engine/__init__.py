"""
HRVD Engine - Volume/Price Decision Engine for Futures

Bar-driven algorithmic trading decisions for a single instrument:
relative volume and volume-delta signals, session levels for take
profit, ATR trailing stops, time-window gating, and a daily loss
governor, combined by an explicit order-intent state machine.

COMPONENTS:
1. Signal Aggregator - Six calculators voting long/short for entry and exit
2. Session Tracker - Prior day / overnight / morning highs and lows
3. Trailing Stop Engine - ATR stops that only move toward profit
4. Time Window Gate - Up to three daily windows, forced flatten on exit
5. Risk Governor - Daily PnL halt and exposure validation
6. Decision Engine - FLAT / LONG(n) / SHORT(n) intents
7. Trading Engine - Explicit on_bar / on_tick / fill callbacks

The engine decides; it never places orders itself. Intents go to an
OrderSink through a single-worker mailbox.
"""

__version__ = "1.0.0"

from .config import (
    EngineConfig,
    InstrumentConfig,
    SignalConfig,
    SessionConfig,
    TradingWindowConfig,
    TimeWindowConfig,
    StopConfig,
    RiskConfig,
    OrderConfig,
    LoggingConfig,
    SIGNAL_NAMES,
    DEFAULT_CONFIG,
)

from .errors import (
    EngineError,
    ConfigurationError,
    InvalidBarError,
    UnknownPositionError,
    IllegalTransitionError,
    OrderRejectedError,
    RunawayHaltError,
)

# Data model
from .models import (
    Bar,
    Tick,
    Side,
    PositionState,
    IntentKind,
    Position,
    PositionIntent,
    ProtectiveLevels,
    Decision,
    VolumeDelta,
    VolumeDeltaSource,
)

# Components
from .signal_engine import SignalAggregator, SignalSnapshot, SignalCalculator, build_calculators
from .session_engine import SessionTracker, SessionType, TakeProfitSource
from .stop_engine import TrailingStopEngine
from .time_filter import TimeWindowGate, WindowTransition
from .risk_engine import RiskGovernor, SizeCheck
from .order_gate import OrderGate, GateVerdict
from .decision_engine import DecisionEngine, EngineState

# Driving loop
from .order_mailbox import OrderMailbox, OrderSink
from .engine import TradingEngine
from .replay import BarReplay, ReplayResult, SimulatedBroker, frame_to_bars
from .logging_module import setup_logging

__all__ = [
    # Config
    'EngineConfig', 'InstrumentConfig', 'SignalConfig', 'SessionConfig',
    'TradingWindowConfig', 'TimeWindowConfig', 'StopConfig', 'RiskConfig',
    'OrderConfig', 'LoggingConfig', 'SIGNAL_NAMES', 'DEFAULT_CONFIG',
    # Errors
    'EngineError', 'ConfigurationError', 'InvalidBarError', 'UnknownPositionError',
    'IllegalTransitionError', 'OrderRejectedError', 'RunawayHaltError',
    # Models
    'Bar', 'Tick', 'Side', 'PositionState', 'IntentKind', 'Position',
    'PositionIntent', 'ProtectiveLevels', 'Decision', 'VolumeDelta', 'VolumeDeltaSource',
    # Components
    'SignalAggregator', 'SignalSnapshot', 'SignalCalculator', 'build_calculators',
    'SessionTracker', 'SessionType', 'TakeProfitSource',
    'TrailingStopEngine',
    'TimeWindowGate', 'WindowTransition',
    'RiskGovernor', 'SizeCheck',
    'OrderGate', 'GateVerdict',
    'DecisionEngine', 'EngineState',
    # Driving loop
    'OrderMailbox', 'OrderSink', 'TradingEngine',
    'BarReplay', 'ReplayResult', 'SimulatedBroker', 'frame_to_bars',
    'setup_logging',
]

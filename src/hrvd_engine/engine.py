"""
Trading Engine - Driving Loop

The external boundary calls explicit functions; the engine exposes no
subscriptions of its own.

    on_bar(bar)                      closed bar -> signals, sessions, decision
    on_tick(tick)                    intra-bar stop/target and window exits
    on_position_opened(...)          fill -> take profit + initial stop
    on_position_closed(...)          close -> stop removed, realized PnL
    on_order_rejected(intent, ...)   rejection -> latch released, state restored

BAR PIPELINE ORDER:
1. Time gate transitions
2. Session levels
3. Signal calculators (fully updated before any decision)
4. Decision engine (stops checked against the levels in force during the bar)
5. Trailing stop update with the closed bar as the previous candle
6. Intents and moved stop levels posted to the order mailbox

Bar and tick callbacks may arrive on different threads; one lock
covers each callback so a tick never sees a half-made decision.
"""

import logging
import math
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np

from .config import EngineConfig, DEFAULT_CONFIG
from .decision_engine import DecisionEngine, EngineState
from .errors import IllegalTransitionError, RunawayHaltError
from .indicators import make_atr
from .models import Bar, Decision, Position, PositionIntent, ProtectiveLevels, Side, Tick
from .order_gate import OrderGate
from .order_mailbox import OrderMailbox, OrderSink
from .risk_engine import RiskGovernor
from .session_engine import SessionTracker
from .signal_engine import SignalAggregator
from .stop_engine import TrailingStopEngine
from .time_filter import TimeWindowGate


class TradingEngine:
    """
    Single-instrument decision engine.

    With a sink, intents go through the order mailbox. Call start() to run
    the mailbox worker thread, or process_orders() to drain it inline.
    """

    def __init__(
        self,
        config: EngineConfig = DEFAULT_CONFIG,
        sink: Optional[OrderSink] = None,
        logger: Optional[logging.Logger] = None,
        rng: Optional[np.random.Generator] = None,
        max_history: int = 500,
    ):
        self.config = config.validated()
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()

        instrument = config.instrument
        self.gate = TimeWindowGate(config.time_windows)
        self.signals = SignalAggregator(config.signals)
        self.sessions = SessionTracker(config.sessions, instrument.tick_size)
        self.stops = TrailingStopEngine(config.stops, instrument.tick_size)
        self.risk = RiskGovernor(config.risk, gate=self.gate, timezone_name=config.time_windows.timezone)
        self.order_gate = OrderGate(config.orders, timezone_name=config.time_windows.timezone, rng=rng)
        self.decisions = DecisionEngine(config, self.gate, self.risk, self.stops, self.order_gate)
        self.atr = make_atr(config.stops.atr_period, config.stops.atr_mode)

        self.state = EngineState()
        self._history: deque = deque(maxlen=max(max_history, self._required_history()))

        self.mailbox = (
            OrderMailbox(sink, self.on_order_rejected, config.orders.mailbox_size)
            if sink is not None else None
        )
        self.outbox: List[PositionIntent] = []   # Intents when no sink is attached

        # Statistics
        self.intents_emitted = 0
        self.rejections = 0
        self.faults = 0

    def _required_history(self) -> int:
        s = self.config.signals
        return max(s.rvol_long_window, s.rvol_short_window, s.vd_lookback, s.hma_max_period * 2, s.atr_period) + 1

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> None:
        if self.mailbox is not None:
            self.mailbox.start()
        self.logger.info(f"Engine started for {self.config.instrument.symbol}")

    def stop(self) -> None:
        if self.mailbox is not None:
            self.mailbox.stop()
        self.logger.info("=" * 60)
        self.logger.info("ENGINE STOPPED")
        self.logger.info(f"Bars processed: {self.state.bars_processed}")
        self.logger.info(f"Intents emitted: {self.intents_emitted}")
        self.logger.info(f"Rejections: {self.rejections}")
        self.logger.info("=" * 60)

    def process_orders(self) -> int:
        """Drain the mailbox on the calling thread (replay and tests)."""
        if self.mailbox is None:
            return 0
        return self.mailbox.process_pending()

    @property
    def is_halted(self) -> bool:
        """Runaway protection tripped for the current day."""
        return self.order_gate.is_halted

    # ========================================================================
    # BAR PIPELINE
    # ========================================================================

    def on_bar(self, bar: Bar) -> Decision:
        """Process one closed bar and emit its decision."""
        now = bar.closed_at
        with self._lock:
            self._isolated("time gate", self.gate.update, now)
            self._isolated("session tracker", self.sessions.update, bar)

            history = list(self._history)
            self._isolated("signal aggregator", self.signals.update, bar, history)
            snapshot = self.signals.snapshot()
            self.atr.update(bar.high, bar.low, bar.close)

            try:
                decision = self.decisions.evaluate(self.state, snapshot, bar, now)
            except RunawayHaltError as e:
                self.logger.critical(f"STRATEGY HALTED: {e}")
                decision = self.decisions.flatten(self.state, bar.close, "Runaway protection", now)
                decision.blocked_reason = str(e)
            except Exception:
                self.faults += 1
                self.logger.exception(f"Decision cycle failed at {now}; no action this bar")
                decision = Decision(timestamp=now, blocked_reason="Decision fault")

            moved = self.stops.update_all(bar.high, bar.low, self._atr_value(), now)
            self._mark_to_market(bar.close, now)

            self._history.append(bar)
            self.state.last_bar = bar
            self.state.last_snapshot = snapshot
            self.state.bars_processed += 1

            for levels in moved:
                self._post(levels)
            for intent in decision.intents:
                self._post(intent)

        if not decision.is_noop:
            self.logger.info(
                f"[{now:%Y-%m-%d %H:%M}] {', '.join(i.kind.value + ' ' + i.side.value for i in decision.intents)} "
                f"-> {self.state.describe()}"
            )
        return decision

    def on_tick(self, tick: Tick) -> List[PositionIntent]:
        """Intra-bar protection: window exits and stop/target hits."""
        now = tick.timestamp
        intents: List[PositionIntent] = []
        with self._lock:
            self._isolated("time gate", self.gate.update, now)
            live = self.state.live_positions()
            if not live:
                return intents

            reason = self.gate.consume_flatten()
            if reason is not None:
                intents = self.decisions.flatten(
                    self.state, tick.price, f"Time window exit (tick): {reason}", now
                ).intents
            else:
                for position in live:
                    try:
                        intent = self.decisions.check_tick(
                            self.state, position, tick.price_for(position.side), now
                        )
                    except Exception:
                        self.faults += 1
                        self.logger.exception(f"Tick check failed for {position.position_id}")
                        continue
                    if intent is not None:
                        intents.append(intent)

            self._mark_to_market(tick.price, now)
            for intent in intents:
                self._post(intent)
        return intents

    # ========================================================================
    # POSITION CALLBACKS
    # ========================================================================

    def on_position_opened(
        self,
        position_id: str,
        side: Side,
        quantity: float,
        price: float,
        when: Optional[datetime] = None,
    ) -> ProtectiveLevels:
        """Register a filled position: choose take profit, compute initial stop."""
        when = when or datetime.now(timezone.utc)
        with self._lock:
            if position_id in self.state.positions:
                raise IllegalTransitionError(f"Position {position_id} opened twice")
            self.state.positions[position_id] = Position(position_id, side, quantity, price, when)
            if self.state.pending is not None and self.state.pending.side is side:
                self.state.pending = None
            self.order_gate.release()

            target = self.sessions.select_take_profit(price, side)
            previous = self.state.last_bar
            self.stops.register(
                position_id,
                side,
                price,
                target.price,
                previous.high if previous else None,
                previous.low if previous else None,
                self._atr_value(),
                when,
            )
            levels = self.stops.levels(position_id)
            self._post(levels)

        self.logger.info(
            f"Position opened: {position_id} {side.value} x{quantity} @ {price:.2f} | "
            f"TP {target.price:.2f} ({target.source.value}) | SL {levels.stop_price:.2f} | "
            f"State: {self.state.describe()}"
        )
        return levels

    def on_position_closed(
        self,
        position_id: str,
        realized_pnl: float,
        when: Optional[datetime] = None,
    ) -> None:
        """Remove a closed position and book its PnL."""
        when = when or datetime.now(timezone.utc)
        with self._lock:
            position = self.state.positions.pop(position_id, None)
            self.state.closing.discard(position_id)
            self.stops.remove(position_id)
            if position is None:
                self.logger.warning(f"Close reported for unknown position {position_id}")
            self.risk.record_realized(realized_pnl, when)
            if self.state.last_bar is not None:
                self._mark_to_market(self.state.last_bar.close, when)

        self.logger.info(
            f"Position closed: {position_id} PnL ${realized_pnl:.2f} | State: {self.state.describe()}"
        )

    def on_order_rejected(self, intent: PositionIntent, reason: str) -> None:
        """Undo the optimistic state change for a refused intent."""
        with self._lock:
            self.rejections += 1
            if intent.kind.opens_position:
                self.order_gate.on_rejected(reason)
                pending = self.state.pending
                if pending is not None and pending.side is intent.side:
                    self.state.pending = None
            else:
                self.state.closing.difference_update(intent.position_ids)
                self.logger.error(
                    f"Exit rejected for {list(intent.position_ids)}: {reason} - positions remain open"
                )

    def flatten_all(self, reason: str = "Manual flatten", when: Optional[datetime] = None) -> Decision:
        """Emergency: exit every live position at the last close."""
        when = when or datetime.now(timezone.utc)
        with self._lock:
            price = self.state.last_bar.close if self.state.last_bar else 0.0
            decision = self.decisions.flatten(self.state, price, reason, when)
            for intent in decision.intents:
                self._post(intent)
        self.logger.critical(f"FLATTEN ALL: {reason}")
        return decision

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _isolated(self, stage: str, func, *args) -> None:
        try:
            func(*args)
        except Exception:
            self.faults += 1
            self.logger.exception(f"{stage} failed; continuing")

    def _atr_value(self) -> Optional[float]:
        value = self.atr.value
        return None if math.isnan(value) else value

    def _mark_to_market(self, price: float, now: datetime) -> None:
        point_value = self.config.instrument.point_value
        unrealized = sum(
            p.unrealized_pnl(price, point_value) for p in self.state.positions.values()
        )
        self._isolated("risk mark", self.risk.update_unrealized, unrealized, now)

    def _post(self, message) -> None:
        if isinstance(message, PositionIntent):
            self.intents_emitted += 1
            if self.mailbox is None:
                self.outbox.append(message)
                return
        if self.mailbox is not None:
            self.mailbox.post(message)

    def status(self, when: Optional[datetime] = None) -> Dict:
        """Engine snapshot as of when (default now); daily counters roll over first."""
        when = when or datetime.now(timezone.utc)
        with self._lock:
            risk = self.risk.statistics(when)
            orders = self.order_gate.status(when)
            return {
                "state": self.state.describe(),
                "bars_processed": self.state.bars_processed,
                "open_positions": len(self.state.positions),
                "intents_emitted": self.intents_emitted,
                "rejections": self.rejections,
                "faults": self.faults,
                "is_halted": orders["is_halted"],
                "window": self.gate.active_window.name if self.gate.active_window else None,
                "risk": risk,
                "orders": orders,
                "stops": self.stops.statistics(),
                "sessions": self.sessions.summary(),
            }

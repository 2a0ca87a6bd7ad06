"""
Decision Engine - Order-Intent State Machine

STATES:
- FLAT
- LONG(n)   n = stacked long positions
- SHORT(n)  n = stacked short positions

TRANSITIONS (evaluated once per closed bar, fixed priority):
1. Forced exit from the time gate     -> EXIT all, FLAT
2. Stop / target hit per position      -> EXIT that position
3. Exit signal for current direction   -> EXIT all, FLAT
   ... with an opposite entry signal    -> EXIT all, then REVERSAL entry
4. Opposite entry signal + reversal on -> EXIT all, then REVERSAL entry
5. Same-direction entry, n < max stack -> ENTRY (from FLAT) or STACK
   Contradictory long + short entry    -> no-op

ENTRY GATING (every position-opening intent):
- Risk governor not halted
- Time gate allows entries (inside a window, not in its closing minutes)
- Requested size passes exposure validation
- Order gate slot acquired (latch, throttle, duplicates, daily ceiling)

Exits are never gated. A bar that exits (steps 1-3) opens nothing,
except the reversal entry of step 3.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from .config import EngineConfig
from .errors import RunawayHaltError
from .models import Bar, Decision, IntentKind, Position, PositionIntent, PositionState, Side
from .order_gate import OrderGate
from .risk_engine import RiskGovernor, SizeCheck
from .signal_engine import SignalSnapshot
from .stop_engine import TrailingStopEngine
from .time_filter import TimeWindowGate


# ============================================================================
# ENGINE STATE
# ============================================================================

@dataclass
class PendingEntry:
    """Opening intent awaiting its fill."""
    side: Side
    kind: IntentKind
    quantity: float
    requested_at: datetime


@dataclass
class EngineState:
    """
    Explicit per-instrument state passed through every evaluation cycle.

    Net state is derived from confirmed positions that are not being
    closed, plus at most one pending entry.
    """
    positions: Dict[str, Position] = field(default_factory=dict)
    closing: Set[str] = field(default_factory=set)
    pending: Optional[PendingEntry] = None
    last_snapshot: Optional[SignalSnapshot] = None
    last_bar: Optional[Bar] = None
    bars_processed: int = 0

    def live_positions(self) -> List[Position]:
        return [p for pid, p in self.positions.items() if pid not in self.closing]

    @property
    def is_mixed(self) -> bool:
        """Live positions on both sides (an exit was rejected mid-reversal)."""
        return len({p.side for p in self.live_positions()}) > 1

    @property
    def position_state(self) -> PositionState:
        """Direction of the pending entry, else of the newest live position."""
        if self.pending is not None:
            return PositionState.for_side(self.pending.side)
        live = self.live_positions()
        if not live:
            return PositionState.FLAT
        newest = max(live, key=lambda p: p.entry_time)
        return PositionState.for_side(newest.side)

    @property
    def stack_count(self) -> int:
        side = self.position_state.side
        if side is None:
            return 0
        count = len(self.ids_for(side))
        if self.pending is not None:
            count += 1
        return count

    def open_quantity(self) -> float:
        quantity = sum(p.quantity for p in self.live_positions())
        if self.pending is not None:
            quantity += self.pending.quantity
        return quantity

    def ids_for(self, side: Side) -> List[str]:
        return [p.position_id for p in self.live_positions() if p.side is side]

    def describe(self) -> str:
        state = self.position_state
        if state is PositionState.FLAT:
            return "FLAT"
        return f"{state.value}({self.stack_count})"


# ============================================================================
# DECISION ENGINE
# ============================================================================

class DecisionEngine:
    """
    Combines signals, time gate, stops and risk into position intents.

    evaluate() mutates EngineState to reflect the intents it emits:
    exited positions are marked closing and an opening intent becomes
    the pending entry until the fill arrives.
    """

    def __init__(
        self,
        config: EngineConfig,
        gate: TimeWindowGate,
        risk: RiskGovernor,
        stops: TrailingStopEngine,
        order_gate: OrderGate,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.gate = gate
        self.risk = risk
        self.stops = stops
        self.order_gate = order_gate
        self.logger = logger or logging.getLogger(__name__)

    @property
    def max_stack(self) -> int:
        return self.config.orders.effective_max_stack

    # ========================================================================
    # EVALUATION
    # ========================================================================

    def evaluate(
        self,
        state: EngineState,
        snapshot: SignalSnapshot,
        bar: Bar,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Run one decision cycle for a closed bar."""
        now = now or bar.closed_at
        decision = Decision(timestamp=now)
        self._expire_pending(state, now)

        # 1. Forced exit from time gate
        flatten_reason = self.gate.consume_flatten()
        if flatten_reason is not None:
            if state.live_positions():
                self._exit_all(state, decision, bar.close, f"Time window exit: {flatten_reason}", now)
            return decision

        current = state.position_state
        side = current.side

        # Opposite-side leftovers from a rejected reversal exit
        if state.is_mixed:
            for position in state.live_positions():
                if position.side is not side:
                    self._exit_one(state, decision, position, bar.close, "Reconcile opposite-side position", now)

        # 2. Stop / target hits
        self._check_protective_hits(state, decision, bar, now)

        # 3. Exit signal for the current direction
        if side is not None and state.live_positions():
            exit_signal = snapshot.exit_long if side is Side.LONG else snapshot.exit_short
            if exit_signal:
                # An opposite entry on the same bar turns the exit into a reversal
                if self._reversal_wanted(snapshot, side) and state.pending is None:
                    self._try_open(state, decision, side.opposite, IntentKind.REVERSAL, bar, now, reverse_from=side)
                if state.ids_for(side):
                    self._exit_all(state, decision, bar.close, f"{side.value} exit signal", now)

        if not decision.is_noop:
            return decision

        # Contradiction is never resolved by picking a side
        if snapshot.has_contradiction:
            self.logger.debug("Contradictory long and short entry signals - no action")
            return decision

        entry_side = Side.LONG if snapshot.entry_long else Side.SHORT if snapshot.entry_short else None
        if entry_side is None:
            return decision

        # 4. Reversal
        if side is not None and entry_side is side.opposite:
            if not self.config.orders.allow_reversal:
                self.logger.debug(f"{entry_side.value} signal while {current.value} - reversal disabled")
                return decision
            if state.pending is not None:
                decision.blocked_reason = "Waiting for fill"
                return decision
            self._try_open(state, decision, entry_side, IntentKind.REVERSAL, bar, now, reverse_from=side)
            return decision

        # 5. Entry / stack
        if side is None:
            self._try_open(state, decision, entry_side, IntentKind.ENTRY, bar, now)
        elif state.stack_count < self.max_stack:
            self._try_open(state, decision, entry_side, IntentKind.STACK, bar, now)
        else:
            self.logger.debug(f"Stack limit reached ({state.stack_count}/{self.max_stack})")

        return decision

    def _reversal_wanted(self, snapshot: SignalSnapshot, side: Side) -> bool:
        if not self.config.orders.allow_reversal or snapshot.has_contradiction:
            return False
        return snapshot.entry_short if side is Side.LONG else snapshot.entry_long

    def _expire_pending(self, state: EngineState, now: datetime) -> None:
        if state.pending is not None and not self.order_gate.is_waiting_for_fill(now):
            self.logger.warning(
                f"Pending {state.pending.side.value} entry never filled - clearing"
            )
            state.pending = None

    # ========================================================================
    # EXITS
    # ========================================================================

    def _check_protective_hits(
        self,
        state: EngineState,
        decision: Decision,
        bar: Bar,
        now: datetime,
    ) -> None:
        """Close positions whose stop or target the bar traded through."""
        for position in state.live_positions():
            try:
                adverse = bar.low if position.side is Side.LONG else bar.high
                favorable = bar.high if position.side is Side.LONG else bar.low
                if self.stops.is_stop_hit(position.position_id, adverse):
                    record = self.stops.get(position.position_id)
                    self._exit_one(state, decision, position, record.current_stop, "Stop loss hit", now)
                elif self.stops.is_take_profit_hit(position.position_id, favorable):
                    record = self.stops.get(position.position_id)
                    self._exit_one(state, decision, position, record.take_profit, "Take profit hit", now)
            except Exception:
                self.logger.exception(f"Protective check failed for {position.position_id}")

    def check_tick(
        self,
        state: EngineState,
        position: Position,
        price: float,
        now: datetime,
    ) -> Optional[PositionIntent]:
        """Intra-bar stop/target check for one position."""
        if position.position_id in state.closing:
            return None
        decision = Decision(timestamp=now)
        if self.stops.is_stop_hit(position.position_id, price):
            self._exit_one(state, decision, position, price, "Stop loss hit (tick)", now)
        elif self.stops.is_take_profit_hit(position.position_id, price):
            self._exit_one(state, decision, position, price, "Take profit hit (tick)", now)
        return decision.intents[0] if decision.intents else None

    def _exit_one(
        self,
        state: EngineState,
        decision: Decision,
        position: Position,
        price: float,
        reason: str,
        now: datetime,
    ) -> None:
        state.closing.add(position.position_id)
        decision.intents.append(PositionIntent(
            side=position.side,
            kind=IntentKind.EXIT,
            price=price,
            quantity=position.quantity,
            reason=reason,
            timestamp=now,
            position_ids=(position.position_id,),
        ))

    def flatten(self, state: EngineState, price: float, reason: str, now: datetime) -> Decision:
        """Exit every live position."""
        decision = Decision(timestamp=now)
        self._exit_all(state, decision, price, reason, now)
        return decision

    def _exit_all(
        self,
        state: EngineState,
        decision: Decision,
        price: float,
        reason: str,
        now: datetime,
    ) -> None:
        for side in (Side.LONG, Side.SHORT):
            ids = state.ids_for(side)
            if not ids:
                continue
            quantity = sum(state.positions[pid].quantity for pid in ids)
            state.closing.update(ids)
            decision.intents.append(PositionIntent(
                side=side,
                kind=IntentKind.EXIT,
                price=price,
                quantity=quantity,
                reason=reason,
                timestamp=now,
                position_ids=tuple(ids),
            ))

    # ========================================================================
    # ENTRIES
    # ========================================================================

    def _entry_block_reason(self, state: EngineState, bar: Bar, now: datetime) -> Optional[str]:
        if self.risk.should_halt_trading(now):
            return "Risk halt"
        if not self.gate.entries_allowed(now):
            return "Outside trading window"

        quantity = self.config.instrument.contract_size
        check, reason = self.risk.validate_position_size(quantity, state.open_quantity(), bar.close)
        if check is not SizeCheck.ALLOWED:
            return reason
        return None

    def _try_open(
        self,
        state: EngineState,
        decision: Decision,
        side: Side,
        kind: IntentKind,
        bar: Bar,
        now: datetime,
        reverse_from: Optional[Side] = None,
    ) -> None:
        # Reversal sizes against a flat book
        closing_ids = state.ids_for(reverse_from) if reverse_from is not None else []
        if closing_ids:
            state.closing.update(closing_ids)

        blocked = self._entry_block_reason(state, bar, now)
        reason = f"{side.value} {kind.value.lower()} signal"
        if blocked is None:
            try:
                verdict = self.order_gate.try_acquire(side, reason, f"{kind.value}_{side.value}", now)
            except RunawayHaltError:
                state.closing.difference_update(closing_ids)
                raise
            if not verdict.allowed:
                blocked = verdict.value

        if blocked is not None:
            state.closing.difference_update(closing_ids)
            decision.blocked_reason = blocked
            self.logger.info(f"{side.value} {kind.value} blocked: {blocked}")
            return

        quantity = self.config.instrument.contract_size
        if closing_ids:
            decision.intents.append(PositionIntent(
                side=reverse_from,
                kind=IntentKind.EXIT,
                price=bar.close,
                quantity=sum(state.positions[pid].quantity for pid in closing_ids),
                reason=f"Reversal to {side.value}",
                timestamp=now,
                position_ids=tuple(closing_ids),
            ))

        state.pending = PendingEntry(side, kind, quantity, now)
        decision.intents.append(PositionIntent(
            side=side,
            kind=kind,
            price=bar.close,
            quantity=quantity,
            reason=reason,
            timestamp=now,
        ))

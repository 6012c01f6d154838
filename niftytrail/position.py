"""
niftytrail.position
===================

Lifecycle of a single option trade.

A :class:`PendingEntry` is created when a limit order is sent.  It turns into
an active :class:`Position` only once a fill is confirmed, at the price the
fill actually happened.  From then on every :class:`PriceObservation` is run
through :meth:`Position.on_observation`, which applies these rules in order
and stops at the first one that fires:

1. update the running high/low;
2. held periods >= holding window       -> exit at price   (``max_holding_period``)
3. active and initial stop breached      -> exit at stop    (``stop_loss``)
4. active and target1 reached            -> start trailing, no exit
5. trailing and trailing stop breached   -> exit at stop    (``trailing_stop``)
6. final target reached                  -> exit at target  (``target``)
7. pre-close window on last trading day  -> exit at price   (``calendar_exit``)

All levels are multiples of one risk unit R away from the entry price:
stop at -1R, trailing stop at +2R, target1 at +3R and the final target at
+k R, mirrored for short positions.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Optional

from niftytrail.models import (
    Contract,
    ExitReason,
    PositionState,
    PriceObservation,
    Side,
    SignalKind,
    TradeRecord,
)

__all__ = ["RiskLevels", "ExitDecision", "PendingEntry", "Position"]

logger = logging.getLogger(__name__)

# Given a timestamp, say whether positions must be flattened for the weekend.
CalendarRule = Callable[[dt.datetime], bool]


@dataclass(frozen=True)
class RiskLevels:
    """Stop and target ladder derived from an entry price and risk unit."""
    entry_price: float
    risk: float
    initial_stop: float
    trailing_stop: float
    target1: float
    final_target: float

    @classmethod
    def from_entry(
        cls, side: Side, entry_price: float, risk: float, final_rr: float = 8.0
    ) -> "RiskLevels":
        if risk <= 0:
            raise ValueError("risk unit must be positive")
        if final_rr <= 3:
            raise ValueError("final target multiple must exceed target1 (3R)")
        return cls(
            entry_price=entry_price,
            risk=risk,
            initial_stop=side.offset(entry_price, -risk),
            trailing_stop=side.offset(entry_price, 2 * risk),
            target1=side.offset(entry_price, 3 * risk),
            final_target=side.offset(entry_price, final_rr * risk),
        )


@dataclass(frozen=True)
class ExitDecision:
    reason: ExitReason
    price: float
    timestamp: dt.datetime


@dataclass
class PendingEntry:
    """An entry order that has been sent but not yet confirmed."""
    trade_id: str
    side: Side
    contract: Contract
    symbol: str
    limit_price: float
    quantity: int
    risk: float
    final_rr: float
    max_holding_periods: int
    trailing_enabled: bool = True
    signal_kind: Optional[SignalKind] = None
    order_id: Optional[str] = None
    state: PositionState = PositionState.PENDING
    abandon_reason: Optional[str] = None

    def confirm(
        self,
        fill_price: float,
        filled_at: dt.datetime,
        period_index: int,
        quantity: Optional[int] = None,
    ) -> "Position":
        """Create the active position at the confirmed execution price."""
        if self.state is not PositionState.PENDING:
            raise ValueError(f"Entry {self.trade_id} is no longer pending")
        if not fill_price or fill_price <= 0:
            raise ValueError(f"Invalid fill price {fill_price!r} for {self.trade_id}")
        qty = self.quantity if quantity is None else quantity
        levels = RiskLevels.from_entry(self.side, fill_price, self.risk, self.final_rr)
        self.state = PositionState.ACTIVE
        position = Position(
            trade_id=self.trade_id,
            side=self.side,
            contract=self.contract,
            symbol=self.symbol,
            entry_timestamp=filled_at,
            entry_period_index=period_index,
            entry_price=fill_price,
            quantity=qty,
            levels=levels,
            max_holding_periods=self.max_holding_periods,
            trailing_enabled=self.trailing_enabled,
            signal_kind=self.signal_kind,
        )
        logger.debug(
            "%s filled @ %.2f x %d (limit %.2f)", self.trade_id, fill_price, qty, self.limit_price
        )
        return position

    def abandon(self, reason: str) -> None:
        # No position is ever created for an abandoned entry.
        self.state = PositionState.CLOSED
        self.abandon_reason = reason
        logger.info("Entry %s abandoned: %s", self.trade_id, reason)


@dataclass
class Position:
    """An open trade driven through active -> trailing -> closed."""
    trade_id: str
    side: Side
    contract: Contract
    symbol: str
    entry_timestamp: dt.datetime
    entry_period_index: int
    entry_price: float
    quantity: int
    levels: RiskLevels
    max_holding_periods: int
    trailing_enabled: bool = True
    signal_kind: Optional[SignalKind] = None
    state: PositionState = PositionState.ACTIVE
    running_high: float = field(default=float("nan"))
    running_low: float = field(default=float("nan"))
    last_price: Optional[float] = None
    exit_price: Optional[float] = None
    exit_time: Optional[dt.datetime] = None
    exit_reason: Optional[ExitReason] = None
    exit_period_index: Optional[int] = None
    # Adverse extreme seen since the trailing stop was armed.
    _trail_extreme: Optional[float] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if math.isnan(self.running_high):
            self.running_high = self.entry_price
        if math.isnan(self.running_low):
            self.running_low = self.entry_price

    @property
    def initial_stop(self) -> float:
        return self.levels.initial_stop

    @property
    def trailing_stop(self) -> float:
        return self.levels.trailing_stop

    @property
    def target1(self) -> float:
        return self.levels.target1

    @property
    def final_target(self) -> float:
        return self.levels.final_target

    @property
    def protective_stop(self) -> float:
        """Stop currently protecting the position."""
        if self.state is PositionState.TRAILING:
            return self.levels.trailing_stop
        return self.levels.initial_stop

    def is_open(self) -> bool:
        return self.state in (PositionState.ACTIVE, PositionState.TRAILING)

    def held_periods(self, period_index: int) -> int:
        return period_index - self.entry_period_index

    def unrealized_pnl(self, price: float) -> float:
        return self.side.pnl(self.entry_price, price, self.quantity)

    def on_observation(
        self,
        obs: PriceObservation,
        calendar_rule: Optional[CalendarRule] = None,
    ) -> Optional[ExitDecision]:
        """Apply one monitoring tick; return the exit to execute, if any.

        The position itself is not closed here: the caller executes the exit
        and then calls :meth:`close` with the realised price.
        """
        if not self.is_open():
            raise ValueError(f"Position {self.trade_id} is {self.state.value}")
        high, low = obs.period_high, obs.period_low
        self.running_high = max(self.running_high, high)
        self.running_low = min(self.running_low, low)
        self.last_price = obs.price
        if self.state is PositionState.TRAILING:
            if self.side is Side.LONG:
                self._trail_extreme = min(self._trail_extreme, low)
            else:
                self._trail_extreme = max(self._trail_extreme, high)

        if self.held_periods(obs.period_index) >= self.max_holding_periods:
            return ExitDecision(ExitReason.MAX_HOLDING_PERIOD, obs.price, obs.timestamp)

        if self.state is PositionState.ACTIVE and self.side.breached_stop(
            self.running_high, self.running_low, self.levels.initial_stop
        ):
            return ExitDecision(ExitReason.STOP_LOSS, self.levels.initial_stop, obs.timestamp)

        if (
            self.state is PositionState.ACTIVE
            and self.trailing_enabled
            and self.side.reached_target(self.running_high, self.running_low, self.levels.target1)
        ):
            self.state = PositionState.TRAILING
            # Start tracking from the arming price; earlier lows predate the stop.
            self._trail_extreme = obs.price
            logger.info(
                "%s reached target1 %.2f; stop tightened to %.2f",
                self.trade_id,
                self.levels.target1,
                self.levels.trailing_stop,
            )
            return None

        if self.state is PositionState.TRAILING and self.side.breached_stop(
            self._trail_extreme, self._trail_extreme, self.levels.trailing_stop
        ):
            return ExitDecision(ExitReason.TRAILING_STOP, self.levels.trailing_stop, obs.timestamp)

        if self.side.reached_target(self.running_high, self.running_low, self.levels.final_target):
            return ExitDecision(ExitReason.TARGET, self.levels.final_target, obs.timestamp)

        if calendar_rule is not None and calendar_rule(obs.timestamp):
            return ExitDecision(ExitReason.CALENDAR_EXIT, obs.price, obs.timestamp)
        return None

    def close(
        self,
        exit_price: float,
        exit_time: dt.datetime,
        reason: ExitReason,
        period_index: Optional[int] = None,
    ) -> float:
        """Mark the position closed and return the realised profit."""
        if not self.is_open():
            raise ValueError(f"Position {self.trade_id} is already closed")
        self.state = PositionState.CLOSED
        self.exit_price = exit_price
        self.exit_time = exit_time
        self.exit_reason = reason
        self.exit_period_index = period_index
        return self.side.pnl(self.entry_price, exit_price, self.quantity)

    def to_record(self, capital_after: float) -> TradeRecord:
        if self.state is not PositionState.CLOSED:
            raise ValueError(f"Position {self.trade_id} is still open")
        held = 0
        if self.exit_period_index is not None:
            held = self.held_periods(self.exit_period_index)
        return TradeRecord(
            trade_id=self.trade_id,
            side=self.side,
            signal_kind=self.signal_kind,
            symbol=self.symbol,
            strike=self.contract.strike,
            option_kind=self.contract.option_kind,
            expiry=self.contract.expiry,
            entry_time=self.entry_timestamp,
            exit_time=self.exit_time,
            entry_price=self.entry_price,
            exit_price=self.exit_price,
            quantity=self.quantity,
            initial_stop=self.levels.initial_stop,
            target1=self.levels.target1,
            trailing_stop=self.levels.trailing_stop,
            final_target=self.levels.final_target,
            exit_reason=self.exit_reason,
            profit=self.side.pnl(self.entry_price, self.exit_price, self.quantity),
            holding_periods=held,
            capital_after=capital_after,
        )

"""
niftytrail.book
===============

The position book owns everything that is shared between trades: available
capital, the open positions (keyed by trade id), in-flight entry reservations,
the day's trade count and realised PnL, and the append-only trade and attempt
histories.

Every mutation happens under one lock and none of them awaits, so the live
loop's signal task and monitor task can share a book safely.  The limit check
and the reservation insert happen in the same critical section, which is what
keeps concurrent entries from overshooting ``max_positions``.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import threading
from typing import Callable, Dict, List, Optional

import pandas as pd

from niftytrail.errors import CapitalError
from niftytrail.models import (
    AttemptAction,
    AttemptOutcome,
    AttemptRecord,
    ExitReason,
    TradeRecord,
)
from niftytrail.position import Position

__all__ = ["PositionBook", "lots_for_capital", "trades_frame"]

logger = logging.getLogger(__name__)

TradeSink = Callable[[TradeRecord], None]
AttemptSink = Callable[[AttemptRecord], None]


def lots_for_capital(capital: float) -> int:
    """Number of lots to trade for the current account size."""
    if capital > 300_000:
        return int(capital // 100_000)
    if capital > 100_000:
        return 2
    return 1


def trades_frame(records: List[TradeRecord]) -> pd.DataFrame:
    """Trade history as a DataFrame, one row per closed trade."""
    if not records:
        return pd.DataFrame(columns=[f.name for f in dataclasses.fields(TradeRecord)])
    frame = pd.DataFrame([dataclasses.asdict(r) for r in records])
    # Enum members become their plain string values for CSV output.
    for column in ("side", "signal_kind", "option_kind", "exit_reason"):
        frame[column] = frame[column].map(lambda v: getattr(v, "value", v))
    return frame


class PositionBook:
    """Capital and open-position arena shared by all trades."""

    def __init__(
        self,
        initial_capital: float,
        max_positions: int,
        max_daily_loss: Optional[float] = None,
        max_daily_trades: Optional[int] = None,
        trade_sink: Optional[TradeSink] = None,
        attempt_sink: Optional[AttemptSink] = None,
    ) -> None:
        self.initial_capital = initial_capital
        self.capital = initial_capital
        self.max_positions = max_positions
        self.max_daily_loss = max_daily_loss
        self.max_daily_trades = max_daily_trades
        self.trade_sink = trade_sink
        self.attempt_sink = attempt_sink
        self.positions: Dict[str, Position] = {}
        self.trade_log: List[TradeRecord] = []
        self.attempts: List[AttemptRecord] = []
        self._reserved: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._day: Optional[dt.date] = None
        self.daily_trades = 0
        self.daily_pnl = 0.0

    # Bookkeeping helpers
    def _roll_day(self, when: dt.datetime) -> None:
        day = when.date()
        if self._day != day:
            self._day = day
            self.daily_trades = 0
            self.daily_pnl = 0.0

    def record_attempt(
        self,
        when: dt.datetime,
        trade_id: str,
        action: AttemptAction,
        outcome: AttemptOutcome,
        reason: str,
        detail: str = "",
    ) -> AttemptRecord:
        record = AttemptRecord(when, trade_id, action, outcome, reason, detail)
        with self._lock:
            self.attempts.append(record)
        log = logger.info if outcome is AttemptOutcome.ACCEPTED else logger.warning
        log("%s %s %s: %s %s", action.value, trade_id, outcome.value, reason, detail)
        if self.attempt_sink is not None:
            self.attempt_sink(record)
        return record

    def open_count(self) -> int:
        with self._lock:
            return len(self.positions) + len(self._reserved)

    def open_positions(self) -> List[Position]:
        with self._lock:
            return list(self.positions.values())

    def get(self, trade_id: str) -> Optional[Position]:
        with self._lock:
            return self.positions.get(trade_id)

    def available_capital(self) -> float:
        """Cash not yet earmarked by in-flight entry reservations."""
        with self._lock:
            return self.capital - sum(self._reserved.values())

    def daily_loss_breached(self) -> bool:
        if self.max_daily_loss is None:
            return False
        return -self.daily_pnl >= self.max_daily_loss

    # Entry path
    def reserve(self, trade_id: str, cost: float, when: dt.datetime) -> None:
        """Claim a position slot and earmark ``cost``, or raise CapitalError."""
        with self._lock:
            self._roll_day(when)
            if trade_id in self.positions or trade_id in self._reserved:
                raise CapitalError(f"Trade id {trade_id} already in use", reason="duplicate_trade_id")
            if len(self.positions) + len(self._reserved) >= self.max_positions:
                raise CapitalError(
                    f"Max positions ({self.max_positions}) reached", reason="position_limit"
                )
            if self.max_daily_trades is not None and self.daily_trades >= self.max_daily_trades:
                raise CapitalError(
                    f"Daily trade limit ({self.max_daily_trades}) reached",
                    reason="daily_trade_limit",
                )
            if self.daily_loss_breached():
                raise CapitalError(
                    f"Daily loss limit ({self.max_daily_loss}) reached", reason="daily_loss_limit"
                )
            available = self.available_capital()
            if cost > available:
                raise CapitalError(
                    f"Insufficient capital: cost {cost:.2f} > available {available:.2f}",
                    reason="insufficient_capital",
                )
            self._reserved[trade_id] = max(cost, 0.0)

    def release(
        self,
        trade_id: str,
        when: dt.datetime,
        reason: str,
        outcome: AttemptOutcome = AttemptOutcome.FAILED,
        detail: str = "",
    ) -> None:
        """Drop a reservation whose entry never filled."""
        with self._lock:
            self._reserved.pop(trade_id, None)
        self.record_attempt(when, trade_id, AttemptAction.ENTRY, outcome, reason, detail)

    def activate(self, position: Position) -> None:
        """Turn a reservation into an open position and debit the entry cash."""
        with self._lock:
            if position.trade_id not in self._reserved:
                raise KeyError(f"No reservation for {position.trade_id}")
            del self._reserved[position.trade_id]
            self._roll_day(position.entry_timestamp)
            # Buying pays the premium; selling receives it.
            self.capital -= position.side.sign * position.entry_price * position.quantity
            self.positions[position.trade_id] = position
            self.daily_trades += 1
        self.record_attempt(
            position.entry_timestamp,
            position.trade_id,
            AttemptAction.ENTRY,
            AttemptOutcome.ACCEPTED,
            "filled",
            f"{position.symbol} @ {position.entry_price:.2f} x {position.quantity}",
        )

    # Exit path
    def close(
        self,
        trade_id: str,
        exit_price: float,
        when: dt.datetime,
        reason: ExitReason,
        period_index: Optional[int] = None,
    ) -> TradeRecord:
        """Close an open position, credit the exit cash and log the trade."""
        with self._lock:
            position = self.positions.pop(trade_id, None)
            if position is None:
                raise KeyError(f"No open position {trade_id}")
            self._roll_day(when)
            profit = position.close(exit_price, when, reason, period_index)
            self.capital += position.side.sign * exit_price * position.quantity
            self.daily_pnl += profit
            record = position.to_record(self.capital)
            self.trade_log.append(record)
        self.record_attempt(
            when,
            trade_id,
            AttemptAction.EXIT,
            AttemptOutcome.ACCEPTED,
            reason.value,
            f"@ {exit_price:.2f} profit {profit:.2f}",
        )
        logger.info(
            "Closed %s (%s): exit %.2f, profit %.2f, capital %.2f",
            trade_id,
            reason.value,
            exit_price,
            profit,
            self.capital,
        )
        if self.trade_sink is not None:
            self.trade_sink(record)
        return record

    def realised_pnl(self) -> float:
        with self._lock:
            return sum(r.profit for r in self.trade_log)

    def trades_frame(self) -> pd.DataFrame:
        with self._lock:
            return trades_frame(list(self.trade_log))

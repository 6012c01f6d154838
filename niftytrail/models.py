"""
niftytrail.models
=================

Plain data containers passed between the aggregator, the indicator engine,
the signal generator, the contract selector and the position book.  Everything
except :class:`niftytrail.position.Position` is immutable once built.

Long/short arithmetic lives in the small helpers on :class:`Side` so the
state machine never has to branch on the side inline.
"""

from __future__ import annotations

import datetime as dt
import enum
import math
from dataclasses import dataclass
from typing import Optional

__all__ = [
    "Side",
    "SignalKind",
    "OptionKind",
    "PositionState",
    "ExitReason",
    "AttemptAction",
    "AttemptOutcome",
    "Tick",
    "Bar",
    "Signal",
    "Contract",
    "PriceObservation",
    "TradeRecord",
    "AttemptRecord",
]


class Side(str, enum.Enum):
    """Direction of a signal or of a held position."""

    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    def offset(self, price: float, amount: float) -> float:
        """Move ``amount`` in the favourable direction from ``price``."""
        return price + self.sign * amount

    def pnl(self, entry: float, exit_: float, quantity: int) -> float:
        return self.sign * (exit_ - entry) * quantity

    def reached_target(self, high: float, low: float, level: float) -> bool:
        # Longs profit when price rises to the level, shorts when it falls.
        if self is Side.LONG:
            return high >= level
        return low <= level

    def breached_stop(self, high: float, low: float, level: float) -> bool:
        if self is Side.LONG:
            return low <= level
        return high >= level


class SignalKind(str, enum.Enum):
    BAND_REVERSAL = "band_reversal"
    BREAKOUT = "breakout"


class OptionKind(str, enum.Enum):
    CALL = "CE"
    PUT = "PE"

    @classmethod
    def parse(cls, raw: str) -> "OptionKind":
        value = str(raw).strip().upper()
        if value in {"CE", "CALL", "C"}:
            return cls.CALL
        if value in {"PE", "PUT", "P"}:
            return cls.PUT
        raise ValueError(f"Unknown option type {raw!r}")


class PositionState(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    TRAILING = "trailing"
    CLOSED = "closed"


class ExitReason(str, enum.Enum):
    MAX_HOLDING_PERIOD = "max_holding_period"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    TARGET = "target"
    CALENDAR_EXIT = "calendar_exit"
    # Raised by the orchestrators rather than the per-tick rules.
    EMERGENCY_EXIT = "emergency_exit"
    SESSION_CLOSE = "session_close"
    END_OF_DATA = "end_of_data"
    DAILY_LOSS_LIMIT = "daily_loss_limit"


class AttemptAction(str, enum.Enum):
    ENTRY = "entry"
    EXIT = "exit"


class AttemptOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class Tick:
    """One raw price record (typically a one-minute OHLC row)."""
    timestamp: dt.datetime
    open: float
    high: float
    low: float
    close: float


@dataclass(frozen=True)
class Bar:
    """Aggregated OHLC bar annotated with indicator values.

    Indicator fields hold ``0.0`` until enough history exists; the matching
    ``*_ready`` flag says whether the value is a real computation (or a value
    carried forward from one) rather than the startup placeholder.
    """
    timestamp: dt.datetime
    open: float
    high: float
    low: float
    close: float
    sma: float = 0.0
    bb_mid: float = 0.0
    bb_upper: float = 0.0
    bb_lower: float = 0.0
    atr: float = 0.0
    sma_ready: bool = False
    bb_ready: bool = False
    atr_ready: bool = False


@dataclass(frozen=True)
class Signal:
    bar_index: int
    timestamp: dt.datetime
    direction: Side
    kind: SignalKind


@dataclass(frozen=True)
class Contract:
    """Point-in-time snapshot of one option contract."""
    strike: float
    option_kind: OptionKind
    expiry: Optional[dt.date]
    last_traded_price: float = math.nan
    open_interest: float = 0.0
    volume: float = 0.0
    bid: float = math.nan
    ask: float = math.nan
    # Day range of the snapshot; the replay engine checks fills against it.
    low: float = math.nan
    high: float = math.nan
    oi_change: float = 0.0
    symbol: str = ""

    def reference_price(self) -> float:
        """Last traded price, falling back to the day's high, then low."""
        for value in (self.last_traded_price, self.high, self.low):
            if value and math.isfinite(value):
                return float(value)
        return math.nan

    def same_series(self, other: "Contract") -> bool:
        return (
            self.strike == other.strike
            and self.option_kind == other.option_kind
            and self.expiry == other.expiry
        )


@dataclass(frozen=True)
class PriceObservation:
    """A price seen while monitoring a position.

    Live ticks only carry ``price``; replay bars also carry the period's
    ``high`` and ``low`` so intra-period extremes trigger stops and targets.
    """
    timestamp: dt.datetime
    period_index: int
    price: float
    high: Optional[float] = None
    low: Optional[float] = None

    @property
    def period_high(self) -> float:
        return self.price if self.high is None else max(self.high, self.price)

    @property
    def period_low(self) -> float:
        return self.price if self.low is None else min(self.low, self.price)


@dataclass(frozen=True)
class TradeRecord:
    """Record of a completed trade, appended once to the trade history."""
    trade_id: str
    side: Side
    signal_kind: Optional[SignalKind]
    symbol: str
    strike: float
    option_kind: OptionKind
    expiry: Optional[dt.date]
    entry_time: dt.datetime
    exit_time: dt.datetime
    entry_price: float
    exit_price: float
    quantity: int
    initial_stop: float
    target1: float
    trailing_stop: float
    final_target: float
    exit_reason: ExitReason
    profit: float
    holding_periods: int
    capital_after: float

    @property
    def holding_duration(self) -> dt.timedelta:
        return self.exit_time - self.entry_time


@dataclass(frozen=True)
class AttemptRecord:
    """Outcome of one entry or exit attempt, for the attempt log."""
    timestamp: dt.datetime
    trade_id: str
    action: AttemptAction
    outcome: AttemptOutcome
    reason: str
    detail: str = ""

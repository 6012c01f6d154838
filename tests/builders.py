"""Small factories shared by the test modules."""

from __future__ import annotations

import datetime as dt
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from niftytrail.models import Bar, Contract, OptionKind, PriceObservation, Side
from niftytrail.position import Position, RiskLevels

IST = ZoneInfo("Asia/Kolkata")
START = dt.datetime(2024, 1, 1)


def daily_bars(closes: Sequence[float], start: dt.datetime = START, spread: float = 5.0) -> List[Bar]:
    """Unannotated daily bars with the given closes, one calendar day apart."""
    return [
        Bar(
            timestamp=start + dt.timedelta(days=i),
            open=c,
            high=c + spread,
            low=c - spread,
            close=c,
        )
        for i, c in enumerate(closes)
    ]


def option(
    strike: float,
    kind: OptionKind = OptionKind.CALL,
    expiry: Optional[dt.date] = dt.date(2024, 1, 18),
    ltp: float = 100.0,
    low: float = 85.0,
    high: float = 115.0,
    oi: float = 1_000.0,
    volume: float = 500.0,
) -> Contract:
    return Contract(
        strike=strike,
        option_kind=kind,
        expiry=expiry,
        last_traded_price=ltp,
        open_interest=oi,
        volume=volume,
        low=low,
        high=high,
    )


def position(
    side: Side = Side.LONG,
    entry: float = 100.0,
    risk: float = 10.0,
    final_rr: float = 8.0,
    max_holding: int = 3,
    trailing: bool = True,
    quantity: int = 75,
) -> Position:
    return Position(
        trade_id="t1",
        side=side,
        contract=option(24500),
        symbol="NIFTY24JAN1824500CE",
        entry_timestamp=START,
        entry_period_index=0,
        entry_price=entry,
        quantity=quantity,
        levels=RiskLevels.from_entry(side, entry, risk, final_rr),
        max_holding_periods=max_holding,
        trailing_enabled=trailing,
    )


def observation(period: int, price: float, high: Optional[float] = None, low: Optional[float] = None) -> PriceObservation:
    return PriceObservation(
        timestamp=START + dt.timedelta(days=period),
        period_index=period,
        price=price,
        high=high,
        low=low,
    )

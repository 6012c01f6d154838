"""
niftytrail.aggregator
=====================

Turns timestamped ticks (one-minute OHLC rows in practice) into fixed-width
bars.  Daily bars are keyed by calendar date; intraday bars are slots of
``bar_minutes`` aligned to the session start, so a 15 minute bar starts at
09:15, 09:30, ... rather than on the hour.  Periods without ticks produce no
bar.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
from typing import Iterable, List

import pandas as pd

from niftytrail.config import Granularity
from niftytrail.errors import DataError
from niftytrail.models import Bar, Tick

__all__ = ["validate_tick", "period_start", "aggregate_ticks"]

logger = logging.getLogger(__name__)


def validate_tick(tick: Tick) -> Tick:
    """Return ``tick`` unchanged or raise :class:`DataError`."""
    ts = tick.timestamp
    if not isinstance(ts, dt.datetime) or pd.isna(ts):
        raise DataError(f"Invalid tick timestamp {ts!r}")
    for name in ("open", "high", "low", "close"):
        value = getattr(tick, name)
        try:
            ok = math.isfinite(float(value))
        except (TypeError, ValueError):
            ok = False
        if not ok:
            raise DataError(f"Non-finite {name} price {value!r} at {ts}")
    return tick


def period_start(
    ts: dt.datetime,
    granularity: Granularity,
    session_start: dt.time = dt.time(9, 15),
    bar_minutes: int = 15,
) -> dt.datetime:
    """Start of the period ``ts`` falls into."""
    if granularity is Granularity.DAILY:
        return dt.datetime.combine(ts.date(), dt.time(0, 0), tzinfo=ts.tzinfo)
    anchor = dt.datetime.combine(ts.date(), session_start, tzinfo=ts.tzinfo)
    width = dt.timedelta(minutes=bar_minutes)
    # Floor division keeps pre-open ticks on the same grid.
    slot = (ts - anchor) // width
    return anchor + slot * width


def aggregate_ticks(
    ticks: Iterable[Tick],
    granularity: Granularity = Granularity.DAILY,
    session_start: dt.time = dt.time(9, 15),
    bar_minutes: int = 15,
) -> List[Bar]:
    """Aggregate ``ticks`` into OHLC bars ordered by period.

    Invalid ticks are logged and skipped; they never stop the aggregation.
    """
    rows = []
    dropped = 0
    for tick in ticks:
        try:
            validate_tick(tick)
        except DataError as exc:
            dropped += 1
            logger.warning("Dropping tick: %s", exc)
            continue
        rows.append(
            {
                "timestamp": tick.timestamp,
                "open": float(tick.open),
                "high": float(tick.high),
                "low": float(tick.low),
                "close": float(tick.close),
            }
        )
    if dropped:
        logger.info("aggregate_ticks: dropped %d of %d ticks", dropped, dropped + len(rows))
    if not rows:
        return []
    frame = pd.DataFrame(rows)
    # mergesort is stable, so ticks sharing a timestamp keep their input order.
    frame = frame.sort_values("timestamp", kind="mergesort")
    frame["period"] = [
        period_start(ts, granularity, session_start, bar_minutes)
        for ts in frame["timestamp"].tolist()
    ]
    ohlc = frame.groupby("period", sort=True).agg(
        open=("open", "first"),
        high=("high", "max"),
        low=("low", "min"),
        close=("close", "last"),
    )
    bars = [
        Bar(
            timestamp=pd.Timestamp(row.Index).to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
        )
        for row in ohlc.itertuples()
    ]
    logger.debug("aggregate_ticks: %d rows -> %d %s bars", len(rows), len(bars), granularity.value)
    return bars

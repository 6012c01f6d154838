"""
niftytrail.data_loader
======================

This module contains the :class:`MarketDataLoader` responsible for reading
minute-level index data and daily option-chain dumps from disk.  Keeping
file-format details here leaves the replay engine working only with
:class:`~niftytrail.models.Tick` and :class:`~niftytrail.models.Contract`
objects.

Minute files need ``datetime``/``Open``/``High``/``Low``/``Close`` columns
(case-insensitive, ``Date`` accepted for the timestamp).  Option files are
the exchange's bhavcopy-style exports with ``Date``, ``Expiry``,
``Option type``, ``Strike Price``, ``LTP``, ``Low``, ``High``, ``Open Int``,
``Change in OI`` and ``No. of contracts``.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from niftytrail.errors import DataError
from niftytrail.models import Contract, OptionKind, Tick

__all__ = ["clean_number", "parse_date", "MarketDataLoader"]

logger = logging.getLogger(__name__)

_DATE_FORMATS = ("%d-%b-%y", "%d-%b-%Y")


def clean_number(value: Any) -> float:
    """Parse exchange-formatted numbers such as ``"1,23,450.5"``; NaN if blank."""
    if value is None:
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).replace(",", "").strip()
    # The exchange writes a lone dash for "no value".
    if text in {"", "-", "nan", "NaN"}:
        return math.nan
    try:
        return float(text)
    except ValueError:
        return math.nan


def parse_date(value: Any) -> Optional[dt.datetime]:
    """Parse ISO dates/datetimes or ``02-Jan-23`` style dates; None on failure."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) >= 10 and text[4] == "-" and text[7] == "-":
        ts = pd.to_datetime(text, errors="coerce")
        return None if pd.isna(ts) else ts.to_pydatetime()
    for fmt in _DATE_FORMATS:
        try:
            return dt.datetime.strptime(text, fmt)
        except ValueError:
            continue
    ts = pd.to_datetime(text, errors="coerce", dayfirst=True)
    return None if pd.isna(ts) else ts.to_pydatetime()


def _column(df: pd.DataFrame, *names: str) -> Optional[str]:
    # Find the first matching column ignoring case and surrounding blanks.
    lookup = {str(c).strip().lower(): c for c in df.columns}
    for name in names:
        found = lookup.get(name.lower())
        if found is not None:
            return found
    return None


class MarketDataLoader:
    """Utility class to load minute data and option snapshots."""

    def __init__(self, minute_path: str, option_paths: Iterable[str]) -> None:
        self.minute_path = minute_path
        self.option_paths = list(option_paths)
        # Load everything immediately so the replay never touches disk.
        self.ticks: List[Tick] = self.load_minute_ticks(minute_path)
        self.snapshots: Dict[dt.date, List[Contract]] = self.load_option_snapshots(
            self.option_paths
        )

    @staticmethod
    def load_minute_ticks(path: str) -> List[Tick]:
        """Read a minute CSV into ticks.

        Rows with unparseable values are kept with NaN fields so the
        aggregator can report and drop them.
        """
        df = pd.read_csv(path, low_memory=False)
        ts_col = _column(df, "datetime", "date", "timestamp")
        cols = {name: _column(df, name) for name in ("open", "high", "low", "close")}
        if ts_col is None or any(c is None for c in cols.values()):
            raise DataError(f"{path}: expected datetime/Open/High/Low/Close columns")
        ticks: List[Tick] = []
        for values in df.to_dict(orient="records"):
            ticks.append(
                Tick(
                    timestamp=parse_date(values.get(ts_col)),
                    open=clean_number(values.get(cols["open"])),
                    high=clean_number(values.get(cols["high"])),
                    low=clean_number(values.get(cols["low"])),
                    close=clean_number(values.get(cols["close"])),
                )
            )
        logger.info("Loaded %d minute rows from %s", len(ticks), path)
        return ticks

    @staticmethod
    def _row_to_contract(row: Dict[str, Any]) -> Optional[Contract]:
        try:
            kind = OptionKind.parse(row.get("option type") or row.get("type") or "")
        except ValueError:
            return None
        expiry = parse_date(row.get("expiry"))
        return Contract(
            strike=clean_number(row.get("strike price", row.get("strike"))),
            option_kind=kind,
            expiry=expiry.date() if expiry else None,
            last_traded_price=clean_number(row.get("ltp", row.get("close"))),
            open_interest=clean_number(row.get("open int", row.get("oi"))),
            volume=clean_number(row.get("no. of contracts", row.get("contracts"))),
            low=clean_number(row.get("low")),
            high=clean_number(row.get("high")),
            oi_change=clean_number(row.get("change in oi", row.get("oi_change"))),
        )

    @classmethod
    def load_option_snapshots(cls, paths: Iterable[str]) -> Dict[dt.date, List[Contract]]:
        """Group option rows from every file by trade date."""
        snapshots: Dict[dt.date, List[Contract]] = defaultdict(list)
        skipped = 0
        for path in paths:
            df = pd.read_csv(path, low_memory=False)
            # Normalise headers ("Strike Price  " -> "strike price").
            df.columns = [str(c).strip().lower() for c in df.columns]
            for record in df.to_dict(orient="records"):
                trade_date = parse_date(record.get("date"))
                contract = cls._row_to_contract(record)
                if trade_date is None or contract is None:
                    skipped += 1
                    continue
                snapshots[trade_date.date()].append(contract)
        if skipped:
            logger.warning("Skipped %d option rows with bad dates or types", skipped)
        logger.info("Loaded option snapshots for %d dates", len(snapshots))
        return dict(snapshots)

    def snapshot_for(self, day: dt.date) -> List[Contract]:
        return self.snapshots.get(day, [])

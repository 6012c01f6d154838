"""
niftytrail.selector
===================

Picks the option contract to trade for a signal.  Bullish signals buy the
call one strike above at-the-money, bearish signals buy the put one strike
below.  Among contracts at that strike the nearest expiry wins, ties broken
by open interest and then volume, since the nearest and most liquid series
fills with the least slippage.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
from typing import Iterable, List, Optional, Tuple

from niftytrail.errors import ContractLookupError
from niftytrail.indicators import nearest_strike
from niftytrail.models import Contract, OptionKind, Side

__all__ = [
    "target_strike",
    "select_contract",
    "nearest_expiry",
    "trading_symbol",
    "ContractSelector",
]

logger = logging.getLogger(__name__)

_MONTHS = ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"]


def target_strike(direction: Side, spot: float, step: int = 50) -> Tuple[int, OptionKind]:
    """Strike and option type to buy for ``direction`` at ``spot``."""
    atm = nearest_strike(spot, step)
    if direction is Side.LONG:
        return atm + step, OptionKind.CALL
    return atm - step, OptionKind.PUT


def _liquidity(value: float) -> float:
    # Missing liquidity figures rank last rather than poisoning the sort.
    return float(value) if value is not None and math.isfinite(value) else 0.0


def select_contract(
    direction: Side,
    spot: float,
    contracts: Iterable[Contract],
    decision_date: dt.date,
    strike_step: int = 50,
) -> Optional[Contract]:
    """Return the best contract for the signal, or ``None`` if none qualifies."""
    strike, kind = target_strike(direction, spot, strike_step)
    candidates: List[Contract] = [
        c
        for c in contracts
        if c.option_kind == kind
        and c.strike == strike
        and c.expiry is not None
        and c.expiry >= decision_date
    ]
    if not candidates:
        return None
    candidates.sort(
        key=lambda c: (c.expiry, -_liquidity(c.open_interest), -_liquidity(c.volume))
    )
    return candidates[0]


def nearest_expiry(expiries: Iterable[dt.date], on_or_after: dt.date) -> Optional[dt.date]:
    """Earliest listed expiry that has not passed yet."""
    upcoming = sorted({e for e in expiries if e is not None and e >= on_or_after})
    return upcoming[0] if upcoming else None


def trading_symbol(underlying: str, expiry: dt.date, strike: float, kind: OptionKind) -> str:
    """Exchange trading symbol, e.g. ``NIFTY24OCT2424500CE``."""
    return (
        f"{underlying}{expiry.year % 100:02d}{_MONTHS[expiry.month - 1]}"
        f"{expiry.day:02d}{int(strike)}{kind.value}"
    )


class ContractSelector:
    """Contract selection bound to one underlying's strike grid."""

    def __init__(self, strike_step: int = 50, underlying: str = "NIFTY") -> None:
        self.strike_step = strike_step
        self.underlying = underlying

    def select(
        self,
        direction: Side,
        spot: float,
        contracts: Iterable[Contract],
        decision_date: dt.date,
    ) -> Optional[Contract]:
        return select_contract(direction, spot, contracts, decision_date, self.strike_step)

    def require(
        self,
        direction: Side,
        spot: float,
        contracts: Iterable[Contract],
        decision_date: dt.date,
    ) -> Contract:
        """Like :meth:`select` but raise :class:`ContractLookupError` on a miss."""
        contract = self.select(direction, spot, contracts, decision_date)
        if contract is None:
            strike, kind = target_strike(direction, spot, self.strike_step)
            raise ContractLookupError(
                f"No {kind.value} contract at strike {strike} expiring on/after {decision_date}"
            )
        logger.debug(
            "Selected %s %s %s exp %s (OI %s)",
            self.underlying,
            contract.strike,
            contract.option_kind.value,
            contract.expiry,
            contract.open_interest,
        )
        return contract

    def symbol_for(self, contract: Contract) -> str:
        if contract.symbol:
            return contract.symbol
        if contract.expiry is None:
            raise ContractLookupError("Contract has no expiry to build a symbol from")
        return trading_symbol(self.underlying, contract.expiry, contract.strike, contract.option_kind)

"""
niftytrail.errors
=================

Exception types shared by the aggregator, the replay engine and the live
loop.  Each one maps to a recovery policy: the failing record, signal or
tick is dropped or retried and processing of everything else continues.
"""

from __future__ import annotations

__all__ = [
    "TradingError",
    "DataError",
    "ContractLookupError",
    "CapitalError",
    "ExecutionError",
    "MonitoringError",
]


class TradingError(Exception):
    """Base class for every error raised by the engine."""


class DataError(TradingError, ValueError):
    """A price or timestamp is malformed or missing; the record is dropped."""


class ContractLookupError(TradingError, LookupError):
    """No contract or price snapshot exists for a required date."""


class CapitalError(TradingError):
    """Entry rejected: not enough capital or a position/daily limit is hit."""

    def __init__(self, message: str, reason: str = "insufficient_capital") -> None:
        super().__init__(message)
        # Short machine-readable tag written to the attempt log.
        self.reason = reason


class ExecutionError(TradingError):
    """Order placement or fill confirmation failed or timed out."""


class MonitoringError(TradingError):
    """Transient failure while watching or exiting one open position."""

    def __init__(self, message: str, trade_id: str | None = None) -> None:
        super().__init__(message)
        self.trade_id = trade_id

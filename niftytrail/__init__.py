"""
niftytrail package
==================

Signal, contract selection and trailing-stop position management for NIFTY
index options, shared by a historical replay and a live executor:

* :mod:`niftytrail.aggregator` – Minute ticks to daily or intraday OHLC bars.
* :mod:`niftytrail.indicators` – SMA, Bollinger bands and ATR with readiness flags.
* :mod:`niftytrail.signals` – Band-reversal and breakout entry signals.
* :mod:`niftytrail.selector` – Option contract selection and trading symbols.
* :mod:`niftytrail.position` – Risk ladder and the position state machine.
* :mod:`niftytrail.book` – Capital, open positions and trade/attempt history.
* :mod:`niftytrail.clock` – Clocks, session calendar and the task scheduler.
* :mod:`niftytrail.backtest` – Replay engine and ``niftytrail-backtest`` CLI.
* :mod:`niftytrail.live` – Broker gateway protocol and the live trader.

Settings live in :mod:`niftytrail.config` and are read from the environment.
"""

from niftytrail.config import Granularity, StrategyConfig, load_config
from niftytrail.errors import (
    CapitalError,
    ContractLookupError,
    DataError,
    ExecutionError,
    MonitoringError,
    TradingError,
)

__all__ = [
    "Granularity",
    "StrategyConfig",
    "load_config",
    "TradingError",
    "DataError",
    "ContractLookupError",
    "CapitalError",
    "ExecutionError",
    "MonitoringError",
]

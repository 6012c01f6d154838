"""
niftytrail.config
=================

Runtime configuration for the replay and live engines.  Values come from
environment variables (optionally a ``.env`` file) using the same names the
trading desk already exports, e.g. ``INITIAL_CAPITAL`` or ``FINAL_RR``.
Command line flags of the backtest runner override individual fields via
:func:`load_config`.
"""

from __future__ import annotations

import datetime as dt
import enum
import math
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Granularity", "StrategyConfig", "load_config"]


class Granularity(str, enum.Enum):
    """Bar width used by an execution mode."""

    DAILY = "daily"
    INTRADAY = "intraday"


class StrategyConfig(BaseSettings):
    """Every tunable the strategy reads, with the desk's defaults."""

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    # Trading parameters
    initial_capital: float = 15_000.0
    risk_per_trade: float = 10.0
    entry_buffer: float = 10.0
    strike_step: int = 50
    lot_size: int = 75
    final_rr: float = 8.0
    max_positions: int = 3
    underlying: str = "NIFTY"
    exchange: str = "NFO"
    spot_symbol: str = "NSE:NIFTY 50"

    # Trading controls
    enable_trailing: bool = True
    debug_mode: bool = False
    dry_run: bool = False

    # Risk management
    max_daily_loss: float = 5_000.0
    max_daily_trades: int = 10

    # Indicator windows and signal threshold
    bb_period: int = 10
    sma_period: int = 20
    atr_period: int = 10
    breakout_atr_multiple: float = 0.3
    require_ready_indicators: bool = True

    # Market hours (exchange local time)
    market_start_hour: int = 9
    market_start_minute: int = 15
    market_end_hour: int = 15
    market_end_minute: int = 30
    pre_close_minutes: int = 15
    timezone: str = "Asia/Kolkata"
    holidays: List[dt.date] = Field(default_factory=list)

    # Holding window and bar widths
    holding_sessions: int = 3
    intraday_bar_minutes: int = 15

    # Live loop timing
    signal_interval_sec: float = 60.0
    monitor_interval_sec: float = 30.0
    fill_timeout_sec: float = 30.0
    fill_poll_sec: float = 2.0
    max_exit_retries: int = 3
    shutdown_timeout_sec: float = 30.0
    broker_timeout_sec: float = 10.0
    min_limit_price: float = 0.05
    # Opt-in: exit everything in every session's pre-close window.
    flatten_at_close: bool = False
    history_days: int = 10
    trade_log_path: Optional[str] = "live_trades.jsonl"

    @field_validator(
        "bb_period",
        "sma_period",
        "atr_period",
        "strike_step",
        "lot_size",
        "max_positions",
        "holding_sessions",
        "intraday_bar_minutes",
        "history_days",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("risk_per_trade")
    @classmethod
    def _positive_risk(cls, value: float) -> float:
        if not math.isfinite(value) or value <= 0:
            raise ValueError("risk_per_trade must be a positive amount")
        return value

    @field_validator("broker_timeout_sec")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if not math.isfinite(value) or value <= 0:
            raise ValueError("broker_timeout_sec must be positive")
        return value

    @model_validator(mode="after")
    def _check_levels(self) -> "StrategyConfig":
        # The final target must sit beyond target1 (3R) for the ladder to hold.
        if self.final_rr <= 3:
            raise ValueError("final_rr must be greater than 3")
        if self.session_end <= self.session_start:
            raise ValueError("market end must be after market start")
        return self

    @property
    def session_start(self) -> dt.time:
        return dt.time(self.market_start_hour, self.market_start_minute)

    @property
    def session_end(self) -> dt.time:
        return dt.time(self.market_end_hour, self.market_end_minute)

    @property
    def session_minutes(self) -> int:
        start = self.market_start_hour * 60 + self.market_start_minute
        end = self.market_end_hour * 60 + self.market_end_minute
        return end - start

    def slots_per_session(self) -> int:
        """Number of intraday bars in one trading session."""
        return math.ceil(self.session_minutes / self.intraday_bar_minutes)

    def max_holding_periods(self, granularity: Granularity) -> int:
        """Holding window expressed in bars of ``granularity``."""
        if granularity is Granularity.DAILY:
            return self.holding_sessions
        return self.holding_sessions * self.slots_per_session()

    def bar_width(self, granularity: Granularity) -> dt.timedelta:
        if granularity is Granularity.DAILY:
            return dt.timedelta(days=1)
        return dt.timedelta(minutes=self.intraday_bar_minutes)


def load_config(**overrides) -> StrategyConfig:
    """Read settings from the environment, then apply explicit overrides.

    ``None`` overrides are ignored so argparse defaults can be passed straight
    through.
    """
    config = StrategyConfig()
    updates = {key: value for key, value in overrides.items() if value is not None}
    if not updates:
        return config
    # Re-validate so overrides go through the same checks as env values.
    return StrategyConfig.model_validate({**config.model_dump(), **updates})

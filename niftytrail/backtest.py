"""
niftytrail.backtest
===================

Replays daily bars and end-of-day option snapshots through the strategy.
Minute data is aggregated to daily bars, indicators and signals are computed
up front, and each signal is then traded to completion, in order, before the
next one is looked at:

1. pick the contract from that day's snapshot;
2. place a limit ``entry_buffer`` below its last traded price, filled only if
   the limit sits inside the day's low/high;
3. feed the entry day and every later day that lists the same contract to the
   position state machine until it exits.

Capital carries from one trade to the next.  Typical invocation::

    python -m niftytrail.backtest \\
      --minute-file data/2020-2025_1min.csv \\
      --option-files data/options/2023-25_CE.csv data/options/2023-25_PE.csv \\
      --final-rr 8 --debug
"""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import math
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from niftytrail.aggregator import aggregate_ticks
from niftytrail.book import PositionBook
from niftytrail.config import Granularity, StrategyConfig, load_config
from niftytrail.data_loader import MarketDataLoader
from niftytrail.errors import CapitalError, ContractLookupError, ExecutionError
from niftytrail.indicators import annotate
from niftytrail.models import (
    AttemptAction,
    AttemptOutcome,
    Bar,
    Contract,
    ExitReason,
    PriceObservation,
    Side,
    Signal,
    TradeRecord,
)
from niftytrail.position import CalendarRule, PendingEntry, Position
from niftytrail.selector import ContractSelector
from niftytrail.signals import generate_signals

__all__ = ["BacktestEngine", "summarise", "run_backtest", "parse_args", "main"]

logger = logging.getLogger(__name__)


class BacktestEngine:
    """Deterministic replay of signals against stored option snapshots."""

    def __init__(
        self,
        config: StrategyConfig,
        snapshots: Mapping[dt.date, Sequence[Contract]],
        book: Optional[PositionBook] = None,
        calendar_rule: Optional[CalendarRule] = None,
        debug: bool = False,
    ) -> None:
        self.config = config
        self.snapshots = snapshots
        # Daily limits belong to the live session; the replay only caps slots.
        self.book = book or PositionBook(
            initial_capital=config.initial_capital,
            max_positions=config.max_positions,
        )
        self.selector = ContractSelector(config.strike_step, config.underlying)
        self.calendar_rule = calendar_rule
        self.debug = debug
        self.max_holding = config.max_holding_periods(Granularity.DAILY)

    def _log(self, msg: str) -> None:
        # Chatty per-signal messages are only surfaced with --debug.
        if self.debug:
            logger.info(msg)
        else:
            logger.debug(msg)

    def prepare(self, bars: Sequence[Bar]) -> List[Bar]:
        return annotate(
            bars,
            bb_period=self.config.bb_period,
            sma_period=self.config.sma_period,
            atr_period=self.config.atr_period,
        )

    def signals(self, bars: Sequence[Bar]) -> List[Signal]:
        return generate_signals(
            bars,
            atr_multiple=self.config.breakout_atr_multiple,
            require_ready=self.config.require_ready_indicators,
        )

    def run(self, bars: Sequence[Bar]) -> List[TradeRecord]:
        """Annotate ``bars``, generate signals and trade each one."""
        annotated = self.prepare(bars)
        signals = self.signals(annotated)
        self._log(f"{len(annotated)} bars, {len(signals)} signals")
        for n, signal in enumerate(signals):
            self.run_signal(n, signal, annotated)
        return list(self.book.trade_log)

    def run_signal(self, n: int, signal: Signal, bars: Sequence[Bar]) -> Optional[TradeRecord]:
        """Trade one signal to completion; errors only skip this signal."""
        bar = bars[signal.bar_index]
        trade_id = f"{bar.timestamp:%Y%m%d}-{signal.kind.value}-{signal.direction.value}-{n}"
        try:
            position = self._enter(trade_id, signal, bar)
        except ContractLookupError as exc:
            self.book.record_attempt(
                bar.timestamp, trade_id, AttemptAction.ENTRY, AttemptOutcome.REJECTED,
                "no_contract", str(exc),
            )
            return None
        except CapitalError as exc:
            self.book.record_attempt(
                bar.timestamp, trade_id, AttemptAction.ENTRY, AttemptOutcome.REJECTED,
                exc.reason, str(exc),
            )
            return None
        except ExecutionError as exc:
            self._log(f"{trade_id}: {exc}")
            return None
        return self._manage(position, bars)

    def _enter(self, trade_id: str, signal: Signal, bar: Bar) -> Position:
        day = bar.timestamp.date()
        snapshot = self.snapshots.get(day)
        if not snapshot:
            raise ContractLookupError(f"No option snapshot for {day}")
        contract = self.selector.require(signal.direction, bar.close, snapshot, day)
        ltp = contract.reference_price()
        if not math.isfinite(ltp) or ltp <= 0:
            raise ContractLookupError(f"No usable price for {contract.strike}{contract.option_kind.value} on {day}")
        limit = ltp - self.config.entry_buffer
        quantity = self.config.lot_size
        self.book.reserve(trade_id, limit * quantity, bar.timestamp)
        pending = PendingEntry(
            trade_id=trade_id,
            side=Side.LONG,
            contract=contract,
            symbol=self.selector.symbol_for(contract),
            limit_price=limit,
            quantity=quantity,
            risk=self.config.risk_per_trade,
            final_rr=self.config.final_rr,
            max_holding_periods=self.max_holding,
            trailing_enabled=self.config.enable_trailing,
            signal_kind=signal.kind,
        )
        # A limit order fills at its limit only if the day traded through it.
        if not (contract.low <= limit <= contract.high):
            reason = f"limit {limit:.2f} outside day range {contract.low}-{contract.high}"
            pending.abandon(reason)
            self.book.release(trade_id, bar.timestamp, "limit_not_filled", detail=reason)
            raise ExecutionError(reason)
        position = pending.confirm(limit, bar.timestamp, period_index=signal.bar_index)
        self.book.activate(position)
        self._log(
            f"{trade_id}: bought {position.symbol} @ {limit:.2f}, stop {position.initial_stop:.2f}, "
            f"T1 {position.target1:.2f}, final {position.final_target:.2f}"
        )
        return position

    def _observation(self, index: int, bar: Bar, row: Contract) -> Optional[PriceObservation]:
        price = row.reference_price()
        if not math.isfinite(price):
            return None
        high = row.high if math.isfinite(row.high) else None
        low = row.low if math.isfinite(row.low) else None
        return PriceObservation(bar.timestamp, index, price, high=high, low=low)

    def _find_row(self, day: dt.date, contract: Contract) -> Optional[Contract]:
        for row in self.snapshots.get(day, ()):
            if row.same_series(contract):
                return row
        return None

    def _manage(self, position: Position, bars: Sequence[Bar]) -> TradeRecord:
        last: Optional[PriceObservation] = None
        for index in range(position.entry_period_index, len(bars)):
            bar = bars[index]
            if index == position.entry_period_index:
                row = position.contract
            else:
                row = self._find_row(bar.timestamp.date(), position.contract)
            if row is None:
                continue
            obs = self._observation(index, bar, row)
            if obs is None:
                continue
            last = obs
            decision = position.on_observation(obs, self.calendar_rule)
            if decision is not None:
                return self.book.close(
                    position.trade_id, decision.price, decision.timestamp, decision.reason, index
                )
        # Ran out of history with the trade still open: mark it at the last price.
        if last is None:
            last = PriceObservation(
                position.entry_timestamp, position.entry_period_index, position.entry_price
            )
        return self.book.close(
            position.trade_id, last.price, last.timestamp, ExitReason.END_OF_DATA, last.period_index
        )


def summarise(trades: Iterable[TradeRecord], initial_capital: float) -> Dict[str, float]:
    """Headline statistics for a list of closed trades."""
    trades = list(trades)
    wins = sum(1 for t in trades if t.profit > 0)
    total = sum(t.profit for t in trades)
    return {
        "trades": len(trades),
        "wins": wins,
        "losses": len(trades) - wins,
        "win_rate": wins / len(trades) if trades else 0.0,
        "total_profit": total,
        "final_capital": initial_capital + total,
    }


def run_backtest(
    minute_file: str,
    option_files: Sequence[str],
    config: StrategyConfig,
    output: Optional[str] = None,
    debug: bool = False,
) -> List[TradeRecord]:
    """Run the full replay from CSV files and print a summary."""
    loader = MarketDataLoader(minute_file, option_files)
    bars = aggregate_ticks(loader.ticks, Granularity.DAILY)
    if not bars:
        raise ValueError(f"No valid minute rows in {minute_file}")
    engine = BacktestEngine(config, loader.snapshots, debug=debug)
    trades = engine.run(bars)
    stats = summarise(trades, config.initial_capital)
    print("Trade log:")
    for t in trades:
        print(
            f"{t.symbol} | {t.signal_kind.value if t.signal_kind else '-'} | "
            f"{t.entry_time:%Y-%m-%d} -> {t.exit_time:%Y-%m-%d} | "
            f"Entry: {t.entry_price:.2f}, Exit: {t.exit_price:.2f} ({t.exit_reason.value}), "
            f"PnL: {t.profit:.2f}"
        )
    print(f"\nTotal trades: {stats['trades']}")
    print(
        f"Wins: {stats['wins']}, Losses: {stats['losses']}, "
        f"Win rate: {stats['win_rate'] * 100:.2f}%"
    )
    print(f"Total profit: {stats['total_profit']:.2f}")
    print(f"Final capital: {stats['final_capital']:.2f}")
    if output:
        engine.book.trades_frame().to_csv(output, index=False, float_format="%.2f")
        print(f"Detailed trades written to {output}")
    return trades


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay the trailing-stop option strategy")
    parser.add_argument("--minute-file", required=True, help="Minute OHLC CSV of the underlying")
    parser.add_argument(
        "--option-files", required=True, nargs="+", help="Option chain CSV exports"
    )
    # Leaving these unset keeps whatever the environment / .env provides.
    parser.add_argument("--final-rr", type=float, help="Final target as a multiple of risk")
    parser.add_argument("--capital", type=float, help="Starting capital")
    parser.add_argument("--risk", type=float, help="Risk per trade in premium points")
    parser.add_argument("--output", default="trades_high_freq_trailing.csv", help="Trade CSV path")
    parser.add_argument("--debug", action="store_true", help="Enable verbose logging")
    return parser.parse_args(argv)


def main(argv: Optional[Iterable[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config(
        final_rr=args.final_rr,
        initial_capital=args.capital,
        risk_per_trade=args.risk,
    )
    run_backtest(
        minute_file=args.minute_file,
        option_files=args.option_files,
        config=config,
        output=args.output,
        debug=args.debug or config.debug_mode,
    )


if __name__ == "__main__":
    main()

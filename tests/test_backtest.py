import datetime as dt

import pandas as pd
import pytest

from niftytrail.backtest import BacktestEngine, main, summarise
from niftytrail.config import StrategyConfig
from niftytrail.models import AttemptOutcome, ExitReason, OptionKind, Side, SignalKind

from tests.builders import START, daily_bars, option

# Nine flat closes then a drop below the lower band: one long reversal on day 9.
CLOSES = [24500.0] * 9 + [24400.0] * 4
SIGNAL_DAY = (START + dt.timedelta(days=9)).date()
NEAR = dt.date(2024, 1, 18)
FAR = dt.date(2024, 1, 25)


def _day(n: int) -> dt.date:
    return (START + dt.timedelta(days=n)).date()


def _config(**kwargs) -> StrategyConfig:
    return StrategyConfig(**kwargs)


def _snapshots(**later):
    """Entry-day chain plus optional later rows for the traded series."""
    entry_day = [
        option(24450, OptionKind.CALL, NEAR, ltp=100.0, low=85.0, high=115.0),
        option(24450, OptionKind.CALL, FAR, ltp=160.0, low=150.0, high=170.0, oi=90_000),
        option(24350, OptionKind.PUT, NEAR, ltp=80.0),
    ]
    snapshots = {SIGNAL_DAY: entry_day}
    for n, (ltp, low, high) in later.items():
        snapshots[_day(int(n[1:]))] = [option(24450, OptionKind.CALL, NEAR, ltp=ltp, low=low, high=high)]
    return snapshots


def test_trailing_trade_end_to_end() -> None:
    snapshots = _snapshots(d10=(125.0, 105.0, 126.0), d11=(108.0, 106.0, 118.0))
    engine = BacktestEngine(_config(), snapshots)
    (trade,) = engine.run(daily_bars(CLOSES))

    assert trade.side is Side.LONG
    assert trade.signal_kind is SignalKind.BAND_REVERSAL
    assert (trade.strike, trade.option_kind, trade.expiry) == (24450, OptionKind.CALL, NEAR)
    assert trade.symbol == "NIFTY24JAN1824450CE"
    assert trade.entry_price == 90.0
    assert trade.exit_reason is ExitReason.TRAILING_STOP
    assert trade.exit_price == 110.0
    assert trade.profit == pytest.approx(20.0 * 75)
    assert trade.holding_periods == 2
    assert trade.capital_after == pytest.approx(16_500.0)
    assert engine.book.capital == pytest.approx(16_500.0)


def test_stop_loss_on_later_day() -> None:
    snapshots = _snapshots(d10=(82.0, 78.0, 95.0))
    (trade,) = BacktestEngine(_config(), snapshots).run(daily_bars(CLOSES))
    assert trade.exit_reason is ExitReason.STOP_LOSS
    assert trade.exit_price == 80.0
    assert trade.profit == pytest.approx(-10.0 * 75)


def test_max_holding_period_exit() -> None:
    flat = (95.0, 92.0, 98.0)
    snapshots = _snapshots(d10=flat, d11=flat, d12=flat)
    (trade,) = BacktestEngine(_config(), snapshots).run(daily_bars(CLOSES))
    assert trade.exit_reason is ExitReason.MAX_HOLDING_PERIOD
    assert trade.exit_price == 95.0
    assert trade.holding_periods == 3


def test_days_without_the_series_are_skipped() -> None:
    snapshots = _snapshots(d12=(125.0, 120.0, 130.0))
    engine = BacktestEngine(_config(holding_sessions=5), snapshots)
    (trade,) = engine.run(daily_bars(CLOSES))
    # Target1 is only seen on day 12; the data then runs out.
    assert trade.exit_reason is ExitReason.END_OF_DATA
    assert trade.exit_price == 125.0


def test_trade_closed_when_data_runs_out() -> None:
    (trade,) = BacktestEngine(_config(), _snapshots()).run(daily_bars(CLOSES))
    assert trade.exit_reason is ExitReason.END_OF_DATA
    assert trade.exit_price == 100.0
    assert trade.profit == pytest.approx(10.0 * 75)


def test_missing_snapshot_skips_signal() -> None:
    engine = BacktestEngine(_config(), {})
    assert engine.run(daily_bars(CLOSES)) == []
    (attempt,) = engine.book.attempts
    assert attempt.outcome is AttemptOutcome.REJECTED
    assert attempt.reason == "no_contract"


def test_limit_outside_day_range_is_not_filled() -> None:
    snapshots = {SIGNAL_DAY: [option(24450, OptionKind.CALL, NEAR, ltp=100.0, low=95.0, high=110.0)]}
    engine = BacktestEngine(_config(), snapshots)
    assert engine.run(daily_bars(CLOSES)) == []
    assert engine.book.capital == 15_000.0
    assert engine.book.open_count() == 0
    (attempt,) = engine.book.attempts
    assert (attempt.outcome, attempt.reason) == (AttemptOutcome.FAILED, "limit_not_filled")


def test_insufficient_capital_rejects_entry() -> None:
    engine = BacktestEngine(_config(initial_capital=5_000.0), _snapshots())
    assert engine.run(daily_bars(CLOSES)) == []
    (attempt,) = engine.book.attempts
    assert attempt.reason == "insufficient_capital"


def test_summarise() -> None:
    snapshots = _snapshots(d10=(125.0, 105.0, 126.0), d11=(108.0, 106.0, 118.0))
    trades = BacktestEngine(_config(), snapshots).run(daily_bars(CLOSES))
    stats = summarise(trades, 15_000.0)
    assert stats == {
        "trades": 1,
        "wins": 1,
        "losses": 0,
        "win_rate": 1.0,
        "total_profit": pytest.approx(1_500.0),
        "final_capital": pytest.approx(16_500.0),
    }
    assert summarise([], 15_000.0)["win_rate"] == 0.0


def test_cli_writes_trade_csv(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    minute_rows = ["datetime,open,high,low,close"]
    for n, close in enumerate(CLOSES):
        day = _day(n)
        minute_rows.append(f"{day} 09:15:00,{close},{close + 5},{close - 5},{close}")
        minute_rows.append(f"{day} 15:29:00,{close},{close + 5},{close - 5},{close}")
    minute_file = tmp_path / "minutes.csv"
    minute_file.write_text("\n".join(minute_rows) + "\n")

    header = "Date,Expiry,Option type,Strike Price,LTP,Low,High,Open Int,Change in OI,No. of contracts"
    option_rows = [
        header,
        f"{SIGNAL_DAY:%d-%b-%Y},{NEAR:%d-%b-%Y},CE,24450,100,85,115,1000,0,500",
        f"{_day(10):%d-%b-%Y},{NEAR:%d-%b-%Y},CE,24450,125,105,126,1000,0,500",
        f"{_day(11):%d-%b-%Y},{NEAR:%d-%b-%Y},CE,24450,108,106,118,1000,0,500",
    ]
    option_file = tmp_path / "ce.csv"
    option_file.write_text("\n".join(option_rows) + "\n")
    output = tmp_path / "trades.csv"

    main(
        [
            "--minute-file",
            str(minute_file),
            "--option-files",
            str(option_file),
            "--output",
            str(output),
        ]
    )

    printed = capsys.readouterr().out
    assert "Total trades: 1" in printed
    assert "Final capital: 16500.00" in printed
    frame = pd.read_csv(output)
    assert frame["exit_reason"].tolist() == ["trailing_stop"]
    assert frame["profit"].tolist() == [1500.0]

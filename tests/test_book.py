import datetime as dt
from concurrent.futures import ThreadPoolExecutor

import pytest

from niftytrail.book import PositionBook, lots_for_capital
from niftytrail.errors import CapitalError
from niftytrail.models import AttemptAction, AttemptOutcome, ExitReason

from tests.builders import START, position

NOON = START.replace(hour=12)


def _open(book: PositionBook, trade_id: str = "t1", entry: float = 100.0, when: dt.datetime = NOON):
    pos = position(entry=entry)
    pos.trade_id = trade_id
    pos.entry_timestamp = when
    book.reserve(trade_id, entry * pos.quantity, when)
    book.activate(pos)
    return pos


def test_capital_debited_once_and_credited_once() -> None:
    trades = []
    book = PositionBook(15_000.0, max_positions=3, trade_sink=trades.append)
    _open(book)
    assert book.capital == pytest.approx(15_000.0 - 7_500.0)
    assert book.open_count() == 1
    record = book.close("t1", 120.0, NOON, ExitReason.TRAILING_STOP, 2)
    assert book.capital == pytest.approx(16_500.0)
    assert record.profit == pytest.approx(1_500.0)
    assert record.capital_after == pytest.approx(16_500.0)
    assert trades == [record]
    assert book.open_count() == 0
    assert book.realised_pnl() == pytest.approx(1_500.0)
    with pytest.raises(KeyError):
        book.close("t1", 120.0, NOON, ExitReason.TARGET)


def test_position_limit_rejects_second_entry() -> None:
    book = PositionBook(100_000.0, max_positions=1)
    book.reserve("a", 7_500.0, NOON)
    with pytest.raises(CapitalError) as err:
        book.reserve("b", 7_500.0, NOON)
    assert err.value.reason == "position_limit"
    assert book.open_count() == 1


def test_concurrent_reservations_never_exceed_limit() -> None:
    book = PositionBook(1_000_000.0, max_positions=3)

    def attempt(n: int) -> bool:
        try:
            book.reserve(f"t{n}", 1_000.0, NOON)
        except CapitalError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(40)))
    assert sum(results) == 3
    assert book.open_count() == 3


def test_reserved_cash_counts_against_capital() -> None:
    book = PositionBook(15_000.0, max_positions=3)
    book.reserve("a", 10_000.0, NOON)
    with pytest.raises(CapitalError) as err:
        book.reserve("b", 6_000.0, NOON)
    assert err.value.reason == "insufficient_capital"
    book.reserve("c", 5_000.0, NOON)


def test_available_capital_excludes_reservations() -> None:
    book = PositionBook(15_000.0, max_positions=3)
    assert book.available_capital() == 15_000.0
    book.reserve("a", 4_000.0, NOON)
    assert book.available_capital() == 11_000.0
    book.release("a", NOON, "not_filled")
    assert book.available_capital() == 15_000.0
    _open(book, "b")
    assert book.available_capital() == pytest.approx(7_500.0)


def test_duplicate_trade_id_rejected() -> None:
    book = PositionBook(15_000.0, max_positions=3)
    book.reserve("a", 100.0, NOON)
    with pytest.raises(CapitalError) as err:
        book.reserve("a", 100.0, NOON)
    assert err.value.reason == "duplicate_trade_id"


def test_release_frees_slot_and_logs_failure() -> None:
    attempts = []
    book = PositionBook(15_000.0, max_positions=1, attempt_sink=attempts.append)
    book.reserve("a", 7_500.0, NOON)
    book.release("a", NOON, "not_filled", detail="timeout")
    assert book.open_count() == 0
    assert book.capital == 15_000.0
    (attempt,) = attempts
    assert (attempt.action, attempt.outcome, attempt.reason) == (
        AttemptAction.ENTRY,
        AttemptOutcome.FAILED,
        "not_filled",
    )
    book.reserve("b", 7_500.0, NOON)


def test_activate_requires_reservation() -> None:
    book = PositionBook(15_000.0, max_positions=1)
    with pytest.raises(KeyError):
        book.activate(position())


def test_daily_trade_limit_resets_next_day() -> None:
    book = PositionBook(100_000.0, max_positions=3, max_daily_trades=1)
    _open(book, "a")
    with pytest.raises(CapitalError) as err:
        book.reserve("b", 100.0, NOON)
    assert err.value.reason == "daily_trade_limit"
    book.reserve("c", 100.0, NOON + dt.timedelta(days=1))
    assert book.daily_trades == 0


def test_daily_loss_limit_blocks_entries() -> None:
    book = PositionBook(100_000.0, max_positions=3, max_daily_loss=500.0)
    _open(book, "a")
    assert not book.daily_loss_breached()
    book.close("a", 90.0, NOON, ExitReason.STOP_LOSS)
    assert book.daily_pnl == pytest.approx(-750.0)
    assert book.daily_loss_breached()
    with pytest.raises(CapitalError) as err:
        book.reserve("b", 100.0, NOON)
    assert err.value.reason == "daily_loss_limit"


def test_profits_do_not_count_towards_loss_limit() -> None:
    book = PositionBook(100_000.0, max_positions=3, max_daily_loss=500.0)
    _open(book, "a")
    book.close("a", 120.0, NOON, ExitReason.TARGET)
    assert not book.daily_loss_breached()


def test_attempts_recorded_for_fill_and_exit() -> None:
    book = PositionBook(15_000.0, max_positions=1)
    _open(book)
    book.close("t1", 95.0, NOON, ExitReason.STOP_LOSS)
    assert [(a.action, a.outcome, a.reason) for a in book.attempts] == [
        (AttemptAction.ENTRY, AttemptOutcome.ACCEPTED, "filled"),
        (AttemptAction.EXIT, AttemptOutcome.ACCEPTED, "stop_loss"),
    ]


@pytest.mark.parametrize(
    "capital, lots",
    [(15_000, 1), (100_000, 1), (150_000, 2), (300_000, 2), (450_000, 4), (1_250_000, 12)],
)
def test_lots_for_capital(capital: float, lots: int) -> None:
    assert lots_for_capital(capital) == lots


def test_trades_frame_uses_plain_values() -> None:
    book = PositionBook(15_000.0, max_positions=1)
    assert book.trades_frame().empty
    _open(book)
    book.close("t1", 95.0, NOON, ExitReason.STOP_LOSS, 1)
    frame = book.trades_frame()
    assert len(frame) == 1
    row = frame.iloc[0]
    assert row["side"] == "long"
    assert row["exit_reason"] == "stop_loss"
    assert row["profit"] == pytest.approx(-375.0)

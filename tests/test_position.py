import datetime as dt

import pytest

from niftytrail.models import ExitReason, PositionState, Side, SignalKind
from niftytrail.position import PendingEntry, RiskLevels

from tests.builders import START, observation, option, position


@pytest.mark.parametrize("entry", [0.5, 90.0, 250.25])
@pytest.mark.parametrize("risk", [0.1, 10.0])
@pytest.mark.parametrize("final_rr", [3.5, 8.0, 20.0])
def test_level_ordering(entry: float, risk: float, final_rr: float) -> None:
    long = RiskLevels.from_entry(Side.LONG, entry, risk, final_rr)
    assert long.initial_stop < entry < long.trailing_stop < long.target1 < long.final_target
    short = RiskLevels.from_entry(Side.SHORT, entry, risk, final_rr)
    assert short.initial_stop > entry > short.trailing_stop > short.target1 > short.final_target


def test_levels_for_default_ladder() -> None:
    levels = RiskLevels.from_entry(Side.LONG, 100.0, 10.0, 8.0)
    assert (levels.initial_stop, levels.trailing_stop, levels.target1, levels.final_target) == (
        90.0,
        120.0,
        130.0,
        180.0,
    )


@pytest.mark.parametrize("risk, final_rr", [(0.0, 8.0), (-1.0, 8.0), (10.0, 3.0)])
def test_invalid_ladder_rejected(risk: float, final_rr: float) -> None:
    with pytest.raises(ValueError):
        RiskLevels.from_entry(Side.LONG, 100.0, risk, final_rr)


def test_target1_arms_trailing_then_trailing_stop_exits() -> None:
    pos = position(entry=100.0)
    assert pos.on_observation(observation(1, 135.0)) is None
    assert pos.state is PositionState.TRAILING
    assert pos.protective_stop == 120.0
    decision = pos.on_observation(observation(2, 120.0))
    assert decision.reason is ExitReason.TRAILING_STOP
    assert decision.price == 120.0
    assert pos.close(decision.price, decision.timestamp, decision.reason, 2) == pytest.approx(20.0 * 75)


def test_trailing_ignores_lows_from_before_it_was_armed() -> None:
    pos = position(entry=100.0)
    assert pos.on_observation(observation(1, 131.0, high=131.0, low=95.0)) is None
    assert pos.state is PositionState.TRAILING
    assert pos.on_observation(observation(2, 125.0)) is None


def test_stop_beats_target_within_one_observation() -> None:
    pos = position(entry=100.0)
    decision = pos.on_observation(observation(1, 100.0, high=185.0, low=85.0))
    assert decision.reason is ExitReason.STOP_LOSS
    assert decision.price == 90.0


def test_holding_period_boundary_is_exact() -> None:
    pos = position(entry=100.0, max_holding=3)
    assert pos.on_observation(observation(1, 100.0)) is None
    assert pos.on_observation(observation(2, 101.0)) is None
    decision = pos.on_observation(observation(3, 102.0))
    assert decision.reason is ExitReason.MAX_HOLDING_PERIOD
    assert decision.price == 102.0


def test_holding_period_checked_before_stop() -> None:
    pos = position(entry=100.0, max_holding=3)
    decision = pos.on_observation(observation(3, 80.0))
    assert decision.reason is ExitReason.MAX_HOLDING_PERIOD
    assert decision.price == 80.0


def test_final_target_exit_at_target_level() -> None:
    pos = position(entry=100.0)
    assert pos.on_observation(observation(1, 135.0)) is None
    decision = pos.on_observation(observation(2, 185.0))
    assert decision.reason is ExitReason.TARGET
    assert decision.price == 180.0


def test_trailing_disabled_keeps_initial_stop() -> None:
    pos = position(entry=100.0, trailing=False)
    assert pos.on_observation(observation(1, 135.0)) is None
    assert pos.state is PositionState.ACTIVE
    assert pos.on_observation(observation(2, 115.0)) is None
    decision = pos.on_observation(observation(2, 181.0))
    assert decision.reason is ExitReason.TARGET


def test_calendar_rule_exits_at_price() -> None:
    pos = position(entry=100.0)
    assert pos.on_observation(observation(1, 105.0), calendar_rule=lambda ts: False) is None
    decision = pos.on_observation(observation(1, 104.0), calendar_rule=lambda ts: True)
    assert decision.reason is ExitReason.CALENDAR_EXIT
    assert decision.price == 104.0


def test_short_position_mirrors_levels() -> None:
    pos = position(side=Side.SHORT, entry=100.0)
    assert (pos.initial_stop, pos.trailing_stop, pos.target1, pos.final_target) == (
        110.0,
        80.0,
        70.0,
        20.0,
    )
    assert pos.on_observation(observation(1, 65.0)) is None
    assert pos.state is PositionState.TRAILING
    decision = pos.on_observation(observation(2, 80.0))
    assert decision.reason is ExitReason.TRAILING_STOP
    assert pos.close(decision.price, decision.timestamp, decision.reason) == pytest.approx(20.0 * 75)


def test_short_stop_on_rally() -> None:
    pos = position(side=Side.SHORT, entry=100.0)
    decision = pos.on_observation(observation(1, 108.0, high=111.0))
    assert decision.reason is ExitReason.STOP_LOSS
    assert decision.price == 110.0


def test_running_extremes_track_observations() -> None:
    pos = position(entry=100.0)
    pos.on_observation(observation(1, 104.0, high=108.0, low=97.0))
    pos.on_observation(observation(2, 103.0))
    assert (pos.running_high, pos.running_low, pos.last_price) == (108.0, 97.0, 103.0)
    assert pos.unrealized_pnl(103.0) == pytest.approx(3.0 * 75)


def test_closed_position_rejects_further_updates() -> None:
    pos = position()
    pos.close(95.0, START, ExitReason.STOP_LOSS, 1)
    assert pos.state is PositionState.CLOSED
    with pytest.raises(ValueError):
        pos.on_observation(observation(2, 100.0))
    with pytest.raises(ValueError):
        pos.close(95.0, START, ExitReason.STOP_LOSS)


def test_to_record() -> None:
    pos = position(entry=100.0)
    exit_time = START + dt.timedelta(days=2)
    pos.close(120.0, exit_time, ExitReason.TRAILING_STOP, 2)
    record = pos.to_record(capital_after=16_500.0)
    assert record.profit == pytest.approx(1_500.0)
    assert record.holding_periods == 2
    assert record.holding_duration == dt.timedelta(days=2)
    assert record.exit_reason is ExitReason.TRAILING_STOP
    assert record.capital_after == 16_500.0


def test_open_position_has_no_record() -> None:
    with pytest.raises(ValueError):
        position().to_record(0.0)


def _pending(**kwargs) -> PendingEntry:
    values = dict(
        trade_id="p1",
        side=Side.LONG,
        contract=option(24550),
        symbol="NIFTY24JAN1824550CE",
        limit_price=100.0,
        quantity=75,
        risk=10.0,
        final_rr=8.0,
        max_holding_periods=3,
        signal_kind=SignalKind.BREAKOUT,
    )
    values.update(kwargs)
    return PendingEntry(**values)


def test_confirm_uses_fill_price_for_levels() -> None:
    pending = _pending()
    pos = pending.confirm(98.0, START, period_index=4, quantity=50)
    assert pending.state is PositionState.ACTIVE
    assert pos.entry_price == 98.0
    assert pos.initial_stop == 88.0
    assert pos.quantity == 50
    assert pos.entry_period_index == 4
    assert pos.signal_kind is SignalKind.BREAKOUT
    with pytest.raises(ValueError):
        pending.confirm(98.0, START, period_index=4)


def test_abandoned_entry_cannot_fill() -> None:
    pending = _pending()
    pending.abandon("timeout")
    assert pending.state is PositionState.CLOSED
    assert pending.abandon_reason == "timeout"
    with pytest.raises(ValueError):
        pending.confirm(100.0, START, period_index=0)


def test_confirm_rejects_missing_fill_price() -> None:
    with pytest.raises(ValueError):
        _pending().confirm(0.0, START, period_index=0)

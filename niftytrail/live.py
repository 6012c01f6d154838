"""
niftytrail.live
===============

Live execution against a brokerage.  The broker itself is outside this
package; anything implementing :class:`BrokerGateway` (a thin adapter over
the vendor SDK, or a fake in tests) can be plugged in.

:class:`LiveTrader` runs two periodic tasks on a
:class:`~niftytrail.clock.Scheduler`:

* ``signals`` rebuilds intraday bars from the broker's history, computes
  indicators and signals, and enters a trade for any new signal on the latest
  bar;
* ``monitor`` quotes every open position, runs it through the position state
  machine and places exit orders.  Positions are monitored concurrently,
  each under its own lock, and a failure on one never touches the others.

Every broker request is bounded by ``broker_timeout_sec``; a request that
hangs fails like any other and is retried on a later tick.  Entries are only
recorded as positions once the broker reports the order complete, at the
average fill price.  Exit orders that keep failing are retried on later
ticks and escalated after ``max_exit_retries`` attempts.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import enum
import json
import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Sequence, Set, Tuple, TypeVar

from niftytrail.aggregator import aggregate_ticks
from niftytrail.book import PositionBook, lots_for_capital
from niftytrail.clock import Clock, Scheduler, SessionCalendar, WallClock
from niftytrail.config import Granularity, StrategyConfig
from niftytrail.errors import (
    CapitalError,
    ContractLookupError,
    DataError,
    ExecutionError,
    MonitoringError,
)
from niftytrail.indicators import annotate
from niftytrail.models import (
    AttemptAction,
    AttemptOutcome,
    Bar,
    Contract,
    ExitReason,
    OptionKind,
    PriceObservation,
    Side,
    Signal,
    Tick,
    TradeRecord,
)
from niftytrail.position import PendingEntry, Position
from niftytrail.selector import ContractSelector, target_strike
from niftytrail.signals import generate_signals

__all__ = [
    "OrderSide",
    "OrderState",
    "Quote",
    "OrderStatus",
    "Instrument",
    "BrokerGateway",
    "JsonlTradeSink",
    "LiveTrader",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrderSide(str, enum.Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderState(str, enum.Enum):
    OPEN = "open"
    COMPLETE = "complete"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Quote:
    symbol: str
    last_price: float
    timestamp: Optional[dt.datetime] = None


@dataclass(frozen=True)
class OrderStatus:
    order_id: str
    state: OrderState
    filled_quantity: int = 0
    average_price: Optional[float] = None
    message: str = ""


@dataclass(frozen=True)
class Instrument:
    """One tradable option listed by the exchange."""
    symbol: str
    name: str
    strike: float
    option_kind: OptionKind
    expiry: dt.date


class BrokerGateway(Protocol):
    """Operations the live loop needs from a brokerage."""

    async def get_quote(self, symbols: Sequence[str]) -> Dict[str, Quote]:
        ...

    async def list_instruments(self, exchange: str) -> List[Instrument]:
        ...

    async def place_order(
        self, symbol: str, quantity: int, price: float, side: OrderSide
    ) -> str:
        """Place a limit order and return the broker's order id."""
        ...

    async def get_order_status(self, order_id: str) -> OrderStatus:
        ...

    async def get_historical_bars(
        self,
        instrument: str,
        granularity: Granularity,
        start: dt.datetime,
        end: dt.datetime,
    ) -> List[Tick]:
        ...


def _json_default(value: Any) -> Any:
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    raise TypeError(f"Cannot serialise {type(value).__name__}")


class JsonlTradeSink:
    """Append each closed trade to a JSON-lines journal."""

    def __init__(self, path: str) -> None:
        self.path = path

    def __call__(self, record: TradeRecord) -> None:
        line = json.dumps(dataclasses.asdict(record), default=_json_default)
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")


class LiveTrader:
    """Signal generation, order placement and position monitoring."""

    def __init__(
        self,
        config: StrategyConfig,
        broker: BrokerGateway,
        clock: Optional[Clock] = None,
        calendar: Optional[SessionCalendar] = None,
        book: Optional[PositionBook] = None,
    ) -> None:
        self.config = config
        self.broker = broker
        self.clock = clock or WallClock(config.timezone)
        self.calendar = calendar or SessionCalendar.from_config(config)
        if book is None:
            sink = JsonlTradeSink(config.trade_log_path) if config.trade_log_path else None
            book = PositionBook(
                initial_capital=config.initial_capital,
                max_positions=config.max_positions,
                max_daily_loss=config.max_daily_loss,
                max_daily_trades=config.max_daily_trades,
                trade_sink=sink,
            )
        self.book = book
        self.selector = ContractSelector(config.strike_step, config.underlying)
        self.max_holding = config.max_holding_periods(Granularity.INTRADAY)
        self.debug = config.debug_mode
        self.trading_active = False
        self.bars: List[Bar] = []
        self.escalations: List[str] = []
        self._seen: Set[Tuple[dt.datetime, str, str]] = set()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._exit_failures: Dict[str, int] = defaultdict(int)
        self._entries = 0
        self._dry_orders = 0
        self._stop = asyncio.Event()
        self.scheduler: Optional[Scheduler] = None

    def _log(self, msg: str) -> None:
        if self.debug:
            logger.info(msg)
        else:
            logger.debug(msg)

    def _period_index(self, when: dt.datetime) -> int:
        return self.calendar.period_index(when, Granularity.INTRADAY)

    # ------------------------------------------------------------------
    # Broker calls

    async def _call(self, what: str, awaitable: Awaitable[T]) -> T:
        """Await one broker request, giving up after ``broker_timeout_sec``."""
        timeout = self.config.broker_timeout_sec
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"{what} timed out after {timeout:g}s") from exc

    async def _quote(self, symbol: str) -> float:
        quotes = await self._call(f"Quote for {symbol}", self.broker.get_quote([symbol]))
        quote = quotes.get(symbol)
        if quote is None or not quote.last_price or not math.isfinite(quote.last_price):
            raise LookupError(f"No last price for {symbol}")
        return float(quote.last_price)

    async def _place(self, symbol: str, quantity: int, price: float, side: OrderSide) -> str:
        if self.config.dry_run:
            self._dry_orders += 1
            logger.info("[dry run] %s %s x %d @ %.2f", side.value, symbol, quantity, price)
            return f"dry-{self._dry_orders}"
        self._log(f"Placing {side.value} order: {symbol} @ {price:.2f} x {quantity}")
        return await self._call(
            f"{side.value} order for {symbol}",
            self.broker.place_order(symbol, quantity, price, side),
        )

    async def _await_fill(self, order_id: str, limit: float, quantity: int) -> OrderStatus:
        """Poll ``order_id`` until complete; raise ExecutionError otherwise."""
        if self.config.dry_run:
            return OrderStatus(order_id, OrderState.COMPLETE, quantity, limit)
        deadline = self.clock.now() + dt.timedelta(seconds=self.config.fill_timeout_sec)
        while True:
            try:
                status = await self._call(
                    f"Status of order {order_id}", self.broker.get_order_status(order_id)
                )
            except Exception as exc:
                raise ExecutionError(f"Status check for order {order_id} failed: {exc}") from exc
            if status.state is OrderState.COMPLETE:
                return status
            if status.state in (OrderState.REJECTED, OrderState.CANCELLED):
                detail = f": {status.message}" if status.message else ""
                raise ExecutionError(f"Order {order_id} {status.state.value}{detail}")
            if self._stop.is_set():
                raise ExecutionError(f"Order {order_id} unconfirmed at shutdown")
            if self.clock.now() >= deadline:
                raise ExecutionError(
                    f"Order {order_id} not filled within {self.config.fill_timeout_sec:g}s"
                )
            await self.clock.wait(self._stop, self.config.fill_poll_sec)

    # ------------------------------------------------------------------
    # Signals and entries

    async def refresh_bars(self) -> List[Bar]:
        """Rebuild annotated intraday bars of the underlying."""
        end = self.clock.now()
        start = end - dt.timedelta(days=self.config.history_days)
        try:
            ticks = await self._call(
                f"History for {self.config.spot_symbol}",
                self.broker.get_historical_bars(
                    self.config.spot_symbol, Granularity.INTRADAY, start, end
                ),
            )
        except Exception as exc:
            raise DataError(f"Bar history unavailable: {exc}") from exc
        bars = aggregate_ticks(
            ticks,
            Granularity.INTRADAY,
            session_start=self.config.session_start,
            bar_minutes=self.config.intraday_bar_minutes,
        )
        self.bars = annotate(
            bars,
            bb_period=self.config.bb_period,
            sma_period=self.config.sma_period,
            atr_period=self.config.atr_period,
        )
        return self.bars

    async def signal_tick(self) -> List[Position]:
        """Enter positions for signals that appeared on the latest bar."""
        now = self.clock.now()
        if not self.trading_active or not self.calendar.is_market_open(now):
            return []
        if self.calendar.is_near_close(now):
            self._log("Inside the pre-close window; no new entries")
            return []
        bars = await self.refresh_bars()
        if len(bars) < 2:
            return []
        latest = len(bars) - 1
        # Only signals on the latest bar are acted on; older keys cannot recur.
        self._seen = {key for key in self._seen if key[0] >= bars[latest].timestamp}
        entered = []
        for signal in generate_signals(
            bars,
            atr_multiple=self.config.breakout_atr_multiple,
            require_ready=self.config.require_ready_indicators,
        ):
            if signal.bar_index != latest:
                continue
            key = (signal.timestamp, signal.kind.value, signal.direction.value)
            if key in self._seen:
                continue
            self._seen.add(key)
            position = await self.enter(signal, bars[latest].close)
            if position is not None:
                entered.append(position)
        return entered

    async def _resolve_contract(self, direction: Side, spot: float, today: dt.date) -> Contract:
        _, kind = target_strike(direction, spot, self.config.strike_step)
        try:
            instruments = await self._call(
                f"Instrument list for {self.config.exchange}",
                self.broker.list_instruments(self.config.exchange),
            )
        except Exception as exc:
            raise ContractLookupError(f"Instrument list unavailable: {exc}") from exc
        listed = [
            Contract(
                strike=inst.strike,
                option_kind=inst.option_kind,
                expiry=inst.expiry,
                symbol=inst.symbol,
            )
            for inst in instruments
            if inst.name == self.config.underlying and inst.option_kind is kind
        ]
        return self.selector.require(direction, spot, listed, today)

    async def enter(self, signal: Signal, spot: float) -> Optional[Position]:
        """Try to open a position for ``signal``; None if the entry is dropped."""
        now = self.clock.now()
        self._entries += 1
        trade_id = (
            f"{now:%Y%m%d%H%M}-{signal.kind.value}-{signal.direction.value}-{self._entries}"
        )

        def reject(reason: str, detail: str = "") -> None:
            self.book.record_attempt(
                now, trade_id, AttemptAction.ENTRY, AttemptOutcome.REJECTED, reason, detail
            )

        if not self.calendar.is_market_open(now):
            reject("market_closed")
            return None
        try:
            contract = await self._resolve_contract(signal.direction, spot, now.date())
            symbol = self.selector.symbol_for(contract)
            try:
                ltp = await self._quote(symbol)
            except Exception as exc:
                raise ContractLookupError(f"No quote for {symbol}: {exc}") from exc
        except ContractLookupError as exc:
            reject("no_contract", str(exc))
            return None

        limit = round(max(ltp - self.config.entry_buffer, self.config.min_limit_price), 2)
        quantity = lots_for_capital(self.book.available_capital()) * self.config.lot_size
        try:
            self.book.reserve(trade_id, limit * quantity, now)
        except CapitalError as exc:
            reject(exc.reason, str(exc))
            return None

        pending = PendingEntry(
            trade_id=trade_id,
            side=Side.LONG,
            contract=contract,
            symbol=symbol,
            limit_price=limit,
            quantity=quantity,
            risk=self.config.risk_per_trade,
            final_rr=self.config.final_rr,
            max_holding_periods=self.max_holding,
            trailing_enabled=self.config.enable_trailing,
            signal_kind=signal.kind,
        )
        try:
            try:
                pending.order_id = await self._place(symbol, quantity, limit, OrderSide.BUY)
            except Exception as exc:
                raise ExecutionError(f"Order placement failed: {exc}") from exc
            status = await self._await_fill(pending.order_id, limit, quantity)
        except ExecutionError as exc:
            pending.abandon(str(exc))
            self.book.release(trade_id, self.clock.now(), "not_filled", detail=str(exc))
            return None

        filled_at = self.clock.now()
        position = pending.confirm(
            status.average_price or limit,
            filled_at,
            period_index=self._period_index(filled_at),
            quantity=status.filled_quantity or quantity,
        )
        self.book.activate(position)
        self._log(
            f"Position entered: {symbol} @ {position.entry_price:.2f}; "
            f"T1 {position.target1:.2f}, final {position.final_target:.2f}, "
            f"stop {position.initial_stop:.2f}"
        )
        return position

    # ------------------------------------------------------------------
    # Monitoring and exits

    async def observe(self, position: Position) -> PriceObservation:
        now = self.clock.now()
        try:
            price = await self._quote(position.symbol)
        except Exception as exc:
            raise MonitoringError(
                f"Quote for {position.symbol} failed: {exc}", trade_id=position.trade_id
            ) from exc
        return PriceObservation(now, self._period_index(now), price)

    async def exit_position(
        self, position: Position, reason: ExitReason, price: float
    ) -> Optional[TradeRecord]:
        """Sell ``position`` at ``price``; None if the exit order failed.

        Callers must hold the position's lock.
        """
        now = self.clock.now()
        limit = round(max(price, self.config.min_limit_price), 2)
        try:
            await self._place(position.symbol, position.quantity, limit, OrderSide.SELL)
        except Exception as exc:
            self._exit_failures[position.trade_id] += 1
            failures = self._exit_failures[position.trade_id]
            self.book.record_attempt(
                now,
                position.trade_id,
                AttemptAction.EXIT,
                AttemptOutcome.FAILED,
                reason.value,
                f"attempt {failures}: {exc}",
            )
            if failures >= self.config.max_exit_retries and position.trade_id not in self.escalations:
                self.escalations.append(position.trade_id)
                logger.critical(
                    "Exit for %s failed %d times; position left open, needs manual action",
                    position.trade_id,
                    failures,
                )
            return None
        record = self.book.close(position.trade_id, limit, now, reason, self._period_index(now))
        self._exit_failures.pop(position.trade_id, None)
        self._locks.pop(position.trade_id, None)
        return record

    async def _monitor_one(self, position: Position) -> Optional[TradeRecord]:
        if not position.is_open():
            return None
        lock = self._locks[position.trade_id]
        if lock.locked():
            self._log(f"{position.trade_id}: previous check still running; skipped")
            return None
        async with lock:
            if not position.is_open():
                return None
            try:
                obs = await self.observe(position)
            except MonitoringError as exc:
                logger.warning("%s; retrying next tick", exc)
                return None
            self._log(
                f"Monitoring {position.symbol}: current {obs.price:.2f}, "
                f"entry {position.entry_price:.2f}, state {position.state.value}"
            )
            decision = position.on_observation(obs, self.calendar.calendar_exit_due)
            if decision is None:
                return None
            # Sell at the market rather than at the level that was crossed.
            return await self.exit_position(position, decision.reason, obs.price)

    async def monitor_tick(self) -> List[TradeRecord]:
        """Check every open position once, then apply the session-wide exits."""
        closed: List[TradeRecord] = []
        positions = self.book.open_positions()
        results = await asyncio.gather(
            *(self._monitor_one(p) for p in positions), return_exceptions=True
        )
        for position, result in zip(positions, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Monitoring %s failed", position.trade_id, exc_info=result
                )
            elif result is not None:
                closed.append(result)

        now = self.clock.now()
        if self.book.daily_loss_breached():
            logger.warning("Daily loss limit (%.2f) reached; flattening", self.config.max_daily_loss)
            closed.extend(await self.flatten(ExitReason.DAILY_LOSS_LIMIT))
        elif self.config.flatten_at_close and self.calendar.is_near_close(now):
            closed.extend(await self.flatten(ExitReason.SESSION_CLOSE))
        self._log(f"Status: {self.status()}")
        return closed

    async def flatten(self, reason: ExitReason) -> List[TradeRecord]:
        """Exit every open position, falling back to the last seen price."""
        closed: List[TradeRecord] = []
        for position in self.book.open_positions():
            async with self._locks[position.trade_id]:
                if not position.is_open():
                    continue
                try:
                    price = (await self.observe(position)).price
                except MonitoringError as exc:
                    if position.last_price is None:
                        logger.error("Cannot exit %s: %s", position.trade_id, exc)
                        continue
                    price = position.last_price
                record = await self.exit_position(position, reason, price)
                if record is not None:
                    closed.append(record)
        return closed

    def status(self) -> Dict[str, Any]:
        """Snapshot of capital, daily counters and open positions."""
        positions = []
        for p in self.book.open_positions():
            positions.append(
                {
                    "trade_id": p.trade_id,
                    "symbol": p.symbol,
                    "state": p.state.value,
                    "entry_price": p.entry_price,
                    "current_price": p.last_price,
                    "quantity": p.quantity,
                    "unrealized_pnl": p.unrealized_pnl(p.last_price) if p.last_price else 0.0,
                }
            )
        return {
            "capital": self.book.capital,
            "open_positions": len(positions),
            "daily_trades": self.book.daily_trades,
            "daily_pnl": self.book.daily_pnl,
            "positions": positions,
        }

    # ------------------------------------------------------------------
    # Lifecycle

    def request_stop(self) -> None:
        self.trading_active = False
        self._stop.set()

    async def shutdown(self) -> List[TradeRecord]:
        """Stop trading and close everything still open, within the timeout."""
        self.request_stop()
        try:
            closed = await asyncio.wait_for(
                self.flatten(ExitReason.EMERGENCY_EXIT),
                timeout=self.config.shutdown_timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.critical(
                "Shutdown timed out with %d position(s) still open", self.book.open_count()
            )
            return []
        remaining = self.book.open_count()
        if remaining:
            logger.critical("Shutdown left %d position(s) open", remaining)
        return closed

    async def run(self, until: Optional[dt.datetime] = None) -> None:
        """Trade until :meth:`request_stop` is called or ``until`` passes."""
        self.trading_active = True
        scheduler = self.scheduler = Scheduler(self.clock)
        scheduler.add("signals", self.config.signal_interval_sec, self.signal_tick)
        scheduler.add("monitor", self.config.monitor_interval_sec, self.monitor_tick)
        logger.info(
            "Live trading started (capital %.2f, dry run %s)",
            self.book.capital,
            self.config.dry_run,
        )
        try:
            await scheduler.run(self._stop, until)
        finally:
            await self.shutdown()
            logger.info("Live trading stopped; realised PnL %.2f", self.book.realised_pnl())

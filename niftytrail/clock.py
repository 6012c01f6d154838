"""
niftytrail.clock
================

Time for the two execution modes.

* :class:`WallClock` reads the real time in the exchange time zone and sleeps
  for real; the live loop uses it.
* :class:`VirtualClock` only moves when told to; tests and dry runs use it so
  a day of polling finishes instantly and deterministically.

:class:`SessionCalendar` answers the market-hours questions the strategy asks
(is the market open, is this the last trading day of the week, which period
does a timestamp fall in) using numpy's business-day calendar, so exchange
holidays are honoured.  :class:`Scheduler` runs periodic tasks against any
clock.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Set
from zoneinfo import ZoneInfo

import numpy as np

from niftytrail.config import Granularity, StrategyConfig

__all__ = [
    "Clock",
    "WallClock",
    "VirtualClock",
    "SessionCalendar",
    "PeriodicTask",
    "Scheduler",
]

logger = logging.getLogger(__name__)

# Day zero for trading-day ordinals; any Monday far enough in the past works.
_EPOCH = np.datetime64("2000-01-03", "D")


class Clock(Protocol):
    def now(self) -> dt.datetime:
        ...

    async def wait(self, stop: asyncio.Event, seconds: float) -> None:
        """Sleep ``seconds`` or until ``stop`` is set, whichever is first."""
        ...


class WallClock:
    def __init__(self, tz: str = "Asia/Kolkata") -> None:
        self.tz = ZoneInfo(tz)

    def now(self) -> dt.datetime:
        return dt.datetime.now(self.tz)

    async def wait(self, stop: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(seconds, 0.0))
        except asyncio.TimeoutError:
            pass


class VirtualClock:
    """Manually advanced clock; ``wait`` jumps straight to the deadline."""

    def __init__(self, start: dt.datetime) -> None:
        self._now = start

    def now(self) -> dt.datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += dt.timedelta(seconds=seconds)

    def set(self, when: dt.datetime) -> None:
        if when < self._now:
            raise ValueError("virtual time cannot go backwards")
        self._now = when

    async def wait(self, stop: asyncio.Event, seconds: float) -> None:
        self.advance(max(seconds, 0.0))
        # Let other coroutines run, as a real sleep would.
        await asyncio.sleep(0)


class SessionCalendar:
    """Exchange session hours and trading days."""

    def __init__(
        self,
        session_start: dt.time = dt.time(9, 15),
        session_end: dt.time = dt.time(15, 30),
        pre_close_minutes: int = 15,
        holidays: Sequence[dt.date] = (),
        bar_minutes: int = 15,
    ) -> None:
        self.session_start = session_start
        self.session_end = session_end
        self.pre_close_minutes = pre_close_minutes
        self.bar_minutes = bar_minutes
        self._holidays = np.array(sorted(holidays), dtype="datetime64[D]")

    @classmethod
    def from_config(cls, config: StrategyConfig) -> "SessionCalendar":
        return cls(
            session_start=config.session_start,
            session_end=config.session_end,
            pre_close_minutes=config.pre_close_minutes,
            holidays=config.holidays,
            bar_minutes=config.intraday_bar_minutes,
        )

    def is_trading_day(self, day: dt.date) -> bool:
        return bool(np.is_busday(np.datetime64(day, "D"), holidays=self._holidays))

    def trading_day_index(self, day: dt.date) -> int:
        """Number of trading days between a fixed epoch and ``day``."""
        return int(np.busday_count(_EPOCH, np.datetime64(day, "D"), holidays=self._holidays))

    def is_last_trading_day_of_week(self, day: dt.date) -> bool:
        if not self.is_trading_day(day):
            return False
        nxt = np.busday_offset(np.datetime64(day, "D"), 1, roll="forward", holidays=self._holidays)
        next_day = nxt.item()
        return next_day.isocalendar()[:2] != day.isocalendar()[:2]

    def _minutes(self, t: dt.time) -> int:
        return t.hour * 60 + t.minute

    def minutes_to_close(self, ts: dt.datetime) -> float:
        now = ts.hour * 60 + ts.minute + ts.second / 60.0
        return self._minutes(self.session_end) - now

    def is_market_open(self, ts: dt.datetime) -> bool:
        if not self.is_trading_day(ts.date()):
            return False
        return self.session_start <= ts.time() < self.session_end

    def is_near_close(self, ts: dt.datetime, minutes_before: Optional[int] = None) -> bool:
        window = self.pre_close_minutes if minutes_before is None else minutes_before
        return self.minutes_to_close(ts) <= window

    def calendar_exit_due(self, ts: dt.datetime) -> bool:
        """True inside the pre-close window of the week's last trading day."""
        return self.is_last_trading_day_of_week(ts.date()) and self.is_near_close(ts)

    def slots_per_session(self) -> int:
        length = self._minutes(self.session_end) - self._minutes(self.session_start)
        return -(-length // self.bar_minutes)

    def period_index(self, ts: dt.datetime, granularity: Granularity) -> int:
        """Monotonic bar counter used to measure holding periods."""
        day_index = self.trading_day_index(ts.date())
        if granularity is Granularity.DAILY:
            return day_index
        slots = self.slots_per_session()
        elapsed = ts.hour * 60 + ts.minute - self._minutes(self.session_start)
        slot = min(max(elapsed // self.bar_minutes, 0), slots - 1)
        return day_index * slots + slot


@dataclass
class PeriodicTask:
    name: str
    interval: float
    func: Callable[[], Awaitable[None]]
    next_run: Optional[dt.datetime] = None
    runs: int = 0
    failures: int = 0


@dataclass
class Scheduler:
    """Run periodic coroutines on a clock until stopped.

    Each due run is started as its own asyncio task, so a slow run of one
    task (a long fill poll, a hung broker call) never delays the others.
    Runs of the same task may overlap; callers guard shared state themselves.
    """
    clock: Clock
    tasks: List[PeriodicTask] = field(default_factory=list)

    def add(self, name: str, interval: float, func: Callable[[], Awaitable[None]]) -> PeriodicTask:
        if interval <= 0:
            raise ValueError("interval must be positive")
        task = PeriodicTask(name=name, interval=interval, func=func)
        self.tasks.append(task)
        return task

    async def _invoke(self, task: PeriodicTask) -> None:
        try:
            await task.func()
        except asyncio.CancelledError:
            raise
        except Exception:
            # Logged and counted; the next run is scheduled regardless.
            task.failures += 1
            logger.exception("Scheduled task %s failed", task.name)
        finally:
            task.runs += 1

    async def run(
        self,
        stop: Optional[asyncio.Event] = None,
        until: Optional[dt.datetime] = None,
    ) -> None:
        """Run tasks until ``stop`` is set or the clock passes ``until``.

        Runs still in flight when the loop ends are awaited before returning.
        """
        if not self.tasks:
            return
        stop = stop or asyncio.Event()
        start = self.clock.now()
        for task in self.tasks:
            task.next_run = start
        in_flight: Set[asyncio.Task] = set()
        try:
            while not stop.is_set():
                task = min(self.tasks, key=lambda t: t.next_run)
                if until is not None and task.next_run > until:
                    break
                delay = (task.next_run - self.clock.now()).total_seconds()
                if delay > 0:
                    await self.clock.wait(stop, delay)
                    if stop.is_set():
                        break
                job = asyncio.create_task(self._invoke(task), name=task.name)
                in_flight.add(job)
                job.add_done_callback(in_flight.discard)
                # Let the run take its first step at its scheduled time.
                await asyncio.sleep(0)
                step = dt.timedelta(seconds=task.interval)
                task.next_run = max(task.next_run + step, self.clock.now())
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

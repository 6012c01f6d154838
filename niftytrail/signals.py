"""
niftytrail.signals
==================

Scans indicator-annotated bars and emits directional entry signals.

* Band reversal long when the close drops below the lower Bollinger band,
  short when it closes above the upper band.
* Breakout long when the close jumps more than ``atr_multiple`` x ATR above
  the previous close while above a rising SMA; short mirrors it.

A bar can carry one band-reversal and one breakout signal at the same time.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

from niftytrail.models import Bar, Side, Signal, SignalKind

__all__ = ["generate_signals"]

logger = logging.getLogger(__name__)


def _band_reversal(bar: Bar) -> Side | None:
    if bar.close < bar.bb_lower:
        return Side.LONG
    if bar.close > bar.bb_upper:
        return Side.SHORT
    return None


def _breakout(bar: Bar, prev: Bar, atr_multiple: float) -> Side | None:
    threshold = atr_multiple * bar.atr
    if bar.close > prev.close + threshold and bar.close > bar.sma and bar.sma > prev.sma:
        return Side.LONG
    if bar.close < prev.close - threshold and bar.close < bar.sma and bar.sma < prev.sma:
        return Side.SHORT
    return None


def generate_signals(
    bars: Sequence[Bar],
    atr_multiple: float = 0.3,
    require_ready: bool = True,
) -> List[Signal]:
    """Return every signal in ``bars``, ordered by bar then kind.

    With ``require_ready`` a rule is only evaluated once the indicators it
    reads are defined; turning it off compares the startup placeholders as
    well, which reproduces the historical research output.
    """
    signals: List[Signal] = []
    for i in range(1, len(bars)):
        bar = bars[i]
        prev = bars[i - 1]
        if bar.bb_ready or not require_ready:
            side = _band_reversal(bar)
            if side is not None:
                signals.append(Signal(i, bar.timestamp, side, SignalKind.BAND_REVERSAL))
        # Only the current bar's indicators gate the rule; prev.sma may still
        # be the placeholder on the first bar with a defined SMA.
        if (bar.sma_ready and bar.atr_ready) or not require_ready:
            side = _breakout(bar, prev, atr_multiple)
            if side is not None:
                signals.append(Signal(i, bar.timestamp, side, SignalKind.BREAKOUT))
    logger.debug("generate_signals: %d bars -> %d signals", len(bars), len(signals))
    return signals

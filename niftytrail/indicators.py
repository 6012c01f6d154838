"""
niftytrail.indicators
=====================

This module defines the helper functions for computing the technical
indicators used by the signal generator, plus :func:`annotate` which attaches
them to a bar series.

Indicators provided:

* :func:`sma` - Simple moving average of closes.
* :func:`bollinger_bands` - Bollinger Bands (population standard deviation).
* :func:`true_range` / :func:`average_true_range` - Wilder's range measures.
* :func:`nearest_strike` - Round a price to the nearest strike step.

Every rolling value is the plain mean (or deviation) of its own trailing
window rather than a running sum, so values are reproducible bar by bar.
"""

from __future__ import annotations

import dataclasses
import math
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
from numpy.lib.stride_tricks import sliding_window_view

from niftytrail.models import Bar

__all__ = [
    "sma",
    "bollinger_bands",
    "true_range",
    "average_true_range",
    "forward_fill",
    "annotate",
    "nearest_strike",
    "PLACEHOLDER",
]

# Value written into indicator fields before the first full window.
PLACEHOLDER = 0.0


def _windows(values: np.ndarray, window: int) -> np.ndarray:
    # Views of shape (n - window + 1, window); empty when history is short.
    if window <= 0:
        raise ValueError("window must be positive")
    if len(values) < window:
        return np.empty((0, window))
    return sliding_window_view(values, window)


def _pad(result: np.ndarray, n: int) -> np.ndarray:
    # Left-pad with NaN so output index i lines up with input index i.
    out = np.full(n, np.nan)
    if len(result):
        out[n - len(result):] = result
    return out


def sma(values: Sequence[float], period: int) -> np.ndarray:
    """Return the simple moving average of ``values``.

    Parameters
    ----------
    values : sequence of float
        Closing prices, oldest first.
    period : int
        Lookback period.

    Returns
    -------
    numpy.ndarray
        Mean of the trailing ``period`` values; NaN while ``i + 1 < period``.
    """
    arr = np.asarray(values, dtype=float)
    return _pad(_windows(arr, period).mean(axis=1), len(arr))


def bollinger_bands(
    values: Sequence[float], window: int = 10, num_std: float = 2.0
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Calculate Bollinger Bands for a price series.

    The bands sit ``num_std`` population standard deviations above and below
    the trailing mean of the same window.

    Parameters
    ----------
    values : sequence of float
        Input series of prices.
    window : int, optional
        Lookback window length for mean and standard deviation, default 10.
    num_std : float, optional
        Number of standard deviations for the bands, default 2.0.

    Returns
    -------
    Tuple[numpy.ndarray, numpy.ndarray, numpy.ndarray]
        Middle, upper and lower bands, NaN before the first full window.
    """
    arr = np.asarray(values, dtype=float)
    windows = _windows(arr, window)
    mean = windows.mean(axis=1)
    # ddof=0: the bands use the population deviation of the window.
    std = windows.std(axis=1, ddof=0)
    n = len(arr)
    return (
        _pad(mean, n),
        _pad(mean + num_std * std, n),
        _pad(mean - num_std * std, n),
    )


def true_range(
    high: Sequence[float], low: Sequence[float], close: Sequence[float]
) -> np.ndarray:
    """True range per bar; undefined (NaN) for the first bar."""
    high = np.asarray(high, dtype=float)
    low = np.asarray(low, dtype=float)
    close = np.asarray(close, dtype=float)
    out = np.full(len(close), np.nan)
    if len(close) < 2:
        return out
    prev_close = close[:-1]
    out[1:] = np.maximum.reduce(
        [
            high[1:] - low[1:],
            np.abs(high[1:] - prev_close),
            np.abs(low[1:] - prev_close),
        ]
    )
    return out


def average_true_range(
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    period: int = 10,
) -> np.ndarray:
    """Mean true range over a trailing window.

    The first bar has no true range, so the first defined value is at index
    ``period``.
    """
    tr = true_range(high, low, close)
    # A window touching index 0 contains NaN and its mean stays NaN.
    return _pad(_windows(tr, period).mean(axis=1), len(tr))


def forward_fill(values: np.ndarray, placeholder: float = PLACEHOLDER) -> Tuple[np.ndarray, np.ndarray]:
    """Carry the last defined value forward.

    Returns the filled array and a boolean mask that is True wherever a real
    value (computed or carried) exists.
    """
    filled = pd.Series(values, dtype=float).ffill()
    ready = filled.notna().to_numpy()
    return filled.fillna(placeholder).to_numpy(), ready


def annotate(
    bars: Sequence[Bar],
    bb_period: int = 10,
    sma_period: int = 20,
    atr_period: int = 10,
) -> List[Bar]:
    """Return copies of ``bars`` with SMA, Bollinger and ATR attached."""
    if not bars:
        return []
    close = [b.close for b in bars]
    high = [b.high for b in bars]
    low = [b.low for b in bars]
    sma_vals, sma_ready = forward_fill(sma(close, sma_period))
    mid, upper, lower = bollinger_bands(close, window=bb_period, num_std=2.0)
    mid, bb_ready = forward_fill(mid)
    upper, _ = forward_fill(upper)
    lower, _ = forward_fill(lower)
    atr_vals, atr_ready = forward_fill(average_true_range(high, low, close, atr_period))
    return [
        dataclasses.replace(
            bar,
            sma=float(sma_vals[i]),
            bb_mid=float(mid[i]),
            bb_upper=float(upper[i]),
            bb_lower=float(lower[i]),
            atr=float(atr_vals[i]),
            sma_ready=bool(sma_ready[i]),
            bb_ready=bool(bb_ready[i]),
            atr_ready=bool(atr_ready[i]),
        )
        for i, bar in enumerate(bars)
    ]


def nearest_strike(price: float, step: int = 50) -> int:
    """Round a price to the nearest strike increment.

    Indian index options typically trade in 50-point increments.  Halfway
    prices round up, so 24525 maps to 24550.

    Parameters
    ----------
    price : float
        Underlying price to round.
    step : int, optional
        Strike step size, default 50.

    Returns
    -------
    int
        Nearest strike price.
    """
    if not math.isfinite(price):
        raise ValueError(f"Cannot round non-finite price {price!r}")
    return int(math.floor(price / step + 0.5) * step)

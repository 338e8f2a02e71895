"""Geometry helpers: pivots and least-squares fits over bar series."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np


@dataclass(frozen=True)
class Line:
    """Least-squares line over bar indices with its goodness of fit."""

    slope: float
    intercept: float
    r_squared: float

    def value_at(self, x: float) -> float:
        return self.slope * x + self.intercept


def find_pivots(
    highs: Sequence[float],
    lows: Sequence[float],
    *,
    window: int,
) -> tuple[list[tuple[int, float]], list[tuple[int, float]]]:
    """Return ``(pivot_highs, pivot_lows)`` as ``(index, price)`` pairs.

    A pivot high is ``>=`` every high in the ``window`` bars to its left and
    strictly ``>`` every high in the ``window`` bars to its right, so a run of
    equal highs yields only its latest bar. Pivot lows mirror the rule.
    Fewer than ``2 * window + 1`` bars yields no pivots.
    """

    n = len(highs)
    if window <= 0 or n < 2 * window + 1:
        return [], []

    pivots_high: list[tuple[int, float]] = []
    pivots_low: list[tuple[int, float]] = []
    for idx in range(window, n - window):
        high = highs[idx]
        low = lows[idx]
        if high >= max(highs[idx - window : idx]) and high > max(highs[idx + 1 : idx + 1 + window]):
            pivots_high.append((idx, float(high)))
        if low <= min(lows[idx - window : idx]) and low < min(lows[idx + 1 : idx + 1 + window]):
            pivots_low.append((idx, float(low)))
    return pivots_high, pivots_low


def fit_line(values: Sequence[float]) -> Line | None:
    """Fit ``values`` against ``0..n-1`` with OLS.

    Returns ``None`` with fewer than two points or when the series has zero
    variance, where R² is undefined.
    """

    if len(values) < 2:
        return None
    y = np.asarray(values, dtype=float)
    x = np.arange(len(y), dtype=float)
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    if np.isclose(ss_tot, 0.0):
        return None
    slope, intercept = np.polyfit(x, y, 1)
    residuals = y - (slope * x + intercept)
    ss_res = float(np.sum(residuals**2))
    return Line(slope=float(slope), intercept=float(intercept), r_squared=1.0 - ss_res / ss_tot)


def slope_of(values: Sequence[float]) -> float:
    """OLS slope of ``values`` per index step; ``0.0`` for flat or short input."""

    if len(values) < 2:
        return 0.0
    y = np.asarray(values, dtype=float)
    if np.isclose(float(np.ptp(y)), 0.0):
        return 0.0
    slope, _ = np.polyfit(np.arange(len(y), dtype=float), y, 1)
    return float(slope)

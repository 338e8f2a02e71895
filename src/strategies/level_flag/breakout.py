"""Breakout and failure checks for an active flag pattern on one bar."""

from __future__ import annotations

from dataclasses import dataclass

from core.domain.models.Bar import Bar
from core.domain.models.Pattern import Pattern

from .config import PatternLifecycleConfig


@dataclass(frozen=True)
class BreakoutCheck:
    price_beyond_buffer: bool
    volume_confirmed: bool
    close_beyond_level: bool
    buffer: float
    volume_threshold: float

    @property
    def confirmed(self) -> bool:
        return self.price_beyond_buffer and self.volume_confirmed and self.close_beyond_level

    def as_metrics(self) -> dict[str, float | bool]:
        return {
            "price_beyond_buffer": self.price_beyond_buffer,
            "volume_confirmed": self.volume_confirmed,
            "close_beyond_level": self.close_beyond_level,
            "buffer": self.buffer,
            "volume_threshold": self.volume_threshold,
        }


@dataclass(frozen=True)
class FailureCheck:
    failed: bool
    reason: str | None = None
    price: float | None = None


def evaluate_breakout(
    pattern: Pattern,
    bar: Bar,
    config: PatternLifecycleConfig,
    *,
    current_price: float | None = None,
) -> BreakoutCheck:
    """Evaluate the three breakout conditions for ``pattern`` on ``bar``.

    ``current_price`` defaults to the bar close; a live quote can be passed
    instead, while the bar-close condition always uses the close.
    """

    price = bar.close if current_price is None else current_price
    level = pattern.breakout_level
    buffer = level * config.noise_pct
    volume_threshold = pattern.pole_avg_volume * config.volume_fraction

    if pattern.is_bullish:
        price_ok = price > level + buffer
        close_ok = bar.close > level
    else:
        price_ok = price < level - buffer
        close_ok = bar.close < level

    return BreakoutCheck(
        price_beyond_buffer=price_ok,
        volume_confirmed=bar.volume >= volume_threshold,
        close_beyond_level=close_ok,
        buffer=buffer,
        volume_threshold=volume_threshold,
    )


def evaluate_failure(pattern: Pattern, bar: Bar) -> FailureCheck:
    """A close beyond the flag boundary opposite the breakout side fails the pattern."""

    if pattern.is_bullish and bar.close < pattern.flag_low:
        return FailureCheck(True, "close_below_flag_low", bar.close)
    if not pattern.is_bullish and bar.close > pattern.flag_high:
        return FailureCheck(True, "close_above_flag_high", bar.close)
    return FailureCheck(False)

"""Timeframe parsing shared by adapters and the pattern lifecycle."""

from __future__ import annotations

import math
import re

__all__ = ["timeframe_minutes", "to_binance_interval", "bars_to_live"]

_TF_RE = re.compile(r"^\s*(\d+)\s*(m|min|h|hour|d|day)s?\s*$", re.IGNORECASE)
_UNIT_MINUTES = {"m": 1, "min": 1, "h": 60, "hour": 60, "d": 1440, "day": 1440}
_BINANCE_INTERVALS = {
    1: "1m", 3: "3m", 5: "5m", 15: "15m", 30: "30m",
    60: "1h", 120: "2h", 240: "4h", 360: "6h", 480: "8h", 720: "12h",
    1440: "1d",
}


def timeframe_minutes(timeframe: str) -> int:
    """Return the length of ``timeframe`` in minutes.

    Accepts exchange style (``5m``, ``1h``, ``1d``) and long style
    (``5Min``, ``1Hour``).

    >>> timeframe_minutes("5Min")
    5
    """

    match = _TF_RE.match(timeframe or "")
    if not match:
        raise ValueError(f"Unsupported timeframe: {timeframe!r}")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"Unsupported timeframe: {timeframe!r}")
    return amount * _UNIT_MINUTES[match.group(2).lower()]


def to_binance_interval(timeframe: str) -> str:
    minutes = timeframe_minutes(timeframe)
    try:
        return _BINANCE_INTERVALS[minutes]
    except KeyError as err:
        raise ValueError(f"Binance has no {timeframe!r} interval") from err


def bars_to_live(timeframe: str, ttl_minutes: int) -> int:
    """Return how many bars of ``timeframe`` fit in ``ttl_minutes`` (at least 1)."""

    return max(1, math.ceil(ttl_minutes / timeframe_minutes(timeframe)))

from __future__ import annotations

import re

__all__ = ["normalize_symbol"]


def normalize_symbol(symbol: str) -> str:
    """Return ``symbol`` uppercased without separators (``btc/usdt`` -> ``BTCUSDT``).

    Idempotent; the result is also the partition component used by the stores.
    """

    normalized = re.sub(r"[^A-Z0-9]", "", (symbol or "").strip().upper())
    if not normalized:
        raise ValueError(f"Invalid symbol: {symbol!r}")
    return normalized

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

DAILY_COUNTERS = (
    "patterns_detected_today",
    "signals_generated_today",
    "trades_executed_today",
    "bars_analyzed",
)


@dataclass(slots=True)
class ExecutionState:
    """Per symbol+timeframe processing cursor and daily counters."""

    symbol: str
    timeframe: str
    last_bar_processed: datetime | None = None
    last_execution_time: datetime | None = None
    patterns_detected_today: int = 0
    signals_generated_today: int = 0
    trades_executed_today: int = 0
    bars_analyzed: int = 0
    last_daily_reset: str | None = None
    lock_owner: str | None = None
    lock_expires_at: datetime | None = None
    version: int = 0
    created_at: datetime | None = field(default=None)

    def counters(self) -> dict[str, int]:
        return {name: int(getattr(self, name)) for name in DAILY_COUNTERS}

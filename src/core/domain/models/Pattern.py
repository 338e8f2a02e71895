from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class PatternType(str, Enum):
    BULLISH_FLAG = "bullish_flag"
    BEARISH_FLAG = "bearish_flag"

    @property
    def is_bullish(self) -> bool:
        return self is PatternType.BULLISH_FLAG


class PatternStage(str, Enum):
    FORMING = "FORMING"
    CONSOLIDATING = "CONSOLIDATING"
    CONFIRMED = "CONFIRMED"
    BROKEN_OUT = "BROKEN_OUT"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset({PatternStage.BROKEN_OUT, PatternStage.FAILED, PatternStage.EXPIRED})


class FlagRating(str, Enum):
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    VERY_GOOD = "very_good"
    EXCELLENT = "excellent"

    @property
    def rank(self) -> int:
        return _RATING_ORDER.index(self)

    def at_least(self, other: "FlagRating") -> bool:
        return self.rank >= other.rank


_RATING_ORDER = [
    FlagRating.POOR,
    FlagRating.FAIR,
    FlagRating.GOOD,
    FlagRating.VERY_GOOD,
    FlagRating.EXCELLENT,
]


class PatternEventType(str, Enum):
    PATTERN_DETECTED = "PATTERN_DETECTED"
    BREAKOUT_CONFIRMED = "BREAKOUT_CONFIRMED"
    PATTERN_FAILED = "PATTERN_FAILED"
    PATTERN_EXPIRED = "PATTERN_EXPIRED"


@dataclass(frozen=True, slots=True)
class PatternEvent:
    """Immutable audit record of a pattern lifecycle step."""

    pattern_id: str
    event_type: PatternEventType
    occurred_at: datetime
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.pattern_id}#{self.event_type.value}"


@dataclass(slots=True)
class Pattern:
    id: str
    symbol: str
    timeframe: str
    pattern_type: PatternType
    stage: PatternStage
    confidence: float
    quality_score: float
    rating: FlagRating
    pole_start_time: datetime
    pole_end_time: datetime
    pole_start_price: float
    pole_end_price: float
    pole_length_pct: float
    flag_high: float
    flag_low: float
    flag_slope: float
    flag_start_time: datetime
    breakout_level: float
    pole_avg_volume: float
    flag_avg_volume: float
    expires_at: datetime
    detected_at: datetime
    last_updated: datetime
    volume_ratio: float = 1.0
    confluence_count: int = 0
    flag_end_time: datetime | None = None
    breakout_time: datetime | None = None
    breakout_price: float | None = None
    breakout_volume: float | None = None
    failure_reason: str | None = None
    failure_price: float | None = None
    signal_id: str | None = None
    version: int = 0

    @property
    def is_bullish(self) -> bool:
        return self.pattern_type.is_bullish

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    @property
    def flag_range(self) -> float:
        return self.flag_high - self.flag_low

    def is_active(self, now: datetime) -> bool:
        return not self.is_terminal and self.expires_at > now

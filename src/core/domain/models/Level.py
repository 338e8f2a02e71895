from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class LevelType(str, Enum):
    SUPPORT = "support"
    RESISTANCE = "resistance"
    MA200 = "ma200"
    MA400 = "ma400"
    RESISTANCE_TREND = "resistance_trend"
    SUPPORT_TREND = "support_trend"
    VOLUME_LEVEL = "volume_level"
    CONFLUENCE_ZONE = "confluence_zone"


class LevelRole(str, Enum):
    """How price interacting with a level is classified."""

    SUPPORT = "support"
    RESISTANCE = "resistance"
    NEUTRAL = "neutral"


LEVEL_ROLES: dict[LevelType, LevelRole] = {
    LevelType.SUPPORT: LevelRole.SUPPORT,
    LevelType.SUPPORT_TREND: LevelRole.SUPPORT,
    LevelType.VOLUME_LEVEL: LevelRole.SUPPORT,
    LevelType.CONFLUENCE_ZONE: LevelRole.SUPPORT,
    LevelType.RESISTANCE: LevelRole.RESISTANCE,
    LevelType.RESISTANCE_TREND: LevelRole.RESISTANCE,
    LevelType.MA200: LevelRole.NEUTRAL,
    LevelType.MA400: LevelRole.NEUTRAL,
}

if set(LEVEL_ROLES) != set(LevelType):  # pragma: no cover - import-time guard
    raise RuntimeError(f"LEVEL_ROLES missing {set(LevelType) - set(LEVEL_ROLES)}")


class LevelStrength(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @property
    def weight(self) -> int:
        return _STRENGTH_WEIGHTS[self]

    @classmethod
    def from_touches(cls, touches: int, floor: "LevelStrength | None" = None) -> "LevelStrength":
        if touches >= 5:
            strength = cls.VERY_HIGH
        elif touches >= 3:
            strength = cls.HIGH
        else:
            strength = cls.MEDIUM
        if floor is not None and floor.weight > strength.weight:
            return floor
        return strength


_STRENGTH_WEIGHTS = {
    LevelStrength.LOW: 1,
    LevelStrength.MEDIUM: 2,
    LevelStrength.HIGH: 3,
    LevelStrength.VERY_HIGH: 4,
}


@dataclass(slots=True)
class DetectedLevel:
    """Level candidate produced by detection, before it is persisted."""

    level_type: LevelType
    price: float
    strength: LevelStrength
    confidence: float
    touches: int = 1
    sources: tuple[str, ...] = ()
    price_min: float | None = None
    price_max: float | None = None
    member_count: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Level:
    id: str
    symbol: str
    timeframe: str
    level_type: LevelType
    price: float
    strength: LevelStrength
    confidence: float
    first_detected: datetime
    last_confirmed: datetime
    price_min: float | None = None
    price_max: float | None = None
    touch_count: int = 1
    bounce_count: int = 0
    break_count: int = 0
    member_count: int = 1
    reconfirmation_count: int = 0
    sources: list[str] = field(default_factory=list)
    is_active: bool = True
    invalidated_at: datetime | None = None
    last_touch_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @property
    def role(self) -> LevelRole:
        return LEVEL_ROLES[self.level_type]

    @property
    def has_range(self) -> bool:
        return self.price_min is not None and self.price_max is not None

    def touch_band(self, threshold: float) -> tuple[float, float]:
        """Return the ``(low, high)`` band in which price counts as touching."""
        if self.has_range:
            return float(self.price_min), float(self.price_max)  # type: ignore[arg-type]
        return self.price * (1 - threshold), self.price * (1 + threshold)

    def should_invalidate(self) -> bool:
        return self.break_count / max(self.touch_count, 1) > 0.5 or self.break_count >= 3

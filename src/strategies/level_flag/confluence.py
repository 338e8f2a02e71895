"""Weighting of stored levels that sit near a flag's breakout price."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from core.domain.models.Level import Level

HIGH_CONFIDENCE = 0.8
CONFIDENCE_BOOST = 1.25
MANY_TOUCHES = 3
TOUCH_BONUS = 0.5


@dataclass(frozen=True)
class ConfluenceScore:
    count: int
    weighted_score: float
    quality: str
    level_ids: list[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "ConfluenceScore":
        return cls(count=0, weighted_score=0.0, quality="none")


def _quality(weighted: float) -> str:
    if weighted >= 8:
        return "strong"
    if weighted >= 4:
        return "moderate"
    if weighted > 0:
        return "weak"
    return "none"


def _distance_pct(level: Level, price: float) -> float:
    if level.has_range:
        low, high = float(level.price_min), float(level.price_max)  # type: ignore[arg-type]
        if low <= price <= high:
            return 0.0
        nearest = low if price < low else high
    else:
        nearest = level.price
    if nearest == 0:
        return float("inf")
    return abs(price - nearest) / abs(nearest)


def score_confluence(
    breakout_level: float,
    levels: Iterable[Level],
    *,
    reference_prices: Sequence[float] = (),
    tolerance: float = 0.005,
) -> ConfluenceScore:
    """Count active levels near ``breakout_level`` (or any reference price).

    Each matching level adds its strength weight, boosted for high
    confidence and for a history of touches.
    """

    targets = [breakout_level, *reference_prices]
    count = 0
    weighted = 0.0
    ids: list[str] = []
    for level in levels:
        if not level.is_active:
            continue
        if min(_distance_pct(level, price) for price in targets) > tolerance:
            continue
        weight = float(level.strength.weight)
        if level.confidence > HIGH_CONFIDENCE:
            weight *= CONFIDENCE_BOOST
        if level.touch_count >= MANY_TOUCHES:
            weight += TOUCH_BONUS
        count += 1
        weighted += weight
        ids.append(level.id)
    return ConfluenceScore(count=count, weighted_score=weighted, quality=_quality(weighted), level_ids=ids)

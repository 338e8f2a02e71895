"""Support/resistance level detection over a bar window.

Raw levels come from five independent sources (moving averages, pivots,
volume profile, regression trend lines and touch-counted S/R zones). Raw
levels of the same type are consolidated first; consolidated levels of any
type that coincide are then grouped into confluence zones.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Iterable, Mapping, Sequence

from core.domain.models.Bar import Bar
from core.domain.models.Level import DetectedLevel, LevelStrength, LevelType

from .config import LevelDetectorConfig
from .geometry_utils import find_pivots, fit_line

logger = logging.getLogger("flagbot.levels.detector")

MA_LEVEL_TYPES: dict[int, LevelType] = {200: LevelType.MA200, 400: LevelType.MA400}
REFERENCE_MA_CONFIDENCE = 0.95
LOCAL_MA_CONFIDENCE = 0.85
PIVOT_CONFIDENCE = 0.7
VOLUME_LEVEL_CONFIDENCE = 0.6
MAX_CONFIDENCE = 0.95


def _relative_gap(a: float, b: float) -> float:
    base = abs(a) if a else abs(b)
    if base == 0:
        return 0.0
    return abs(a - b) / base


class LevelDetector:
    def __init__(self, config: LevelDetectorConfig | None = None) -> None:
        self.config = config or LevelDetectorConfig()

    def detect(
        self,
        bars: Sequence[Bar],
        reference_averages: Mapping[int, float] | None = None,
    ) -> list[DetectedLevel]:
        """Return consolidated levels and confluence zones for ``bars``."""

        if not bars:
            return []

        raw: list[DetectedLevel] = []
        raw.extend(self.moving_average_levels(bars, reference_averages))
        raw.extend(self.pivot_levels(bars))
        raw.extend(self.volume_levels(bars))
        raw.extend(self.trend_levels(bars))
        raw.extend(self.zone_levels(bars))

        consolidated = self.consolidate(raw)
        zoned = self.confluence_zones(consolidated)
        logger.debug(
            "levels.detect",
            extra={"bars": len(bars), "raw": len(raw), "consolidated": len(consolidated), "final": len(zoned)},
        )
        return zoned

    # ------------------------------------------------------------------
    # Raw level sources
    def moving_average_levels(
        self,
        bars: Sequence[Bar],
        reference_averages: Mapping[int, float] | None = None,
    ) -> list[DetectedLevel]:
        reference_averages = reference_averages or {}
        closes = [b.close for b in bars]
        levels: list[DetectedLevel] = []
        for period, level_type in MA_LEVEL_TYPES.items():
            value = reference_averages.get(period)
            if value is not None and value > 0:
                levels.append(
                    DetectedLevel(
                        level_type=level_type,
                        price=float(value),
                        strength=LevelStrength.VERY_HIGH,
                        confidence=REFERENCE_MA_CONFIDENCE,
                        sources=(f"reference_sma{period}",),
                        metadata={"period": period},
                    )
                )
            elif len(closes) >= period:
                levels.append(
                    DetectedLevel(
                        level_type=level_type,
                        price=sum(closes[-period:]) / period,
                        strength=LevelStrength.HIGH,
                        confidence=LOCAL_MA_CONFIDENCE,
                        sources=(f"local_sma{period}",),
                        metadata={"period": period},
                    )
                )
        return levels

    def pivot_levels(self, bars: Sequence[Bar]) -> list[DetectedLevel]:
        highs = [b.high for b in bars]
        lows = [b.low for b in bars]
        pivot_highs, pivot_lows = find_pivots(highs, lows, window=self.config.pivot_window)
        levels = [
            DetectedLevel(
                level_type=LevelType.RESISTANCE,
                price=price,
                strength=LevelStrength.MEDIUM,
                confidence=PIVOT_CONFIDENCE,
                sources=("pivot_high",),
                metadata={"index": idx},
            )
            for idx, price in pivot_highs
        ]
        levels.extend(
            DetectedLevel(
                level_type=LevelType.SUPPORT,
                price=price,
                strength=LevelStrength.MEDIUM,
                confidence=PIVOT_CONFIDENCE,
                sources=("pivot_low",),
                metadata={"index": idx},
            )
            for idx, price in pivot_lows
        )
        return levels

    def volume_levels(self, bars: Sequence[Bar]) -> list[DetectedLevel]:
        step = self.config.volume_price_step
        if step <= 0:
            return []
        buckets: dict[float, float] = defaultdict(float)
        for bar in bars:
            bucket = round(round(bar.close / step) * step, 10)
            buckets[bucket] += bar.volume
        ranked = sorted(buckets.items(), key=lambda kv: (-kv[1], kv[0]))
        return [
            DetectedLevel(
                level_type=LevelType.VOLUME_LEVEL,
                price=price,
                strength=LevelStrength.MEDIUM,
                confidence=VOLUME_LEVEL_CONFIDENCE,
                sources=("volume_profile",),
                metadata={"volume": volume},
            )
            for price, volume in ranked[: self.config.volume_top_n]
            if volume > 0
        ]

    def trend_levels(self, bars: Sequence[Bar]) -> list[DetectedLevel]:
        levels: list[DetectedLevel] = []
        for period in self.config.trend_periods:
            if period < 2 or len(bars) < period:
                continue
            window = bars[-period:]
            for level_type, series in (
                (LevelType.RESISTANCE_TREND, [b.high for b in window]),
                (LevelType.SUPPORT_TREND, [b.low for b in window]),
            ):
                line = fit_line(series)
                if line is None or line.r_squared <= self.config.trend_min_r2:
                    continue
                levels.append(
                    DetectedLevel(
                        level_type=level_type,
                        price=line.value_at(period - 1),
                        strength=LevelStrength.HIGH,
                        confidence=min(0.9, line.r_squared),
                        sources=(f"regression_{period}",),
                        metadata={"period": period, "slope": line.slope, "r_squared": line.r_squared},
                    )
                )
        return levels

    def zone_levels(self, bars: Sequence[Bar]) -> list[DetectedLevel]:
        """Group repeated local extremes into touch-counted S/R levels."""

        cfg = self.config
        if len(bars) < cfg.zone_min_bars:
            return []
        w = cfg.zone_window
        highs: list[float] = []
        lows: list[float] = []
        for idx in range(w, len(bars) - w):
            neighbourhood = bars[idx - w : idx + w + 1]
            if bars[idx].high == max(b.high for b in neighbourhood):
                highs.append(bars[idx].high)
            if bars[idx].low == min(b.low for b in neighbourhood):
                lows.append(bars[idx].low)

        levels: list[DetectedLevel] = []
        for level_type, extremes, source in (
            (LevelType.RESISTANCE, highs, "zone_high"),
            (LevelType.SUPPORT, lows, "zone_low"),
        ):
            for group in _group_prices(extremes, cfg.tolerance * 2):
                if len(group) < cfg.zone_min_touches:
                    continue
                levels.append(
                    DetectedLevel(
                        level_type=level_type,
                        price=sum(group) / len(group),
                        strength=LevelStrength.from_touches(len(group)),
                        confidence=min(MAX_CONFIDENCE, 0.5 + 0.1 * len(group)),
                        touches=len(group),
                        sources=(source,),
                    )
                )
        return levels

    # ------------------------------------------------------------------
    # Consolidation
    def consolidate(self, levels: Iterable[DetectedLevel]) -> list[DetectedLevel]:
        """Merge same-type levels within ``tolerance`` of an anchor level."""

        pending = list(levels)
        used = [False] * len(pending)
        merged: list[DetectedLevel] = []
        for i, anchor in enumerate(pending):
            if used[i]:
                continue
            used[i] = True
            group = [anchor]
            for j in range(i + 1, len(pending)):
                other = pending[j]
                if used[j] or other.level_type is not anchor.level_type:
                    continue
                if _relative_gap(anchor.price, other.price) <= self.config.tolerance:
                    used[j] = True
                    group.append(other)
            merged.append(group[0] if len(group) == 1 else _merge_same_type(group))
        return merged

    def confluence_zones(self, levels: Sequence[DetectedLevel]) -> list[DetectedLevel]:
        """Group coinciding levels of any type into ``confluence_zone`` entries.

        Zones come first by descending member count, then by strength;
        levels that coincide with nothing pass through after them.
        """

        used = [False] * len(levels)
        zones: list[DetectedLevel] = []
        singles: list[DetectedLevel] = []
        for i, anchor in enumerate(levels):
            if used[i]:
                continue
            used[i] = True
            group = [anchor]
            for j in range(i + 1, len(levels)):
                if not used[j] and _relative_gap(anchor.price, levels[j].price) <= self.config.confluence_tolerance:
                    used[j] = True
                    group.append(levels[j])
            if len(group) == 1:
                singles.append(anchor)
            else:
                zones.append(_build_zone(group))

        def _rank(level: DetectedLevel) -> tuple[int, int, float]:
            return (-level.member_count, -level.strength.weight, -level.confidence)

        return sorted(zones, key=_rank) + sorted(singles, key=_rank)


def _group_prices(prices: Sequence[float], tolerance: float) -> list[list[float]]:
    groups: list[list[float]] = []
    used = [False] * len(prices)
    for i, anchor in enumerate(prices):
        if used[i]:
            continue
        used[i] = True
        group = [anchor]
        for j in range(i + 1, len(prices)):
            if not used[j] and _relative_gap(anchor, prices[j]) <= tolerance:
                used[j] = True
                group.append(prices[j])
        groups.append(group)
    return groups


def _merge_same_type(group: Sequence[DetectedLevel]) -> DetectedLevel:
    touches = sum(level.touches for level in group)
    price = sum(level.price * level.touches for level in group) / touches
    base_conf = sum(level.confidence * level.touches for level in group) / touches
    confidence = min(MAX_CONFIDENCE, base_conf * (1 + 0.15 * math.log1p(touches - 1)))
    strongest = max(group, key=lambda level: level.strength.weight).strength
    sources = tuple(sorted({src for level in group for src in level.sources}))
    return DetectedLevel(
        level_type=group[0].level_type,
        price=price,
        strength=LevelStrength.from_touches(touches, floor=strongest),
        confidence=confidence,
        touches=touches,
        sources=sources,
        member_count=sum(level.member_count for level in group),
        metadata={"merged": len(group)},
    )


def _build_zone(group: Sequence[DetectedLevel]) -> DetectedLevel:
    weight = sum(level.strength.weight for level in group)
    if weight >= 10:
        strength = LevelStrength.VERY_HIGH
    elif weight >= 6:
        strength = LevelStrength.HIGH
    else:
        strength = LevelStrength.MEDIUM
    n = len(group)
    avg_conf = sum(level.confidence for level in group) / n
    prices = [level.price for level in group]
    return DetectedLevel(
        level_type=LevelType.CONFLUENCE_ZONE,
        price=sum(prices) / n,
        strength=strength,
        confidence=min(MAX_CONFIDENCE, avg_conf * (1 + (n - 1) * 0.15)),
        touches=sum(level.touches for level in group),
        sources=tuple(sorted({src for level in group for src in level.sources})),
        price_min=min(prices),
        price_max=max(prices),
        member_count=n,
        metadata={
            "member_types": sorted({level.level_type.value for level in group}),
            "strength_weight": weight,
        },
    )

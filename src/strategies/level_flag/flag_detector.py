"""Flag formation recognition and validity scoring."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from statistics import fmean, pstdev
from typing import Sequence

from core.domain.models.Bar import Bar
from core.domain.models.Pattern import FlagRating, PatternType

from .config import FlagDetectorConfig
from .geometry_utils import slope_of

logger = logging.getLogger("flagbot.patterns.detector")


class MoveStrength(str, Enum):
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"
    VERY_STRONG = "very_strong"

    @property
    def points(self) -> int:
        return _TIER_ORDER.index(self) + 1

    def upgraded(self) -> "MoveStrength":
        idx = min(_TIER_ORDER.index(self) + 1, len(_TIER_ORDER) - 1)
        return _TIER_ORDER[idx]


_TIER_ORDER = [MoveStrength.WEAK, MoveStrength.MEDIUM, MoveStrength.STRONG, MoveStrength.VERY_STRONG]

MAX_SCORE = 14.0
MAX_CONFIDENCE = 0.95


@dataclass(frozen=True)
class PreMove:
    direction: PatternType
    move_pct: float
    strength: MoveStrength
    volume_ratio: float
    volume_confirmation: bool
    avg_volume: float
    start_time: datetime
    end_time: datetime
    start_price: float
    end_price: float


@dataclass(frozen=True)
class FlagGeometry:
    high: float
    low: float
    midpoint: float
    range_pct: float
    slope: float
    volume_decline: float
    avg_volume: float
    close_cv: float
    bars: int
    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class FlagCandidate:
    pattern_type: PatternType
    pre_move: PreMove
    flag: FlagGeometry
    score: float
    rating: FlagRating
    confidence: float
    breakout_level: float
    score_breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def is_bullish(self) -> bool:
        return self.pattern_type.is_bullish


def rating_for(score: float, max_score: float = MAX_SCORE) -> FlagRating:
    ratio = score / max_score if max_score else 0.0
    if ratio >= 0.8:
        return FlagRating.EXCELLENT
    if ratio >= 0.65:
        return FlagRating.VERY_GOOD
    if ratio >= 0.5:
        return FlagRating.GOOD
    if ratio >= 0.3:
        return FlagRating.FAIR
    return FlagRating.POOR


class FlagDetector:
    """Detect a pole followed by a tight counter-drifting consolidation.

    The flag is the last ``flag_window_bars`` bars; the pole is up to
    ``pole_lookback_bars`` bars right before it and anything older serves as
    the volume baseline.
    """

    def __init__(self, config: FlagDetectorConfig | None = None) -> None:
        self.config = config or FlagDetectorConfig()

    def detect(self, bars: Sequence[Bar]) -> FlagCandidate | None:
        cfg = self.config
        if len(bars) < cfg.min_total_bars:
            return None

        flag_bars = list(bars[-cfg.flag_window_bars :])
        history = list(bars[: -cfg.flag_window_bars])
        pole_bars = history[-cfg.pole_lookback_bars :]
        baseline_bars = history[: -cfg.pole_lookback_bars] if len(history) > cfg.pole_lookback_bars else []

        pre_move = self.analyze_pre_move(pole_bars, baseline_bars)
        if pre_move is None:
            return None

        geometry = self.analyze_flag(flag_bars)
        if geometry is None:
            return None

        if not self._drifts_against(pre_move.direction, geometry.slope):
            logger.debug("flag.reject.slope", extra={"slope": geometry.slope})
            return None
        if geometry.volume_decline < cfg.min_volume_decline:
            logger.debug("flag.reject.volume", extra={"volume_decline": geometry.volume_decline})
            return None

        breakdown = self.score(pre_move, geometry)
        score = sum(breakdown.values())
        buffer = (geometry.high - geometry.low) * cfg.breakout_buffer_fraction
        if pre_move.direction.is_bullish:
            breakout_level = geometry.high + buffer
        else:
            breakout_level = geometry.low - buffer

        return FlagCandidate(
            pattern_type=pre_move.direction,
            pre_move=pre_move,
            flag=geometry,
            score=score,
            rating=rating_for(score),
            confidence=min(MAX_CONFIDENCE, score / MAX_SCORE),
            breakout_level=breakout_level,
            score_breakdown=breakdown,
        )

    def analyze_pre_move(
        self, pole_bars: Sequence[Bar], baseline_bars: Sequence[Bar] = ()
    ) -> PreMove | None:
        cfg = self.config
        if len(pole_bars) < 5:
            return None
        first = pole_bars[0].close
        last = pole_bars[-1].close
        if first <= 0:
            return None
        move_pct = (last - first) / first
        if abs(move_pct) < cfg.min_move_pct:
            return None

        magnitude = abs(move_pct)
        if magnitude >= 0.05:
            strength = MoveStrength.STRONG
        elif magnitude >= 0.03:
            strength = MoveStrength.MEDIUM
        else:
            strength = MoveStrength.WEAK

        avg_volume = fmean(b.volume for b in pole_bars)
        baseline = fmean(b.volume for b in baseline_bars) if baseline_bars else 0.0
        volume_ratio = avg_volume / baseline if baseline > 0 else 1.0
        if volume_ratio >= cfg.volume_surge_ratio:
            strength = strength.upgraded()

        return PreMove(
            direction=PatternType.BULLISH_FLAG if move_pct > 0 else PatternType.BEARISH_FLAG,
            move_pct=move_pct,
            strength=strength,
            volume_ratio=volume_ratio,
            volume_confirmation=volume_ratio > cfg.volume_confirm_ratio,
            avg_volume=avg_volume,
            start_time=pole_bars[0].timestamp,
            end_time=pole_bars[-1].timestamp,
            start_price=first,
            end_price=last,
        )

    def analyze_flag(self, flag_bars: Sequence[Bar]) -> FlagGeometry | None:
        cfg = self.config
        if len(flag_bars) < cfg.min_flag_bars:
            return None
        high = max(b.high for b in flag_bars)
        low = min(b.low for b in flag_bars)
        midpoint = (high + low) / 2
        if midpoint <= 0:
            return None
        range_pct = (high - low) / midpoint
        if range_pct >= cfg.max_range_pct:
            logger.debug("flag.reject.range", extra={"range_pct": range_pct})
            return None

        closes = [b.close for b in flag_bars]
        mean_close = fmean(closes)
        slope = slope_of(closes) / mean_close

        third = max(1, len(flag_bars) // 3)
        first_vol = fmean(b.volume for b in flag_bars[:third])
        last_vol = fmean(b.volume for b in flag_bars[-third:])
        volume_decline = 1 - last_vol / first_vol if first_vol > 0 else 0.0

        return FlagGeometry(
            high=high,
            low=low,
            midpoint=midpoint,
            range_pct=range_pct,
            slope=slope,
            volume_decline=volume_decline,
            avg_volume=fmean(b.volume for b in flag_bars),
            close_cv=pstdev(closes) / mean_close,
            bars=len(flag_bars),
            start_time=flag_bars[0].timestamp,
            end_time=flag_bars[-1].timestamp,
        )

    def _drifts_against(self, direction: PatternType, slope: float) -> bool:
        threshold = self.config.slope_threshold
        if direction.is_bullish:
            return slope <= threshold
        return slope >= -threshold

    def score(self, pre_move: PreMove, flag: FlagGeometry) -> dict[str, float]:
        breakdown = {
            "pre_move": float(pre_move.strength.points),
            "volume_confirmation": 2.0 if pre_move.volume_confirmation else 0.0,
        }

        if flag.range_pct < 0.01:
            breakdown["tightness"] = 3.0
        elif flag.range_pct < 0.02:
            breakdown["tightness"] = 2.0
        elif flag.range_pct < 0.03:
            breakdown["tightness"] = 1.0
        else:
            breakdown["tightness"] = 0.0

        if flag.volume_decline >= 0.4:
            breakdown["volume_decline"] = 2.0
        elif flag.volume_decline >= 0.2:
            breakdown["volume_decline"] = 1.0
        else:
            breakdown["volume_decline"] = 0.0

        if flag.close_cv < 0.002:
            breakdown["consistency"] = 2.0
        elif flag.close_cv < 0.005:
            breakdown["consistency"] = 1.0
        else:
            breakdown["consistency"] = 0.0

        breakdown["length"] = 1.0 if flag.bars <= 10 else 0.0
        return breakdown

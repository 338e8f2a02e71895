"""Frozen threshold bundles for the level/flag engine.

Every value has a default matching :class:`config.settings.Settings`; the
``from_settings`` constructors read the same names from any settings
provider so tests can pass plain dictionaries wrapped in a ``get``.
"""

from __future__ import annotations

from dataclasses import dataclass

from config.utils import parse_int_list
from core.domain.models.Pattern import FlagRating, PatternStage
from core.ports.settings import SettingsProvider


@dataclass(frozen=True)
class LevelDetectorConfig:
    tolerance: float = 0.002
    confluence_tolerance: float = 0.006
    pivot_window: int = 10
    volume_price_step: float = 0.01
    volume_top_n: int = 10
    trend_periods: tuple[int, ...] = (20, 50)
    trend_min_r2: float = 0.7
    zone_min_bars: int = 30
    zone_window: int = 5
    zone_min_touches: int = 2

    @classmethod
    def from_settings(cls, settings: SettingsProvider) -> "LevelDetectorConfig":
        return cls(
            tolerance=float(settings.get("LEVEL_TOLERANCE", cls.tolerance)),
            confluence_tolerance=float(
                settings.get("LEVEL_CONFLUENCE_TOLERANCE", cls.confluence_tolerance)
            ),
            pivot_window=int(settings.get("LEVEL_PIVOT_WINDOW", cls.pivot_window)),
            volume_price_step=float(settings.get("LEVEL_VOLUME_PRICE_STEP", cls.volume_price_step)),
            volume_top_n=int(settings.get("LEVEL_VOLUME_TOP_N", cls.volume_top_n)),
            trend_periods=parse_int_list(settings.get("LEVEL_TREND_PERIODS", cls.trend_periods)),
            trend_min_r2=float(settings.get("LEVEL_TREND_MIN_R2", cls.trend_min_r2)),
            zone_min_bars=int(settings.get("LEVEL_ZONE_MIN_BARS", cls.zone_min_bars)),
            zone_window=int(settings.get("LEVEL_ZONE_WINDOW", cls.zone_window)),
            zone_min_touches=int(settings.get("LEVEL_ZONE_MIN_TOUCHES", cls.zone_min_touches)),
        )


@dataclass(frozen=True)
class LevelLifecycleConfig:
    touch_threshold: float = 0.002
    similarity_tolerance: float = 0.005
    hold_confidence_step: float = 0.02
    break_confidence_step: float = 0.05
    reconfirm_confidence_step: float = 0.01
    retention_days: int = 7

    @classmethod
    def from_settings(cls, settings: SettingsProvider) -> "LevelLifecycleConfig":
        return cls(
            touch_threshold=float(settings.get("LEVEL_TOUCH_THRESHOLD", cls.touch_threshold)),
            similarity_tolerance=float(
                settings.get("LEVEL_SIMILARITY_TOLERANCE", cls.similarity_tolerance)
            ),
            hold_confidence_step=float(
                settings.get("LEVEL_HOLD_CONFIDENCE_STEP", cls.hold_confidence_step)
            ),
            break_confidence_step=float(
                settings.get("LEVEL_BREAK_CONFIDENCE_STEP", cls.break_confidence_step)
            ),
            reconfirm_confidence_step=float(
                settings.get("LEVEL_RECONFIRM_CONFIDENCE_STEP", cls.reconfirm_confidence_step)
            ),
            retention_days=int(settings.get("LEVEL_RETENTION_DAYS", cls.retention_days)),
        )


@dataclass(frozen=True)
class FlagDetectorConfig:
    min_flag_bars: int = 5
    max_flag_bars: int = 20
    flag_window_bars: int = 10
    pole_lookback_bars: int = 30
    min_move_pct: float = 0.02
    max_range_pct: float = 0.03
    slope_threshold: float = 0.001
    min_volume_decline: float = 0.1
    volume_confirm_ratio: float = 1.2
    volume_surge_ratio: float = 1.5
    breakout_buffer_fraction: float = 0.1

    def __post_init__(self) -> None:
        if not self.min_flag_bars <= self.flag_window_bars <= self.max_flag_bars:
            raise ValueError(
                f"flag_window_bars={self.flag_window_bars} outside "
                f"[{self.min_flag_bars}, {self.max_flag_bars}]"
            )

    @property
    def min_total_bars(self) -> int:
        return self.min_flag_bars + 10

    @classmethod
    def from_settings(cls, settings: SettingsProvider) -> "FlagDetectorConfig":
        return cls(
            min_flag_bars=int(settings.get("FLAG_MIN_BARS", cls.min_flag_bars)),
            max_flag_bars=int(settings.get("FLAG_MAX_BARS", cls.max_flag_bars)),
            flag_window_bars=int(settings.get("FLAG_WINDOW_BARS", cls.flag_window_bars)),
            pole_lookback_bars=int(settings.get("FLAG_POLE_LOOKBACK_BARS", cls.pole_lookback_bars)),
            min_move_pct=float(settings.get("FLAG_MIN_MOVE_PCT", cls.min_move_pct)),
            max_range_pct=float(settings.get("FLAG_MAX_RANGE_PCT", cls.max_range_pct)),
            slope_threshold=float(settings.get("FLAG_SLOPE_THRESHOLD", cls.slope_threshold)),
            min_volume_decline=float(settings.get("FLAG_MIN_VOLUME_DECLINE", cls.min_volume_decline)),
            volume_confirm_ratio=float(
                settings.get("FLAG_VOLUME_CONFIRM_RATIO", cls.volume_confirm_ratio)
            ),
            volume_surge_ratio=float(settings.get("FLAG_VOLUME_SURGE_RATIO", cls.volume_surge_ratio)),
            breakout_buffer_fraction=float(
                settings.get("FLAG_BREAKOUT_BUFFER_FRACTION", cls.breakout_buffer_fraction)
            ),
        )


@dataclass(frozen=True)
class PatternLifecycleConfig:
    min_rating: FlagRating = FlagRating.GOOD
    min_confluence: int = 1
    ttl_minutes: int = 120
    initial_stage: PatternStage = PatternStage.CONFIRMED
    noise_pct: float = 0.001
    volume_fraction: float = 0.6
    confluence_tolerance: float = 0.005
    duplicate_tolerance: float = 0.002

    def __post_init__(self) -> None:
        if self.initial_stage.is_terminal:
            raise ValueError(f"initial_stage cannot be terminal: {self.initial_stage.value}")

    @classmethod
    def from_settings(cls, settings: SettingsProvider) -> "PatternLifecycleConfig":
        return cls(
            min_rating=FlagRating(str(settings.get("PATTERN_MIN_RATING", cls.min_rating.value)).lower()),
            min_confluence=int(settings.get("PATTERN_MIN_CONFLUENCE", cls.min_confluence)),
            ttl_minutes=int(settings.get("PATTERN_TTL_MINUTES", cls.ttl_minutes)),
            initial_stage=PatternStage(
                str(settings.get("PATTERN_INITIAL_STAGE", cls.initial_stage.value)).upper()
            ),
            noise_pct=float(settings.get("BREAKOUT_NOISE_PCT", cls.noise_pct)),
            volume_fraction=float(settings.get("BREAKOUT_VOLUME_FRACTION", cls.volume_fraction)),
            confluence_tolerance=float(settings.get("CONFLUENCE_TOLERANCE", cls.confluence_tolerance)),
            duplicate_tolerance=float(
                settings.get("PATTERN_DUPLICATE_TOLERANCE", cls.duplicate_tolerance)
            ),
        )

from dataclasses import replace

import pytest

from bar_factory import bar_at, bullish_flag_bars
from core.domain.models.Pattern import FlagRating, PatternType
from strategies.level_flag.config import FlagDetectorConfig
from strategies.level_flag.flag_detector import FlagDetector, MoveStrength, rating_for


def test_detects_bullish_flag_after_strong_pole(flag_bars):
    candidate = FlagDetector().detect(flag_bars)

    assert candidate is not None
    assert candidate.pattern_type is PatternType.BULLISH_FLAG
    assert candidate.pre_move.strength is MoveStrength.STRONG
    assert candidate.flag.high == pytest.approx(106.3)
    assert candidate.flag.low == pytest.approx(105.8)
    assert candidate.flag.volume_decline == pytest.approx(0.6)
    assert candidate.score == pytest.approx(11.0)
    assert candidate.rating is FlagRating.VERY_GOOD
    assert candidate.confidence == pytest.approx(11 / 14)
    assert candidate.breakout_level == pytest.approx(106.35)


def test_score_breakdown_components(flag_bars):
    candidate = FlagDetector().detect(flag_bars)
    assert candidate.score_breakdown == {
        "pre_move": 3.0,
        "volume_confirmation": 0.0,
        "tightness": 3.0,
        "volume_decline": 2.0,
        "consistency": 2.0,
        "length": 1.0,
    }


def test_too_few_bars_returns_none(flag_bars):
    assert FlagDetector().detect(flag_bars[-14:]) is None


def test_flag_without_volume_decline_is_rejected(flag_bars):
    flat_volume = [replace(bar, volume=1000.0) for bar in flag_bars]
    assert FlagDetector().detect(flat_volume) is None


def test_wide_consolidation_is_not_a_flag(flag_bars):
    wide = flag_bars[:30] + [
        replace(bar, high=bar.close + 2.0, low=bar.close - 2.0) for bar in flag_bars[30:]
    ]
    assert FlagDetector().detect(wide) is None


def test_flag_drifting_with_the_pole_is_rejected(flag_bars):
    rising = flag_bars[:30] + [
        bar_at(30 + i, 105.0 + 0.15 * i, volume=bar.volume)
        for i, bar in enumerate(flag_bars[30:])
    ]
    assert FlagDetector().detect(rising) is None


def test_small_pole_is_ignored():
    bars = [bar_at(i, 100 + 0.01 * i) for i in range(40)]
    assert FlagDetector().detect(bars) is None


def test_volume_surge_upgrades_move_strength():
    detector = FlagDetector()
    pole = [bar_at(i, 100 + 0.6 * i, volume=2000.0) for i in range(10)]
    baseline = [bar_at(i, 100.0, volume=1000.0) for i in range(10)]
    pre = detector.analyze_pre_move(pole, baseline)
    assert pre is not None
    assert pre.volume_ratio == pytest.approx(2.0)
    assert pre.volume_confirmation is True
    assert pre.strength is MoveStrength.VERY_STRONG


def test_config_rejects_window_outside_flag_bounds():
    with pytest.raises(ValueError):
        FlagDetectorConfig(flag_window_bars=25)


@pytest.mark.parametrize(
    "score,rating",
    [(14, FlagRating.EXCELLENT), (11, FlagRating.VERY_GOOD), (7, FlagRating.GOOD), (5, FlagRating.FAIR), (1, FlagRating.POOR)],
)
def test_rating_thresholds(score, rating):
    assert rating_for(score) is rating


def test_bearish_flag_is_mirrored():
    bars = []
    for i in range(30):
        bars.append(bar_at(i, round(106 - 6 * i / 29, 4)))
    closes = [99.9, 100.0, 99.9, 100.0, 99.95, 100.0, 99.95, 100.05, 100.0, 100.05]
    volumes = [1000, 1000, 1000, 800, 700, 600, 500, 400, 400, 400]
    for j, (close, volume) in enumerate(zip(closes, volumes)):
        bars.append(bar_at(30 + j, close, high=min(100.2, close + 0.15), low=max(99.7, close - 0.2), volume=volume))

    candidate = FlagDetector().detect(bars)
    assert candidate is not None
    assert candidate.pattern_type is PatternType.BEARISH_FLAG
    assert candidate.breakout_level == pytest.approx(99.7 - 0.05)

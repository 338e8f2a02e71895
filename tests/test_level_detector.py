import pytest

from bar_factory import bar_at
from core.domain.models.Level import DetectedLevel, LevelStrength, LevelType
from strategies.level_flag.config import LevelDetectorConfig
from strategies.level_flag.level_detector import LevelDetector


def _level(level_type, price, confidence=0.7, strength=LevelStrength.MEDIUM):
    return DetectedLevel(level_type=level_type, price=price, strength=strength, confidence=confidence)


def test_empty_window_yields_nothing():
    assert LevelDetector().detect([]) == []


def test_reference_averages_take_precedence():
    bars = [bar_at(i, 100.0) for i in range(10)]
    levels = LevelDetector().moving_average_levels(bars, {200: 95.0, 400: 90.0})
    assert [(lvl.level_type, lvl.price) for lvl in levels] == [
        (LevelType.MA200, 95.0),
        (LevelType.MA400, 90.0),
    ]
    assert all(lvl.strength is LevelStrength.VERY_HIGH for lvl in levels)
    assert all(lvl.confidence == pytest.approx(0.95) for lvl in levels)


def test_local_average_needs_full_period():
    bars = [bar_at(i, 100.0 + (i % 2)) for i in range(250)]
    levels = LevelDetector().moving_average_levels(bars)
    assert [lvl.level_type for lvl in levels] == [LevelType.MA200]
    assert levels[0].price == pytest.approx(100.5)
    assert levels[0].strength is LevelStrength.HIGH


def test_volume_levels_rank_by_traded_volume():
    bars = [bar_at(0, 100.0, volume=10), bar_at(1, 101.0, volume=50), bar_at(2, 100.0, volume=30)]
    detector = LevelDetector(LevelDetectorConfig(volume_top_n=1))
    levels = detector.volume_levels(bars)
    assert len(levels) == 1
    assert levels[0].price == pytest.approx(101.0)
    assert levels[0].level_type is LevelType.VOLUME_LEVEL


def test_consolidate_merges_same_type_only():
    detector = LevelDetector()
    merged = detector.consolidate(
        [
            _level(LevelType.SUPPORT, 100.0),
            _level(LevelType.SUPPORT, 100.1),
            _level(LevelType.RESISTANCE, 100.05),
        ]
    )
    supports = [lvl for lvl in merged if lvl.level_type is LevelType.SUPPORT]
    assert len(merged) == 2
    assert len(supports) == 1
    assert supports[0].price == pytest.approx(100.05)
    assert supports[0].touches == 2
    assert 0.7 < supports[0].confidence <= 0.95


def test_confluence_zone_spans_member_prices():
    detector = LevelDetector()
    zoned = detector.confluence_zones(
        [
            _level(LevelType.SUPPORT, 100.0),
            _level(LevelType.RESISTANCE, 100.3),
            _level(LevelType.SUPPORT, 120.0),
        ]
    )
    zone = zoned[0]
    assert zone.level_type is LevelType.CONFLUENCE_ZONE
    assert zone.price_min == pytest.approx(100.0)
    assert zone.price_max == pytest.approx(100.3)
    assert zone.member_count == 2
    assert zone.strength is LevelStrength.MEDIUM
    assert zoned[1].price == pytest.approx(120.0)


def test_detect_finds_level_near_flag_consolidation(flag_bars):
    levels = LevelDetector().detect(flag_bars)
    assert levels
    assert any(abs(lvl.price - 106.0) / 106.0 < 0.005 for lvl in levels)
    assert all(0.0 <= lvl.confidence <= 0.95 for lvl in levels)

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from core.domain.models.Level import Level, LevelStrength, LevelType
from core.errors import VersionConflictError
from repositories.memory_store import InMemoryExecutionStateStore, InMemoryLevelStore

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def test_cursor_never_moves_backwards() -> None:
    store = InMemoryExecutionStateStore()

    assert store.advance_cursor("BTCUSDT", "5m", NOW, {"bars_analyzed": 3})
    assert not store.advance_cursor("BTCUSDT", "5m", NOW, {"bars_analyzed": 3})
    assert not store.advance_cursor("BTCUSDT", "5m", NOW - timedelta(minutes=5))

    state = store.get("BTCUSDT", "5m")
    assert state.last_bar_processed == NOW
    assert state.bars_analyzed == 3


def test_daily_reset_happens_once_per_day() -> None:
    store = InMemoryExecutionStateStore()
    store.increment_daily_counters("BTCUSDT", "5m", {"signals_generated_today": 2})

    assert store.reset_if_new_day("BTCUSDT", "5m", date(2026, 1, 5))
    store.increment_daily_counters("BTCUSDT", "5m", {"signals_generated_today": 1})
    assert not store.reset_if_new_day("BTCUSDT", "5m", date(2026, 1, 5))

    assert store.get("BTCUSDT", "5m").signals_generated_today == 1


def test_unknown_counter_rejected() -> None:
    with pytest.raises(ValueError):
        InMemoryExecutionStateStore().increment_daily_counters("BTCUSDT", "5m", {"orders": 1})


def test_lock_is_exclusive_until_expiry() -> None:
    store = InMemoryExecutionStateStore()

    assert store.acquire_lock("BTCUSDT", "5m", "run-1", NOW, 240)
    assert not store.acquire_lock("BTCUSDT", "5m", "run-2", NOW + timedelta(seconds=60), 240)
    assert store.acquire_lock("BTCUSDT", "5m", "run-2", NOW + timedelta(seconds=300), 240)


def test_release_by_other_owner_keeps_lock() -> None:
    store = InMemoryExecutionStateStore()
    store.acquire_lock("BTCUSDT", "5m", "run-1", NOW, 240)

    store.release_lock("BTCUSDT", "5m", "run-2")
    assert store.get("BTCUSDT", "5m").lock_owner == "run-1"

    store.release_lock("BTCUSDT", "5m", "run-1")
    assert store.acquire_lock("BTCUSDT", "5m", "run-2", NOW, 240)


def test_level_reads_are_copies() -> None:
    store = InMemoryLevelStore()
    level = Level(
        id="lvl-1",
        symbol="BTCUSDT",
        timeframe="5m",
        level_type=LevelType.SUPPORT,
        price=100.0,
        strength=LevelStrength.MEDIUM,
        confidence=0.6,
        first_detected=NOW,
        last_confirmed=NOW,
    )
    assert store.insert(level)

    fetched = store.get("BTCUSDT", "5m", "lvl-1")
    fetched.touch_count = 9
    assert store.get("BTCUSDT", "5m", "lvl-1").touch_count == 1

    updated = store.update(fetched, prev_version=1)
    assert updated.version == 2
    with pytest.raises(VersionConflictError):
        store.update(fetched, prev_version=1)

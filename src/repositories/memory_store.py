"""Process-local stores with the same conditional-write semantics as DynamoDB.

Used for ``STATE_BACKEND=memory`` and throughout the tests. Every read and
write hands out copies so callers never alias stored rows.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping

from core.domain.models.ExecutionState import DAILY_COUNTERS, ExecutionState
from core.domain.models.Level import Level, LevelType
from core.domain.models.Pattern import Pattern, PatternEvent, PatternEventType, PatternStage
from core.domain.models.Touch import Touch
from core.errors import VersionConflictError

from .dynamo_store import state_health

logger = logging.getLogger("flagbot.memory_store")


def _check_counters(counters: Mapping[str, int]) -> None:
    for name in counters:
        if name not in DAILY_COUNTERS:
            raise ValueError(f"Unknown counter {name!r}; expected one of {DAILY_COUNTERS}")


class InMemoryExecutionStateStore:
    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], ExecutionState] = {}
        self._lock = threading.Lock()

    def _row(self, symbol: str, timeframe: str) -> ExecutionState:
        key = (symbol, timeframe)
        if key not in self._rows:
            self._rows[key] = ExecutionState(symbol=symbol, timeframe=timeframe)
        return self._rows[key]

    def get(self, symbol: str, timeframe: str) -> ExecutionState:
        with self._lock:
            return copy.deepcopy(self._row(symbol, timeframe))

    def advance_cursor(
        self,
        symbol: str,
        timeframe: str,
        new_timestamp: datetime,
        counters: Mapping[str, int] | None = None,
    ) -> bool:
        _check_counters(counters or {})
        with self._lock:
            row = self._row(symbol, timeframe)
            if row.last_bar_processed is not None and row.last_bar_processed >= new_timestamp:
                return False
            row.last_bar_processed = new_timestamp
            row.version += 1
            for name, amount in (counters or {}).items():
                setattr(row, name, getattr(row, name) + int(amount))
            return True

    def increment_daily_counters(
        self, symbol: str, timeframe: str, counters: Mapping[str, int]
    ) -> None:
        _check_counters(counters)
        with self._lock:
            row = self._row(symbol, timeframe)
            for name, amount in counters.items():
                setattr(row, name, getattr(row, name) + int(amount))

    def reset_if_new_day(self, symbol: str, timeframe: str, today: date) -> bool:
        with self._lock:
            row = self._row(symbol, timeframe)
            if row.last_daily_reset == today.isoformat():
                return False
            row.last_daily_reset = today.isoformat()
            for name in DAILY_COUNTERS:
                setattr(row, name, 0)
            return True

    def acquire_lock(
        self, symbol: str, timeframe: str, owner: str, now: datetime, ttl_seconds: int
    ) -> bool:
        with self._lock:
            row = self._row(symbol, timeframe)
            held_by_other = (
                row.lock_owner is not None
                and row.lock_owner != owner
                and row.lock_expires_at is not None
                and row.lock_expires_at >= now
            )
            if held_by_other:
                return False
            row.lock_owner = owner
            row.lock_expires_at = now + timedelta(seconds=ttl_seconds)
            row.last_execution_time = now
            return True

    def release_lock(self, symbol: str, timeframe: str, owner: str) -> None:
        with self._lock:
            row = self._row(symbol, timeframe)
            if row.lock_owner != owner:
                logger.warning(
                    "execution_state.lock.release_lost",
                    extra={"symbol": symbol, "timeframe": timeframe, "owner": owner},
                )
                return
            row.lock_owner = None
            row.lock_expires_at = None

    def health(
        self, symbol: str, timeframe: str, now: datetime, max_idle_minutes: int = 60
    ) -> dict[str, Any]:
        return state_health(self.get(symbol, timeframe), now, max_idle_minutes)


class InMemoryLevelStore:
    def __init__(self) -> None:
        self._levels: dict[tuple[str, str, str], Level] = {}
        self._lock = threading.Lock()

    def list_levels(
        self,
        symbol: str,
        timeframe: str,
        *,
        active_only: bool = True,
        min_confidence: float = 0.0,
    ) -> list[Level]:
        with self._lock:
            levels = [
                copy.deepcopy(level)
                for (sym, tf, _), level in self._levels.items()
                if sym == symbol and tf == timeframe
                and (not active_only or (level.is_active and level.confidence >= min_confidence))
            ]
        return sorted(levels, key=lambda level: (-level.confidence, level.price))

    def get(self, symbol: str, timeframe: str, level_id: str) -> Level | None:
        with self._lock:
            level = self._levels.get((symbol, timeframe, level_id))
            return copy.deepcopy(level) if level is not None else None

    def find_similar(
        self,
        symbol: str,
        timeframe: str,
        level_type: LevelType,
        price: float,
        tolerance: float,
    ) -> Level | None:
        low, high = sorted((price * (1 - tolerance), price * (1 + tolerance)))
        matches = [
            level
            for level in self.list_levels(symbol, timeframe)
            if level.level_type is level_type and low <= level.price <= high
        ]
        if not matches:
            return None
        return min(matches, key=lambda level: abs(level.price - price))

    def insert(self, level: Level) -> bool:
        key = (level.symbol, level.timeframe, level.id)
        with self._lock:
            if key in self._levels:
                return False
            level.version = 1
            self._levels[key] = copy.deepcopy(level)
            return True

    def update(self, level: Level, prev_version: int) -> Level:
        key = (level.symbol, level.timeframe, level.id)
        with self._lock:
            stored = self._levels.get(key)
            if stored is None or stored.version != prev_version:
                raise VersionConflictError("level_store", level.id)
            updated = replace(copy.deepcopy(level), version=prev_version + 1)
            self._levels[key] = updated
            return copy.deepcopy(updated)

    def delete(self, symbol: str, timeframe: str, level_id: str) -> None:
        with self._lock:
            self._levels.pop((symbol, timeframe, level_id), None)


class InMemoryTouchStore:
    def __init__(self) -> None:
        self._touches: dict[tuple[str, datetime], Touch] = {}
        self._lock = threading.Lock()

    def append(self, touch: Touch) -> bool:
        key = (touch.level_id, touch.bar_timestamp)
        with self._lock:
            if key in self._touches:
                return False
            self._touches[key] = touch
            return True

    def list_for_level(self, level_id: str) -> list[Touch]:
        with self._lock:
            touches = [t for (lid, _), t in self._touches.items() if lid == level_id]
        return sorted(touches, key=lambda t: t.bar_timestamp)


class InMemoryPatternStore:
    def __init__(self) -> None:
        self._patterns: dict[tuple[str, str, str], Pattern] = {}
        self._events: dict[str, PatternEvent] = {}
        self._lock = threading.Lock()

    def list_patterns(
        self,
        symbol: str,
        timeframe: str,
        *,
        stages: Iterable[PatternStage] | None = None,
    ) -> list[Pattern]:
        wanted = set(stages) if stages is not None else None
        with self._lock:
            patterns = [
                copy.deepcopy(p)
                for (sym, tf, _), p in self._patterns.items()
                if sym == symbol and tf == timeframe and (wanted is None or p.stage in wanted)
            ]
        return sorted(patterns, key=lambda p: p.detected_at)

    def get(self, symbol: str, timeframe: str, pattern_id: str) -> Pattern | None:
        with self._lock:
            pattern = self._patterns.get((symbol, timeframe, pattern_id))
            return copy.deepcopy(pattern) if pattern is not None else None

    def insert(self, pattern: Pattern) -> bool:
        key = (pattern.symbol, pattern.timeframe, pattern.id)
        with self._lock:
            if key in self._patterns:
                return False
            pattern.version = 1
            self._patterns[key] = copy.deepcopy(pattern)
            return True

    def update(self, pattern: Pattern, prev_version: int) -> Pattern:
        key = (pattern.symbol, pattern.timeframe, pattern.id)
        with self._lock:
            stored = self._patterns.get(key)
            if stored is None or stored.version != prev_version:
                raise VersionConflictError("pattern_store", pattern.id)
            updated = replace(copy.deepcopy(pattern), version=prev_version + 1)
            self._patterns[key] = updated
            return copy.deepcopy(updated)

    def append_event(self, event: PatternEvent) -> bool:
        with self._lock:
            if event.key in self._events:
                return False
            self._events[event.key] = event
            return True

    def list_events(self, pattern_id: str) -> list[PatternEvent]:
        with self._lock:
            events = [e for e in self._events.values() if e.pattern_id == pattern_id]
        order = {event_type: index for index, event_type in enumerate(PatternEventType)}
        return sorted(events, key=lambda e: (e.occurred_at, order[e.event_type]))

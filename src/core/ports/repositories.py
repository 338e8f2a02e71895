from __future__ import annotations

from datetime import date, datetime
from typing import Any, Iterable, Mapping, Protocol, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from core.domain.models.ExecutionState import ExecutionState
    from core.domain.models.Level import Level, LevelType
    from core.domain.models.Pattern import Pattern, PatternEvent, PatternStage
    from core.domain.models.Touch import Touch


class LevelRepository(Protocol):
    def list_levels(
        self,
        symbol: str,
        timeframe: str,
        *,
        active_only: bool = True,
        min_confidence: float = 0.0,
    ) -> list["Level"]:
        ...

    def get(self, symbol: str, timeframe: str, level_id: str) -> "Level | None":
        ...

    def find_similar(
        self,
        symbol: str,
        timeframe: str,
        level_type: "LevelType",
        price: float,
        tolerance: float,
    ) -> "Level | None":
        ...

    def insert(self, level: "Level") -> bool:
        """Insert ``level`` unless its id exists; return ``True`` when written."""
        ...

    def update(self, level: "Level", prev_version: int) -> "Level":
        """Write ``level`` if the stored version still equals ``prev_version``.

        Returns the stored level with its bumped version; raises
        ``VersionConflictError`` when the guard fails.
        """
        ...

    def delete(self, symbol: str, timeframe: str, level_id: str) -> None:
        ...


class TouchRepository(Protocol):
    def append(self, touch: "Touch") -> bool:
        """Store ``touch`` once per (level, bar); return ``False`` on duplicates."""
        ...

    def list_for_level(self, level_id: str) -> list["Touch"]:
        ...


class PatternRepository(Protocol):
    def list_patterns(
        self,
        symbol: str,
        timeframe: str,
        *,
        stages: Iterable["PatternStage"] | None = None,
    ) -> list["Pattern"]:
        ...

    def get(self, symbol: str, timeframe: str, pattern_id: str) -> "Pattern | None":
        ...

    def insert(self, pattern: "Pattern") -> bool:
        ...

    def update(self, pattern: "Pattern", prev_version: int) -> "Pattern":
        ...

    def append_event(self, event: "PatternEvent") -> bool:
        """Store ``event`` once per (pattern, event type)."""
        ...

    def list_events(self, pattern_id: str) -> list["PatternEvent"]:
        ...


class ExecutionStateRepository(Protocol):
    def get(self, symbol: str, timeframe: str) -> "ExecutionState":
        """Return the state row, creating a zero-valued one when absent."""
        ...

    def advance_cursor(
        self,
        symbol: str,
        timeframe: str,
        new_timestamp: datetime,
        counters: Mapping[str, int] | None = None,
    ) -> bool:
        ...

    def increment_daily_counters(
        self, symbol: str, timeframe: str, counters: Mapping[str, int]
    ) -> None:
        ...

    def reset_if_new_day(self, symbol: str, timeframe: str, today: date) -> bool:
        ...

    def acquire_lock(
        self, symbol: str, timeframe: str, owner: str, now: datetime, ttl_seconds: int
    ) -> bool:
        ...

    def release_lock(self, symbol: str, timeframe: str, owner: str) -> None:
        ...

    def health(
        self, symbol: str, timeframe: str, now: datetime, max_idle_minutes: int = 60
    ) -> dict[str, Any]:
        """Report whether the pair executed within ``max_idle_minutes``."""
        ...

"""Persistence-side lifecycle of support/resistance levels."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from common.utils import to_epoch_ms
from core.domain.models.Bar import Bar
from core.domain.models.Level import DetectedLevel, Level, LevelRole
from core.domain.models.Touch import Touch, TouchType
from core.errors import ConcurrentModificationError, PersistenceError, VersionConflictError
from core.ports.repositories import LevelRepository, TouchRepository

from .config import LevelLifecycleConfig

logger = logging.getLogger("flagbot.levels.manager")


@dataclass
class LevelSyncResult:
    created: int = 0
    reconfirmed: int = 0
    unchanged: int = 0

    @property
    def updated(self) -> int:
        return self.created + self.reconfirmed


@dataclass
class TouchSummary:
    touches: list[Touch] = field(default_factory=list)
    levels: dict[str, Level] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.touches)


def level_id_for(detected: DetectedLevel, as_of: datetime) -> str:
    return f"{detected.level_type.value}_{round(detected.price, 8)}_{to_epoch_ms(as_of)}"


class LevelManager:
    def __init__(
        self,
        levels: LevelRepository,
        touches: TouchRepository,
        config: LevelLifecycleConfig | None = None,
    ) -> None:
        self._levels = levels
        self._touches = touches
        self.config = config or LevelLifecycleConfig()

    def active_levels(self, symbol: str, timeframe: str, min_confidence: float = 0.0) -> list[Level]:
        return self._levels.list_levels(
            symbol, timeframe, active_only=True, min_confidence=min_confidence
        )

    # ------------------------------------------------------------------
    # Upsert by similarity
    def sync_detected(
        self,
        symbol: str,
        timeframe: str,
        detected: Iterable[DetectedLevel],
        as_of: datetime,
    ) -> LevelSyncResult:
        """Merge ``detected`` into the stored levels as of bar ``as_of``.

        A stored level already confirmed at or after ``as_of`` is left alone,
        which makes replaying the same window a no-op.
        """

        result = LevelSyncResult()
        for candidate in detected:
            existing = self._levels.find_similar(
                symbol,
                timeframe,
                candidate.level_type,
                candidate.price,
                self.config.similarity_tolerance,
            )
            if existing is None:
                level = Level(
                    id=level_id_for(candidate, as_of),
                    symbol=symbol,
                    timeframe=timeframe,
                    level_type=candidate.level_type,
                    price=candidate.price,
                    strength=candidate.strength,
                    confidence=max(0.0, min(1.0, candidate.confidence)),
                    first_detected=as_of,
                    last_confirmed=as_of,
                    price_min=candidate.price_min,
                    price_max=candidate.price_max,
                    touch_count=max(1, candidate.touches),
                    member_count=candidate.member_count,
                    sources=sorted(candidate.sources),
                    metadata=dict(candidate.metadata),
                )
                if self._levels.insert(level):
                    result.created += 1
                else:
                    result.unchanged += 1
                continue

            if existing.last_confirmed >= as_of:
                result.unchanged += 1
                continue

            self._update(existing, lambda current: self._reconfirm(current, candidate, as_of))
            result.reconfirmed += 1

        logger.info(
            "levels.sync",
            extra={
                "symbol": symbol,
                "timeframe": timeframe,
                "levels_created": result.created,
                "reconfirmed": result.reconfirmed,
                "unchanged": result.unchanged,
            },
        )
        return result

    def _reconfirm(self, current: Level, candidate: DetectedLevel, as_of: datetime) -> Level:
        if current.last_confirmed >= as_of:
            return current
        observations = current.reconfirmation_count + 1
        price = (current.price * observations + candidate.price) / (observations + 1)
        price_min = current.price_min
        price_max = current.price_max
        if candidate.price_min is not None and candidate.price_max is not None:
            price_min = candidate.price_min if price_min is None else min(price_min, candidate.price_min)
            price_max = candidate.price_max if price_max is None else max(price_max, candidate.price_max)
        strength = max(current.strength, candidate.strength, key=lambda s: s.weight)
        return replace(
            current,
            price=price,
            price_min=price_min,
            price_max=price_max,
            strength=strength,
            confidence=min(1.0, current.confidence + self.config.reconfirm_confidence_step),
            sources=sorted(set(current.sources) | set(candidate.sources)),
            member_count=max(current.member_count, candidate.member_count),
            reconfirmation_count=current.reconfirmation_count + 1,
            last_confirmed=as_of,
        )

    # ------------------------------------------------------------------
    # Touches
    def check_touch(self, level: Level, bar: Bar) -> Touch | None:
        band_low, band_high = level.touch_band(self.config.touch_threshold)
        if bar.low > band_high or bar.high < band_low:
            return None

        role = level.role
        close = bar.close
        if role is LevelRole.SUPPORT:
            touch_price = bar.low
            if close < band_low:
                touch_type = TouchType.BREAK
            elif close <= band_high:
                touch_type = TouchType.TEST
            else:
                touch_type = TouchType.BOUNCE
        elif role is LevelRole.RESISTANCE:
            touch_price = bar.high
            if close > band_high:
                touch_type = TouchType.BREAK
            elif close >= band_low:
                touch_type = TouchType.TEST
            else:
                touch_type = TouchType.BOUNCE
        else:
            touch_price = close
            touch_type = TouchType.TEST

        break_strength = 0.0
        if touch_type is TouchType.BREAK and level.price:
            break_strength = abs(close - level.price) / level.price

        return Touch(
            level_id=level.id,
            bar_timestamp=bar.timestamp,
            touch_price=touch_price,
            touch_type=touch_type,
            held=touch_type is not TouchType.BREAK,
            break_strength=break_strength,
            bar_context=bar.to_context(),
        )

    def record_touches(self, levels: Sequence[Level], bars: Sequence[Bar]) -> TouchSummary:
        """Record every level/bar interaction in ``bars`` once.

        The level is updated before the touch row is written and remembers the
        last bar it counted, so a cycle replayed after either write failed
        finishes the other without counting the bar twice.
        """

        summary = TouchSummary()
        current = {level.id: level for level in levels if level.is_active}
        for bar in bars:
            for level_id in list(current):
                level = current[level_id]
                if bar.timestamp <= level.first_detected:
                    continue
                touch = self.check_touch(level, bar)
                if touch is None:
                    continue
                counted = level.last_touch_at is None or bar.timestamp > level.last_touch_at
                updated = self._update(level, lambda lvl, t=touch: self._apply_touch(lvl, t))
                current[level_id] = updated
                written = self._touches.append(touch)
                if not (counted or written):
                    continue
                summary.touches.append(touch)
                summary.levels[level_id] = updated
        if summary.touches:
            logger.info(
                "levels.touches",
                extra={"touches": summary.count, "levels": len(summary.levels)},
            )
        return summary

    def _apply_touch(self, level: Level, touch: Touch) -> Level:
        if level.last_touch_at is not None and touch.bar_timestamp <= level.last_touch_at:
            return level
        if touch.held:
            confidence = min(1.0, level.confidence + self.config.hold_confidence_step)
        else:
            confidence = max(0.0, level.confidence - self.config.break_confidence_step)
        return replace(
            level,
            touch_count=level.touch_count + 1,
            bounce_count=level.bounce_count + (1 if touch.touch_type is TouchType.BOUNCE else 0),
            break_count=level.break_count + (1 if touch.touch_type is TouchType.BREAK else 0),
            confidence=confidence,
            last_confirmed=max(level.last_confirmed, touch.bar_timestamp),
            last_touch_at=touch.bar_timestamp,
        )

    # ------------------------------------------------------------------
    # Invalidation and retention
    def invalidate_broken(self, symbol: str, timeframe: str, now: datetime) -> int:
        invalidated = 0
        for level in self.active_levels(symbol, timeframe):
            if not level.should_invalidate():
                continue
            self._update(
                level,
                lambda current: current
                if not current.is_active
                else replace(current, is_active=False, invalidated_at=now),
            )
            invalidated += 1
            logger.info(
                "levels.invalidated",
                extra={
                    "level_id": level.id,
                    "touch_count": level.touch_count,
                    "break_count": level.break_count,
                },
            )
        return invalidated

    def cleanup_inactive(self, symbol: str, timeframe: str, now: datetime) -> int:
        """Delete levels invalidated more than ``retention_days`` ago."""

        cutoff = now - timedelta(days=self.config.retention_days)
        removed = 0
        for level in self._levels.list_levels(symbol, timeframe, active_only=False):
            if level.is_active or level.invalidated_at is None or level.invalidated_at >= cutoff:
                continue
            self._levels.delete(symbol, timeframe, level.id)
            removed += 1
        return removed

    # ------------------------------------------------------------------
    def _update(self, level: Level, mutate: Callable[[Level], Level]) -> Level:
        """Apply ``mutate`` under the version guard, re-reading once on conflict."""

        current = level
        for attempt in range(2):
            updated = mutate(current)
            if updated is current:
                return current
            try:
                return self._levels.update(updated, prev_version=current.version)
            except VersionConflictError as exc:
                if attempt:
                    raise ConcurrentModificationError("level_store", "update", exc) from exc
                logger.warning("levels.update.conflict", extra={"level_id": level.id})
                refreshed = self._levels.get(level.symbol, level.timeframe, level.id)
                if refreshed is None:
                    raise PersistenceError("level_store", "update", exc) from exc
                current = refreshed
        raise AssertionError("unreachable")  # pragma: no cover

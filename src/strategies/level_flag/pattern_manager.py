"""Persistent lifecycle of detected flag patterns."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from common.timeframes import bars_to_live, timeframe_minutes
from common.utils import to_epoch_ms
from core.domain.models.Bar import Bar
from core.domain.models.Pattern import (
    Pattern,
    PatternEvent,
    PatternEventType,
    PatternStage,
    TERMINAL_STAGES,
)
from core.errors import ConcurrentModificationError, PersistenceError, VersionConflictError
from core.ports.repositories import PatternRepository

from .breakout import BreakoutCheck, evaluate_breakout, evaluate_failure
from .config import PatternLifecycleConfig
from .confluence import ConfluenceScore
from .flag_detector import FlagCandidate
from .state_machine import transition_pattern

logger = logging.getLogger("flagbot.patterns.manager")

NON_TERMINAL_STAGES = tuple(stage for stage in PatternStage if stage not in TERMINAL_STAGES)


@dataclass(frozen=True)
class TransitionOutcome:
    pattern: Pattern
    applied: bool
    check: BreakoutCheck | None = None


def pattern_id_for(symbol: str, timeframe: str, candidate: FlagCandidate) -> str:
    return f"{symbol}_{timeframe}_{to_epoch_ms(candidate.flag.end_time)}"


class PatternManager:
    def __init__(
        self,
        patterns: PatternRepository,
        config: PatternLifecycleConfig | None = None,
    ) -> None:
        self._patterns = patterns
        self.config = config or PatternLifecycleConfig()

    def active_patterns(self, symbol: str, timeframe: str, now: datetime) -> list[Pattern]:
        return [
            p
            for p in self._patterns.list_patterns(symbol, timeframe, stages=NON_TERMINAL_STAGES)
            if p.is_active(now)
        ]

    # ------------------------------------------------------------------
    # Creation
    def qualifies(
        self,
        candidate: FlagCandidate,
        confluence: ConfluenceScore,
        active: list[Pattern],
    ) -> tuple[bool, str | None]:
        if not candidate.rating.at_least(self.config.min_rating):
            return False, "rating"
        if confluence.count < self.config.min_confluence:
            return False, "confluence"
        for pattern in active:
            if pattern.pattern_type is not candidate.pattern_type or not pattern.breakout_level:
                continue
            if pattern.id == pattern_id_for(pattern.symbol, pattern.timeframe, candidate):
                # Same flag seen again; creation is idempotent.
                continue
            gap = abs(pattern.breakout_level - candidate.breakout_level) / pattern.breakout_level
            if gap <= self.config.duplicate_tolerance:
                return False, "duplicate"
        return True, None

    def create_from_candidate(
        self,
        symbol: str,
        timeframe: str,
        candidate: FlagCandidate,
        confluence: ConfluenceScore,
        now: datetime,
    ) -> Pattern | None:
        """Persist ``candidate``; returns ``None`` when the same flag already exists."""

        ttl = timedelta(
            minutes=bars_to_live(timeframe, self.config.ttl_minutes) * timeframe_minutes(timeframe)
        )
        pre = candidate.pre_move
        flag = candidate.flag
        pattern = Pattern(
            id=pattern_id_for(symbol, timeframe, candidate),
            symbol=symbol,
            timeframe=timeframe,
            pattern_type=candidate.pattern_type,
            stage=self.config.initial_stage,
            confidence=candidate.confidence,
            quality_score=candidate.score,
            rating=candidate.rating,
            pole_start_time=pre.start_time,
            pole_end_time=pre.end_time,
            pole_start_price=pre.start_price,
            pole_end_price=pre.end_price,
            pole_length_pct=pre.move_pct * 100,
            flag_high=flag.high,
            flag_low=flag.low,
            flag_slope=flag.slope,
            flag_start_time=flag.start_time,
            flag_end_time=flag.end_time,
            breakout_level=candidate.breakout_level,
            pole_avg_volume=pre.avg_volume,
            flag_avg_volume=flag.avg_volume,
            volume_ratio=pre.volume_ratio,
            confluence_count=confluence.count,
            expires_at=now + ttl,
            detected_at=now,
            last_updated=now,
        )
        inserted = self._patterns.insert(pattern)
        # Also on a duplicate insert, so a replay completes an earlier failed event write.
        self._patterns.append_event(
            PatternEvent(
                pattern_id=pattern.id,
                event_type=PatternEventType.PATTERN_DETECTED,
                occurred_at=now,
                metrics={
                    "score": candidate.score,
                    "rating": candidate.rating.value,
                    "confidence": candidate.confidence,
                    "breakout_level": candidate.breakout_level,
                    "pole_length_pct": pattern.pole_length_pct,
                    "confluence_count": confluence.count,
                    "confluence_quality": confluence.quality,
                    **{f"score_{k}": v for k, v in candidate.score_breakdown.items()},
                },
            )
        )
        if not inserted:
            logger.info("patterns.create.duplicate", extra={"pattern_id": pattern.id})
            return None

        logger.info(
            "patterns.created",
            extra={
                "pattern_id": pattern.id,
                "type": pattern.pattern_type.value,
                "rating": pattern.rating.value,
                "breakout_level": pattern.breakout_level,
                "expires_at": pattern.expires_at.isoformat(),
            },
        )
        return pattern

    # ------------------------------------------------------------------
    # Transitions
    def apply_breakout(
        self, pattern: Pattern, bar: Bar, *, current_price: float | None = None
    ) -> TransitionOutcome:
        if pattern.is_terminal:
            return TransitionOutcome(pattern, False)
        check = evaluate_breakout(pattern, bar, self.config, current_price=current_price)
        if not check.confirmed:
            return TransitionOutcome(pattern, False, check)
        price = bar.close if current_price is None else current_price
        updated, applied = self._transition(
            pattern,
            PatternStage.BROKEN_OUT,
            bar.timestamp,
            PatternEventType.BREAKOUT_CONFIRMED,
            {"price": price, "volume": bar.volume, **check.as_metrics()},
            breakout_time=bar.timestamp,
            breakout_price=price,
            breakout_volume=bar.volume,
        )
        return TransitionOutcome(updated, applied, check)

    def apply_failure(self, pattern: Pattern, bar: Bar) -> TransitionOutcome:
        if pattern.is_terminal:
            return TransitionOutcome(pattern, False)
        failure = evaluate_failure(pattern, bar)
        if not failure.failed:
            return TransitionOutcome(pattern, False)
        updated, applied = self._transition(
            pattern,
            PatternStage.FAILED,
            bar.timestamp,
            PatternEventType.PATTERN_FAILED,
            {"reason": failure.reason, "price": failure.price},
            failure_reason=failure.reason,
            failure_price=failure.price,
        )
        return TransitionOutcome(updated, applied)

    def expire_due(self, symbol: str, timeframe: str, now: datetime) -> list[Pattern]:
        """Move every non-terminal pattern past ``expires_at`` to ``EXPIRED``."""

        expired: list[Pattern] = []
        for pattern in self._patterns.list_patterns(symbol, timeframe, stages=NON_TERMINAL_STAGES):
            if pattern.expires_at > now:
                continue
            updated, applied = self._transition(
                pattern,
                PatternStage.EXPIRED,
                now,
                PatternEventType.PATTERN_EXPIRED,
                {"expires_at": pattern.expires_at.isoformat()},
            )
            if applied:
                expired.append(updated)
        return expired

    def _transition(
        self,
        pattern: Pattern,
        to_stage: PatternStage,
        at: datetime,
        event_type: PatternEventType,
        metrics: dict[str, Any],
        **changes: Any,
    ) -> tuple[Pattern, bool]:
        current = pattern
        for attempt in range(2):
            if current.is_terminal:
                if current.stage is to_stage:
                    # A replay after an interrupted cycle still gets its audit event.
                    self._patterns.append_event(PatternEvent(current.id, event_type, at, metrics))
                return current, False
            updated = transition_pattern(current, to_stage, at, **changes)
            try:
                stored = self._patterns.update(updated, prev_version=current.version)
            except VersionConflictError as exc:
                if attempt:
                    raise ConcurrentModificationError("pattern_store", "transition", exc) from exc
                refreshed = self._patterns.get(pattern.symbol, pattern.timeframe, pattern.id)
                if refreshed is None:
                    raise PersistenceError("pattern_store", "transition", exc) from exc
                current = refreshed
                continue
            self._patterns.append_event(PatternEvent(stored.id, event_type, at, metrics))
            return stored, True
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Signals
    def awaiting_signal(self, symbol: str, timeframe: str) -> list[Pattern]:
        """Broken-out patterns whose trade signal has not been recorded yet."""

        broken = self._patterns.list_patterns(symbol, timeframe, stages=(PatternStage.BROKEN_OUT,))
        return sorted(
            (p for p in broken if p.signal_id is None),
            key=lambda p: p.breakout_time or p.last_updated,
        )

    def mark_signal_emitted(self, pattern: Pattern, signal_id: str, at: datetime) -> Pattern:
        return self._update(
            pattern,
            lambda current: current
            if current.signal_id is not None
            else replace(current, signal_id=signal_id, last_updated=at),
        )

    def _update(self, pattern: Pattern, mutate: Callable[[Pattern], Pattern]) -> Pattern:
        current = pattern
        for attempt in range(2):
            updated = mutate(current)
            if updated is current:
                return current
            try:
                return self._patterns.update(updated, prev_version=current.version)
            except VersionConflictError as exc:
                if attempt:
                    raise ConcurrentModificationError("pattern_store", "update", exc) from exc
                refreshed = self._patterns.get(pattern.symbol, pattern.timeframe, pattern.id)
                if refreshed is None:
                    raise PersistenceError("pattern_store", "update", exc) from exc
                current = refreshed
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    def pattern_stats(self, symbol: str, timeframe: str) -> dict[str, Any]:
        patterns = self._patterns.list_patterns(symbol, timeframe)
        by_stage = Counter(p.stage.value for p in patterns)
        by_type = Counter(p.pattern_type.value for p in patterns)
        decided = by_stage[PatternStage.BROKEN_OUT.value] + by_stage[PatternStage.FAILED.value]
        total = len(patterns)
        return {
            "total": total,
            "by_stage": dict(by_stage),
            "by_type": dict(by_type),
            "avg_quality": sum(p.quality_score for p in patterns) / total if total else 0.0,
            "avg_confidence": sum(p.confidence for p in patterns) / total if total else 0.0,
            "success_rate": by_stage[PatternStage.BROKEN_OUT.value] / decided if decided else None,
        }

"""Pattern lifecycle state machine.

All stage changes go through :func:`transition_pattern`, which checks the
edge against ``ALLOWED_TRANSITIONS`` before mutating the pattern.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Set

from core.domain.models.Pattern import Pattern, PatternStage

logger = logging.getLogger("flagbot.patterns.state")

_TERMINAL = {PatternStage.BROKEN_OUT, PatternStage.FAILED, PatternStage.EXPIRED}

# Forward-only: every stage may end early, none may go back.
ALLOWED_TRANSITIONS: Dict[PatternStage, Set[PatternStage]] = {
    PatternStage.FORMING: {PatternStage.CONSOLIDATING, PatternStage.CONFIRMED} | _TERMINAL,
    PatternStage.CONSOLIDATING: {PatternStage.CONFIRMED} | _TERMINAL,
    PatternStage.CONFIRMED: set(_TERMINAL),
    PatternStage.BROKEN_OUT: set(),
    PatternStage.FAILED: set(),
    PatternStage.EXPIRED: set(),
}


class InvalidTransitionError(Exception):
    """Raised when a pattern is asked to take an edge the lifecycle forbids."""

    def __init__(self, from_stage: PatternStage, to_stage: PatternStage, pattern_id: str) -> None:
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.pattern_id = pattern_id
        allowed = ALLOWED_TRANSITIONS.get(from_stage, set())
        allowed_str = ", ".join(sorted(s.value for s in allowed)) if allowed else "none (terminal stage)"
        super().__init__(
            f"Invalid transition for pattern {pattern_id}: "
            f"{from_stage.value} -> {to_stage.value}. "
            f"Allowed transitions from {from_stage.value}: {allowed_str}"
        )


def can_transition(from_stage: PatternStage, to_stage: PatternStage) -> bool:
    return to_stage in ALLOWED_TRANSITIONS.get(from_stage, set())


def transition_pattern(
    pattern: Pattern,
    to_stage: PatternStage,
    at: datetime,
    **changes: Any,
) -> Pattern:
    """Return a copy of ``pattern`` moved to ``to_stage``.

    ``changes`` are extra field updates applied together with the stage
    (breakout price, failure reason, ...).

    Raises
    ------
    InvalidTransitionError
        If ``to_stage`` is not reachable from the pattern's current stage.
    """

    if not can_transition(pattern.stage, to_stage):
        raise InvalidTransitionError(pattern.stage, to_stage, pattern.id)
    logger.info(
        "pattern.transition",
        extra={"pattern_id": pattern.id, "from": pattern.stage.value, "to": to_stage.value},
    )
    return replace(pattern, stage=to_stage, last_updated=at, **changes)

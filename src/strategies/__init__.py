from __future__ import annotations

from .level_flag import LevelFlagStrategy

STRATEGY_REGISTRY: dict[str, type] = {}
STRATEGY_REGISTRY["level-flag"] = LevelFlagStrategy

__all__ = [
    "STRATEGY_REGISTRY",
    "LevelFlagStrategy",
]

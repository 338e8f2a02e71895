"""Domain models for the flag/level engine."""

from .Account import Account, OrderResult, Position
from .Bar import Bar
from .ExecutionState import DAILY_COUNTERS, ExecutionState
from .Level import DetectedLevel, Level, LevelRole, LevelStrength, LevelType
from .Pattern import (
    FlagRating,
    Pattern,
    PatternEvent,
    PatternEventType,
    PatternStage,
    PatternType,
)
from .Signal import TradeSignal
from .Touch import Touch, TouchType

__all__ = [
    "Account",
    "Bar",
    "DAILY_COUNTERS",
    "DetectedLevel",
    "ExecutionState",
    "FlagRating",
    "Level",
    "LevelRole",
    "LevelStrength",
    "LevelType",
    "OrderResult",
    "Pattern",
    "PatternEvent",
    "PatternEventType",
    "PatternStage",
    "PatternType",
    "Position",
    "Touch",
    "TouchType",
    "TradeSignal",
]

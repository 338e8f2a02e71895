"""Persistence repositories for external data stores."""

from __future__ import annotations

__all__ = [
    "ExecutionStateStore",
    "InMemoryExecutionStateStore",
    "InMemoryLevelStore",
    "InMemoryPatternStore",
    "InMemoryTouchStore",
    "LevelStore",
    "PatternStore",
    "TouchStore",
]

from .dynamo_store import ExecutionStateStore
from .level_store import LevelStore, TouchStore
from .memory_store import (
    InMemoryExecutionStateStore,
    InMemoryLevelStore,
    InMemoryPatternStore,
    InMemoryTouchStore,
)
from .pattern_store import PatternStore

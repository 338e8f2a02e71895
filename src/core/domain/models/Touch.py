from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TouchType(str, Enum):
    BOUNCE = "BOUNCE"
    BREAK = "BREAK"
    TEST = "TEST"


@dataclass(frozen=True, slots=True)
class Touch:
    """Append-only record of price interacting with a level on one bar."""

    level_id: str
    bar_timestamp: datetime
    touch_price: float
    touch_type: TouchType
    held: bool
    break_strength: float = 0.0
    bar_context: dict[str, Any] = field(default_factory=dict)

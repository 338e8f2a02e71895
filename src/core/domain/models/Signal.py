from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any


@dataclass
class TradeSignal:
    """Risk-checked trade produced from a confirmed breakout."""

    symbol: str
    timeframe: str
    pattern_id: str
    side: str
    entry: float
    stop: float
    target: float
    quantity: float
    confidence: float
    confluence_count: int
    confluence_quality: str
    risk_reward: float
    generated_at: datetime
    client_order_id: str
    rounded_up: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["generated_at"] = self.generated_at.isoformat()
        return data

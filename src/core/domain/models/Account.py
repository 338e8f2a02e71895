from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Account:
    equity: float
    buying_power: float
    last_equity: float
    blocked: bool = False
    suspended: bool = False


@dataclass(frozen=True)
class Position:
    symbol: str
    quantity: float
    entry_price: float
    unrealized_pnl: float = 0.0


@dataclass(frozen=True)
class OrderResult:
    client_order_id: str
    accepted: bool
    order_ids: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

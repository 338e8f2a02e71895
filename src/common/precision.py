"""Decimal helpers applying exchange tick/step filters to order values."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Any, Mapping

__all__ = ["SymbolFilters", "floor_to_step", "to_decimal", "format_decimal"]


def to_decimal(value: Any) -> Decimal:
    """Return ``value`` as a Decimal, stringifying floats to avoid binary tails."""

    if isinstance(value, Decimal):
        return value
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def format_decimal(value: Any) -> str:
    text = format(to_decimal(value), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def floor_to_step(value: Any, step: Any) -> Decimal:
    """Largest multiple of ``step`` not above ``value``; a non-positive step leaves ``value`` as is."""

    step = to_decimal(step)
    if step <= 0:
        return to_decimal(value)
    return (to_decimal(value) / step).quantize(Decimal(1), rounding=ROUND_DOWN) * step


@dataclass(frozen=True)
class SymbolFilters:
    tick_size: Decimal
    step_size: Decimal
    min_qty: Decimal = Decimal("0")

    @classmethod
    def from_exchange_info(cls, filters: Mapping[str, Mapping[str, Any]]) -> "SymbolFilters":
        return cls(
            tick_size=to_decimal(filters["PRICE_FILTER"]["tickSize"]),
            step_size=to_decimal(filters["LOT_SIZE"]["stepSize"]),
            min_qty=to_decimal(filters["LOT_SIZE"].get("minQty", "0")),
        )

    def price(self, value: Any, *, side: str) -> Decimal:
        """Snap ``value`` to the tick grid; BUY rounds down, SELL rounds up."""
        if self.tick_size <= 0:
            return to_decimal(value)
        rounding = ROUND_UP if side.upper() == "SELL" else ROUND_DOWN
        return (to_decimal(value) / self.tick_size).quantize(Decimal(1), rounding=rounding) * self.tick_size

    def quantity(self, value: Any) -> Decimal:
        return floor_to_step(value, self.step_size)

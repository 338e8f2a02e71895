"""Broker port definition."""

from __future__ import annotations

from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from core.domain.models.Account import Account, OrderResult, Position


class BrokerPort(Protocol):
    """Account state and bracket order submission."""

    def get_account(self) -> "Account":
        ...

    def get_positions(self) -> list["Position"]:
        ...

    def recent_trade_pnls(self, symbol: str, limit: int = 10) -> list[float]:
        """Return realized PnL of the most recent closed trades, oldest first."""

        ...

    def submit_bracket_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        entry: float,
        stop: float,
        target: float,
        client_order_id: str,
    ) -> "OrderResult":
        """Submit an entry with attached stop-loss and take-profit."""

        ...

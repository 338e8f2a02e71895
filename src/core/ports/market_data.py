"""Bar supplier port definition."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from core.domain.models.Bar import Bar


class BarSupplierPort(Protocol):
    """Source of closed OHLCV bars."""

    def fetch_bars(
        self,
        symbol: str,
        timeframe: str,
        since_exclusive: datetime | None = None,
        limit: int = 500,
    ) -> list["Bar"]:
        """Return closed bars in ascending timestamp order.

        When ``since_exclusive`` is given only bars strictly newer than it are
        returned. Gaps in the series are passed through untouched.
        """

        ...

    def fetch_reference_averages(self, symbol: str) -> dict[int, float]:
        """Return long-window averages keyed by period (e.g. ``{200: ..., 400: ...}``)."""

        ...

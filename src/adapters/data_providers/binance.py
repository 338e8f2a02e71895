"""Binance futures bar supplier."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Sequence

import requests
from binance.client import Client

from common.symbols import normalize_symbol
from common.timeframes import to_binance_interval
from common.utils import from_epoch_ms, to_epoch_ms
from config.settings import Settings
from core.domain.models.Bar import Bar
from core.errors import UpstreamError
from core.ports.market_data import BarSupplierPort


logger = logging.getLogger("flagbot.market_data")

_MAX_KLINES = 1500
_ATTEMPTS = 3
_REFERENCE_PERIODS = (200, 400)


def kline_to_bar(kline: Sequence[Any]) -> Bar:
    """Convert a Binance kline row ``[open_ms, o, h, l, c, v, close_ms, quote, trades, ...]``."""

    return Bar(
        timestamp=from_epoch_ms(kline[0]),
        open=float(kline[1]),
        high=float(kline[2]),
        low=float(kline[3]),
        close=float(kline[4]),
        volume=float(kline[5]),
        trade_count=int(kline[8]) if len(kline) > 8 else None,
        vwap=(float(kline[7]) / float(kline[5])) if len(kline) > 7 and float(kline[5]) else None,
    )


class BinanceBarSupplier(BarSupplierPort):
    """Closed futures klines from Binance REST endpoints."""

    def __init__(self, settings: Settings, client: Client | None = None) -> None:
        self._settings = settings
        self._client = client or Client(
            api_key=settings.BINANCE_API_KEY,
            api_secret=settings.BINANCE_API_SECRET,
            testnet=settings.BINANCE_TESTNET,
        )

    def _klines(self, operation: str, **params: Any) -> list[list[Any]]:
        last_exc: Exception | None = None
        for attempt in range(_ATTEMPTS):
            try:
                return list(self._client.futures_klines(**params))
            except Exception as exc:  # pragma: no cover - network failures
                last_exc = exc
                logger.warning(
                    "Binance %s failed (attempt %s/%s): %s", operation, attempt + 1, _ATTEMPTS, exc
                )
        raise UpstreamError(f"binance.{operation}", last_exc)

    def fetch_bars(
        self,
        symbol: str,
        timeframe: str,
        since_exclusive: datetime | None = None,
        limit: int = 500,
    ) -> list[Bar]:
        sym = normalize_symbol(symbol)
        # One extra row so the still-open candle can be dropped without shrinking the batch.
        params: dict[str, Any] = {
            "symbol": sym,
            "interval": to_binance_interval(timeframe),
            "limit": min(_MAX_KLINES, max(1, limit) + 1),
        }
        if since_exclusive is not None:
            params["startTime"] = to_epoch_ms(since_exclusive) + 1
        rows = self._klines("fetch_bars", **params)

        now_ms = self.get_server_time_ms()
        closed = [row for row in rows if int(row[6]) < now_ms]
        bars = sorted((kline_to_bar(row) for row in closed), key=lambda bar: bar.timestamp)
        if since_exclusive is not None:
            bars = [bar for bar in bars if bar.timestamp > since_exclusive]
            bars = bars[:limit]
        else:
            bars = bars[-limit:]
        logger.debug(
            "market_data.fetch_bars",
            extra={"symbol": sym, "timeframe": timeframe, "rows": len(rows), "bars": len(bars)},
        )
        return bars

    def fetch_reference_averages(self, symbol: str) -> dict[int, float]:
        """Simple moving averages of daily closes for the long reference periods."""

        sym = normalize_symbol(symbol)
        rows = self._klines(
            "fetch_reference_averages",
            symbol=sym,
            interval=Client.KLINE_INTERVAL_1DAY,
            limit=max(_REFERENCE_PERIODS),
        )
        closes = [float(row[4]) for row in rows]
        return {
            period: sum(closes[-period:]) / period
            for period in _REFERENCE_PERIODS
            if len(closes) >= period
        }

    def get_server_time_ms(self) -> int:
        try:
            with requests.Session() as session:
                session.trust_env = False
                session.proxies.clear()
                base_url = (
                    "https://testnet.binancefuture.com"
                    if self._settings.BINANCE_TESTNET
                    else "https://fapi.binance.com"
                )
                resp = session.get(f"{base_url}/fapi/v1/time", timeout=5)
                resp.raise_for_status()
                return int(resp.json()["serverTime"])
        except Exception as exc:  # pragma: no cover - network failures
            logger.debug("Unable to fetch Binance server time, using local clock: %s", exc)
            return int(time.time() * 1000)


def make_bar_supplier(settings: Settings) -> BarSupplierPort:
    """Factory for a :class:`BarSupplierPort` bound to Binance."""

    return BinanceBarSupplier(settings)

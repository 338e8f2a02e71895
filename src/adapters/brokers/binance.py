"""Binance USDT-M futures broker adapter."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

from binance.client import Client
from binance.exceptions import BinanceAPIException

from common.precision import SymbolFilters, format_decimal
from common.symbols import normalize_symbol
from common.utils import sanitize_client_order_id
from config.settings import Settings
from core.domain.models.Account import Account, OrderResult, Position
from core.errors import UpstreamError
from core.ports.broker import BrokerPort

logger = logging.getLogger("flagbot.broker")

DUPLICATE_CLIENT_ORDER_ID = -4116


def _exit_side(side: str) -> str:
    return "SELL" if side.upper() == "BUY" else "BUY"


def _leg_id(client_order_id: str, suffix: str) -> str:
    return sanitize_client_order_id(f"{client_order_id[:32]}-{suffix}")


def _start_of_day_ms(now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


class _FiltersCache:
    """``exchangeInfo`` filters for every symbol, refreshed after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float) -> None:
        self._ttl = ttl_seconds
        self._loaded_at = 0.0
        self._filters: Dict[str, SymbolFilters] = {}

    def get(self, client: Client, symbol: str) -> SymbolFilters:
        if not self._filters or time.monotonic() - self._loaded_at > self._ttl:
            info = client.futures_exchange_info()
            self._filters = {
                entry["symbol"]: SymbolFilters.from_exchange_info(
                    {f["filterType"]: f for f in entry.get("filters", [])}
                )
                for entry in info.get("symbols", [])
            }
            self._loaded_at = time.monotonic()
        try:
            return self._filters[symbol]
        except KeyError as err:
            raise ValueError(f"Symbol {symbol} not found in exchangeInfo") from err


class BinanceBroker(BrokerPort):
    """Broker implementation using Binance Futures REST API."""

    def __init__(self, settings: Settings, client: Client | None = None) -> None:
        self._settings = settings
        self._client = client or Client(
            api_key=settings.BINANCE_API_KEY,
            api_secret=settings.BINANCE_API_SECRET,
            testnet=settings.BINANCE_TESTNET,
            requests_params={"timeout": 30},
        )
        ttl_minutes = max(float(settings.FILTERS_CACHE_TTL_MIN or 5.0), 1.0)
        self._filters_cache = _FiltersCache(ttl_minutes * 60)

    # ------------------------------------------------------------------
    # Account
    def get_account(self) -> Account:
        """Margin balance as equity; ``last_equity`` is the wallet before today's realized PnL."""

        try:
            data = self._client.futures_account()
            realized_today = sum(
                float(row.get("income", 0.0))
                for row in self._client.futures_income_history(
                    incomeType="REALIZED_PNL", startTime=_start_of_day_ms(), limit=1000
                )
            )
        except Exception as exc:  # pragma: no cover - network failures
            logger.error("Failed to fetch futures account: %s", exc)
            raise UpstreamError("binance.futures_account", exc) from exc

        wallet = float(data.get("totalWalletBalance", 0.0))
        return Account(
            equity=float(data.get("totalMarginBalance", wallet)),
            buying_power=float(data.get("availableBalance", 0.0)),
            last_equity=wallet - realized_today,
            blocked=not bool(data.get("canTrade", True)),
            suspended=False,
        )

    def get_positions(self) -> list[Position]:
        try:
            data = self._client.futures_position_information()
        except Exception as exc:  # pragma: no cover - network failures
            logger.error("Failed to fetch position information: %s", exc)
            raise UpstreamError("binance.futures_position_information", exc) from exc
        positions = data if isinstance(data, list) else [data]
        return [
            Position(
                symbol=p.get("symbol", ""),
                quantity=float(p.get("positionAmt", 0.0)),
                entry_price=float(p.get("entryPrice", 0.0)),
                unrealized_pnl=float(p.get("unRealizedProfit", 0.0)),
            )
            for p in positions
            if float(p.get("positionAmt", 0.0))
        ]

    def recent_trade_pnls(self, symbol: str, limit: int = 10) -> list[float]:
        try:
            rows = self._client.futures_income_history(
                symbol=normalize_symbol(symbol), incomeType="REALIZED_PNL", limit=limit
            )
        except Exception as exc:  # pragma: no cover - network failures
            logger.error("Failed to fetch income history: %s", exc)
            raise UpstreamError("binance.futures_income_history", exc) from exc
        rows = sorted(rows, key=lambda row: int(row.get("time", 0)))
        return [float(row.get("income", 0.0)) for row in rows][-limit:]

    # ------------------------------------------------------------------
    # Orders
    def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        try:
            return self._filters_cache.get(self._client, normalize_symbol(symbol))
        except ValueError:
            raise
        except Exception as exc:  # pragma: no cover - network failures
            logger.error("Failed to fetch symbol filters: %s", exc)
            raise UpstreamError("binance.futures_exchange_info", exc) from exc

    def _create_order(self, **payload: Any) -> dict[str, Any]:
        """Create an order; a duplicate client id returns the order already on the book."""

        try:
            return self._client.futures_create_order(**payload)
        except BinanceAPIException as exc:
            if exc.code != DUPLICATE_CLIENT_ORDER_ID:
                raise
            logger.info(
                "broker.order.duplicate",
                extra={"symbol": payload["symbol"], "client_order_id": payload["newClientOrderId"]},
            )
            return self._client.futures_get_order(
                symbol=payload["symbol"], origClientOrderId=payload["newClientOrderId"]
            )

    def submit_bracket_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        entry: float,
        stop: float,
        target: float,
        client_order_id: str,
    ) -> OrderResult:
        """MARKET entry followed by reduce-only STOP_MARKET and TAKE_PROFIT_MARKET legs.

        ``entry`` is informational for a market order; stop and target are
        snapped to the tick grid and the quantity to the lot step.
        """

        sym = normalize_symbol(symbol)
        side_norm = side.upper()
        exit_side = _exit_side(side_norm)
        safe_id = sanitize_client_order_id(client_order_id)
        filters = self.get_symbol_filters(sym)
        qty = filters.quantity(quantity)
        if qty <= 0 or qty < filters.min_qty:
            logger.warning(
                "broker.order.quantity_below_minimum",
                extra={"symbol": sym, "requested": quantity, "rounded": format_decimal(qty)},
            )
            return OrderResult(client_order_id=safe_id, accepted=False)

        stop_price = format_decimal(filters.price(stop, side=exit_side))
        target_price = format_decimal(filters.price(target, side=side_norm))
        qty_text = format_decimal(qty)
        logger.info(
            "broker.bracket.submit",
            extra={
                "symbol": sym,
                "side": side_norm,
                "quantity": qty_text,
                "entry": entry,
                "stop": stop_price,
                "target": target_price,
                "client_order_id": safe_id,
            },
        )
        try:
            entry_order = self._create_order(
                symbol=sym,
                side=side_norm,
                type="MARKET",
                quantity=qty_text,
                newClientOrderId=safe_id,
            )
            stop_order = self._create_order(
                symbol=sym,
                side=exit_side,
                type="STOP_MARKET",
                stopPrice=stop_price,
                quantity=qty_text,
                reduceOnly=True,
                workingType="MARK_PRICE",
                newClientOrderId=_leg_id(safe_id, "sl"),
            )
            target_order = self._create_order(
                symbol=sym,
                side=exit_side,
                type="TAKE_PROFIT_MARKET",
                stopPrice=target_price,
                quantity=qty_text,
                reduceOnly=True,
                workingType="MARK_PRICE",
                newClientOrderId=_leg_id(safe_id, "tp"),
            )
        except Exception as exc:
            logger.error("Failed to place bracket order: %s", exc)
            raise UpstreamError("binance.futures_create_order", exc) from exc

        orders = [entry_order, stop_order, target_order]
        return OrderResult(
            client_order_id=safe_id,
            accepted=True,
            order_ids=[str(order.get("orderId", "")) for order in orders],
            raw={"entry": entry_order, "stop": stop_order, "target": target_order},
        )


def make_broker(settings: Settings) -> BrokerPort:
    """Factory for a :class:`BrokerPort` bound to Binance."""

    return BinanceBroker(settings)

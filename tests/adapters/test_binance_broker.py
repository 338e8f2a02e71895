from __future__ import annotations

from types import SimpleNamespace

import pytest
from binance.exceptions import BinanceAPIException

from adapters.brokers.binance import BinanceBroker

SETTINGS = SimpleNamespace(
    BINANCE_API_KEY="key",
    BINANCE_API_SECRET="secret",
    BINANCE_TESTNET=True,
    FILTERS_CACHE_TTL_MIN=5.0,
)


class DummyResponse:
    status_code = 400
    text = '{"code": -4116, "msg": "ClientOrderId is duplicated."}'


class DummyClient:
    def __init__(self, duplicate_entry: bool = False) -> None:
        self.duplicate_entry = duplicate_entry
        self.orders: list[dict] = []
        self.exchange_info_calls = 0

    def futures_exchange_info(self):
        self.exchange_info_calls += 1
        return {
            "symbols": [
                {
                    "symbol": "BTCUSDT",
                    "filters": [
                        {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                        {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
                    ],
                }
            ]
        }

    def futures_create_order(self, **params):
        if self.duplicate_entry and params["type"] == "MARKET":
            raise BinanceAPIException(DummyResponse(), 400, DummyResponse.text)
        self.orders.append(params)
        return {"orderId": len(self.orders), **params}

    def futures_get_order(self, **params):
        return {"orderId": 99, "clientOrderId": params["origClientOrderId"]}

    def futures_account(self):
        return {
            "totalWalletBalance": "10100",
            "totalMarginBalance": "10150",
            "availableBalance": "8000",
            "canTrade": True,
        }

    def futures_income_history(self, **params):
        return [
            {"income": "150", "time": 2},
            {"income": "-50", "time": 1},
        ]

    def futures_position_information(self):
        return [
            {"symbol": "BTCUSDT", "positionAmt": "0.010", "entryPrice": "100000", "unRealizedProfit": "5"},
            {"symbol": "ETHUSDT", "positionAmt": "0", "entryPrice": "0"},
        ]


def test_bracket_order_snaps_and_marks_exit_legs_reduce_only() -> None:
    client = DummyClient()
    broker = BinanceBroker(SETTINGS, client=client)

    result = broker.submit_bracket_order(
        "btc/usdt", "buy", 0.01234, 106.5, 105.6941, 108.12, "flag-BTCUSDT:5m#abc"
    )

    assert result.accepted
    assert result.client_order_id == "flag-BTCUSDT-5m-abc"
    entry, stop, target = client.orders
    assert entry["type"] == "MARKET" and entry["side"] == "BUY"
    assert entry["quantity"] == "0.012"
    assert stop["type"] == "STOP_MARKET" and stop["side"] == "SELL"
    assert stop["reduceOnly"] is True
    assert stop["stopPrice"] == "105.7"
    assert stop["newClientOrderId"] == "flag-BTCUSDT-5m-abc-sl"
    assert target["type"] == "TAKE_PROFIT_MARKET"
    assert target["stopPrice"] == "108.1"
    assert target["newClientOrderId"] == "flag-BTCUSDT-5m-abc-tp"


def test_quantity_below_minimum_is_not_submitted() -> None:
    client = DummyClient()
    broker = BinanceBroker(SETTINGS, client=client)

    result = broker.submit_bracket_order("BTCUSDT", "SELL", 0.0004, 100.0, 101.0, 98.0, "flag-x")

    assert result.accepted is False
    assert client.orders == []


def test_duplicate_entry_returns_existing_order() -> None:
    client = DummyClient(duplicate_entry=True)
    broker = BinanceBroker(SETTINGS, client=client)

    result = broker.submit_bracket_order("BTCUSDT", "BUY", 0.01, 106.5, 105.7, 108.0, "flag-dup")

    assert result.accepted
    assert result.order_ids[0] == "99"
    assert len(client.orders) == 2


def test_exchange_info_is_cached() -> None:
    client = DummyClient()
    broker = BinanceBroker(SETTINGS, client=client)

    broker.get_symbol_filters("BTCUSDT")
    broker.get_symbol_filters("BTCUSDT")

    assert client.exchange_info_calls == 1
    with pytest.raises(ValueError):
        broker.get_symbol_filters("DOGEUSDT")


def test_account_equity_and_day_start_balance() -> None:
    broker = BinanceBroker(SETTINGS, client=DummyClient())

    account = broker.get_account()

    assert account.equity == pytest.approx(10150.0)
    assert account.buying_power == pytest.approx(8000.0)
    assert account.last_equity == pytest.approx(10000.0)
    assert account.blocked is False


def test_positions_and_trade_pnls() -> None:
    broker = BinanceBroker(SETTINGS, client=DummyClient())

    positions = broker.get_positions()
    assert [p.symbol for p in positions] == ["BTCUSDT"]
    assert broker.recent_trade_pnls("BTCUSDT") == [-50.0, 150.0]

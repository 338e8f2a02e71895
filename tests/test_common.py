from decimal import Decimal

import pytest

from common.precision import SymbolFilters, format_decimal
from common.symbols import normalize_symbol
from common.timeframes import bars_to_live, timeframe_minutes, to_binance_interval
from common.utils import sanitize_client_order_id
from config.utils import parse_bool, parse_int_list
from core.ports.settings import get_analysis_bars, get_execute_trades
from strategies.level_flag.config import LevelLifecycleConfig, PatternLifecycleConfig


class DummySettings:
    def __init__(self, values=None):
        self._values = values or {}

    def get(self, key, default=None):
        return self._values.get(key, default)


@pytest.mark.parametrize("raw", [" btc/usdt ", "btc-usdt", "BTCUSDT", "Btc_Usdt"])
def test_normalize_symbol_variants(raw):
    assert normalize_symbol(raw) == "BTCUSDT"


def test_normalize_symbol_rejects_empty():
    with pytest.raises(ValueError):
        normalize_symbol("__--")


@pytest.mark.parametrize(
    "timeframe, minutes",
    [("5m", 5), ("5Min", 5), ("1h", 60), ("4Hour", 240), ("1d", 1440)],
)
def test_timeframe_minutes(timeframe, minutes):
    assert timeframe_minutes(timeframe) == minutes


def test_timeframe_rejects_unknown_units():
    with pytest.raises(ValueError):
        timeframe_minutes("5w")
    with pytest.raises(ValueError):
        to_binance_interval("7m")
    assert to_binance_interval("1Hour") == "1h"


def test_bars_to_live_rounds_up():
    assert bars_to_live("5m", 120) == 24
    assert bars_to_live("7m", 120) == 18
    assert bars_to_live("1d", 120) == 1


def test_client_order_id_is_sanitized_and_truncated():
    raw = "flag-BTCUSDT:5m#" + "x" * 40
    cid = sanitize_client_order_id(raw)
    assert cid.startswith("flag-BTCUSDT-5m-")
    assert len(cid) == 36
    assert sanitize_client_order_id(raw) == cid


def test_symbol_filters_round_toward_safety():
    filters = SymbolFilters.from_exchange_info(
        {"PRICE_FILTER": {"tickSize": "0.01"}, "LOT_SIZE": {"stepSize": "0.1", "minQty": "0.1"}}
    )
    assert filters.price("100.019", side="BUY") == Decimal("100.01")
    assert filters.price("100.011", side="SELL") == Decimal("100.02")
    assert filters.quantity(1.29) == Decimal("1.2")
    assert format_decimal(Decimal("1.200")) == "1.2"
    assert format_decimal(Decimal("5")) == "5"


def test_parse_helpers():
    assert parse_bool("Yes") is True
    assert parse_bool("off", default=True) is False
    assert parse_bool("maybe", default=True) is True
    assert parse_int_list("20, 50,,100") == (20, 50, 100)
    assert parse_int_list([7]) == (7,)


def test_settings_accessors_apply_defaults():
    assert get_analysis_bars(DummySettings()) == 300
    assert get_analysis_bars(DummySettings({"ANALYSIS_BARS": "120"})) == 120
    assert get_execute_trades(DummySettings()) is False


def test_lifecycle_configs_read_confidence_steps_and_duplicate_tolerance():
    levels = LevelLifecycleConfig.from_settings(
        DummySettings(
            {
                "LEVEL_HOLD_CONFIDENCE_STEP": "0.03",
                "LEVEL_BREAK_CONFIDENCE_STEP": "0.1",
                "LEVEL_RECONFIRM_CONFIDENCE_STEP": "0.005",
            }
        )
    )
    patterns = PatternLifecycleConfig.from_settings(DummySettings({"PATTERN_DUPLICATE_TOLERANCE": "0.01"}))

    assert levels.hold_confidence_step == 0.03
    assert levels.break_confidence_step == 0.1
    assert levels.reconfirm_confidence_step == 0.005
    assert patterns.duplicate_tolerance == 0.01
    assert PatternLifecycleConfig.from_settings(DummySettings()).duplicate_tolerance == 0.002

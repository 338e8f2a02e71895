import pytest

from core.domain.models.Account import Account, Position
from core.risk_gate import RiskConfig, RiskGate, RiskReason, confidence_multiplier, daily_loss_pct


def _account(**overrides):
    values = dict(equity=100_000.0, buying_power=50_000.0, last_equity=100_000.0)
    values.update(overrides)
    return Account(**values)


def test_healthy_account_can_trade():
    check = RiskGate().check_pre_trade(_account(), [], [10.0, -5.0])
    assert check.can_trade
    assert check.reason is None


def test_daily_loss_limit_blocks_trading():
    check = RiskGate().check_pre_trade(_account(last_equity=103_000.0), [])
    assert not check.can_trade
    assert check.reason is RiskReason.DAILY_LOSS_LIMIT
    assert check.details["daily_loss_pct"] == pytest.approx(3000 / 103000)
    assert check.to_dict()["reason"] == "DAILY_LOSS_LIMIT"


def test_gains_do_not_count_as_loss():
    assert daily_loss_pct(_account(equity=105_000.0)) == 0.0


def test_blocked_account_checked_first():
    check = RiskGate().check_pre_trade(_account(blocked=True, last_equity=200_000.0), [])
    assert check.reason is RiskReason.ACCOUNT_BLOCKED


def test_open_position_cap():
    positions = [Position(symbol=f"S{i}", quantity=1.0, entry_price=10.0) for i in range(5)]
    check = RiskGate().check_pre_trade(_account(), positions)
    assert check.reason is RiskReason.MAX_OPEN_POSITIONS


def test_buying_power_floor():
    check = RiskGate().check_pre_trade(_account(buying_power=5_000.0), [])
    assert check.reason is RiskReason.INSUFFICIENT_BUYING_POWER


def test_consecutive_losses_stop_trading():
    gate = RiskGate()
    assert gate.check_pre_trade(_account(), [], [5.0, -1.0, -2.0, -3.0]).reason is RiskReason.CONSECUTIVE_LOSSES
    assert gate.check_pre_trade(_account(), [], [-1.0, -2.0, 4.0]).can_trade


@pytest.mark.parametrize("confidence,expected", [(0.95, 1.2), (0.85, 1.0), (0.5, 0.8)])
def test_confidence_multiplier(confidence, expected):
    assert confidence_multiplier(confidence) == expected


def test_position_size_capped_by_units():
    size = RiskGate().calculate_position_size(100_000.0, 106.5, 105.694, 0.79)
    assert size.confidence_multiplier == 0.8
    assert size.risk_amount == pytest.approx(800.0)
    assert size.quantity == 10
    assert size.capped_by == "max_units"
    assert not size.rounded_up


def test_position_size_is_fractional_for_high_priced_instruments():
    equity = 100_000.0
    size = RiskGate().calculate_position_size(equity, 60_000.0, 59_700.0, 0.85)

    assert size.quantity == pytest.approx(0.083)
    assert size.quantity * 60_000.0 <= equity * 0.05
    assert size.capped_by == "max_position_value"
    assert not size.rounded_up


def test_position_size_floors_to_configured_step():
    gate = RiskGate(RiskConfig(quantity_step=0.01))
    size = gate.calculate_position_size(100_000.0, 60_000.0, 59_700.0, 0.85)
    assert size.quantity == pytest.approx(0.08)


def test_position_size_rounds_up_to_one_step_within_caps():
    gate = RiskGate(RiskConfig(quantity_step=1.0))
    size = gate.calculate_position_size(10_000.0, 500.0, 410.0, 0.5)
    assert size.quantity == 1
    assert size.rounded_up
    assert size.capped_by is None

    strict = RiskGate(RiskConfig(quantity_step=1.0, round_up_single_unit=False))
    assert strict.calculate_position_size(10_000.0, 500.0, 410.0, 0.5).quantity == 0


def test_round_up_never_exceeds_position_value_cap():
    gate = RiskGate(RiskConfig(quantity_step=1.0, max_position_size=0.01))
    size = gate.calculate_position_size(10_000.0, 500.0, 410.0, 0.5)
    assert size.quantity == 0
    assert not size.rounded_up


def test_zero_stop_distance_sizes_nothing():
    size = RiskGate().calculate_position_size(100_000.0, 100.0, 100.0, 0.9)
    assert size.quantity == 0
    assert size.capped_by == "invalid_inputs"


def test_take_profit_ratio_grows_with_confidence_and_confluence():
    gate = RiskGate()
    assert gate.take_profit("BUY", 100.0, 99.0, 0.8, "weak") == pytest.approx(102.0)
    assert gate.take_profit("BUY", 100.0, 99.0, 0.95, "strong") == pytest.approx(103.0)
    assert gate.take_profit("SELL", 100.0, 101.0, 0.8, "moderate") == pytest.approx(98.0)


def test_validate_trade_geometry_and_reward():
    gate = RiskGate()
    ok = gate.validate_trade("BUY", 100.0, 99.0, 102.0, 1)
    assert ok.valid and ok.risk_reward == pytest.approx(2.0)

    inverted = gate.validate_trade("BUY", 100.0, 101.0, 102.0, 1)
    assert not inverted.valid

    thin = gate.validate_trade("SELL", 100.0, 101.0, 99.0, 1)
    assert not thin.valid
    assert "below minimum" in thin.errors[0]

    assert not gate.validate_trade("BUY", 100.0, 99.0, 102.0, 0).valid

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from bar_factory import STEP, T0, bar_at, breakout_bar, bullish_flag_bars
from core.application.execution import CycleDependencies, CycleStatus, check_health, run_cycle
from core.domain.models.Account import Account, OrderResult
from core.domain.models.Level import Level, LevelStrength, LevelType
from core.domain.models.Pattern import PatternEventType, PatternStage
from core.errors import PersistenceError
from core.risk_gate import RiskConfig, RiskGate
from repositories.memory_store import (
    InMemoryExecutionStateStore,
    InMemoryLevelStore,
    InMemoryPatternStore,
    InMemoryTouchStore,
)
from strategies.level_flag.config import PatternLifecycleConfig
from strategies.level_flag.flag_detector import FlagDetector
from strategies.level_flag.level_detector import LevelDetector
from strategies.level_flag.level_manager import LevelManager
from strategies.level_flag.pattern_manager import PatternManager
from strategies.level_flag.strategy import LevelFlagStrategy

SYMBOL = "BTCUSDT"
TF = "5m"
FIRST_RUN = T0 + timedelta(minutes=5 * 40)
SECOND_RUN = FIRST_RUN + timedelta(minutes=5)


class FakeSupplier:
    def __init__(self, bars):
        self.bars = list(bars)
        self.calls = []

    def fetch_bars(self, symbol, timeframe, since_exclusive=None, limit=500):
        self.calls.append(since_exclusive)
        if since_exclusive is not None:
            return [b for b in self.bars if b.timestamp > since_exclusive][:limit]
        return self.bars[-limit:]

    def fetch_reference_averages(self, symbol):
        return {}


class BrokenSupplier(FakeSupplier):
    def fetch_bars(self, symbol, timeframe, since_exclusive=None, limit=500):
        raise ConnectionError("exchange unreachable")


class FakeBroker:
    def __init__(self, account=None):
        self.account = account or Account(equity=100_000.0, buying_power=50_000.0, last_equity=100_000.0)
        self.orders = []

    def get_account(self):
        return self.account

    def get_positions(self):
        return []

    def recent_trade_pnls(self, symbol, limit=10):
        return []

    def submit_bracket_order(self, symbol, side, quantity, entry, stop, target, client_order_id):
        self.orders.append((symbol, side, quantity, entry, stop, target, client_order_id))
        return OrderResult(client_order_id=client_order_id, accepted=True, order_ids=["1", "2", "3"])


class FailingCursorStore(InMemoryExecutionStateStore):
    def __init__(self):
        super().__init__()
        self.fail_next = True

    def advance_cursor(self, symbol, timeframe, new_timestamp, counters=None):
        if self.fail_next:
            self.fail_next = False
            raise PersistenceError("execution_state", "update_item")
        return super().advance_cursor(symbol, timeframe, new_timestamp, counters)


@pytest.fixture
def stores():
    return {
        "state": InMemoryExecutionStateStore(),
        "levels": InMemoryLevelStore(),
        "touches": InMemoryTouchStore(),
        "patterns": InMemoryPatternStore(),
    }


def _deps(stores, supplier, broker=None, execute_trades=False):
    strategy = LevelFlagStrategy(
        LevelDetector(),
        FlagDetector(),
        LevelManager(stores["levels"], stores["touches"]),
        PatternManager(stores["patterns"], PatternLifecycleConfig()),
        RiskGate(RiskConfig()),
        broker,
        execute_trades=execute_trades,
    )
    return CycleDependencies(bar_supplier=supplier, state_store=stores["state"], strategy=strategy)


def test_invalid_timeframe_fails_without_touching_state(stores):
    result = run_cycle(SYMBOL, "7x", deps=_deps(stores, FakeSupplier([])))

    assert result.status is CycleStatus.FAILED
    assert result.error == "invalid_request"


def test_no_bars_reports_no_data(stores):
    result = run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=_deps(stores, FakeSupplier([])))

    assert result.status is CycleStatus.NO_DATA
    assert result.success
    assert stores["state"].get(SYMBOL, TF).last_bar_processed is None


def test_first_cycle_detects_flag_and_advances_cursor(stores):
    bars = bullish_flag_bars()

    result = run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=_deps(stores, FakeSupplier(bars)))

    assert result.status is CycleStatus.COMPLETED
    assert result.bars_processed == 40
    assert result.new_patterns_detected == 1
    assert result.cursor == bars[-1].timestamp
    state = stores["state"].get(SYMBOL, TF)
    assert state.last_bar_processed == bars[-1].timestamp
    assert state.bars_analyzed == 40
    assert state.patterns_detected_today == 1
    assert state.lock_owner is None
    [pattern] = stores["patterns"].list_patterns(SYMBOL, TF)
    assert pattern.stage is PatternStage.CONFIRMED
    assert pattern.confluence_count >= 1


def test_breakout_bar_generates_signal_and_order(stores):
    bars = bullish_flag_bars()
    supplier = FakeSupplier(bars)
    broker = FakeBroker()
    deps = _deps(stores, supplier, broker, execute_trades=True)
    run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=deps)

    supplier.bars.append(breakout_bar())
    result = run_cycle(SYMBOL, TF, now=SECOND_RUN, deps=deps)

    assert result.status is CycleStatus.COMPLETED
    assert result.bars_processed == 1
    assert result.patterns_broken_out == 1
    [signal] = result.trade_signals
    assert signal["side"] == "BUY"
    assert signal["entry"] == pytest.approx(106.5)
    assert signal["stop"] == pytest.approx(105.8 * 0.999)
    assert signal["quantity"] == 10
    assert signal["client_order_id"].startswith("flag-")
    assert result.orders_submitted == 1
    assert len(broker.orders) == 1

    broken = [p for p in stores["patterns"].list_patterns(SYMBOL, TF) if p.stage is PatternStage.BROKEN_OUT]
    assert len(broken) == 1
    assert broken[0].signal_id == signal["client_order_id"]
    events = stores["patterns"].list_events(broken[0].id)
    assert [e.event_type for e in events] == [
        PatternEventType.PATTERN_DETECTED,
        PatternEventType.BREAKOUT_CONFIRMED,
    ]
    state = stores["state"].get(SYMBOL, TF)
    assert state.signals_generated_today == 1
    assert state.trades_executed_today == 1


def test_second_run_without_new_bars_is_no_data(stores):
    supplier = FakeSupplier(bullish_flag_bars())
    deps = _deps(stores, supplier)
    run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=deps)

    result = run_cycle(SYMBOL, TF, now=SECOND_RUN, deps=deps)

    assert result.status is CycleStatus.NO_DATA
    assert stores["state"].get(SYMBOL, TF).bars_analyzed == 40


def test_force_reanalyses_without_counting_bars(stores):
    supplier = FakeSupplier(bullish_flag_bars())
    deps = _deps(stores, supplier)
    run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=deps)

    result = run_cycle(SYMBOL, TF, force=True, now=SECOND_RUN, deps=deps)

    assert result.status is CycleStatus.COMPLETED
    assert result.bars_processed == 0
    assert result.new_patterns_detected == 0
    assert stores["state"].get(SYMBOL, TF).bars_analyzed == 40
    assert len(stores["patterns"].list_patterns(SYMBOL, TF)) == 1


def test_replay_after_failed_cursor_write_is_idempotent(stores):
    stores["state"] = FailingCursorStore()
    bars = bullish_flag_bars()
    deps = _deps(stores, FakeSupplier(bars))

    failed = run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=deps)
    assert failed.status is CycleStatus.FAILED
    assert failed.error == "PersistenceError"
    assert stores["state"].get(SYMBOL, TF).last_bar_processed is None

    replay = run_cycle(SYMBOL, TF, now=FIRST_RUN + timedelta(seconds=30), deps=deps)

    assert replay.status is CycleStatus.COMPLETED
    assert replay.new_patterns_detected == 0
    [pattern] = stores["patterns"].list_patterns(SYMBOL, TF)
    assert len(stores["patterns"].list_events(pattern.id)) == 1
    assert stores["state"].get(SYMBOL, TF).last_bar_processed == bars[-1].timestamp


def test_supplier_failure_leaves_cursor_and_releases_lock(stores):
    result = run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=_deps(stores, BrokenSupplier([])))

    assert result.status is CycleStatus.FAILED
    assert result.error == "UpstreamError"
    assert "exchange unreachable" in result.cause
    state = stores["state"].get(SYMBOL, TF)
    assert state.last_bar_processed is None
    assert state.lock_owner is None


def test_concurrent_run_is_skipped(stores):
    stores["state"].acquire_lock(SYMBOL, TF, "other-run", FIRST_RUN, 240)

    result = run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=_deps(stores, FakeSupplier(bullish_flag_bars())))

    assert result.status is CycleStatus.SKIPPED_LOCKED
    assert result.success
    assert stores["state"].get(SYMBOL, TF).lock_owner == "other-run"


def test_result_serializes_to_plain_dict(stores):
    result = run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=_deps(stores, FakeSupplier(bullish_flag_bars())))

    payload = result.to_dict()
    assert payload["status"] == "completed"
    assert payload["success"] is True
    assert payload["cursor"] == bullish_flag_bars()[-1].timestamp.isoformat()


def test_health_reflects_last_execution(stores):
    deps = _deps(stores, FakeSupplier(bullish_flag_bars()))
    run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=deps)

    fresh = check_health("btc/usdt", TF, now=FIRST_RUN + timedelta(minutes=30), deps=deps)
    stale = check_health(SYMBOL, TF, now=FIRST_RUN + timedelta(minutes=90), deps=deps)

    assert fresh["healthy"] is True
    assert fresh["counters"]["bars_analyzed"] == 40
    assert stale["healthy"] is False
    assert fresh["patterns"]["total"] == 1
    assert fresh["patterns"]["by_stage"] == {"CONFIRMED": 1}


def _flat_then_flag(flat_bars):
    flat = [bar_at(i, 100.0) for i in range(flat_bars)]
    shift = STEP * flat_bars
    return flat + [replace(bar, timestamp=bar.timestamp + shift) for bar in bullish_flag_bars()]


def test_catch_up_analyses_each_batch_in_its_own_window(stores):
    bars = _flat_then_flag(40)
    supplier = FakeSupplier(bars[:20])
    deps = _deps(stores, supplier)
    deps.analysis_bars = 40
    run_cycle(SYMBOL, TF, now=T0 + STEP * 20, deps=deps)

    supplier.bars = list(bars)
    behind = run_cycle(SYMBOL, TF, now=T0 + STEP * 80, deps=deps)
    caught_up = run_cycle(SYMBOL, TF, now=T0 + STEP * 80 + timedelta(seconds=30), deps=deps)

    assert behind.bars_processed == 40
    assert behind.cursor == bars[59].timestamp
    assert behind.current_price == bars[59].close
    assert caught_up.bars_processed == 20
    assert caught_up.cursor == bars[-1].timestamp
    patterns = stores["patterns"].list_patterns(SYMBOL, TF)
    [flag_pattern] = [p for p in patterns if p.flag_end_time == bars[-1].timestamp]
    assert flag_pattern.stage is PatternStage.CONFIRMED
    assert stores["patterns"].list_events(flag_pattern.id)[-1].event_type is PatternEventType.PATTERN_DETECTED


def test_bars_inside_the_flag_never_fail_its_pattern(stores):
    bars = bullish_flag_bars()
    deps = _deps(stores, FakeSupplier(bars))
    run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=deps)
    [pattern] = stores["patterns"].list_patterns(SYMBOL, TF)

    report = deps.strategy.analyze(SYMBOL, TF, bars, bars[20:], SECOND_RUN)

    assert report.patterns_failed == 0
    assert stores["patterns"].get(SYMBOL, TF, pattern.id).stage is PatternStage.CONFIRMED


def test_setup_errors_are_reported_as_failed_cycles(monkeypatch):
    def _broken(cls, settings=None):
        raise ValueError("Unsupported state backend: redis")

    monkeypatch.setattr(CycleDependencies, "from_settings", classmethod(_broken))

    result = run_cycle(SYMBOL, TF, now=FIRST_RUN)

    assert result.status is CycleStatus.FAILED
    assert result.error == "ValueError"
    assert "redis" in result.cause


class CursorMovedBeforeLockStore(InMemoryExecutionStateStore):
    """Another run finishes the batch between our first look and our lock."""

    def __init__(self, moved_to):
        super().__init__()
        self.moved_to = moved_to

    def acquire_lock(self, symbol, timeframe, owner, now, ttl_seconds):
        if self.moved_to is not None:
            super().advance_cursor(symbol, timeframe, self.moved_to, {"bars_analyzed": 40})
            self.moved_to = None
        return super().acquire_lock(symbol, timeframe, owner, now, ttl_seconds)


def test_cursor_is_read_after_the_lock_is_held(stores):
    bars = bullish_flag_bars()
    stores["state"] = CursorMovedBeforeLockStore(bars[-1].timestamp)

    result = run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=_deps(stores, FakeSupplier(bars)))

    assert result.status is CycleStatus.NO_DATA
    assert result.cursor == bars[-1].timestamp
    assert stores["state"].get(SYMBOL, TF).bars_analyzed == 40
    assert stores["patterns"].list_patterns(SYMBOL, TF) == []


def test_cycle_deletes_levels_past_retention(stores):
    expired = Level(
        id="old-support",
        symbol=SYMBOL,
        timeframe=TF,
        level_type=LevelType.SUPPORT,
        price=90.0,
        strength=LevelStrength.MEDIUM,
        confidence=0.6,
        first_detected=T0 - timedelta(days=30),
        last_confirmed=T0 - timedelta(days=20),
        is_active=False,
        invalidated_at=T0 - timedelta(days=10),
    )
    stores["levels"].insert(expired)

    result = run_cycle(SYMBOL, TF, now=FIRST_RUN, deps=_deps(stores, FakeSupplier(bullish_flag_bars())))

    assert result.levels_removed == 1
    assert stores["levels"].get(SYMBOL, TF, "old-support") is None

"""One analysis pass of the level/flag engine over a bar window.

Order matters: levels are refreshed first because both new-pattern gating
and breakout signals score confluence against the active levels.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence

from common.utils import sanitize_client_order_id
from core.domain.models.Account import Account, Position
from core.domain.models.Bar import Bar
from core.domain.models.Level import Level
from core.domain.models.Pattern import Pattern
from core.domain.models.Signal import TradeSignal
from core.errors import UpstreamError
from core.ports.broker import BrokerPort
from core.ports.repositories import LevelRepository, PatternRepository, TouchRepository
from core.ports.settings import (
    SettingsProvider,
    get_execute_trades,
    get_min_level_confidence,
)
from core.risk_gate import RiskConfig, RiskGate, RiskReason

from .config import (
    FlagDetectorConfig,
    LevelDetectorConfig,
    LevelLifecycleConfig,
    PatternLifecycleConfig,
)
from .confluence import ConfluenceScore, score_confluence
from .flag_detector import FlagDetector
from .level_detector import LevelDetector
from .level_manager import LevelManager
from .pattern_manager import PatternManager

logger = logging.getLogger("flagbot.strategy.level_flag")

REJECTED_PREFIX = "REJECTED:"


@dataclass
class AnalysisReport:
    current_price: float | None = None
    levels_detected: int = 0
    levels_updated: int = 0
    active_levels_checked: int = 0
    level_touches: int = 0
    levels_invalidated: int = 0
    levels_removed: int = 0
    active_patterns_checked: int = 0
    new_patterns_detected: int = 0
    patterns_broken_out: int = 0
    patterns_failed: int = 0
    patterns_expired: int = 0
    trade_signals: list[TradeSignal] = field(default_factory=list)
    risk_rejections: list[dict[str, Any]] = field(default_factory=list)
    orders_submitted: int = 0
    candidate_rejection: str | None = None

    def counters(self, bars_analyzed: int) -> dict[str, int]:
        return {
            "patterns_detected_today": self.new_patterns_detected,
            "signals_generated_today": len(self.trade_signals),
            "trades_executed_today": self.orders_submitted,
            "bars_analyzed": bars_analyzed,
        }


class _AccountSnapshot:
    """Reads account state once per pass, on first need."""

    def __init__(self, broker: BrokerPort, symbol: str) -> None:
        self._broker = broker
        self._symbol = symbol
        self._loaded: tuple[Account, list[Position], list[float]] | None = None

    def get(self) -> tuple[Account, list[Position], list[float]]:
        if self._loaded is None:
            try:
                account = self._broker.get_account()
                positions = self._broker.get_positions()
                pnls = self._broker.recent_trade_pnls(self._symbol)
            except UpstreamError:
                raise
            except Exception as exc:
                raise UpstreamError("broker", exc) from exc
            self._loaded = (account, list(positions), list(pnls))
        return self._loaded


class LevelFlagStrategy:
    def __init__(
        self,
        level_detector: LevelDetector,
        flag_detector: FlagDetector,
        level_manager: LevelManager,
        pattern_manager: PatternManager,
        risk_gate: RiskGate,
        broker: BrokerPort | None = None,
        *,
        min_level_confidence: float = 0.5,
        execute_trades: bool = False,
    ) -> None:
        self.level_detector = level_detector
        self.flag_detector = flag_detector
        self.level_manager = level_manager
        self.pattern_manager = pattern_manager
        self.risk_gate = risk_gate
        self.broker = broker
        self.min_level_confidence = min_level_confidence
        self.execute_trades = execute_trades

    @classmethod
    def from_settings(
        cls,
        settings: SettingsProvider,
        *,
        levels: LevelRepository,
        touches: TouchRepository,
        patterns: PatternRepository,
        broker: BrokerPort | None = None,
    ) -> "LevelFlagStrategy":
        return cls(
            LevelDetector(LevelDetectorConfig.from_settings(settings)),
            FlagDetector(FlagDetectorConfig.from_settings(settings)),
            LevelManager(levels, touches, LevelLifecycleConfig.from_settings(settings)),
            PatternManager(patterns, PatternLifecycleConfig.from_settings(settings)),
            RiskGate(RiskConfig.from_settings(settings)),
            broker,
            min_level_confidence=get_min_level_confidence(settings),
            execute_trades=get_execute_trades(settings),
        )

    def analyze(
        self,
        symbol: str,
        timeframe: str,
        window: Sequence[Bar],
        new_bars: Sequence[Bar],
        now: datetime,
        reference_averages: Mapping[int, float] | None = None,
    ) -> AnalysisReport:
        report = AnalysisReport()
        if not window:
            return report
        report.current_price = window[-1].close

        levels = self._refresh_levels(symbol, timeframe, window, new_bars, now, reference_averages, report)
        self._advance_patterns(symbol, timeframe, new_bars, now, report)
        self._detect_pattern(symbol, timeframe, window, levels, now, report)
        self._emit_signals(symbol, timeframe, levels, now, report)
        return report

    # ------------------------------------------------------------------
    def _refresh_levels(
        self,
        symbol: str,
        timeframe: str,
        window: Sequence[Bar],
        new_bars: Sequence[Bar],
        now: datetime,
        reference_averages: Mapping[int, float] | None,
        report: AnalysisReport,
    ) -> list[Level]:
        detected = self.level_detector.detect(window, reference_averages)
        report.levels_detected = len(detected)
        sync = self.level_manager.sync_detected(symbol, timeframe, detected, window[-1].timestamp)
        report.levels_updated = sync.updated

        active = self.level_manager.active_levels(symbol, timeframe, self.min_level_confidence)
        report.active_levels_checked = len(active)
        touches = self.level_manager.record_touches(active, new_bars)
        report.level_touches = touches.count
        report.levels_invalidated = self.level_manager.invalidate_broken(symbol, timeframe, now)
        report.levels_removed = self.level_manager.cleanup_inactive(symbol, timeframe, now)
        return self.level_manager.active_levels(symbol, timeframe, self.min_level_confidence)

    def _advance_patterns(
        self,
        symbol: str,
        timeframe: str,
        new_bars: Sequence[Bar],
        now: datetime,
        report: AnalysisReport,
    ) -> None:
        report.patterns_expired = len(self.pattern_manager.expire_due(symbol, timeframe, now))
        active = self.pattern_manager.active_patterns(symbol, timeframe, now)
        report.active_patterns_checked = len(active)
        for bar in new_bars:
            still_active: list[Pattern] = []
            for pattern in active:
                if pattern.flag_end_time is not None and bar.timestamp <= pattern.flag_end_time:
                    # Bars up to the flag's last one belong to the pattern itself.
                    still_active.append(pattern)
                    continue
                outcome = self.pattern_manager.apply_breakout(pattern, bar)
                if outcome.applied:
                    report.patterns_broken_out += 1
                    continue
                failure = self.pattern_manager.apply_failure(outcome.pattern, bar)
                if failure.applied:
                    report.patterns_failed += 1
                    continue
                if not failure.pattern.is_terminal:
                    still_active.append(failure.pattern)
            active = still_active

    def _detect_pattern(
        self,
        symbol: str,
        timeframe: str,
        window: Sequence[Bar],
        levels: Sequence[Level],
        now: datetime,
        report: AnalysisReport,
    ) -> None:
        candidate = self.flag_detector.detect(window)
        if candidate is None:
            return
        flag = candidate.flag
        confluence = score_confluence(
            candidate.breakout_level,
            levels,
            reference_prices=(flag.high, flag.low, flag.midpoint),
            tolerance=self.pattern_manager.config.confluence_tolerance,
        )
        active = self.pattern_manager.active_patterns(symbol, timeframe, now)
        ok, reason = self.pattern_manager.qualifies(candidate, confluence, active)
        if not ok:
            report.candidate_rejection = reason
            logger.info(
                "patterns.candidate.rejected",
                extra={"reason": reason, "rating": candidate.rating.value, "confluence": confluence.count},
            )
            return
        if self.pattern_manager.create_from_candidate(symbol, timeframe, candidate, confluence, now):
            report.new_patterns_detected += 1

    def _emit_signals(
        self,
        symbol: str,
        timeframe: str,
        levels: Sequence[Level],
        now: datetime,
        report: AnalysisReport,
    ) -> None:
        pending = self.pattern_manager.awaiting_signal(symbol, timeframe)
        if not pending:
            return
        if self.broker is None:
            logger.warning("signals.skipped.no_broker", extra={"pending": len(pending)})
            return

        snapshot = _AccountSnapshot(self.broker, symbol)
        account, positions, pnls = snapshot.get()
        check = self.risk_gate.check_pre_trade(account, positions, pnls)
        for pattern in pending:
            if not check.can_trade:
                self._reject(pattern, check.reason, check.details, now, report)
                continue
            confluence = score_confluence(
                pattern.breakout_level,
                levels,
                tolerance=self.pattern_manager.config.confluence_tolerance,
            )
            self._build_signal(pattern, account, confluence, now, report)

    def _build_signal(
        self,
        pattern: Pattern,
        account: Account,
        confluence: ConfluenceScore,
        now: datetime,
        report: AnalysisReport,
    ) -> None:
        cfg = self.risk_gate.config
        entry = float(pattern.breakout_price or pattern.breakout_level)
        if pattern.is_bullish:
            side = "BUY"
            stop = pattern.flag_low * (1 - cfg.stop_buffer_pct)
        else:
            side = "SELL"
            stop = pattern.flag_high * (1 + cfg.stop_buffer_pct)
        target = self.risk_gate.take_profit(side, entry, stop, pattern.confidence, confluence.quality)

        size = self.risk_gate.calculate_position_size(account.equity, entry, stop, pattern.confidence)
        if size.quantity <= 0:
            self._reject(
                pattern,
                RiskReason.ZERO_QUANTITY,
                {"risk_amount": size.risk_amount, "risk_per_unit": size.risk_per_unit, "capped_by": size.capped_by},
                now,
                report,
            )
            return

        validation = self.risk_gate.validate_trade(side, entry, stop, target, size.quantity)
        if not validation.valid:
            self._reject(
                pattern,
                RiskReason.INVALID_TRADE,
                {"errors": validation.errors, "risk_reward": validation.risk_reward},
                now,
                report,
            )
            return

        signal = TradeSignal(
            symbol=pattern.symbol,
            timeframe=pattern.timeframe,
            pattern_id=pattern.id,
            side=side,
            entry=entry,
            stop=stop,
            target=target,
            quantity=size.quantity,
            confidence=pattern.confidence,
            confluence_count=confluence.count,
            confluence_quality=confluence.quality,
            risk_reward=validation.risk_reward,
            generated_at=now,
            client_order_id=sanitize_client_order_id(f"flag-{pattern.id}"),
            rounded_up=size.rounded_up,
        )
        if self.execute_trades and self.broker is not None:
            try:
                result = self.broker.submit_bracket_order(
                    signal.symbol,
                    signal.side,
                    signal.quantity,
                    signal.entry,
                    signal.stop,
                    signal.target,
                    signal.client_order_id,
                )
            except Exception as exc:
                raise UpstreamError("broker.submit_bracket_order", exc) from exc
            if result.accepted:
                report.orders_submitted += 1

        self.pattern_manager.mark_signal_emitted(pattern, signal.client_order_id, now)
        report.trade_signals.append(signal)
        logger.info("signals.generated", extra=signal.to_dict())

    def _reject(
        self,
        pattern: Pattern,
        reason: RiskReason | None,
        details: Mapping[str, Any],
        now: datetime,
        report: AnalysisReport,
    ) -> None:
        code = reason.value if reason else "UNKNOWN"
        self.pattern_manager.mark_signal_emitted(pattern, f"{REJECTED_PREFIX}{code}", now)
        report.risk_rejections.append({"pattern_id": pattern.id, "reason": code, "details": dict(details)})


__all__ = ["AnalysisReport", "LevelFlagStrategy"]

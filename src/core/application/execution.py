from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
import logging
from typing import Any
import uuid

from common.symbols import normalize_symbol
from common.timeframes import timeframe_minutes
from config.settings import Settings, load_settings
from core.domain.models.Bar import Bar
from core.errors import EngineError, UpstreamError
from core.ports.broker import BrokerPort
from core.ports.market_data import BarSupplierPort
from core.ports.repositories import ExecutionStateRepository
from core.ports.settings import get_analysis_bars, get_health_max_idle_minutes, get_lock_ttl_seconds
from strategies import STRATEGY_REGISTRY
from strategies.level_flag.strategy import AnalysisReport, LevelFlagStrategy

logger = logging.getLogger("flagbot.exec")


class CycleStatus(str, Enum):
    COMPLETED = "completed"
    NO_DATA = "no_data"
    SKIPPED_LOCKED = "skipped_locked"
    FAILED = "failed"


@dataclass
class CycleResult:
    symbol: str
    timeframe: str
    status: CycleStatus
    bars_processed: int = 0
    current_price: float | None = None
    active_levels_checked: int = 0
    levels_detected: int = 0
    levels_updated: int = 0
    level_touches: int = 0
    levels_invalidated: int = 0
    levels_removed: int = 0
    active_patterns_checked: int = 0
    new_patterns_detected: int = 0
    patterns_broken_out: int = 0
    patterns_failed: int = 0
    patterns_expired: int = 0
    trade_signals: list[dict[str, Any]] = field(default_factory=list)
    risk_rejections: list[dict[str, Any]] = field(default_factory=list)
    orders_submitted: int = 0
    cursor: datetime | None = None
    error: str | None = None
    cause: str | None = None

    @property
    def success(self) -> bool:
        return self.status is not CycleStatus.FAILED

    @classmethod
    def from_report(
        cls,
        symbol: str,
        timeframe: str,
        report: AnalysisReport,
        bars_processed: int,
        cursor: datetime | None,
    ) -> "CycleResult":
        return cls(
            symbol=symbol,
            timeframe=timeframe,
            status=CycleStatus.COMPLETED,
            bars_processed=bars_processed,
            current_price=report.current_price,
            active_levels_checked=report.active_levels_checked,
            levels_detected=report.levels_detected,
            levels_updated=report.levels_updated,
            level_touches=report.level_touches,
            levels_invalidated=report.levels_invalidated,
            levels_removed=report.levels_removed,
            active_patterns_checked=report.active_patterns_checked,
            new_patterns_detected=report.new_patterns_detected,
            patterns_broken_out=report.patterns_broken_out,
            patterns_failed=report.patterns_failed,
            patterns_expired=report.patterns_expired,
            trade_signals=[signal.to_dict() for signal in report.trade_signals],
            risk_rejections=list(report.risk_rejections),
            orders_submitted=report.orders_submitted,
            cursor=cursor,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "status": self.status.value,
            "success": self.success,
            "bars_processed": self.bars_processed,
            "current_price": self.current_price,
            "active_levels_checked": self.active_levels_checked,
            "levels_detected": self.levels_detected,
            "levels_updated": self.levels_updated,
            "level_touches": self.level_touches,
            "levels_invalidated": self.levels_invalidated,
            "levels_removed": self.levels_removed,
            "active_patterns_checked": self.active_patterns_checked,
            "new_patterns_detected": self.new_patterns_detected,
            "patterns_broken_out": self.patterns_broken_out,
            "patterns_failed": self.patterns_failed,
            "patterns_expired": self.patterns_expired,
            "trade_signals": list(self.trade_signals),
            "risk_rejections": list(self.risk_rejections),
            "orders_submitted": self.orders_submitted,
            "cursor": self.cursor.isoformat() if self.cursor else None,
            "error": self.error,
            "cause": self.cause,
        }


def _resolve_bar_supplier(settings: Settings) -> BarSupplierPort:
    if settings.FEATURE_DATASOURCE == "binance":
        from adapters.data_providers.binance import make_bar_supplier

        return make_bar_supplier(settings)
    raise ValueError(f"Unsupported datasource: {settings.FEATURE_DATASOURCE}")


def _resolve_broker(settings: Settings) -> BrokerPort | None:
    if settings.FEATURE_BROKER == "none":
        return None
    if settings.FEATURE_BROKER == "binance":
        from adapters.brokers.binance import make_broker

        return make_broker(settings)
    raise ValueError(f"Unsupported broker: {settings.FEATURE_BROKER}")


@lru_cache(maxsize=1)
def _memory_stores() -> tuple[Any, Any, Any, Any]:
    from repositories.memory_store import (
        InMemoryExecutionStateStore,
        InMemoryLevelStore,
        InMemoryPatternStore,
        InMemoryTouchStore,
    )

    return (
        InMemoryExecutionStateStore(),
        InMemoryLevelStore(),
        InMemoryTouchStore(),
        InMemoryPatternStore(),
    )


def _resolve_stores(settings: Settings) -> tuple[Any, Any, Any, Any]:
    """Return ``(state, levels, touches, patterns)`` for ``STATE_BACKEND``."""

    if settings.STATE_BACKEND == "memory":
        return _memory_stores()
    if settings.STATE_BACKEND == "dynamodb":
        from repositories import ExecutionStateStore, LevelStore, PatternStore, TouchStore

        region = settings.DDB_REGION
        return (
            ExecutionStateStore(settings.DDB_TABLE_EXECUTION_STATE, region_name=region),
            LevelStore(settings.DDB_TABLE_LEVELS, region_name=region),
            TouchStore(settings.DDB_TABLE_LEVELS, region_name=region),
            PatternStore(settings.DDB_TABLE_PATTERNS, region_name=region),
        )
    raise ValueError(f"Unsupported state backend: {settings.STATE_BACKEND}")


@dataclass
class CycleDependencies:
    bar_supplier: BarSupplierPort
    state_store: ExecutionStateRepository
    strategy: LevelFlagStrategy
    analysis_bars: int = 300
    lock_ttl_seconds: int = 240
    health_max_idle_minutes: int = 60

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CycleDependencies":
        settings = settings or load_settings()
        logger.info(
            "cycle.config",
            extra={
                "strategy": settings.STRATEGY_NAME,
                "datasource": settings.FEATURE_DATASOURCE,
                "broker": settings.FEATURE_BROKER,
                "state_backend": settings.STATE_BACKEND,
                "execute_trades": settings.EXECUTE_TRADES,
            },
        )
        state, levels, touches, patterns = _resolve_stores(settings)
        strategy_cls = STRATEGY_REGISTRY[settings.STRATEGY_NAME]
        strategy = strategy_cls.from_settings(
            settings,
            levels=levels,
            touches=touches,
            patterns=patterns,
            broker=_resolve_broker(settings),
        )
        return cls(
            bar_supplier=_resolve_bar_supplier(settings),
            state_store=state,
            strategy=strategy,
            analysis_bars=get_analysis_bars(settings),
            lock_ttl_seconds=get_lock_ttl_seconds(settings),
            health_max_idle_minutes=get_health_max_idle_minutes(settings),
        )


def _fetch(supplier: BarSupplierPort, symbol: str, timeframe: str, **kwargs: Any) -> list[Bar]:
    try:
        return list(supplier.fetch_bars(symbol, timeframe, **kwargs))
    except EngineError:
        raise
    except Exception as exc:
        raise UpstreamError("bar_supplier", exc) from exc


def _window_ending_at(deps: "CycleDependencies", symbol: str, timeframe: str, last: Bar) -> list[Bar]:
    """The ``analysis_bars`` bars that end at ``last``."""

    span = timedelta(minutes=timeframe_minutes(timeframe) * deps.analysis_bars)
    bars = _fetch(
        deps.bar_supplier, symbol, timeframe, since_exclusive=last.timestamp - span, limit=deps.analysis_bars
    )
    return [bar for bar in bars if bar.timestamp <= last.timestamp]


def _reference_averages(supplier: BarSupplierPort, symbol: str) -> dict[int, float]:
    try:
        return dict(supplier.fetch_reference_averages(symbol))
    except Exception as exc:
        logger.warning("cycle.reference_averages.unavailable", extra={"symbol": symbol, "error": str(exc)})
        return {}


def run_cycle(
    symbol: str,
    timeframe: str,
    force: bool = False,
    *,
    now: datetime | None = None,
    deps: CycleDependencies | None = None,
) -> CycleResult:
    """Process every closed bar newer than the stored cursor for one pair.

    The cursor and the daily counters move in a single conditional write
    after all level and pattern writes for the batch have succeeded, so a
    failed or replayed cycle never double counts.
    """

    current_time = now or datetime.now(timezone.utc)
    try:
        symbol = normalize_symbol(symbol)
        timeframe_minutes(timeframe)
    except ValueError as exc:
        logger.warning("cycle.invalid_request", extra={"symbol": symbol, "timeframe": timeframe})
        return CycleResult(str(symbol), str(timeframe), CycleStatus.FAILED, error="invalid_request", cause=str(exc))

    try:
        deps = deps or CycleDependencies.from_settings()
    except Exception as exc:
        # Settings and client construction errors end the cycle here.
        logger.warning("cycle.setup.failed", extra={"error": type(exc).__name__, "detail": str(exc)})
        return CycleResult(symbol, timeframe, CycleStatus.FAILED, error=type(exc).__name__, cause=str(exc))

    store = deps.state_store
    owner = uuid.uuid4().hex
    log_ctx = {"symbol": symbol, "timeframe": timeframe, "force": force, "run_id": owner}

    try:
        if not store.acquire_lock(symbol, timeframe, owner, current_time, deps.lock_ttl_seconds):
            logger.info("cycle.skipped_locked", extra=log_ctx)
            held = store.get(symbol, timeframe)
            return CycleResult(symbol, timeframe, CycleStatus.SKIPPED_LOCKED, cursor=held.last_bar_processed)
    except EngineError as exc:
        logger.exception("cycle.failed", extra=log_ctx)
        return CycleResult(symbol, timeframe, CycleStatus.FAILED, error=type(exc).__name__, cause=str(exc))

    cursor: datetime | None = None
    try:
        # Read under the lock so no other run moves the cursor between read and fetch.
        state = store.get(symbol, timeframe)
        cursor = state.last_bar_processed
        if store.reset_if_new_day(symbol, timeframe, current_time.date()):
            logger.info("cycle.daily_reset", extra=log_ctx)

        new_bars = _fetch(
            deps.bar_supplier, symbol, timeframe, since_exclusive=cursor, limit=deps.analysis_bars
        )
        if not new_bars and not force:
            logger.info("cycle.no_data", extra={**log_ctx, "cursor": cursor.isoformat() if cursor else None})
            return CycleResult(symbol, timeframe, CycleStatus.NO_DATA, cursor=cursor)

        if cursor is None and new_bars:
            window = new_bars
        elif new_bars:
            window = _window_ending_at(deps, symbol, timeframe, new_bars[-1])
        else:
            window = _fetch(deps.bar_supplier, symbol, timeframe, limit=deps.analysis_bars)
        if not window:
            logger.info("cycle.no_data", extra=log_ctx)
            return CycleResult(symbol, timeframe, CycleStatus.NO_DATA, cursor=cursor)

        report = deps.strategy.analyze(
            symbol,
            timeframe,
            window,
            new_bars,
            current_time,
            _reference_averages(deps.bar_supplier, symbol),
        )

        counters = report.counters(len(new_bars))
        if new_bars:
            cursor_ts = new_bars[-1].timestamp
            if store.advance_cursor(symbol, timeframe, cursor_ts, counters):
                cursor = cursor_ts
            else:
                logger.info("cycle.cursor.unchanged", extra={**log_ctx, "candidate": cursor_ts.isoformat()})
        else:
            store.increment_daily_counters(
                symbol, timeframe, {k: v for k, v in counters.items() if k != "bars_analyzed"}
            )

        result = CycleResult.from_report(symbol, timeframe, report, len(new_bars), cursor)
        logger.info(
            "cycle.completed",
            extra={
                **log_ctx,
                "bars_processed": result.bars_processed,
                "new_patterns": result.new_patterns_detected,
                "breakouts": result.patterns_broken_out,
                "signals": len(result.trade_signals),
                "rejections": len(result.risk_rejections),
            },
        )
        return result
    except EngineError as exc:
        logger.exception("cycle.failed", extra={**log_ctx, "error": type(exc).__name__})
        cause = getattr(exc, "cause", None)
        return CycleResult(
            symbol,
            timeframe,
            CycleStatus.FAILED,
            cursor=cursor,
            error=type(exc).__name__,
            cause=str(cause if cause is not None else exc),
        )
    except Exception as exc:
        logger.exception("cycle.failed", extra={**log_ctx, "error": type(exc).__name__})
        return CycleResult(
            symbol,
            timeframe,
            CycleStatus.FAILED,
            cursor=cursor,
            error=type(exc).__name__,
            cause=str(exc),
        )
    finally:
        try:
            store.release_lock(symbol, timeframe, owner)
        except EngineError:
            logger.warning("cycle.lock.release_failed", extra=log_ctx)


def check_health(
    symbol: str,
    timeframe: str,
    *,
    now: datetime | None = None,
    deps: CycleDependencies | None = None,
) -> dict[str, Any]:
    """Cursor, counters and idle time for one pair plus pattern outcome stats, without taking the lock."""

    deps = deps or CycleDependencies.from_settings()
    symbol = normalize_symbol(symbol)
    health = deps.state_store.health(
        symbol,
        timeframe,
        now or datetime.now(timezone.utc),
        deps.health_max_idle_minutes,
    )
    health["patterns"] = deps.strategy.pattern_manager.pattern_stats(symbol, timeframe)
    return health

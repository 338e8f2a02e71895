from __future__ import annotations

from functools import lru_cache
from typing import Any
import logging

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    STRATEGY_NAME: str = "level-flag"
    FEATURE_BROKER: str = "binance"
    FEATURE_DATASOURCE: str = "binance"
    STATE_BACKEND: str = "dynamodb"

    SYMBOL: str = "BTCUSDT"
    TIMEFRAME: str = Field(
        default="5m",
        validation_alias=AliasChoices("TIMEFRAME", "INTERVAL"),
    )
    ANALYSIS_BARS: int = 300
    MIN_LEVEL_CONFIDENCE: float = 0.5
    EXECUTE_TRADES: bool = False
    LOCK_TTL_SECONDS: int = 240
    HEALTH_MAX_IDLE_MINUTES: int = 60

    # Level engine
    LEVEL_TOLERANCE: float = 0.002
    LEVEL_CONFLUENCE_TOLERANCE: float = 0.006
    LEVEL_PIVOT_WINDOW: int = 10
    LEVEL_VOLUME_PRICE_STEP: float = 0.01
    LEVEL_VOLUME_TOP_N: int = 10
    LEVEL_TREND_PERIODS: str = "20,50"
    LEVEL_TREND_MIN_R2: float = 0.7
    LEVEL_ZONE_MIN_BARS: int = 30
    LEVEL_ZONE_WINDOW: int = 5
    LEVEL_ZONE_MIN_TOUCHES: int = 2
    LEVEL_TOUCH_THRESHOLD: float = 0.002
    LEVEL_SIMILARITY_TOLERANCE: float = 0.005
    LEVEL_HOLD_CONFIDENCE_STEP: float = 0.02
    LEVEL_BREAK_CONFIDENCE_STEP: float = 0.05
    LEVEL_RECONFIRM_CONFIDENCE_STEP: float = 0.01
    LEVEL_RETENTION_DAYS: int = 7

    # Flag detector
    FLAG_MIN_BARS: int = 5
    FLAG_MAX_BARS: int = 20
    FLAG_WINDOW_BARS: int = 10
    FLAG_POLE_LOOKBACK_BARS: int = 30
    FLAG_MIN_MOVE_PCT: float = 0.02
    FLAG_MAX_RANGE_PCT: float = 0.03
    FLAG_SLOPE_THRESHOLD: float = 0.001
    FLAG_MIN_VOLUME_DECLINE: float = 0.1
    FLAG_VOLUME_CONFIRM_RATIO: float = 1.2
    FLAG_VOLUME_SURGE_RATIO: float = 1.5
    FLAG_BREAKOUT_BUFFER_FRACTION: float = 0.1

    # Pattern lifecycle
    PATTERN_MIN_RATING: str = "good"
    PATTERN_MIN_CONFLUENCE: int = 1
    PATTERN_TTL_MINUTES: int = 120
    PATTERN_INITIAL_STAGE: str = "CONFIRMED"
    BREAKOUT_NOISE_PCT: float = 0.001
    BREAKOUT_VOLUME_FRACTION: float = 0.6
    CONFLUENCE_TOLERANCE: float = 0.005
    PATTERN_DUPLICATE_TOLERANCE: float = 0.002

    # Risk gate
    RISK_MAX_DAILY_LOSS: float = 0.02
    RISK_MAX_OPEN_POSITIONS: int = 5
    RISK_MIN_BUYING_POWER_PCT: float = 0.10
    RISK_MAX_CONSECUTIVE_LOSSES: int = 3
    RISK_PER_TRADE: float = 0.01
    RISK_MAX_POSITION_SIZE: float = 0.05
    RISK_MAX_UNITS: float = 10
    RISK_QUANTITY_STEP: float = 0.001
    RISK_ROUND_UP_SINGLE_UNIT: bool = True
    RISK_MIN_REWARD_RATIO: float = 1.5
    RISK_BASE_REWARD_RATIO: float = 2.0
    RISK_STOP_BUFFER_PCT: float = 0.001

    # Persistence
    DDB_REGION: str | None = None
    DDB_TABLE_EXECUTION_STATE: str = "flag_execution_state"
    DDB_TABLE_LEVELS: str = "flag_levels"
    DDB_TABLE_PATTERNS: str = "flag_patterns"

    BINANCE_API_KEY: str | None = None
    BINANCE_API_SECRET: str | None = None
    BINANCE_TESTNET: bool = False
    FILTERS_CACHE_TTL_MIN: float = 5.0

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "plain"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("PATTERN_INITIAL_STAGE", "STATE_BACKEND", "LOG_FORMAT", mode="before")
    @classmethod
    def _normalize_choice(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    def get(self, key: str, default: Any | None = None) -> Any:
        """Return configuration value for ``key`` with ``default`` fallback."""
        return getattr(self, key, default)


@lru_cache
def load_settings() -> Settings:
    """Factory function to load settings from environment or .env file.

    Note: This function is cached. In AWS Lambda, environment variable
    changes are picked up only on a cold start (new deployment or
    container restart).
    """
    settings = Settings()
    logging.getLogger("flagbot.settings").info(
        "settings.loaded",
        extra={
            "symbol": settings.SYMBOL,
            "timeframe": settings.TIMEFRAME,
            "state_backend": settings.STATE_BACKEND,
            "execute_trades": settings.EXECUTE_TRADES,
            "testnet": settings.BINANCE_TESTNET,
        },
    )
    return settings

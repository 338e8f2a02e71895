from __future__ import annotations

from typing import Any, Protocol


class SettingsProvider(Protocol):
    """Generic provider for configuration values."""

    def get(self, key: str, default: Any | None = None) -> Any:
        ...


# ---------------------------------------------------------------------------
# Helper accessors with defaults


def get_analysis_bars(settings: SettingsProvider) -> int:
    return int(settings.get("ANALYSIS_BARS", 300))


def get_min_level_confidence(settings: SettingsProvider) -> float:
    return float(settings.get("MIN_LEVEL_CONFIDENCE", 0.5))


def get_lock_ttl_seconds(settings: SettingsProvider) -> int:
    return int(settings.get("LOCK_TTL_SECONDS", 240))


def get_execute_trades(settings: SettingsProvider) -> bool:
    return bool(settings.get("EXECUTE_TRADES", False))


def get_health_max_idle_minutes(settings: SettingsProvider) -> int:
    return int(settings.get("HEALTH_MAX_IDLE_MINUTES", 60))

"""Helper functions shared across modules."""

from __future__ import annotations

from datetime import datetime, timezone
import re

__all__ = [
    "sanitize_client_order_id",
    "to_epoch_ms",
    "from_epoch_ms",
    "ensure_utc",
]


_CID_SANITIZE_RE = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_client_order_id(raw: str) -> str:
    """Sanitize ``raw`` to meet Binance client order id requirements.

    Any character outside ``[A-Za-z0-9_-]`` is replaced with ``-`` and the
    resulting string is truncated to 36 characters. The transformation is
    deterministic so replays reuse the same id.
    """

    return _CID_SANITIZE_RE.sub("-", str(raw))[:36]


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive input is assumed UTC)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(ensure_utc(value).timestamp() * 1000)


def from_epoch_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)

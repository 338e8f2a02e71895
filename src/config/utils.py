"""Coercion helpers for environment values and trigger payloads."""

from __future__ import annotations

from typing import Any, Iterable

_TRUTHY = frozenset({"true", "1", "yes", "y", "on"})
_FALSY = frozenset({"false", "0", "no", "n", "off"})


def parse_bool(value: Any, *, default: bool = False) -> bool:
    """Interpret ``value`` as a flag.

    Booleans pass through, numbers are true when non-zero and strings are
    matched case-insensitively against ``true/1/yes/y/on`` and their
    opposites. Anything else (including ``None``) yields ``default``.
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUTHY:
            return True
        if token in _FALSY:
            return False
    return default


def parse_int_list(value: str | Iterable[Any] | None) -> tuple[int, ...]:
    """Return a tuple of ints from ``"20,50"``-style strings or iterables.

    Empty segments are skipped; a non-numeric segment raises ``ValueError``.
    """

    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(int(part) for part in (p.strip() for p in value.split(",")) if part)
    return tuple(int(v) for v in value)

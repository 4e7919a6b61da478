from __future__ import annotations

import math
import re
from datetime import timedelta
from typing import Optional, Union

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)(ms|s|m|h|d|w)\s*$", re.IGNORECASE)

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}

DurationInput = Union[int, float, str, timedelta, None]


def parse_duration_ms(value: DurationInput, fallback_ms: Optional[int] = None) -> int:
    """Convert a configured duration into whole milliseconds.

    Numbers (and purely numeric strings) are milliseconds. Strings may carry a
    unit suffix: ``500ms``, ``30s``, ``15m``, ``24h``, ``7d``, ``2w``. Results
    are rounded to the nearest millisecond.

    When the value cannot be parsed, ``fallback_ms`` is returned if given,
    otherwise ``ValueError`` is raised.
    """
    if isinstance(value, timedelta):
        return round(value.total_seconds() * 1000)
    if isinstance(value, bool):
        # bool is an int subclass; never a meaningful duration
        return _fallback(value, fallback_ms)
    if isinstance(value, (int, float)):
        if value < 0 or not math.isfinite(value):
            return _fallback(value, fallback_ms)
        return round(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return _fallback(value, fallback_ms)
        try:
            numeric = float(stripped)
        except ValueError:
            numeric = None
        if numeric is not None:
            if numeric < 0 or not math.isfinite(numeric):
                return _fallback(value, fallback_ms)
            return round(numeric)
        match = _DURATION_PATTERN.match(stripped)
        if match:
            amount = float(match.group(1))
            unit = match.group(2).lower()
            return round(amount * _UNIT_MS[unit])
    return _fallback(value, fallback_ms)


def parse_duration(value: DurationInput, fallback: Optional[timedelta] = None) -> timedelta:
    """Like :func:`parse_duration_ms` but returns a ``timedelta``."""
    fallback_ms = parse_duration_ms(fallback) if fallback is not None else None
    return timedelta(milliseconds=parse_duration_ms(value, fallback_ms))


def _fallback(value: DurationInput, fallback_ms: Optional[int]) -> int:
    if fallback_ms is None:
        raise ValueError(f"invalid duration: {value!r}")
    return fallback_ms

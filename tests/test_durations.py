from datetime import timedelta

import pytest

from tessera.durations import parse_duration, parse_duration_ms


@pytest.mark.parametrize(
    "value, expected",
    [
        (1500, 1500),
        ("250", 250),
        ("500ms", 500),
        ("30s", 30_000),
        ("15m", 900_000),
        ("24h", 86_400_000),
        ("7d", 604_800_000),
        ("2w", 1_209_600_000),
        (" 1.5s ", 1500),
        (timedelta(seconds=2), 2000),
    ],
)
def test_parse_duration_ms(value, expected):
    assert parse_duration_ms(value) == expected


@pytest.mark.parametrize("value", ["", "soon", "-5", "5y", True, None, float("inf")])
def test_invalid_values_raise(value):
    with pytest.raises(ValueError):
        parse_duration_ms(value)


def test_fallback_used_for_invalid():
    assert parse_duration_ms("soon", fallback_ms=42) == 42
    assert parse_duration("soon", fallback=timedelta(minutes=1)) == timedelta(minutes=1)


def test_parse_duration_returns_timedelta():
    assert parse_duration("15m") == timedelta(minutes=15)

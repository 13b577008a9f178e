"""
Prometheus-style duration strings.

Durations appear in configuration files, HTTP query parameters and generated
expressions, so they are parsed from and rendered to the same compact form
(``30s``, ``5m``, ``7d``, ``1w``). Rendering is canonical: the largest unit
that divides the duration evenly is used, which keeps generated expressions
byte-stable.
"""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Annotated, Union

from pydantic import BeforeValidator, PlainSerializer

_UNITS_MS = {
    "w": 7 * 24 * 3600 * 1000,
    "d": 24 * 3600 * 1000,
    "h": 3600 * 1000,
    "m": 60 * 1000,
    "s": 1000,
    "ms": 1,
}

_DURATION_RE = re.compile(r"(\d+)(ms|w|d|h|m|s)")


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """
    Parse a duration.

    Accepts a ``timedelta``, a number of seconds, or a Prometheus duration
    string made of one or more ``<int><unit>`` groups (``1h30m``).

    Raises:
        ValueError: If the string is empty or malformed
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    total_ms = 0
    pos = 0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total_ms += int(match.group(1)) * _UNITS_MS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(milliseconds=total_ms)


def duration_ms(value: timedelta) -> int:
    return round(value.total_seconds() * 1000)


def format_duration(value: timedelta) -> str:
    """Render a duration with the largest unit that divides it evenly."""
    ms = duration_ms(value)
    if ms == 0:
        return "0s"
    sign = "-" if ms < 0 else ""
    ms = abs(ms)
    for unit in ("w", "d", "h", "m", "s", "ms"):
        size = _UNITS_MS[unit]
        if ms % size == 0:
            return f"{sign}{ms // size}{unit}"
    return f"{sign}{ms}ms"


Duration = Annotated[
    timedelta,
    BeforeValidator(parse_duration),
    PlainSerializer(format_duration, return_type=str),
]

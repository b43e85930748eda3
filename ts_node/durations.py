"""
Duration and timestamp helpers.

Implements:
- Retention durations ("30d", "12h", "2 weeks", "infinite")
- Plot offset arithmetic (value + units, e.g. 1 week back from the last point)
- Normalization of client-supplied times (epoch ms or ISO-8601) to epoch ms
"""

from __future__ import annotations

import math
import re
import time
from datetime import datetime, timedelta
from typing import Optional, Union

import pandas as pd


# SQLite INTEGER is a signed 64-bit value
EPOCH_MS_MIN = -(2**63)
EPOCH_MS_MAX = 2**63 - 1


# Seconds per offset unit. Months and years are fixed-length.
UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
    "year": 365 * 86400,
}

UNIT_ALIASES = {
    "s": "second",
    "sec": "second",
    "secs": "second",
    "m": "minute",
    "min": "minute",
    "mins": "minute",
    "h": "hour",
    "hr": "hour",
    "hrs": "hour",
    "d": "day",
    "w": "week",
    "wk": "week",
    "mo": "month",
    "y": "year",
    "yr": "year",
}

INFINITE = {"infinite", "inf", "infinity", "forever", "never"}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def normalize_unit(units: str) -> str:
    """Map a unit name (singular, plural or abbreviation) to its canonical form."""
    key = units.strip().lower()
    if key in UNIT_SECONDS:
        return key
    if key in UNIT_ALIASES:
        return UNIT_ALIASES[key]
    if key.endswith("s") and key[:-1] in UNIT_SECONDS:
        return key[:-1]
    raise ValueError(f"Unknown time unit: {units!r}")


def offset_ms(value: Union[int, float], units: str) -> int:
    """Length of ``value`` ``units`` in milliseconds (e.g. offset_ms(1, "weeks"))."""
    return int(round(float(value) * UNIT_SECONDS[normalize_unit(units)] * 1000))


def parse_duration(text: Union[str, int, float, timedelta, None]) -> Optional[timedelta]:
    """
    Parse a retention duration.

    Args:
        text: "30d", "12 hours", "2w", bare seconds, a timedelta, or an
            infinite sentinel ("infinite", "inf", "forever", None)

    Returns:
        timedelta, or None for an infinite duration
    """
    if text is None:
        return None
    if isinstance(text, timedelta):
        return text
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        if text <= 0:
            raise ValueError(f"Duration must be positive: {text}")
        return timedelta(seconds=text)

    raw = str(text).strip().lower()
    if raw in INFINITE:
        return None

    match = _DURATION_RE.match(raw)
    if not match:
        raise ValueError(f"Unparseable duration: {text!r}")

    amount = float(match.group(1))
    unit = normalize_unit(match.group(2)) if match.group(2) else "second"
    if amount <= 0:
        raise ValueError(f"Duration must be positive: {text!r}")
    return timedelta(seconds=amount * UNIT_SECONDS[unit])


def format_duration(duration: Optional[timedelta]) -> str:
    if duration is None:
        return "infinite"
    seconds = int(duration.total_seconds())
    for unit in ("year", "week", "day", "hour", "minute"):
        size = UNIT_SECONDS[unit]
        if seconds % size == 0 and seconds >= size:
            return f"{seconds // size}{unit[0] if unit != 'minute' else 'min'}"
    return f"{seconds}s"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def check_epoch_ms(ms: int) -> int:
    """Reject times the store cannot hold."""
    if ms < EPOCH_MS_MIN or ms > EPOCH_MS_MAX:
        raise ValueError(f"Timestamp out of range: {ms}")
    return ms


def clamp_epoch_ms(ms: int) -> int:
    return max(EPOCH_MS_MIN, min(EPOCH_MS_MAX, ms))


def to_epoch_ms(value: Union[str, int, float, datetime, pd.Timestamp]) -> int:
    """
    Normalize a client-supplied time to epoch milliseconds.

    Integers (or digit-only strings) are taken as epoch ms already.
    Anything else is parsed as a date/time; naive values are UTC.

    Raises:
        ValueError: unparseable, non-finite or outside the 64-bit range
    """
    if isinstance(value, bool):
        raise ValueError("Boolean is not a timestamp")
    if isinstance(value, int):
        return check_epoch_ms(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Timestamp is not finite: {value!r}")
        return check_epoch_ms(int(value))
    if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
        return check_epoch_ms(int(value.strip()))

    ts = pd.Timestamp(value)
    if ts is pd.NaT:
        raise ValueError(f"Unparseable timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    else:
        ts = ts.tz_convert("UTC")
    return int(ts.value // 1_000_000)

"""Defensive parsing and formatting of values crossing the resource boundary."""

from __future__ import annotations

import logging
import math
import re
from datetime import timedelta

logger = logging.getLogger(__name__)

DECIMAL_PATTERN = re.compile(r"^\d+(\.\d+)?$")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
}


def check_value(x: float) -> bool:
    """Return True when x is a finite number."""
    return not (math.isnan(x) or math.isinf(x))


def fix_value(x: float) -> float:
    """Replace NaN and infinities with 0."""
    if math.isnan(x) or math.isinf(x):
        return 0.0
    return x


def parse_decimal(raw: str | float | int | None, field: str = "value") -> float:
    """Parse a boundary decimal, sanitising anything unusable to 0.

    Unparseable, negative, NaN and infinite inputs all become 0.0 and are
    logged at warning level. Empty/missing values become 0.0 silently.
    """
    if raw is None or raw == "":
        return 0.0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("unparseable %s %r, using 0", field, raw)
        return 0.0
    if not check_value(value) or value < 0:
        logger.warning("invalid %s %r, using 0", field, raw)
        return 0.0
    return value


def format_decimal(value: float) -> str:
    """Render a float as a two-decimal boundary string (never NaN/Inf/negative)."""
    value = fix_value(float(value))
    if value < 0:
        value = 0.0
    return f"{value:.2f}"


def parse_duration(raw: str | timedelta | float | int) -> timedelta:
    """Parse a Go-style duration string such as "90s", "5m" or "1h30m".

    Bare numbers are read as seconds.
    """
    if isinstance(raw, timedelta):
        return raw
    if isinstance(raw, (int, float)):
        if raw < 0:
            raise ValueError(f"duration must be >= 0, got {raw}")
        return timedelta(seconds=float(raw))

    text = str(raw).strip()
    if not text:
        raise ValueError("empty duration")
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return timedelta(seconds=float(text))

    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {raw!r}")
    return timedelta(seconds=seconds)


def format_duration(value: timedelta) -> str:
    """Render a timedelta the way PromQL range selectors expect it (e.g. "600s")."""
    return f"{int(value.total_seconds())}s"

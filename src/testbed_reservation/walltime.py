"""Timespan helpers for reservation walltimes and start times.

Walltimes are accepted as ``HH:MM``, ``HH:MM:SS`` or a number with an
optional unit suffix (``90``, ``90s``, ``30m``, ``2h``, ``1.5d``). The
scheduler expects ``HH:MM``; partial minutes are rounded up.
"""

import math
import re
from datetime import datetime

from .errors import PreconditionError

UNLIMITED = ("always", "forever", "infinitely")

_UNITS = {
    "": 1,
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
}

_NUMBER_WITH_UNIT = re.compile(r"^(\d+|\d+\.\d*)\s*(\w*)$")


def to_seconds(text: str) -> float:
    """Convert a timespan string into seconds.

    Returns ``math.inf`` for the unlimited keywords.

    Raises:
        PreconditionError: If the string is not a recognised timespan.
    """
    text = str(text).strip()
    if text in UNLIMITED:
        return math.inf

    parts = text.split(":")
    if len(parts) in (2, 3) and all(p.isdigit() for p in parts):
        return sum(int(p) * m for p, m in zip(parts, (3600, 60, 1), strict=False))

    match = _NUMBER_WITH_UNIT.match(text)
    if match is None:
        msg = f"Invalid timespan: '{text}'"
        raise PreconditionError(msg)
    number, unit = match.groups()
    if unit not in _UNITS:
        msg = f"Unknown timespan unit: '{unit}' in {text}"
        raise PreconditionError(msg)
    return float(number) * _UNITS[unit]


def to_hhmm(text: str) -> str:
    """Convert a timespan string into the ``HH:MM`` form used in requests."""
    seconds = to_seconds(text)
    if math.isinf(seconds):
        msg = f"Walltime must be finite, got '{text}'"
        raise PreconditionError(msg)
    # float noise such as 1.1h = 3960.0000000000005 s must not add a minute
    secs = math.ceil(round(seconds, 6))
    minutes, secs = divmod(secs, 60)
    hours, minutes = divmod(minutes, 60)
    if secs > 0:
        minutes += 1
    # 59 minutes and a few seconds round to the next hour
    if minutes == 60:  # noqa: PLR2004
        hours, minutes = hours + 1, 0
    return f"{hours:02d}:{minutes:02d}"


def to_timestamp(value: datetime | str | int | float) -> int:
    """Convert a scheduled start time into Unix seconds.

    Accepts a datetime, an epoch number, or an ISO 8601 string such as
    ``"2026-10-20 19:00:00"``. Naive datetimes are taken as local time.
    """
    if isinstance(value, datetime):
        return int(value.timestamp())
    if isinstance(value, int | float):
        return int(value)
    try:
        return int(datetime.fromisoformat(value.strip()).timestamp())
    except ValueError as exc:
        msg = f"Invalid reservation start time: '{value}'"
        raise PreconditionError(msg) from exc

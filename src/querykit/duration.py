"""Duration parsing utilities."""

import math
import re
from datetime import timedelta

from querykit.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+)(ms|s|m|h|d)$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> int | float:
    """Parse duration to milliseconds.

    Ints pass through, ``timedelta`` is converted, ``math.inf`` means never.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, int):
        if duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return duration
    if isinstance(duration, float):
        if duration == math.inf:
            return math.inf
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, timedelta):
        return int(duration.total_seconds() * 1000)

    match = _DURATION_PATTERN.match(duration)
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    return int(value) * _UNITS[unit]

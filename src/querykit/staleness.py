"""Freshness windows for cached queries."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any

from querykit.duration import parse_duration
from querykit.types import CacheEntry, Duration


@dataclass(frozen=True, slots=True)
class StalePolicy:
    """How long a fetched entry is served without refetching.

    ``refetch_on_mount`` forces a refetch whenever a reader asks for the
    key, even if the entry is still inside its window.
    """

    stale_time: int | float  # ms, math.inf for never
    refetch_on_mount: bool = False

    def stale_at(self, fetched_at: int) -> int | float:
        return fetched_at + self.stale_time


FAST = StalePolicy(30_000)
MEDIUM = StalePolicy(180_000)
SLOW = StalePolicy(900_000)
STATIC = StalePolicy(math.inf)

PRESETS: dict[str, StalePolicy] = {
    "fast": FAST,
    "medium": MEDIUM,
    "slow": SLOW,
    "static": STATIC,
}


def resolve_policy(value: StalePolicy | Duration) -> StalePolicy:
    """Turn a preset name, a duration or a policy into a StalePolicy."""
    if isinstance(value, StalePolicy):
        return value
    if isinstance(value, str) and value in PRESETS:
        return PRESETS[value]
    return StalePolicy(parse_duration(value))


def now_ms() -> int:
    return int(time.time() * 1000)


def is_stale(
    entry: CacheEntry[Any] | None, policy: StalePolicy, now: int | None = None
) -> bool:
    """Check if an entry should be refetched before (or while) serving it.

    Freshness is measured from ``fetched_at`` under ``policy``; the entry's
    ``stale_at`` is not consulted.
    """
    if entry is None or entry.fetched_at is None:
        return True
    if entry.invalidated or entry.status == "error":
        return True
    if policy.stale_time == math.inf:
        return False
    current = now_ms() if now is None else now
    return current - entry.fetched_at >= policy.stale_time


__all__ = [
    "FAST",
    "MEDIUM",
    "PRESETS",
    "SLOW",
    "STATIC",
    "StalePolicy",
    "is_stale",
    "resolve_policy",
]

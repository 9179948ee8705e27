"""Debounced invalidation for streams of server-side change events.

Database change feeds tend to deliver bursts (a section save touches several
rows). ``InvalidationBatcher`` expands each event through the registry,
collects the keys, and invalidates them once the burst has been quiet for
``debounce``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable

from querykit.duration import parse_duration
from querykit.keys import QueryKey, coalesce_keys
from querykit.registry import EntityChange, KeyRegistry
from querykit.types import Duration

logger = logging.getLogger(__name__)

Invalidate = Callable[[Iterable[QueryKey]], object]

INVALIDATION_DEBOUNCE = "100ms"


class InvalidationBatcher:
    """Collects change events and flushes one coalesced invalidation."""

    def __init__(
        self,
        invalidate: Invalidate,
        registry: KeyRegistry,
        *,
        debounce: Duration = INVALIDATION_DEBOUNCE,
    ) -> None:
        self._invalidate = invalidate
        self._registry = registry
        self._delay = parse_duration(debounce) / 1000
        self._pending: list[QueryKey] = []
        self._timer: asyncio.TimerHandle | None = None
        self._closed = False

    @property
    def pending(self) -> list[QueryKey]:
        return list(self._pending)

    def push(self, change: EntityChange) -> None:
        """Queue the keys ``change`` affects and restart the debounce timer."""
        if self._closed:
            raise RuntimeError("InvalidationBatcher is closed")
        logger.debug("%s on %s", change.kind, change.entity)
        for key in self._registry.expand(change):
            if key not in self._pending:
                self._pending.append(key)

        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self.flush)

    def flush(self) -> list[QueryKey]:
        """Invalidate everything queued so far."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        keys = coalesce_keys(self._pending)
        self._pending = []
        if keys:
            logger.debug("Flushing invalidation of %s", keys)
            self._invalidate(keys)
        return keys

    def close(self) -> None:
        """Flush what is queued and stop accepting events."""
        self.flush()
        self._closed = True


__all__ = ["INVALIDATION_DEBOUNCE", "InvalidationBatcher"]

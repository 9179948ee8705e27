"""In-memory query cache with per-key subscribers.

All writes are synchronous: a subscriber sees either the previous entry or
the new one. Only the query runner and the mutation executor write entries;
UI code reads and subscribes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any

from querykit.duration import parse_duration
from querykit.keys import KeyLike, QueryKey, as_key, coalesce_keys, matches
from querykit.staleness import now_ms
from querykit.types import CacheEntry, Duration

logger = logging.getLogger(__name__)

Subscriber = Callable[[QueryKey, "CacheEntry[Any] | None"], None]
InvalidationListener = Callable[[list[QueryKey]], None]
RemovalListener = Callable[[list[QueryKey]], None]


class QueryCache:
    """Process-wide store of query results keyed by canonical QueryKey."""

    def __init__(self) -> None:
        self._entries: dict[QueryKey, CacheEntry[Any]] = {}
        self._subscribers: dict[QueryKey, list[Subscriber]] = {}
        self._idle_since: dict[QueryKey, int] = {}
        self._listeners: list[InvalidationListener] = []
        self._removal_listeners: list[RemovalListener] = []

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: KeyLike) -> CacheEntry[Any] | None:
        return self._entries.get(as_key(key))

    def get_data(self, key: KeyLike) -> Any | None:
        entry = self._entries.get(as_key(key))
        return entry.data if entry is not None else None

    def find_all(self, pattern: KeyLike) -> list[QueryKey]:
        """All cached keys under ``pattern``."""
        pattern = as_key(pattern)
        return [key for key in self._entries if matches(key, pattern)]

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, QueryKey) and key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set(self, key: KeyLike, entry: CacheEntry[Any]) -> None:
        """Replace the entry for ``key`` and notify its subscribers."""
        key = as_key(key)
        self._entries[key] = entry
        if key not in self._subscribers:
            self._idle_since.setdefault(key, now_ms())
        self._notify(key, entry)

    def set_data(self, key: KeyLike, data: Any) -> CacheEntry[Any]:
        """Replace only the data of an entry, creating it if missing."""
        key = as_key(key)
        current = self._entries.get(key)
        if current is None:
            now = now_ms()
            entry: CacheEntry[Any] = CacheEntry(
                data=data, status="success", fetched_at=now, stale_at=now
            )
        else:
            entry = replace(current, data=data)
        self.set(key, entry)
        return entry

    def remove(self, key: KeyLike) -> None:
        key = as_key(key)
        if self._entries.pop(key, None) is not None:
            self._idle_since.pop(key, None)
            self._notify(key, None)
            self._removed([key])

    def clear(self) -> None:
        """Drop every entry. Subscribers are told their entry is gone."""
        keys = list(self._entries)
        self._entries.clear()
        self._idle_since.clear()
        for key in keys:
            self._notify(key, None)
        self._removed(keys)

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def invalidate(self, pattern: KeyLike) -> list[QueryKey]:
        """Mark every entry under ``pattern`` stale.

        Entries already marked are left untouched, so repeated or overlapping
        invalidations collapse into one marking. Listeners receive every
        matched key and refetch the ones that are on screen.
        """
        return self.invalidate_many([as_key(pattern)])

    def invalidate_many(self, patterns: Iterable[KeyLike]) -> list[QueryKey]:
        coalesced = coalesce_keys([as_key(p) for p in patterns])
        matched = [
            key
            for key in self._entries
            if any(matches(key, pattern) for pattern in coalesced)
        ]
        for key in matched:
            entry = self._entries[key]
            if not entry.invalidated:
                self.set(key, replace(entry, invalidated=True))
        if matched:
            logger.debug("Invalidated %d entries for %s", len(matched), coalesced)
            for listener in list(self._listeners):
                listener(matched)
        return matched

    def add_invalidation_listener(
        self, listener: InvalidationListener
    ) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def add_removal_listener(self, listener: RemovalListener) -> Callable[[], None]:
        """Call ``listener(keys)`` after entries are removed, cleared or collected."""
        self._removal_listeners.append(listener)

        def remove() -> None:
            if listener in self._removal_listeners:
                self._removal_listeners.remove(listener)

        return remove

    def _removed(self, keys: list[QueryKey]) -> None:
        if not keys:
            return
        for listener in list(self._removal_listeners):
            listener(keys)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, key: KeyLike, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback(key, entry)`` whenever the entry for ``key`` changes.

        Returns a function that removes the subscription; calling it twice
        is harmless.
        """
        key = as_key(key)
        self._subscribers.setdefault(key, []).append(callback)
        self._idle_since.pop(key, None)
        active = True

        def unsubscribe() -> None:
            nonlocal active
            if not active:
                return
            active = False
            callbacks = self._subscribers.get(key)
            if callbacks is None:
                return
            callbacks.remove(callback)
            if not callbacks:
                del self._subscribers[key]
                if key in self._entries:
                    self._idle_since[key] = now_ms()

        return unsubscribe

    def has_subscribers(self, key: KeyLike) -> bool:
        return bool(self._subscribers.get(as_key(key)))

    def _notify(self, key: QueryKey, entry: CacheEntry[Any] | None) -> None:
        for callback in list(self._subscribers.get(key, ())):
            try:
                callback(key, entry)
            except Exception:
                logger.exception("Subscriber for %s raised", key)

    # -------------------------------------------------------------------------
    # Garbage collection
    # -------------------------------------------------------------------------

    def remove_idle(self, older_than: Duration, *, now: int | None = None) -> list[QueryKey]:
        """Drop entries nobody has subscribed to for ``older_than``."""
        limit = parse_duration(older_than)
        current = now_ms() if now is None else now
        expired = [
            key
            for key, since in self._idle_since.items()
            if key not in self._subscribers and current - since >= limit
        ]
        for key in expired:
            self._entries.pop(key, None)
            self._idle_since.pop(key, None)
        if expired:
            logger.debug("Collected %d idle entries", len(expired))
            self._removed(expired)
        return expired


__all__ = ["QueryCache", "Subscriber"]

"""QueryRunner - fetch, cache write, and stale-while-revalidate.

This module bridges the QueryCache and freshness policies to caller-supplied
query functions:
- fetch(): serve fresh data, share in-flight requests, refresh stale data
- watch(): subscribe and fetch, the way a mounted view reads a query
- refetch()/prefetch(): explicit refreshes
- fetch_pages()/fetch_next_page(): paginated queries, one cache entry per list
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

from querykit.cache import QueryCache, Subscriber
from querykit.errors import FetchError
from querykit.keys import KeyLike, QueryKey, as_key, infinite_key
from querykit.registry import KeyRegistry
from querykit.staleness import StalePolicy, is_stale, now_ms, resolve_policy
from querykit.types import (
    DEFAULT_PAGE_SIZE,
    ActionResult,
    CacheEntry,
    Duration,
    InfiniteData,
)

logger = logging.getLogger(__name__)


QueryFn = Callable[[], Awaitable[Any]]
PageFn = Callable[[int], Awaitable[Any]]


class QueryRunner:
    """Reads queries through the cache."""

    def __init__(
        self,
        cache: QueryCache,
        *,
        registry: KeyRegistry | None = None,
    ) -> None:
        self._cache = cache
        self._registry = registry or KeyRegistry()
        self._fetchers: dict[QueryKey, tuple[QueryFn, StalePolicy]] = {}
        self._in_flight: dict[QueryKey, asyncio.Task[Any]] = {}
        self._invalidated_in_flight: set[QueryKey] = set()
        self._pagers: dict[QueryKey, tuple[PageFn, int]] = {}
        self._next_pages: dict[QueryKey, asyncio.Task[Any]] = {}
        self._listeners = [
            cache.add_invalidation_listener(self._on_invalidated),
            cache.add_removal_listener(self._on_removed),
        ]

    @property
    def cache(self) -> QueryCache:
        return self._cache

    def policy_for(
        self, key: QueryKey, stale_time: StalePolicy | Duration | None = None
    ) -> StalePolicy:
        if stale_time is not None:
            return resolve_policy(stale_time)
        return self._registry.policy_for(key)

    def fetch(
        self,
        key: KeyLike,
        fn: QueryFn,
        *,
        stale_time: StalePolicy | Duration | None = None,
        enabled: bool = True,
    ) -> asyncio.Future[Any]:
        """Read ``key``, fetching with ``fn`` when needed.

        Returns a future rather than a coroutine so that concurrent readers
        of the same key in one tick get the same in-flight future.

        - fresh entry: resolved future with the cached data, no call
        - missing entry: entry goes to "loading", ``fn`` runs once
        - stale entry on screen: cached data now, refetch in background
        - stale entry off screen: the (shared) refetch
        """
        key = as_key(key)
        loop = asyncio.get_running_loop()
        policy = self.policy_for(key, stale_time)
        self._fetchers[key] = (fn, policy)
        entry = self._cache.get(key)

        if not enabled:
            return _resolved(loop, entry.data if entry is not None else None)

        stale = is_stale(entry, policy) or policy.refetch_on_mount
        if not stale and entry is not None:
            return _resolved(loop, entry.data)

        if entry is not None and entry.has_data and self._cache.has_subscribers(key):
            self._start(key, fn, policy)
            return _resolved(loop, entry.data)

        return self._start(key, fn, policy)

    async def query(
        self,
        key: KeyLike,
        fn: QueryFn,
        *,
        stale_time: StalePolicy | Duration | None = None,
    ) -> Any:
        """Await the result of ``fetch``."""
        return await self.fetch(key, fn, stale_time=stale_time)

    def watch(
        self,
        key: KeyLike,
        fn: QueryFn,
        callback: Subscriber,
        *,
        stale_time: StalePolicy | Duration | None = None,
    ) -> Callable[[], None]:
        """Subscribe ``callback`` to ``key`` and make sure it is loaded.

        Returns the unsubscribe function.
        """
        key = as_key(key)
        unsubscribe = self._cache.subscribe(key, callback)
        future = self.fetch(key, fn, stale_time=stale_time)
        # Errors land on the entry; the callback renders them.
        future.add_done_callback(_consume)
        return unsubscribe

    def refetch(self, key: KeyLike) -> asyncio.Future[Any] | None:
        """Refetch with the last function used for ``key``, if any."""
        key = as_key(key)
        known = self._fetchers.get(key)
        if known is None:
            return None
        fn, policy = known
        return self._start(key, fn, policy)

    async def prefetch(
        self,
        key: KeyLike,
        fn: QueryFn,
        *,
        stale_time: StalePolicy | Duration | None = None,
    ) -> None:
        """Warm the cache; failures are stored on the entry, not raised."""
        try:
            await self.fetch(key, fn, stale_time=stale_time)
        except FetchError:
            logger.debug("Prefetch of %s failed", key)

    def is_fetching(self, key: KeyLike) -> bool:
        return as_key(key) in self._in_flight

    # -------------------------------------------------------------------------
    # Paginated queries
    # -------------------------------------------------------------------------

    def fetch_pages(
        self,
        key: KeyLike,
        fn: PageFn,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        stale_time: StalePolicy | Duration | None = None,
        enabled: bool = True,
    ) -> asyncio.Future[InfiniteData[Any] | None]:
        """Read a paginated query.

        ``fn(page)`` loads one page; pages are numbered from 1. The cache keeps
        every loaded page as one ``InfiniteData`` entry under
        ``infinite_key(key)``, so invalidating ``key`` (or any prefix of it)
        reaches the paginated entry too. A refetch reloads every page loaded
        so far, stopping early at a short page.
        """
        pages_key = infinite_key(key)
        if enabled:
            self._pagers[pages_key] = (fn, page_size)
        return self.fetch(
            pages_key,
            self._page_loader(pages_key, fn, page_size),
            stale_time=stale_time,
            enabled=enabled,
        )

    def fetch_next_page(
        self, key: KeyLike
    ) -> asyncio.Future[InfiniteData[Any] | None]:
        """Load the page after the last one cached for ``key``.

        Resolves to the extended pages, to the current pages when the last
        page was short, or to ``None`` when ``key`` was never read through
        ``fetch_pages``. Joins a full reload or next-page load already running.
        """
        pages_key = infinite_key(key)
        loop = asyncio.get_running_loop()
        pager = self._pagers.get(pages_key)
        if pager is None:
            return _resolved(loop, None)

        running = self._in_flight.get(pages_key) or self._next_pages.get(pages_key)
        if running is not None:
            return running

        entry = self._cache.get(pages_key)
        if entry is None or not isinstance(entry.data, InfiniteData):
            reload = self.refetch(pages_key)
            return reload if reload is not None else _resolved(loop, None)
        if not entry.data.has_next_page:
            return _resolved(loop, entry.data)

        fn, _ = pager
        task = asyncio.ensure_future(self._load_next(pages_key, fn, entry.data))
        self._next_pages[pages_key] = task
        task.add_done_callback(lambda t: self._next_page_done(pages_key, t))
        return task

    def is_fetching_next_page(self, key: KeyLike) -> bool:
        return infinite_key(key) in self._next_pages

    def close(self) -> None:
        """Stop reacting to cache invalidations and removals."""
        for remove in self._listeners:
            remove()
        self._listeners = []

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _start(self, key: QueryKey, fn: QueryFn, policy: StalePolicy) -> asyncio.Task[Any]:
        """Start a fetch for ``key`` or join the one already running."""
        existing = self._in_flight.get(key)
        if existing is not None:
            return existing

        entry = self._cache.get(key)
        if entry is None or not entry.has_data:
            base = entry or CacheEntry()
            self._cache.set(key, replace(base, status="loading"))

        current = self._cache.get(key)
        captured = current.data if current is not None else None
        task = asyncio.ensure_future(self._run(key, fn, policy, captured))
        self._in_flight[key] = task
        task.add_done_callback(lambda t: self._finished(key, t))
        return task

    async def _run(
        self, key: QueryKey, fn: QueryFn, policy: StalePolicy, captured: Any
    ) -> Any:
        logger.debug("Fetching %s", key)

        try:
            raw = await fn()
            data = _unwrap(key, raw)
        except Exception as exc:
            error = self._record_error(key, exc)
            if error is exc:
                raise
            raise error from exc

        current = self._cache.get(key)
        if current is not None and current.has_data and current.data is not captured:
            # An optimistic write (or its rollback) landed while we were
            # fetching; keep it, leave the entry stale, and refetch a
            # subscribed key once this fetch settles.
            logger.debug("Discarding fetched data for %s: entry written meanwhile", key)
            self._invalidated_in_flight.add(key)
            self._cache.set(key, replace(current, invalidated=True))
            return data

        now = now_ms()
        invalidated = key in self._invalidated_in_flight
        self._cache.set(
            key,
            CacheEntry(
                data=data,
                status="success",
                fetched_at=now,
                stale_at=policy.stale_at(now),
                invalidated=invalidated,
            ),
        )
        return data

    def _finished(self, key: QueryKey, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Fetch of %s failed: %s", key, task.exception())
        if key in self._invalidated_in_flight:
            self._invalidated_in_flight.discard(key)
            if self._cache.has_subscribers(key):
                self.refetch(key)

    def _on_invalidated(self, keys: list[QueryKey]) -> None:
        for key in keys:
            if key in self._in_flight:
                self._invalidated_in_flight.add(key)
            elif self._cache.has_subscribers(key) and key in self._fetchers:
                self.refetch(key)

    def _on_removed(self, keys: list[QueryKey]) -> None:
        for key in keys:
            if key in self._in_flight or key in self._next_pages:
                continue
            self._fetchers.pop(key, None)
            self._pagers.pop(key, None)

    def _record_error(self, key: QueryKey, exc: Exception) -> FetchError:
        """Store a failure on the entry, keeping its data."""
        error = exc if isinstance(exc, FetchError) else FetchError(
            f"Fetching {key!r} failed: {exc}", key=key, cause=exc
        )
        current = self._cache.get(key) or CacheEntry()
        self._cache.set(key, replace(current, status="error", error=error))
        return error

    def _page_loader(self, key: QueryKey, fn: PageFn, page_size: int) -> QueryFn:
        async def load() -> InfiniteData[Any]:
            entry = self._cache.get(key)
            loaded = 1
            if entry is not None and isinstance(entry.data, InfiniteData):
                loaded = max(len(entry.data.pages), 1)
            pages: list[list[Any]] = []
            for page in range(1, loaded + 1):
                items = list(_unwrap(key, await fn(page)))
                pages.append(items)
                if len(items) < page_size:
                    break
            return InfiniteData(tuple(pages), page_size)

        return load

    async def _load_next(
        self, key: QueryKey, fn: PageFn, data: InfiniteData[Any]
    ) -> InfiniteData[Any] | None:
        page = len(data.pages) + 1
        logger.debug("Fetching page %d of %s", page, key)

        try:
            items = list(_unwrap(key, await fn(page)))
        except Exception as exc:
            error = self._record_error(key, exc)
            if error is exc:
                raise
            raise error from exc

        current = self._cache.get(key)
        if current is None or current.data is not data:
            logger.debug("Dropping page %d of %s: pages replaced meanwhile", page, key)
            return current.data if current is not None else None
        extended = data.append(items)
        self._cache.set(
            key, replace(current, data=extended, status="success", error=None)
        )
        return extended

    def _next_page_done(self, key: QueryKey, task: asyncio.Task[Any]) -> None:
        if self._next_pages.get(key) is task:
            del self._next_pages[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Next page of %s failed: %s", key, task.exception())


def _unwrap(key: QueryKey, raw: Any) -> Any:
    if isinstance(raw, ActionResult):
        if not raw.success:
            raise FetchError(raw.error or "Request failed", key=key, cause=raw)
        return raw.data
    return raw


def _resolved(loop: asyncio.AbstractEventLoop, value: Any) -> asyncio.Future[Any]:
    future: asyncio.Future[Any] = loop.create_future()
    future.set_result(value)
    return future


def _consume(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


__all__ = ["QueryRunner"]

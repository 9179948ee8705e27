"""QueryClient - one object wiring cache, registry, runner and executor."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from querykit.cache import QueryCache, Subscriber
from querykit.duration import parse_duration
from querykit.keys import EntityKeys, KeyLike, QueryKey
from querykit.mutation import ErrorNotifier, MutationExecutor, MutationHandle
from querykit.race_guard import RaceGuard
from querykit.registry import EntityChange, KeyRegistry
from querykit.runner import QueryRunner
from querykit.staleness import StalePolicy
from querykit.types import (
    ActionResult,
    CacheEntry,
    Duration,
    InfiniteData,
    InfiniteQueryConfig,
    Invalidates,
    MutationConfig,
    OptimisticUpdate,
    QueryConfig,
)

P = ParamSpec("P")
R = TypeVar("R")
V = TypeVar("V")


class QueryClient:
    """Shared cache and mutation layer for an application session.

    Usage:
        client = QueryClient(notify_error=toast)
        objects = client.keys("objects")

        @client.query
        def object_list(project_id: str) -> QueryConfig[list[dict]]:
            return QueryConfig(
                key=objects.list(project=project_id),
                fn=lambda: api.list_objects(project_id),
                stale_time="fast",
            )

        @client.mutation(
            scope=lambda v: f"object:{v['id']}",
            optimistic_update=patch_item(objects.lists(), lambda v: v["id"], lambda v: v["changes"]),
            invalidates=[objects.all],
        )
        async def update_object(v: dict) -> ActionResult[dict]:
            return await api.update_object(v["id"], v["changes"])

        rows = await object_list("P1")
        await update_object({"id": "o1", "changes": {"name": "Renamed"}})
    """

    def __init__(
        self,
        *,
        registry: KeyRegistry | None = None,
        default_stale_time: StalePolicy | Duration = "medium",
        gc_time: Duration = "30m",
        notify_error: ErrorNotifier | None = None,
    ) -> None:
        self._registry = registry or KeyRegistry(default_policy=default_stale_time)
        self._gc_time = parse_duration(gc_time)
        self._cache = QueryCache()
        self._guard = RaceGuard()
        self._runner = QueryRunner(self._cache, registry=self._registry)
        self._executor = MutationExecutor(
            self._cache,
            guard=self._guard,
            registry=self._registry,
            notify_error=notify_error,
        )

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def registry(self) -> KeyRegistry:
        return self._registry

    @property
    def runner(self) -> QueryRunner:
        return self._runner

    @property
    def executor(self) -> MutationExecutor:
        return self._executor

    def keys(self, entity: str) -> EntityKeys:
        return self._registry.entity(entity)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def fetch(self, config: QueryConfig[R]) -> asyncio.Future[R]:
        return self._runner.fetch(
            config.key, config.fn, stale_time=config.stale_time, enabled=config.enabled
        )

    def watch(self, config: QueryConfig[Any], callback: Subscriber) -> Callable[[], None]:
        return self._runner.watch(
            config.key, config.fn, callback, stale_time=config.stale_time
        )

    def fetch_pages(
        self, config: InfiniteQueryConfig[R]
    ) -> asyncio.Future[InfiniteData[R] | None]:
        return self._runner.fetch_pages(
            config.key,
            config.fn,
            page_size=config.page_size,
            stale_time=config.stale_time,
            enabled=config.enabled,
        )

    def fetch_next_page(
        self, config: InfiniteQueryConfig[R]
    ) -> asyncio.Future[InfiniteData[R] | None]:
        return self._runner.fetch_next_page(config.key)

    def get(self, key: KeyLike) -> CacheEntry[Any] | None:
        return self._cache.get(key)

    def get_data(self, key: KeyLike) -> Any | None:
        return self._cache.get_data(key)

    def subscribe(self, key: KeyLike, callback: Subscriber) -> Callable[[], None]:
        return self._cache.subscribe(key, callback)

    def query(self, fn: Callable[P, QueryConfig[R]]) -> Callable[P, asyncio.Future[R]]:
        """Decorator that creates a cached query function."""

        @wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> asyncio.Future[R]:
            return self.fetch(fn(*args, **kwargs))

        return wrapper

    def infinite_query(
        self, fn: Callable[P, InfiniteQueryConfig[R]]
    ) -> Callable[P, asyncio.Future[InfiniteData[R] | None]]:
        """Decorator that creates a cached paginated query function.

        Call the result for the first page(s); pass the same arguments to
        ``fetch_next_page`` on the returned function to load more.

        Usage:
            @client.infinite_query
            def project_pages(status: str) -> InfiniteQueryConfig[dict]:
                return InfiniteQueryConfig(
                    key=projects.list(status=status),
                    fn=lambda page: api.list_projects(status, page=page),
                    page_size=20,
                )

            pages = await project_pages("active")
            pages = await project_pages.fetch_next_page("active")
        """

        @wraps(fn)
        def wrapper(
            *args: P.args, **kwargs: P.kwargs
        ) -> asyncio.Future[InfiniteData[R] | None]:
            return self.fetch_pages(fn(*args, **kwargs))

        def next_page(
            *args: P.args, **kwargs: P.kwargs
        ) -> asyncio.Future[InfiniteData[R] | None]:
            return self.fetch_next_page(fn(*args, **kwargs))

        wrapper.fetch_next_page = next_page  # type: ignore[attr-defined]
        return wrapper

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def submit(self, config: MutationConfig[V, R], variables: V) -> MutationHandle[R]:
        return self._executor.submit(config, variables)

    async def mutate(self, config: MutationConfig[V, R], variables: V) -> R:
        return await self._executor.execute(config, variables)

    def mutation(
        self,
        *,
        scope: str | Callable[[Any], str] | None = None,
        optimistic_update: OptimisticUpdate | None = None,
        apply_result: Callable[..., None] | None = None,
        invalidates: Invalidates = (),
        change: EntityChange | Callable[[Any, Any], EntityChange | None] | None = None,
        on_success: Callable[[Any, Any], None] | None = None,
        on_error: Callable[..., None] | None = None,
    ) -> Callable[
        [Callable[[V], Awaitable[R | ActionResult[R]]]],
        Callable[[V], MutationHandle[R]],
    ]:
        """Decorator that turns a server action into a cache-aware mutation."""

        def decorator(
            fn: Callable[[V], Awaitable[R | ActionResult[R]]],
        ) -> Callable[[V], MutationHandle[R]]:
            config: MutationConfig[V, R] = MutationConfig(
                fn=fn,
                scope=scope,
                optimistic_update=optimistic_update,
                apply_result=apply_result,
                invalidates=invalidates,
                change=change,
                on_success=on_success,
                on_error=on_error,
            )

            @wraps(fn)
            def wrapper(variables: V) -> MutationHandle[R]:
                return self._executor.submit(config, variables)

            return wrapper

        return decorator

    # -------------------------------------------------------------------------
    # Invalidation and lifecycle
    # -------------------------------------------------------------------------

    def invalidate(self, *patterns: KeyLike) -> list[QueryKey]:
        """Mark entries stale; on-screen ones refetch in the background."""
        return self._cache.invalidate_many(patterns)

    def apply_change(self, change: EntityChange) -> list[QueryKey]:
        """Invalidate everything a domain change can affect."""
        return self._cache.invalidate_many(self._registry.expand(change))

    def collect_garbage(self) -> list[QueryKey]:
        """Drop entries unsubscribed for longer than ``gc_time``."""
        return self._cache.remove_idle(self._gc_time)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._cache.clear()

    def close(self) -> None:
        self._runner.close()


__all__ = ["QueryClient"]

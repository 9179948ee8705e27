"""Core types for the querykit cache layer."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Generic,
    Literal,
    TypeVar,
    Union,
)

if TYPE_CHECKING:
    from querykit.errors import FetchError, MutationError
    from querykit.keys import QueryKey
    from querykit.optimistic import OptimisticWriter
    from querykit.registry import EntityChange
    from querykit.staleness import StalePolicy

T = TypeVar("T")
V = TypeVar("V")
R = TypeVar("R")

# "30s", "5m", "2h", "1d", milliseconds, a timedelta, or math.inf for never
Duration = Union[str, int, float, timedelta]

Status = Literal["idle", "loading", "success", "error"]


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached query result with metadata.

    ``stale_at`` records when the entry expires under the policy in force at
    write time. It is informational: readers may pass their own
    ``stale_time``, so ``is_stale`` decides from ``fetched_at`` and the
    reader's policy.
    """

    data: T | None = None
    status: Status = "idle"
    error: FetchError | None = None
    fetched_at: int | None = None  # Unix timestamp ms
    stale_at: int | float | None = None
    invalidated: bool = False

    @property
    def has_data(self) -> bool:
        """True once the entry has been populated by a fetch or a write."""
        return self.fetched_at is not None


@dataclass(frozen=True, slots=True)
class ActionResult(Generic[T]):
    """Success/error envelope returned by server actions."""

    success: bool
    data: T | None = None
    error: str | None = None

    @classmethod
    def ok(cls, data: T) -> ActionResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> ActionResult[Any]:
        return cls(success=False, error=error)


DEFAULT_PAGE_SIZE = 20


@dataclass(frozen=True, slots=True)
class InfiniteData(Generic[T]):
    """Loaded pages of a paginated query, in page order (pages start at 1).

    Another page exists while the last one is full.
    """

    pages: tuple[list[T], ...]
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def items(self) -> list[T]:
        return [item for page in self.pages for item in page]

    @property
    def has_next_page(self) -> bool:
        return bool(self.pages) and len(self.pages[-1]) >= self.page_size

    @property
    def next_page(self) -> int | None:
        return len(self.pages) + 1 if self.has_next_page else None

    def append(self, page: list[T]) -> InfiniteData[T]:
        return replace(self, pages=(*self.pages, page))


# Static key list, or computed from (result, variables) after a commit
Invalidates = Union[
    Sequence["QueryKey"], Callable[[Any, Any], Sequence["QueryKey"]]
]

# Writes an optimistic delta and returns the closure that undoes it
OptimisticUpdate = Callable[["OptimisticWriter", Any], Union[Callable[[], None], None]]


@dataclass(frozen=True, slots=True)
class QueryConfig(Generic[T]):
    """Configuration for a cached query."""

    key: QueryKey
    fn: Callable[[], Awaitable[T | ActionResult[T]]]
    stale_time: StalePolicy | Duration | None = None
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class InfiniteQueryConfig(Generic[T]):
    """Configuration for a paginated query; ``fn(page)`` returns one page."""

    key: QueryKey
    fn: Callable[[int], Awaitable[list[T] | ActionResult[list[T]]]]
    page_size: int = DEFAULT_PAGE_SIZE
    stale_time: StalePolicy | Duration | None = None
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class MutationConfig(Generic[V, R]):
    """Configuration for a mutation.

    ``scope`` orders concurrent mutations on one logical entity; it is either
    a fixed string or computed from the mutation variables.
    """

    fn: Callable[[V], Awaitable[R | ActionResult[R]]]
    scope: str | Callable[[V], str] | None = None
    optimistic_update: OptimisticUpdate | None = None
    apply_result: Callable[[OptimisticWriter, R, V], None] | None = None
    invalidates: Invalidates = ()
    change: EntityChange | Callable[[R, V], EntityChange | None] | None = None
    on_success: Callable[[R, V], None] | None = None
    on_error: Callable[[MutationError, V], None] | None = None
    on_settled: Callable[[R | None, MutationError | None, V], None] | None = None

    def scope_for(self, variables: V) -> str | None:
        if callable(self.scope):
            return self.scope(variables)
        return self.scope

    def invalidates_for(self, result: R, variables: V) -> list[QueryKey]:
        if callable(self.invalidates):
            return list(self.invalidates(result, variables))
        return list(self.invalidates)

    def change_for(self, result: R, variables: V) -> EntityChange | None:
        if callable(self.change):
            return self.change(result, variables)
        return self.change

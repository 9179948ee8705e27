"""querykit - Optimistic query cache and mutation layer for Python."""

from contextlib import suppress

from querykit.cache import QueryCache
from querykit.client import QueryClient
from querykit.duration import parse_duration
from querykit.errors import (
    FetchError,
    InvalidKeyError,
    MutationError,
    QueryKitError,
    StaleOperationDiscarded,
)
from querykit.keys import EntityKeys, QueryKey, build_key, infinite_key, matches
from querykit.mutation import MutationExecutor, MutationHandle, MutationState
from querykit.optimistic import (
    OptimisticWriter,
    insert_item,
    patch_item,
    remove_item,
    replace_item,
)
from querykit.race_guard import RaceGuard
from querykit.realtime import InvalidationBatcher
from querykit.registry import ChangeKind, EntityChange, KeyRegistry
from querykit.runner import QueryRunner
from querykit.staleness import (
    FAST,
    MEDIUM,
    SLOW,
    STATIC,
    StalePolicy,
    is_stale,
    resolve_policy,
)

# Core types
from querykit.types import (
    DEFAULT_PAGE_SIZE,
    ActionResult,
    CacheEntry,
    Duration,
    InfiniteData,
    InfiniteQueryConfig,
    MutationConfig,
    QueryConfig,
)

# Optional HTTP actions - only available when httpx is installed
with suppress(ImportError):
    from querykit.actions import HttpActions

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_PAGE_SIZE",
    "FAST",
    "MEDIUM",
    "SLOW",
    "STATIC",
    "ActionResult",
    "CacheEntry",
    "ChangeKind",
    "Duration",
    "EntityChange",
    "EntityKeys",
    "FetchError",
    "HttpActions",
    "InfiniteData",
    "InfiniteQueryConfig",
    "InvalidKeyError",
    "InvalidationBatcher",
    "KeyRegistry",
    "MutationConfig",
    "MutationError",
    "MutationExecutor",
    "MutationHandle",
    "MutationState",
    "OptimisticWriter",
    "QueryCache",
    "QueryClient",
    "QueryConfig",
    "QueryKey",
    "QueryKitError",
    "QueryRunner",
    "RaceGuard",
    "StaleOperationDiscarded",
    "StalePolicy",
    "build_key",
    "infinite_key",
    "insert_item",
    "is_stale",
    "matches",
    "parse_duration",
    "patch_item",
    "remove_item",
    "replace_item",
    "resolve_policy",
]

"""MutationExecutor - optimistic apply, server call, commit or rollback.

Each invocation moves through:

    IDLE -> OPTIMISTIC_APPLIED -> COMMITTED | ROLLED_BACK

The optimistic write happens synchronously in ``submit``; the server call and
the settlement run in a task. Errors are never retried here.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Generator
from typing import Any, Generic, TypeVar

from querykit.cache import QueryCache
from querykit.errors import MutationError, StaleOperationDiscarded
from querykit.keys import QueryKey, as_key, coalesce_keys
from querykit.optimistic import OptimisticWriter, Rollback
from querykit.race_guard import RaceGuard
from querykit.registry import KeyRegistry
from querykit.types import ActionResult, MutationConfig

logger = logging.getLogger(__name__)

R = TypeVar("R")

ErrorNotifier = Callable[[MutationError], None]


class MutationState(str, enum.Enum):
    IDLE = "idle"
    OPTIMISTIC_APPLIED = "optimistic_applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class MutationHandle(Generic[R]):
    """One in-flight mutation. Await it for the server result.

    Usage:
        handle = executor.submit(config, variables)
        handle.state      # MutationState.OPTIMISTIC_APPLIED
        result = await handle
        handle.discarded  # StaleOperationDiscarded if a newer call won
    """

    __slots__ = ("_task", "discarded", "error", "scope", "state", "token")

    def __init__(self, scope: str | None, token: int | None) -> None:
        self.scope = scope
        self.token = token
        self.state = MutationState.IDLE
        self.error: MutationError | None = None
        self.discarded: StaleOperationDiscarded | None = None
        self._task: asyncio.Task[R] | None = None

    def __await__(self) -> Generator[Any, None, R]:
        if self._task is None:
            raise RuntimeError("Mutation was not started")
        return self._task.__await__()

    @property
    def done(self) -> bool:
        return self.state in (MutationState.COMMITTED, MutationState.ROLLED_BACK)

    def __repr__(self) -> str:
        return f"MutationHandle(scope={self.scope!r}, token={self.token}, state={self.state.value})"


class MutationExecutor:
    """Runs mutations against a shared cache."""

    def __init__(
        self,
        cache: QueryCache,
        *,
        guard: RaceGuard | None = None,
        registry: KeyRegistry | None = None,
        notify_error: ErrorNotifier | None = None,
    ) -> None:
        self._cache = cache
        self._guard = guard or RaceGuard()
        self._registry = registry or KeyRegistry()
        self._notify_error = notify_error
        self._writer = OptimisticWriter(cache)
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def guard(self) -> RaceGuard:
        return self._guard

    def submit(self, config: MutationConfig[Any, R], variables: Any) -> MutationHandle[R]:
        """Apply the optimistic update now and start the server call.

        Must be called from inside a running event loop. Exceptions raised by
        ``optimistic_update`` itself are programmer errors and propagate.
        """
        scope = config.scope_for(variables)
        rollback: Rollback | None = None
        if config.optimistic_update is not None:
            rollback = config.optimistic_update(self._writer, variables)

        # A token is only issued for a write that actually happened.
        token = self._guard.begin(scope) if scope is not None else None
        handle: MutationHandle[R] = MutationHandle(scope, token)
        handle.state = MutationState.OPTIMISTIC_APPLIED

        task = asyncio.ensure_future(self._settle(handle, config, variables, rollback))
        handle._task = task
        # Failures are reported through notify_error; awaiting is optional.
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(_consume)
        return handle

    async def execute(self, config: MutationConfig[Any, R], variables: Any) -> R:
        """Submit and wait for the server result."""
        return await self.submit(config, variables)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _settle(
        self,
        handle: MutationHandle[R],
        config: MutationConfig[Any, R],
        variables: Any,
        rollback: Rollback | None,
    ) -> R:
        try:
            raw = await config.fn(variables)
            result = self._unwrap(handle, raw)
        except Exception as exc:
            error = exc if isinstance(exc, MutationError) else MutationError(
                f"Mutation failed: {exc}", scope=handle.scope, cause=exc
            )
            self._fail(handle, config, variables, rollback, error)
            if error is exc:
                raise
            raise error from exc

        scope, token = handle.scope, handle.token
        latest = scope is None or token is None or self._guard.is_latest(scope, token)
        keys: list[QueryKey] = []
        try:
            keys = self._keys_for(config, result, variables)
            if latest and config.apply_result is not None:
                config.apply_result(self._writer, result, variables)
        except Exception as exc:
            error = MutationError(
                f"Applying mutation result failed: {exc}", scope=scope, cause=exc
            )
            self._fail(handle, config, variables, rollback, error)
            # The server accepted the write; refetch what it touched.
            self._invalidate(keys)
            raise error from exc

        if latest or scope is None or token is None:
            handle.state = MutationState.COMMITTED
        else:
            handle.discarded = StaleOperationDiscarded(
                scope, token, self._guard.latest(scope)
            )
            logger.info("Discarding mutation result: %s", handle.discarded)
            self._roll_back(handle, rollback)
            handle.state = MutationState.ROLLED_BACK

        self._invalidate(keys)
        self._call(config.on_success, result, variables)
        self._call(config.on_settled, result, None, variables)
        return result

    def _unwrap(self, handle: MutationHandle[Any], raw: Any) -> Any:
        if isinstance(raw, ActionResult):
            if not raw.success:
                raise MutationError(
                    raw.error or "Mutation failed", scope=handle.scope, cause=raw
                )
            return raw.data
        return raw

    def _fail(
        self,
        handle: MutationHandle[Any],
        config: MutationConfig[Any, Any],
        variables: Any,
        rollback: Rollback | None,
        error: MutationError,
    ) -> None:
        logger.warning("Mutation on %s failed: %s", handle.scope, error)
        self._roll_back(handle, rollback)
        handle.state = MutationState.ROLLED_BACK
        handle.error = error
        if self._notify_error is not None:
            self._call(self._notify_error, error)
        self._call(config.on_error, error, variables)
        self._call(config.on_settled, None, error, variables)

    def _roll_back(self, handle: MutationHandle[Any], rollback: Rollback | None) -> None:
        if rollback is None:
            return
        try:
            rollback()
        except Exception:
            logger.exception("Rollback for %s raised", handle.scope)

    def _keys_for(
        self, config: MutationConfig[Any, Any], result: Any, variables: Any
    ) -> list[QueryKey]:
        keys = [as_key(k) for k in config.invalidates_for(result, variables)]
        change = config.change_for(result, variables)
        if change is not None:
            keys.extend(self._registry.expand(change))
        return coalesce_keys(keys)

    def _invalidate(self, keys: list[QueryKey]) -> list[QueryKey]:
        if not keys:
            return []
        return self._cache.invalidate_many(keys)

    @staticmethod
    def _call(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Mutation callback %r raised", callback)


def _consume(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()


__all__ = ["MutationExecutor", "MutationHandle", "MutationState"]

"""Shared pytest fixtures."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from querykit import (
    KeyRegistry,
    MutationError,
    MutationExecutor,
    QueryCache,
    QueryClient,
    QueryRunner,
    build_key,
)


@pytest.fixture
def registry() -> KeyRegistry:
    """Create a fresh KeyRegistry for each test."""
    return KeyRegistry()


@pytest.fixture
def cache() -> QueryCache:
    """Create a fresh QueryCache for each test."""
    return QueryCache()


@pytest.fixture
def runner(cache: QueryCache, registry: KeyRegistry) -> QueryRunner:
    """Create a QueryRunner over the shared cache."""
    return QueryRunner(cache, registry=registry)


@pytest.fixture
def notified() -> list[MutationError]:
    """Errors delivered to the notify_error hook."""
    return []


@pytest.fixture
def executor(
    cache: QueryCache, registry: KeyRegistry, notified: list[MutationError]
) -> MutationExecutor:
    """Create a MutationExecutor that records notified errors."""
    return MutationExecutor(cache, registry=registry, notify_error=notified.append)


@pytest.fixture
def client(notified: list[MutationError]) -> QueryClient:
    """Create a QueryClient that records notified errors."""
    return QueryClient(notify_error=notified.append)


@pytest.fixture
def objects_key():
    """The object list of project P1."""
    return build_key("objects", "list", {"project": "P1"})


class Gate:
    """Server stub whose calls block until released, in any order."""

    def __init__(self) -> None:
        self.calls: list[Any] = []
        self._events: list[asyncio.Event] = []

    def action(self, outcome: Any) -> Callable[[Any], Awaitable[Any]]:
        """A mutation/query function that waits for release, then returns
        ``outcome`` or raises it if it is an exception."""
        event = asyncio.Event()
        self._events.append(event)

        async def fn(variables: Any = None) -> Any:
            self.calls.append(variables)
            await event.wait()
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome

        return fn

    def release(self, index: int) -> None:
        self._events[index].set()


@pytest.fixture
def gate() -> Gate:
    return Gate()

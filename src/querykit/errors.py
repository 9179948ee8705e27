"""Error taxonomy for querykit."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from querykit.keys import QueryKey


class QueryKitError(Exception):
    """Base class for all querykit errors."""


class InvalidKeyError(QueryKitError, ValueError):
    """A query key was built from segments that cannot be canonicalized."""


class FetchError(QueryKitError):
    """A query function failed while reading ``key``."""

    def __init__(
        self, message: str, *, key: QueryKey | None = None, cause: Any = None
    ) -> None:
        super().__init__(message)
        self.key = key
        self.cause = cause


class MutationError(QueryKitError):
    """A mutation function failed. The optimistic write has been rolled back."""

    def __init__(
        self, message: str, *, scope: str | None = None, cause: Any = None
    ) -> None:
        super().__init__(message)
        self.scope = scope
        self.cause = cause


class StaleOperationDiscarded(QueryKitError):
    """A mutation finished after a newer one on the same scope.

    Diagnostic only: it is recorded on the mutation handle and logged,
    never raised to callers.
    """

    def __init__(self, scope: str, token: int, latest: int) -> None:
        super().__init__(
            f"operation {token} on {scope!r} superseded by operation {latest}"
        )
        self.scope = scope
        self.token = token
        self.latest = latest


__all__ = [
    "FetchError",
    "InvalidKeyError",
    "MutationError",
    "QueryKitError",
    "StaleOperationDiscarded",
]

"""Per-scope sequence numbers for ordering concurrent mutations."""


class RaceGuard:
    """Issues monotonically increasing operation tokens per scope.

    A mutation takes a token before touching the cache. When its server call
    returns, ``is_latest`` tells whether a newer operation on the same scope
    has started since; if so, the late result must not be applied.

    Scopes are independent: tokens on ``"object:o1"`` say nothing about
    ``"object:o2"``.
    """

    __slots__ = ("_counters",)

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}

    def begin(self, scope: str) -> int:
        """Start an operation on ``scope`` and return its token."""
        token = self._counters.get(scope, 0) + 1
        self._counters[scope] = token
        return token

    def is_latest(self, scope: str, token: int) -> bool:
        return self._counters.get(scope, 0) == token

    def latest(self, scope: str) -> int:
        """Most recently issued token for ``scope`` (0 if none)."""
        return self._counters.get(scope, 0)


__all__ = ["RaceGuard"]

"""Structural query keys and prefix matching.

A key is an ordered path of segments, e.g. ``("objects", "list", {"project": "P1"})``.
Each segment is canonicalized to compact JSON with sorted mapping keys, so two
keys built from records with different insertion order are equal, and an
invalidation on ``("objects",)`` reaches every key nested under it.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Union

from querykit.errors import InvalidKeyError

_PRIMITIVES = (str, int, float, bool, type(None))


def _freeze(segment: Any, path: str) -> Any:
    """Validate a segment and return an immutable copy of it."""
    if isinstance(segment, float) and not math.isfinite(segment):
        raise InvalidKeyError(f"Non-finite number in key segment {path}: {segment!r}")
    if isinstance(segment, _PRIMITIVES):
        return segment
    if isinstance(segment, Mapping):
        frozen: dict[str, Any] = {}
        for name, value in segment.items():
            if not isinstance(name, str):
                raise InvalidKeyError(
                    f"Record keys must be strings in key segment {path}: {name!r}"
                )
            frozen[name] = _freeze(value, f"{path}.{name}")
        return MappingProxyType(frozen)
    if isinstance(segment, (list, tuple)):
        return tuple(_freeze(item, f"{path}[{i}]") for i, item in enumerate(segment))
    raise InvalidKeyError(
        f"Unsupported key segment {path}: {type(segment).__name__} {segment!r}"
    )


def _thaw(segment: Any) -> Any:
    if isinstance(segment, Mapping):
        return {name: _thaw(value) for name, value in segment.items()}
    if isinstance(segment, tuple):
        return [_thaw(item) for item in segment]
    return segment


def canonicalize(segment: Any) -> str:
    """Canonical text form of one segment."""
    return json.dumps(
        _thaw(segment), sort_keys=True, separators=(",", ":"), allow_nan=False
    )


@dataclass(frozen=True, slots=True)
class QueryKey:
    """An immutable, structurally comparable cache key."""

    segments: tuple[Any, ...] = field(compare=False)
    canonical: tuple[str, ...] = field(repr=False)

    @classmethod
    def of(cls, *segments: Any) -> QueryKey:
        frozen = tuple(_freeze(seg, f"[{i}]") for i, seg in enumerate(segments))
        return cls(frozen, tuple(canonicalize(seg) for seg in frozen))

    def child(self, *segments: Any) -> QueryKey:
        """Key nested under this one."""
        return QueryKey.of(*self.segments, *segments)

    def is_prefix_of(self, other: QueryKey) -> bool:
        return matches(other, self)

    def __len__(self) -> int:
        return len(self.canonical)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.segments)

    def __repr__(self) -> str:
        return f"QueryKey({'/'.join(self.canonical)})"


KeyLike = Union[QueryKey, tuple, list]


def build_key(*segments: Any) -> QueryKey:
    """Build a key from segments.

    Example:
        build_key("objects", "list", {"project": "P1"})
    """
    return QueryKey.of(*segments)


def as_key(key: KeyLike) -> QueryKey:
    """Accept a QueryKey or a plain tuple/list of segments."""
    if isinstance(key, QueryKey):
        return key
    if isinstance(key, (tuple, list)):
        return QueryKey.of(*key)
    raise InvalidKeyError(f"Expected QueryKey or sequence, got {type(key).__name__}")


def infinite_key(key: KeyLike) -> QueryKey:
    """Key of the paginated form of ``key``."""
    return as_key(key).child("infinite")


def matches(candidate: QueryKey, pattern: QueryKey) -> bool:
    """Check if pattern is a structural prefix of candidate (for invalidation)."""
    if len(pattern) > len(candidate):
        return False
    return candidate.canonical[: len(pattern)] == pattern.canonical


def covered(key: QueryKey, patterns: list[QueryKey]) -> bool:
    """True if any of ``patterns`` other than ``key`` itself is a prefix of it."""
    return any(p is not key and matches(key, p) for p in patterns)


def coalesce_keys(keys: list[QueryKey]) -> list[QueryKey]:
    """Drop duplicates and keys already reached by a broader key in the list."""
    unique: list[QueryKey] = []
    for key in keys:
        if key not in unique:
            unique.append(key)
    return [key for key in unique if not covered(key, unique)]


class EntityKeys:
    """Key namespace for one entity, e.g. ``projects``.

    Layout:
        all          ("projects",)
        lists()      ("projects", "list")
        list(**f)    ("projects", "list", {...filters})
        details()    ("projects", "detail")
        detail(id)   ("projects", "detail", id)
        view(n, *a)  ("projects", n, *a)
    """

    __slots__ = ("all", "name")

    def __init__(self, name: str) -> None:
        self.name = name
        self.all = build_key(name)

    def lists(self) -> QueryKey:
        return self.all.child("list")

    def list(self, filters: Mapping[str, Any] | None = None, **kw: Any) -> QueryKey:
        merged = {**(filters or {}), **kw}
        if not merged:
            return self.lists()
        return self.lists().child(merged)

    def details(self) -> QueryKey:
        return self.all.child("detail")

    def detail(self, id: Any) -> QueryKey:
        return self.details().child(id)

    def view(self, name: str, *args: Any) -> QueryKey:
        return self.all.child(name, *args)

    def __repr__(self) -> str:
        return f"EntityKeys({self.name})"


__all__ = [
    "EntityKeys",
    "KeyLike",
    "QueryKey",
    "as_key",
    "build_key",
    "canonicalize",
    "coalesce_keys",
    "infinite_key",
    "matches",
]

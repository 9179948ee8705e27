"""Key registry: entity namespaces, freshness policies and change expansion."""

from __future__ import annotations

import enum
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from querykit.keys import EntityKeys, KeyLike, QueryKey, as_key, coalesce_keys, matches
from querykit.staleness import MEDIUM, StalePolicy, resolve_policy
from querykit.types import Duration


class ChangeKind(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True, slots=True)
class EntityChange:
    """A domain event, e.g. "object o1 deleted under project P1".

    ``entity`` is the table/entity name; ``parents`` maps parent entity names
    to ids (``{"project": "P1"}``).
    """

    entity: str
    kind: ChangeKind
    id: Any = None
    parents: Mapping[str, Any] = field(default_factory=dict)
    record: Mapping[str, Any] | None = None


ChangeKeys = Union[Sequence[KeyLike], Callable[[EntityChange], Sequence[KeyLike]]]


@dataclass(frozen=True, slots=True)
class _ChangeRule:
    entity: str
    events: frozenset[str]
    invalidates: ChangeKeys

    def applies_to(self, change: EntityChange) -> bool:
        if change.entity != self.entity:
            return False
        return "*" in self.events or ChangeKind(change.kind).value in self.events

    def keys_for(self, change: EntityChange) -> list[QueryKey]:
        keys = self.invalidates(change) if callable(self.invalidates) else self.invalidates
        return [as_key(k) for k in keys]


class KeyRegistry:
    """Central registry of the key space.

    Usage:
        registry = KeyRegistry()
        objects = registry.entity("objects")
        registry.set_policy(objects.all, "fast")
        registry.on_change(
            "objects",
            lambda c: [
                registry.entity("projects").view("structure", c.parents["project"]),
                objects.list(project=c.parents["project"]),
            ],
        )
        registry.expand(EntityChange("objects", ChangeKind.DELETE, "o1", {"project": "P1"}))
    """

    def __init__(self, *, default_policy: StalePolicy | Duration = MEDIUM) -> None:
        self._entities: dict[str, EntityKeys] = {}
        self._policies: list[tuple[QueryKey, StalePolicy]] = []
        self._rules: list[_ChangeRule] = []
        self._default_policy = resolve_policy(default_policy)

    def entity(self, name: str) -> EntityKeys:
        """Key namespace for ``name`` (created on first use)."""
        keys = self._entities.get(name)
        if keys is None:
            keys = self._entities[name] = EntityKeys(name)
        return keys

    @property
    def default_policy(self) -> StalePolicy:
        return self._default_policy

    def set_policy(self, pattern: KeyLike, policy: StalePolicy | Duration) -> None:
        """Attach a freshness policy to every key under ``pattern``."""
        pattern = as_key(pattern)
        resolved = resolve_policy(policy)
        self._policies = [(p, pol) for p, pol in self._policies if p != pattern]
        self._policies.append((pattern, resolved))

    def policy_for(self, key: KeyLike) -> StalePolicy:
        """Policy of the longest registered pattern matching ``key``."""
        key = as_key(key)
        best: tuple[QueryKey, StalePolicy] | None = None
        for pattern, policy in self._policies:
            if matches(key, pattern) and (best is None or len(pattern) > len(best[0])):
                best = (pattern, policy)
        return best[1] if best else self._default_policy

    def on_change(
        self,
        entity: str,
        invalidates: ChangeKeys,
        *,
        events: Sequence[str | ChangeKind] = ("*",),
    ) -> None:
        """Register the keys a change to ``entity`` must invalidate."""
        names = frozenset(ChangeKind(e).value if e != "*" else "*" for e in events)
        self._rules.append(_ChangeRule(entity, names, invalidates))

    def expand(self, change: EntityChange) -> list[QueryKey]:
        """Every key pattern that must be invalidated for ``change``."""
        keys: list[QueryKey] = []
        known = False
        for rule in self._rules:
            if rule.entity == change.entity:
                known = True
            if rule.applies_to(change):
                keys.extend(rule.keys_for(change))
        if not known:
            keys.append(self.entity(change.entity).all)
        return coalesce_keys(keys)


__all__ = ["ChangeKind", "EntityChange", "KeyRegistry"]

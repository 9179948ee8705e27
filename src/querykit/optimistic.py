"""Optimistic writes and the delta helpers built on them.

An optimistic update is a function ``(writer, variables) -> rollback``. The
rollback undoes that update's own delta against whatever the cache holds when
it runs, rather than restoring a snapshot, so two interleaved operations on the
same list can fail in any order without clobbering each other.

Helpers cover list queries of records (dicts with an ``"id"``):

    create = MutationConfig(
        fn=api.create_object,
        scope=lambda v: f"object:create:{v['project']}",
        optimistic_update=insert_item(
            lambda v: keys.objects.list(project=v["project"]),
            lambda v: {"id": v["temp_id"], "name": v["name"]},
        ),
        apply_result=replace_item(
            lambda v: keys.objects.list(project=v["project"]),
            lambda v: v["temp_id"],
        ),
    )
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Union

from querykit.cache import QueryCache
from querykit.keys import KeyLike, QueryKey, as_key

Rollback = Callable[[], None]
KeyArg = Union[KeyLike, Callable[[Any], KeyLike]]
IdOf = Callable[[Any], Any]


def item_id(item: Any) -> Any:
    """Default identity of a list item."""
    if isinstance(item, Mapping):
        return item.get("id")
    return getattr(item, "id", None)


class OptimisticWriter:
    """The write surface handed to optimistic updates and result handlers."""

    __slots__ = ("_cache",)

    def __init__(self, cache: QueryCache) -> None:
        self._cache = cache

    def find_all(self, pattern: KeyLike) -> list[QueryKey]:
        return self._cache.find_all(pattern)

    def get_data(self, key: KeyLike) -> Any | None:
        return self._cache.get_data(key)

    def set_data(self, key: KeyLike, data: Any) -> None:
        self._cache.set_data(key, data)

    def update(self, key: KeyLike, updater: Callable[[Any], Any]) -> bool:
        """Apply ``updater`` to the data of ``key`` if it has any."""
        entry = self._cache.get(key)
        if entry is None or not entry.has_data:
            return False
        self._cache.set_data(key, updater(entry.data))
        return True

    def update_all(self, pattern: KeyLike, updater: Callable[[Any], Any]) -> list[QueryKey]:
        """Apply ``updater`` to every populated entry under ``pattern``."""
        touched: list[QueryKey] = []
        for key in self._cache.find_all(pattern):
            if self.update(key, updater):
                touched.append(key)
        return touched


def _resolve(key: KeyArg, variables: Any) -> QueryKey:
    if callable(key):
        return as_key(key(variables))
    return as_key(key)


def _lists(writer: OptimisticWriter, pattern: QueryKey) -> list[QueryKey]:
    return [
        key
        for key in writer.find_all(pattern)
        if isinstance(writer.get_data(key), list)
    ]


def insert_item(
    key: KeyArg,
    make_item: Callable[[Any], Any],
    *,
    id_of: IdOf = item_id,
    prepend: bool = False,
) -> Callable[[OptimisticWriter, Any], Rollback]:
    """Add an item to every list under ``key``; rollback removes it again."""

    def update(writer: OptimisticWriter, variables: Any) -> Rollback:
        pattern = _resolve(key, variables)
        item = make_item(variables)
        new_id = id_of(item)
        touched = _lists(writer, pattern)
        for target in touched:
            writer.update(
                target, lambda data: [item, *data] if prepend else [*data, item]
            )

        def rollback() -> None:
            for target in touched:
                writer.update(
                    target, lambda data: [x for x in data if id_of(x) != new_id]
                )

        return rollback

    return update


def remove_item(
    key: KeyArg,
    get_id: Callable[[Any], Any],
    *,
    id_of: IdOf = item_id,
) -> Callable[[OptimisticWriter, Any], Rollback]:
    """Remove an item from every list under ``key``.

    Rollback puts the item back at its old position unless it is already
    present again.
    """

    def update(writer: OptimisticWriter, variables: Any) -> Rollback:
        pattern = _resolve(key, variables)
        target_id = get_id(variables)
        removed: dict[QueryKey, tuple[int, Any]] = {}
        for target in _lists(writer, pattern):
            data = writer.get_data(target)
            for index, existing in enumerate(data):
                if id_of(existing) == target_id:
                    removed[target] = (index, existing)
                    writer.set_data(
                        target, [x for x in data if id_of(x) != target_id]
                    )
                    break

        def rollback() -> None:
            for target, (index, existing) in removed.items():
                data = writer.get_data(target)
                if not isinstance(data, list):
                    continue
                if any(id_of(x) == target_id for x in data):
                    continue
                restored = list(data)
                restored.insert(min(index, len(restored)), existing)
                writer.set_data(target, restored)

        return rollback

    return update


def patch_item(
    key: KeyArg,
    get_id: Callable[[Any], Any],
    changes: Callable[[Any], Mapping[str, Any]],
    *,
    id_of: IdOf = item_id,
) -> Callable[[OptimisticWriter, Any], Rollback]:
    """Merge ``changes`` into the matching record of every list under ``key``.

    Rollback restores the previous value of each changed field, but only
    where the field still holds the value this update wrote.
    """

    def update(writer: OptimisticWriter, variables: Any) -> Rollback:
        pattern = _resolve(key, variables)
        target_id = get_id(variables)
        patch = dict(changes(variables))
        previous: dict[QueryKey, dict[str, Any]] = {}
        missing = object()

        for target in _lists(writer, pattern):
            data = writer.get_data(target)
            for existing in data:
                if id_of(existing) == target_id:
                    previous[target] = {f: existing.get(f, missing) for f in patch}
                    writer.set_data(
                        target,
                        [
                            {**x, **patch} if id_of(x) == target_id else x
                            for x in data
                        ],
                    )
                    break

        def restore(item: Mapping[str, Any], before: dict[str, Any]) -> dict[str, Any]:
            result = dict(item)
            for name, old in before.items():
                if result.get(name, missing) != patch[name]:
                    continue
                if old is missing:
                    result.pop(name, None)
                else:
                    result[name] = old
            return result

        def rollback() -> None:
            for target, before in previous.items():
                writer.update(
                    target,
                    lambda data, before=before: [
                        restore(x, before) if id_of(x) == target_id else x
                        for x in data
                    ],
                )

        return rollback

    return update


def replace_item(
    key: KeyArg,
    get_id: Callable[[Any], Any],
    to_item: Callable[[Any], Any] = lambda result: result,
    *,
    id_of: IdOf = item_id,
) -> Callable[[OptimisticWriter, Any, Any], None]:
    """Result handler swapping an optimistic item for the server's version.

    Typical use is replacing a ``temp-N`` record with the created row.
    """

    def apply(writer: OptimisticWriter, result: Any, variables: Any) -> None:
        pattern = _resolve(key, variables)
        old_id = get_id(variables)
        item = to_item(result)
        for target in _lists(writer, pattern):
            writer.update(
                target,
                lambda data: [item if id_of(x) == old_id else x for x in data],
            )

    return apply


__all__ = [
    "OptimisticWriter",
    "insert_item",
    "item_id",
    "patch_item",
    "remove_item",
    "replace_item",
]

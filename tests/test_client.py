"""Tests for QueryClient."""

from typing import Any

from querykit import (
    FAST,
    ActionResult,
    ChangeKind,
    EntityChange,
    InfiniteData,
    InfiniteQueryConfig,
    KeyRegistry,
    MutationConfig,
    MutationHandle,
    MutationState,
    QueryClient,
    QueryConfig,
    build_key,
    infinite_key,
    insert_item,
    replace_item,
)


class TestQueries:
    """Tests for reading through the client."""

    async def test_query_decorator(self, client: QueryClient) -> None:
        """Test that decorated query functions read through the cache."""
        calls: list[str] = []
        objects = client.keys("objects")

        @client.query
        def object_list(project_id: str) -> QueryConfig[list[dict[str, Any]]]:
            async def fn() -> ActionResult[list[dict[str, Any]]]:
                calls.append(project_id)
                return ActionResult.ok([{"id": "o1", "project": project_id}])

            return QueryConfig(key=objects.list(project=project_id), fn=fn)

        assert await object_list("P1") == [{"id": "o1", "project": "P1"}]
        assert await object_list("P1") == [{"id": "o1", "project": "P1"}]
        await object_list("P2")
        assert calls == ["P1", "P2"]
        assert object_list.__name__ == "object_list"

    async def test_disabled_query(self, client: QueryClient) -> None:
        """Test that disabled configs do not fetch."""

        async def fn() -> int:
            raise AssertionError("should not run")

        config = QueryConfig(key=build_key("a"), fn=fn, enabled=False)
        assert await client.fetch(config) is None

    async def test_watch_and_subscribe(self, client: QueryClient) -> None:
        """Test that watchers and subscribers see the fetched entry."""
        seen: list[Any] = []
        key = build_key("a")

        async def fn() -> int:
            return 1

        unsubscribe = client.watch(QueryConfig(key=key, fn=fn), lambda k, e: seen.append(e.status))
        client.subscribe(key, lambda k, e: seen.append("sub"))
        await client.runner.refetch(key)
        assert seen == ["loading", "success", "sub"]
        assert client.get(key).data == 1
        unsubscribe()

    def test_default_stale_time(self) -> None:
        """Test that the client default reaches the registry."""
        client = QueryClient(default_stale_time="fast")
        assert client.registry.policy_for(("anything",)) is FAST

    def test_shared_registry(self) -> None:
        """Test that a supplied registry is used as is."""
        registry = KeyRegistry()
        client = QueryClient(registry=registry)
        assert client.registry is registry
        assert client.keys("objects") is registry.entity("objects")


class TestPaginatedQueries:
    """Tests for paginated queries through the client."""

    async def test_infinite_query_decorator(self, client: QueryClient) -> None:
        """Test loading pages until a short page ends the list."""
        calls: list[tuple[str, int]] = []
        projects = client.keys("projects")

        @client.infinite_query
        def project_pages(status: str) -> InfiniteQueryConfig[int]:
            async def fn(page: int) -> ActionResult[list[int]]:
                calls.append((status, page))
                rows = list(range(5))
                return ActionResult.ok(rows[(page - 1) * 2 : page * 2])

            return InfiniteQueryConfig(
                key=projects.list(status=status), fn=fn, page_size=2
            )

        data = await project_pages("active")
        assert isinstance(data, InfiniteData)
        assert data.items == [0, 1]
        assert await project_pages("active") is data

        data = await project_pages.fetch_next_page("active")
        data = await project_pages.fetch_next_page("active")
        assert data.pages == ([0, 1], [2, 3], [4])
        assert not data.has_next_page
        assert await project_pages.fetch_next_page("active") is data
        assert calls == [("active", 1), ("active", 2), ("active", 3)]
        key = infinite_key(projects.list(status="active"))
        assert client.get_data(key) is data

    async def test_disabled(self, client: QueryClient) -> None:
        """Test that a disabled paginated query never loads."""

        async def fn(page: int) -> list[int]:
            raise AssertionError("should not load")

        config = InfiniteQueryConfig(key=("pages",), fn=fn, enabled=False)
        assert await client.fetch_pages(config) is None
        assert await client.fetch_next_page(config) is None

    def test_infinite_data(self) -> None:
        """Test the page helpers."""
        data = InfiniteData(pages=([1, 2],), page_size=2)
        assert data.next_page == 2
        longer = data.append([3])
        assert longer.items == [1, 2, 3]
        assert longer.next_page is None
        assert data.pages == ([1, 2],)
        assert not InfiniteData(pages=()).has_next_page


class TestMutations:
    """Tests for writing through the client."""

    async def test_mutation_decorator(self, client: QueryClient) -> None:
        """Test that decorated actions return handles and update the cache."""
        objects = client.keys("objects")
        key = objects.list(project="P1")
        client.cache.set_data(key, [])

        @client.mutation(
            scope=lambda v: f"object:create:{v['project']}",
            optimistic_update=insert_item(
                lambda v: objects.list(project=v["project"]),
                lambda v: {"id": v["temp_id"]},
            ),
            apply_result=replace_item(
                lambda v: objects.list(project=v["project"]), lambda v: v["temp_id"]
            ),
            invalidates=[objects.details()],
        )
        async def create_object(v: dict[str, Any]) -> ActionResult[dict[str, Any]]:
            return ActionResult.ok({"id": "o1"})

        handle = create_object({"project": "P1", "temp_id": "temp-1"})
        assert isinstance(handle, MutationHandle)
        assert client.get_data(key) == [{"id": "temp-1"}]
        assert await handle == {"id": "o1"}
        assert handle.state is MutationState.COMMITTED
        assert client.get_data(key) == [{"id": "o1"}]
        assert create_object.__name__ == "create_object"

    async def test_mutate(self, client: QueryClient) -> None:
        """Test the awaitable entry point."""
        async def fn(v: int) -> int:
            return v * 2

        assert await client.mutate(MutationConfig(fn=fn), 2) == 4
        assert client.submit(MutationConfig(fn=fn), 1).state is MutationState.OPTIMISTIC_APPLIED


class TestInvalidationAndLifecycle:
    """Tests for invalidation, garbage collection and shutdown."""

    def test_invalidate_many_patterns(self, client: QueryClient) -> None:
        """Test invalidating several patterns at once."""
        for key in (("a", 1), ("b", 1), ("c",)):
            client.cache.set_data(key, 1)
        matched = client.invalidate(("a",), ("b",))
        assert set(matched) == {build_key("a", 1), build_key("b", 1)}

    def test_apply_change(self, client: QueryClient) -> None:
        """Test that domain changes invalidate through the registry."""
        objects = client.keys("objects")
        client.cache.set_data(objects.list(project="P1"), [])
        client.cache.set_data(objects.list(project="P2"), [])
        client.registry.on_change(
            "objects", lambda c: [objects.list(project=c.parents["project"])]
        )
        client.apply_change(
            EntityChange("objects", ChangeKind.INSERT, "o1", {"project": "P1"})
        )
        assert client.get(objects.list(project="P1")).invalidated
        assert not client.get(objects.list(project="P2")).invalidated

    def test_collect_garbage(self) -> None:
        """Test that idle entries older than gc_time are dropped."""
        client = QueryClient(gc_time=0)
        client.cache.set_data(("a",), 1)
        client.subscribe(("b",), lambda k, e: None)
        client.cache.set_data(("b",), 1)
        assert client.collect_garbage() == [build_key("a")]
        assert client.get(("b",)) is not None

    def test_collect_garbage_keeps_recent(self, client: QueryClient) -> None:
        """Test that the default window keeps fresh entries."""
        client.cache.set_data(("a",), 1)
        assert client.collect_garbage() == []

    def test_clear(self, client: QueryClient) -> None:
        """Test dropping everything."""
        client.cache.set_data(("a",), 1)
        client.clear()
        assert client.get(("a",)) is None

    async def test_close_stops_background_refetch(self, client: QueryClient) -> None:
        """Test that a closed client no longer refetches on invalidation."""
        key = build_key("a")

        async def fn() -> int:
            return 1

        client.watch(QueryConfig(key=key, fn=fn), lambda k, e: None)
        await client.runner.refetch(key)
        client.close()
        client.invalidate(key)
        assert not client.runner.is_fetching(key)

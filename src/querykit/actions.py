"""HTTP-backed server actions for queries and mutations."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from querykit.types import ActionResult

logger = logging.getLogger(__name__)

PathArg = str | Callable[[Any], str]


class HttpActions:
    """Builds query and mutation functions against a JSON HTTP backend.

    Responses are turned into ``ActionResult`` envelopes: a body that already
    is an envelope (``{"success": ..., "data"/"error": ...}``) is passed
    through, any other 2xx body becomes ``ActionResult.ok(body)``, and non-2xx
    responses become ``ActionResult.fail(message)``. Transport errors raise.

    Usage:
        actions = HttpActions("https://api.example.com", api_key="...")
        list_objects = actions.query("/objects", params={"project": "P1"})
        delete_object = actions.mutation("DELETE", lambda v: f"/objects/{v['id']}")
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key is not None:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> ActionResult[Any]:
        """Send one request and wrap the response."""
        response = await self._client.request(method, path, params=params, json=json)
        if not response.is_success:
            try:
                error = response.json().get("error", "Request failed")
            except Exception:
                error = f"HTTP {response.status_code}"
            logger.debug("%s %s failed: %s", method, path, error)
            return ActionResult.fail(str(error))

        if response.status_code == 204 or not response.content:
            return ActionResult.ok(None)
        body = response.json()
        if isinstance(body, dict) and "success" in body:
            if body["success"]:
                return ActionResult.ok(body.get("data"))
            return ActionResult.fail(str(body.get("error") or "Request failed"))
        return ActionResult.ok(body)

    def query(
        self, path: str, *, params: dict[str, Any] | None = None
    ) -> Callable[[], Awaitable[ActionResult[Any]]]:
        """A query function issuing ``GET path``."""

        async def fn() -> ActionResult[Any]:
            return await self.request("GET", path, params=params)

        return fn

    def mutation(
        self,
        method: str,
        path: PathArg,
        *,
        body: Callable[[Any], Any] | None = None,
    ) -> Callable[[Any], Awaitable[ActionResult[Any]]]:
        """A mutation function sending the variables (or ``body(variables)``)."""

        async def fn(variables: Any) -> ActionResult[Any]:
            target = path(variables) if callable(path) else path
            payload = body(variables) if body is not None else variables
            if method.upper() in ("GET", "DELETE"):
                return await self.request(method, target)
            return await self.request(method, target, json=payload)

        return fn

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


__all__ = ["HttpActions"]

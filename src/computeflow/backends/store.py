"""
HTTP Graph Store - Persists graph documents on a remote backend.

    GET    {base_url}/graphs            -> {"ids": [...]}
    GET    {base_url}/graphs/{id}       -> graph document
    PUT    {base_url}/graphs/{id}       <- graph document
    DELETE {base_url}/graphs/{id}
"""

from __future__ import annotations

import asyncio
import json
import logging
from urllib.parse import quote

import aiohttp

from computeflow.core.errors import GraphNotFoundError, PersistenceError
from computeflow.core.graph import Graph
from computeflow.core.persistence import GraphStore, dumps, loads

logger = logging.getLogger(__name__)


class HttpGraphStore(GraphStore):
    """GraphStore over an HTTP document API."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def get_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _url(self, graph_id: str) -> str:
        return f"{self.base_url}/graphs/{quote(graph_id, safe='')}"

    async def save(self, graph_id: str, graph: Graph) -> None:
        status, text = await self._send("PUT", self._url(graph_id), dumps(graph))
        self._check_error(status, text, graph_id)
        logger.info("Saved graph %s to %s", graph_id, self.base_url)

    async def load(self, graph_id: str) -> Graph:
        status, text = await self._send("GET", self._url(graph_id))
        self._check_error(status, text, graph_id)
        graph = loads(text)
        logger.info("Loaded graph %s from %s", graph_id, self.base_url)
        return graph

    async def exists(self, graph_id: str) -> bool:
        status, text = await self._send("GET", self._url(graph_id))
        if status == 404:
            return False
        self._check_error(status, text, graph_id)
        return True

    async def delete(self, graph_id: str) -> None:
        status, text = await self._send("DELETE", self._url(graph_id))
        self._check_error(status, text, graph_id)

    async def list_ids(self) -> list[str]:
        status, text = await self._send("GET", f"{self.base_url}/graphs")
        self._check_error(status, text, None)
        try:
            data = json.loads(text)
        except ValueError as e:
            raise PersistenceError(f"Invalid graph list response: {e}") from e
        ids = data.get("ids", []) if isinstance(data, dict) else data
        return sorted(str(i) for i in ids)

    async def _send(self, method: str, url: str, body: str | None = None) -> tuple[int, str]:
        headers = self.get_headers()
        if body is not None:
            headers["Content-Type"] = "application/json"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, data=body, headers=headers) as resp:
                    return resp.status, await resp.text()
        except aiohttp.ClientError as e:
            raise PersistenceError(f"Graph store request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise PersistenceError("Graph store request timed out") from e

    def _check_error(self, status: int, text: str, graph_id: str | None) -> None:
        if status == 404 and graph_id is not None:
            raise GraphNotFoundError(graph_id)
        elif status in (401, 403):
            raise PersistenceError(f"Graph store rejected credentials (HTTP {status})")
        elif status >= 400:
            raise PersistenceError(f"Graph store error (HTTP {status}): {text[:200]}")

"""
REST Store - Redis commands over HTTPS.

Talks to a Redis-compatible REST endpoint (Upstash style): each command is
POSTed as a JSON array, e.g. ``["SETEX", "execution:abc", 3600, "{...}"]``,
and the reply is ``{"result": ...}`` or ``{"error": "..."}``.
"""

import json
import logging
from typing import Any

import httpx

from flowgraph.storage.backend import DurableStore

logger = logging.getLogger(__name__)


class RestStoreError(Exception):
    """The REST endpoint answered with an error payload."""


class RestStore(DurableStore):
    """Durable store backed by a Redis REST API."""

    def __init__(
        self,
        url: str,
        token: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.url = url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"}

    async def _command(self, *args: Any) -> Any:
        response = await self._client.post(self.url, json=list(args), headers=self._headers)
        response.raise_for_status()
        payload = response.json()
        if "error" in payload:
            raise RestStoreError(f"{args[0]} failed: {payload['error']}")
        return payload.get("result")

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        raw = json.dumps(value)
        if ttl_seconds and ttl_seconds > 0:
            await self._command("SETEX", key, int(ttl_seconds), raw)
        else:
            await self._command("SET", key, raw)

    async def get(self, key: str) -> Any | None:
        raw = await self._command("GET", key)
        if raw is None:
            return None
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    async def delete(self, key: str) -> None:
        await self._command("DEL", key)

    async def keys(self, prefix: str = "") -> list[str]:
        return list(await self._command("KEYS", f"{prefix}*") or [])

    async def ping(self) -> bool:
        return await self._command("PING") == "PONG"

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

"""In-process store with TTL expiry, used for tests and single-process runs."""

import json
import math
import time
from collections.abc import Callable
from typing import Any

from flowgraph.storage.backend import DurableStore


class InMemoryStore(DurableStore):
    """
    Dict-backed store.

    Values are kept as JSON text so callers can never mutate stored state by
    reference. Expired entries are dropped lazily on access.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and self._clock() > expires_at:
            del self._data[key]
            return None
        return raw

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._data[key] = (json.dumps(value), expires_at)

    async def get(self, key: str) -> Any | None:
        raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]

    async def ttl(self, key: str) -> int:
        """Seconds left: -2 if missing, -1 if no expiry."""
        if self._live(key) is None:
            return -2
        expires_at = self._data[key][1]
        if expires_at is None:
            return -1
        return max(0, math.ceil(expires_at - self._clock()))

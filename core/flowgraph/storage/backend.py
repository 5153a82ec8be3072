"""
Durable store interface.

The engine persists workflows, execution states and approval requests as
JSON-compatible values under string keys with a time-to-live. Any key/value
backend with expiry can implement this.
"""

from abc import ABC, abstractmethod
from typing import Any


class DurableStore(ABC):
    """Async key/value store with per-key TTL."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a JSON-compatible value. ``ttl_seconds`` of None or <= 0 means no expiry."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value, or None if missing or expired."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """Live keys starting with ``prefix``."""

    async def list_by_prefix(self, prefix: str) -> list[Any]:
        """Values of all live keys starting with ``prefix``."""
        values = []
        for key in await self.keys(prefix):
            value = await self.get(key)
            if value is not None:
                values.append(value)
        return values

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def close(self) -> None:
        """Release any held resources."""
        return None

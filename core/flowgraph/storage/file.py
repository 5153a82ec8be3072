"""
File Store - One JSON file per key with atomic writes.

Directory structure:
    {base_path}/
        workflow%3Arefunds.json
        execution%3Aexec_1718000000000_k3j2h1g0f.json
        approval%3Aexec_1718000000000_k3j2h1g0f.json

Each file holds an envelope ``{"key", "expires_at", "value"}``. Writes go
through a temp file + rename, so a crash never leaves a torn record.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from flowgraph.storage.backend import DurableStore
from flowgraph.utils.io import atomic_write

logger = logging.getLogger(__name__)


class FileStore(DurableStore):
    """Durable store on the local filesystem."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)

    def _path_for(self, key: str) -> Path:
        return self.base_path / f"{quote(key, safe='')}.json"

    def _read_envelope(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to read {path.name}: {e}")
            return None
        expires_at = envelope.get("expires_at")
        if expires_at is not None and time.time() > expires_at:
            path.unlink(missing_ok=True)
            return None
        return envelope

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        envelope = {
            "key": key,
            "expires_at": time.time() + ttl_seconds if ttl_seconds and ttl_seconds > 0 else None,
            "value": value,
        }

        def _write():
            with atomic_write(self._path_for(key)) as f:
                json.dump(envelope, f)

        await asyncio.to_thread(_write)

    async def get(self, key: str) -> Any | None:
        envelope = await asyncio.to_thread(self._read_envelope, self._path_for(key))
        return envelope["value"] if envelope else None

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._path_for(key).unlink, True)

    async def keys(self, prefix: str = "") -> list[str]:
        def _scan() -> list[str]:
            if not self.base_path.exists():
                return []
            found = []
            for path in sorted(self.base_path.glob("*.json")):
                key = unquote(path.stem)
                if key.startswith(prefix) and self._read_envelope(path) is not None:
                    found.append(key)
            return found

        return await asyncio.to_thread(_scan)

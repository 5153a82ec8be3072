"""Durable storage backends and the typed execution repository."""

import logging

from flowgraph.config import EngineConfig
from flowgraph.storage.backend import DurableStore
from flowgraph.storage.file import FileStore
from flowgraph.storage.memory import InMemoryStore
from flowgraph.storage.repository import ExecutionRepository, StoreTTLs
from flowgraph.storage.rest import RestStore, RestStoreError

logger = logging.getLogger(__name__)


def _looks_valid_rest(url: str | None, token: str | None) -> bool:
    return bool(
        url
        and url.startswith("https://")
        and "your_" not in url
        and token
        and "your_" not in token
    )


def create_store(config: EngineConfig | None = None) -> DurableStore:
    """
    Pick a store backend from configuration.

    ``auto`` uses the REST store when a plausible URL and token are
    configured and falls back to an in-memory store otherwise.
    """
    config = config or EngineConfig.from_config()
    backend = config.store_backend

    if backend == "file":
        return FileStore(config.store_path)
    if backend == "rest" or (
        backend == "auto" and _looks_valid_rest(config.rest_url, config.rest_token)
    ):
        if not _looks_valid_rest(config.rest_url, config.rest_token):
            raise ValueError("REST store requires an https URL and a token")
        return RestStore(config.rest_url, config.rest_token)
    if backend not in ("auto", "memory"):
        raise ValueError(f"Unknown store backend: {backend}")

    logger.info("Using in-memory store; state will not survive a restart")
    return InMemoryStore()


__all__ = [
    "DurableStore",
    "ExecutionRepository",
    "FileStore",
    "InMemoryStore",
    "RestStore",
    "RestStoreError",
    "StoreTTLs",
    "create_store",
]

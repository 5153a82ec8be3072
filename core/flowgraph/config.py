"""Shared flowgraph configuration utilities.

Centralises reading of ~/.flowgraph/configuration.json so that the engine,
the LLM client and the store factory share one implementation.

Example file:
    {
        "llm": {"provider": "groq", "model": "llama-3.1-70b-versatile",
                "api_key_env_var": "GROQ_API_KEY"},
        "engine": {"max_iterations": 500, "spawn_concurrency": 3},
        "store": {"backend": "file", "path": "~/.flowgraph/store"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "groq/llama-3.1-70b-versatile"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
DEFAULT_SYSTEM_PROMPT = "You are an intelligent agent in a workflow orchestration system."

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWGRAPH_CONFIG_FILE = Path.home() / ".flowgraph" / "configuration.json"


def get_flowgraph_config() -> dict[str, Any]:
    """Load flowgraph configuration from ~/.flowgraph/configuration.json."""
    path = Path(os.environ.get("FLOWGRAPH_CONFIG", FLOWGRAPH_CONFIG_FILE))
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config {path}: {e}")
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the configured LLM model string (e.g. 'groq/llama-3.1-70b-versatile')."""
    llm = get_flowgraph_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    return get_flowgraph_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_flowgraph_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_api_base() -> str | None:
    return get_flowgraph_config().get("llm", {}).get("api_base")


# ---------------------------------------------------------------------------
# RuntimeConfig - LLM defaults
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """LLM runtime configuration loaded from ~/.flowgraph/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = field(default_factory=get_max_tokens)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = field(default_factory=get_api_base)


# ---------------------------------------------------------------------------
# EngineConfig - execution limits and store selection
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Execution engine settings."""

    max_iterations: int = 1000  # per-node visit limit when the node sets none
    timeout: float = 300.0  # per-attempt node timeout, seconds
    spawn_timeout: float = 120.0  # overall wait for fan-out children
    spawn_concurrency: int = 5
    enable_parallel_branches: bool = False
    max_parallel_branches: int = 5
    error_webhook: str | None = None

    # Store
    store_backend: str = "auto"  # "auto", "memory", "file" or "rest"
    store_path: str = str(Path.home() / ".flowgraph" / "store")
    rest_url: str | None = None
    rest_token: str | None = None
    workflow_ttl: int = 86400
    execution_ttl: int = 3600
    approval_ttl: int = 3600

    @classmethod
    def from_config(cls, config: dict[str, Any] | None = None) -> "EngineConfig":
        """Build from the ``engine`` and ``store`` sections plus environment."""
        config = get_flowgraph_config() if config is None else config
        engine = dict(config.get("engine", {}))
        store = config.get("store", {})

        known = set(cls.__dataclass_fields__)
        kwargs = {k: v for k, v in engine.items() if k in known}
        unknown = set(engine) - known
        if unknown:
            logger.warning(f"Unknown engine config keys ignored: {sorted(unknown)}")

        if "backend" in store:
            kwargs["store_backend"] = store["backend"]
        if "path" in store:
            kwargs["store_path"] = str(Path(store["path"]).expanduser())
        kwargs.setdefault(
            "rest_url", store.get("rest_url") or os.environ.get("UPSTASH_REDIS_REST_URL")
        )
        kwargs.setdefault(
            "rest_token", store.get("rest_token") or os.environ.get("UPSTASH_REDIS_REST_TOKEN")
        )
        return cls(**kwargs)

"""Tests for ~/.flowgraph/configuration.json handling."""

import json

import pytest

from flowgraph.config import (
    DEFAULT_MODEL,
    EngineConfig,
    RuntimeConfig,
    get_api_key,
    get_flowgraph_config,
    get_preferred_model,
)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "configuration.json"
    monkeypatch.setenv("FLOWGRAPH_CONFIG", str(path))
    monkeypatch.delenv("UPSTASH_REDIS_REST_URL", raising=False)
    monkeypatch.delenv("UPSTASH_REDIS_REST_TOKEN", raising=False)

    def write(data):
        path.write_text(json.dumps(data), encoding="utf-8")

    return write


def test_missing_file_gives_defaults(config_file):
    assert get_flowgraph_config() == {}
    assert get_preferred_model() == DEFAULT_MODEL
    assert get_api_key() is None


def test_unreadable_file_ignored(tmp_path, monkeypatch, caplog):
    path = tmp_path / "configuration.json"
    path.write_text("{oops", encoding="utf-8")
    monkeypatch.setenv("FLOWGRAPH_CONFIG", str(path))

    assert get_flowgraph_config() == {}
    assert "Ignoring unreadable config" in caplog.text


def test_llm_settings(config_file, monkeypatch):
    config_file(
        {
            "llm": {
                "provider": "groq",
                "model": "llama-3.1-70b-versatile",
                "api_key_env_var": "MY_GROQ_KEY",
                "max_tokens": 256,
            }
        }
    )
    monkeypatch.setenv("MY_GROQ_KEY", "sk-test")

    runtime = RuntimeConfig()
    assert runtime.model == "groq/llama-3.1-70b-versatile"
    assert runtime.max_tokens == 256
    assert runtime.api_key == "sk-test"


def test_engine_and_store_sections(config_file, caplog):
    config_file(
        {
            "engine": {"max_iterations": 50, "spawn_concurrency": 2, "warp_speed": True},
            "store": {"backend": "file", "path": "~/flowgraph-data"},
        }
    )

    config = EngineConfig.from_config()

    assert config.max_iterations == 50
    assert config.spawn_concurrency == 2
    assert config.store_backend == "file"
    assert not config.store_path.startswith("~")
    assert "warp_speed" in caplog.text


def test_rest_credentials_from_environment(config_file, monkeypatch):
    config_file({})
    monkeypatch.setenv("UPSTASH_REDIS_REST_URL", "https://example.upstash.io")
    monkeypatch.setenv("UPSTASH_REDIS_REST_TOKEN", "tok")

    config = EngineConfig.from_config()

    assert config.rest_url == "https://example.upstash.io"
    assert config.rest_token == "tok"


def test_explicit_dict_skips_file(config_file):
    config_file({"engine": {"max_iterations": 7}})
    assert EngineConfig.from_config({}).max_iterations == 1000

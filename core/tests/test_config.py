"""Tests for configuration loading (router configuration and gaff.json)."""

import json

import pytest

from intent_router.agents.http_client import HttpAgentInvoker
from intent_router.agents.registry import AgentRegistry
from intent_router.config import (
    DEFAULT_AGENT_TIMEOUT_MS,
    AgentDefinition,
    get_execution_config,
    get_router_config,
    load_agent_definitions,
)
from intent_router.graph.engine import ExecutionEngine


@pytest.fixture
def router_config(tmp_path, monkeypatch):
    """Point INTENT_ROUTER_CONFIG at a temp file; returns a writer."""
    path = tmp_path / "configuration.json"
    monkeypatch.setenv("INTENT_ROUTER_CONFIG", str(path))

    def write(data) -> None:
        path.write_text(data if isinstance(data, str) else json.dumps(data), encoding="utf-8")

    return write


@pytest.fixture
def gaff_config(tmp_path, monkeypatch):
    path = tmp_path / "gaff.json"
    monkeypatch.setenv("GAFF_CONFIG_PATH", str(path))

    def write(data) -> None:
        path.write_text(json.dumps(data), encoding="utf-8")

    return write


class TestRouterConfig:
    def test_missing_file_is_empty(self, router_config):
        assert get_router_config() == {}

    def test_invalid_json_is_empty(self, router_config):
        router_config("{not json")
        assert get_router_config() == {}

    def test_non_object_is_empty(self, router_config):
        router_config([1, 2])
        assert get_router_config() == {}

    def test_execution_section_with_overrides(self, router_config):
        router_config({"execution": {"max_parallel": 3, "enable_hitl": False}})

        config = get_execution_config(default_timeout_ms=1500)

        assert config.max_parallel == 3
        assert config.enable_hitl is False
        assert config.default_timeout_ms == 1500

    def test_malformed_execution_section_uses_defaults(self, router_config):
        router_config({"execution": "fast"})
        assert get_execution_config().max_parallel == 5

    def test_engine_from_config(self, router_config):
        router_config({"execution": {"max_parallel": 2, "store_state": False}})
        registry = AgentRegistry()

        engine = ExecutionEngine.from_config(registry)

        assert engine.invoker is registry
        assert engine.default_config.max_parallel == 2
        assert engine.default_config.store_state is False

    def test_engine_from_config_builds_http_invoker(self, router_config, gaff_config):
        gaff_config({"agents": {"search": {"endpoint": "http://search.local"}}})

        engine = ExecutionEngine.from_config()

        assert isinstance(engine.invoker, HttpAgentInvoker)
        assert "search" in engine.invoker.agents


class TestAgentDefinitions:
    def test_load_from_env_path(self, gaff_config):
        gaff_config(
            {
                "agents": {
                    "search": {
                        "type": "api",
                        "endpoint": "http://search.local",
                        "timeout_ms": 2000,
                        "api_key_env_var": "SEARCH_KEY",
                        "headers": {"X-Team": "core"},
                    },
                    "writer": {"endpoint": "http://writer.local"},
                    "broken": "not-a-dict",
                }
            }
        )

        agents = load_agent_definitions()

        assert sorted(agents) == ["search", "writer"]
        assert agents["search"].timeout_ms == 2000
        assert agents["search"].headers == {"X-Team": "core"}
        assert agents["writer"].type == "api"
        assert agents["writer"].timeout_ms == DEFAULT_AGENT_TIMEOUT_MS

    def test_missing_file(self, tmp_path):
        assert load_agent_definitions(tmp_path / "absent.json") == {}

    def test_api_key_from_environment(self, monkeypatch):
        definition = AgentDefinition(name="search", api_key_env_var="SEARCH_KEY")

        monkeypatch.delenv("SEARCH_KEY", raising=False)
        assert definition.api_key is None

        monkeypatch.setenv("SEARCH_KEY", "sk-123")
        assert definition.api_key == "sk-123"
        assert AgentDefinition(name="anon").api_key is None

from __future__ import annotations

from datetime import timedelta

import pytest

from branch_orchestrator.config import AgentConfig
from branch_orchestrator.tools import PollingPolicy

ENV_VARS = (
    "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_DEPLOYMENT",
    "AZURE_OPENAI_API_VERSION",
    "MCP_BASE_URL",
    "MCP_POLL_INITIAL_SECONDS",
    "MCP_POLL_MAX_SECONDS",
    "MCP_POLL_TIMEOUT_SECONDS",
    "MCP_POLL_BACKOFF_FACTOR",
    "MCP_REQUIRE_NEW_SNAPSHOT",
    "AGENT_MAX_TURNS",
    "AGENT_MAX_TOOL_CALLS",
    "EXECUTE_RESPONSE_MAX_CHARS",
    "BRANCH_OUTPUT_MAX_CHARS",
    "PROJECT_NAME",
    "WORKSPACE_DIR",
    "PLAYBOOK_PATH",
)


@pytest.fixture()
def env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "key")
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://example.openai.azure.com/")
    monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT", "gpt")
    return monkeypatch


def test_defaults(env):
    cfg = AgentConfig.from_env()
    assert cfg.azure_endpoint == "https://example.openai.azure.com"
    assert cfg.mcp_base_url == "http://localhost:8000/mcp/sse"
    assert cfg.poll_initial_interval == timedelta(seconds=5)
    assert cfg.poll_max_interval == timedelta(seconds=600)
    assert cfg.poll_timeout == timedelta(hours=3)
    assert cfg.poll_backoff_factor == 1.5
    assert cfg.require_new_snapshot is False
    assert (cfg.max_turns, cfg.max_tool_calls) == (60, 40)
    assert (cfg.execute_response_max_chars, cfg.branch_output_max_chars) == (8_000, 20_000)
    assert cfg.project_name is None


def test_overrides(env):
    env.setenv("MCP_POLL_INITIAL_SECONDS", "2")
    env.setenv("MCP_POLL_MAX_SECONDS", "30")
    env.setenv("MCP_POLL_TIMEOUT_SECONDS", "120")
    env.setenv("MCP_POLL_BACKOFF_FACTOR", "2")
    env.setenv("MCP_REQUIRE_NEW_SNAPSHOT", "true")
    env.setenv("AGENT_MAX_TURNS", "5")
    env.setenv("PROJECT_NAME", "demo")

    cfg = AgentConfig.from_env()

    assert cfg.require_new_snapshot is True
    assert cfg.max_turns == 5
    assert cfg.project_name == "demo"
    assert PollingPolicy.from_config(cfg) == PollingPolicy(initial=2, maximum=30, timeout=120, backoff=2.0)


def test_missing_api_key(env):
    env.delenv("AZURE_OPENAI_API_KEY")
    with pytest.raises(EnvironmentError):
        AgentConfig.from_env()


@pytest.mark.parametrize(
    "name, value",
    [
        ("AZURE_OPENAI_ENDPOINT", "http://insecure"),
        ("MCP_BASE_URL", "ftp://mcp"),
        ("MCP_POLL_INITIAL_SECONDS", "900"),
        ("MCP_POLL_TIMEOUT_SECONDS", "60"),
        ("MCP_POLL_BACKOFF_FACTOR", "1.0"),
        ("MCP_POLL_BACKOFF_FACTOR", "fast"),
        ("AGENT_MAX_TURNS", "0"),
        ("AGENT_MAX_TOOL_CALLS", "many"),
    ],
)
def test_invalid_values(env, name, value):
    env.setenv(name, value)
    with pytest.raises(ValueError):
        AgentConfig.from_env()

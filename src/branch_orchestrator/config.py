"""Configuration loading for the branch orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv


def _get_env_timedelta(name: str, default_seconds: int) -> timedelta:
    value = os.getenv(name)
    if not value:
        return timedelta(seconds=default_seconds)
    try:
        seconds = int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}: {value}") from exc
    return timedelta(seconds=seconds)


def _get_env_int(name: str, default: int, *, minimum: int = 1) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}: {value}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return parsed


def _get_env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AgentConfig:
    """Holds runtime configuration for the orchestrator and review runner."""

    azure_api_key: str
    azure_endpoint: str
    azure_deployment: str
    azure_api_version: str = "2024-12-01-preview"
    mcp_base_url: str = "http://localhost:8000/mcp/sse"
    # Remote branches may take 1-2 hours; treat that as normal.
    poll_initial_interval: timedelta = field(default_factory=lambda: timedelta(seconds=5))
    poll_max_interval: timedelta = field(default_factory=lambda: timedelta(seconds=600))
    poll_timeout: timedelta = field(default_factory=lambda: timedelta(hours=3))
    poll_backoff_factor: float = 1.5
    require_new_snapshot: bool = False
    max_turns: int = 60
    max_tool_calls: int = 40
    execute_response_max_chars: int = 8_000
    branch_output_max_chars: int = 20_000
    project_name: Optional[str] = None
    workspace_dir: Optional[str] = "/home/pan/workspace"
    playbook_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Create configuration from environment variables with validation."""
        # Load .env if available (non-destructive)
        load_dotenv(override=False)

        api_key = os.getenv("AZURE_OPENAI_API_KEY")
        if not api_key:
            raise EnvironmentError("AZURE_OPENAI_API_KEY must be set")

        endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
        if not endpoint:
            raise EnvironmentError("AZURE_OPENAI_ENDPOINT must be set")
        if not endpoint.startswith("https://"):
            raise ValueError("AZURE_OPENAI_ENDPOINT must start with 'https://'")

        deployment = os.getenv("AZURE_OPENAI_DEPLOYMENT")
        if not deployment:
            raise EnvironmentError("AZURE_OPENAI_DEPLOYMENT must be set")

        api_version = os.getenv("AZURE_OPENAI_API_VERSION", "2024-12-01-preview")
        if not api_version:
            raise ValueError("AZURE_OPENAI_API_VERSION must be non-empty")

        base_url = os.getenv("MCP_BASE_URL", "http://localhost:8000/mcp/sse")
        if not base_url.startswith(("http://", "https://")):
            raise ValueError("MCP_BASE_URL must be a valid HTTP/HTTPS URL")

        poll_initial = _get_env_timedelta("MCP_POLL_INITIAL_SECONDS", 5)
        poll_max = _get_env_timedelta("MCP_POLL_MAX_SECONDS", 600)
        poll_timeout = _get_env_timedelta("MCP_POLL_TIMEOUT_SECONDS", 3 * 60 * 60)

        if poll_initial >= poll_max:
            raise ValueError("MCP_POLL_INITIAL_SECONDS must be less than MCP_POLL_MAX_SECONDS")
        if poll_timeout <= poll_max:
            raise ValueError("MCP_POLL_TIMEOUT_SECONDS must be greater than MCP_POLL_MAX_SECONDS")

        try:
            backoff = float(os.getenv("MCP_POLL_BACKOFF_FACTOR", "1.5"))
            if backoff <= 1.0:
                raise ValueError("Backoff factor must be greater than 1.0")
        except ValueError as exc:
            raise ValueError("MCP_POLL_BACKOFF_FACTOR must be a float greater than 1.0") from exc

        project = os.getenv("PROJECT_NAME")
        workspace_dir = os.getenv("WORKSPACE_DIR", "/home/pan/workspace")

        return cls(
            azure_api_key=api_key,
            azure_endpoint=endpoint.rstrip("/"),
            azure_deployment=deployment,
            azure_api_version=api_version,
            mcp_base_url=base_url,
            poll_initial_interval=poll_initial,
            poll_max_interval=poll_max,
            poll_timeout=poll_timeout,
            poll_backoff_factor=backoff,
            require_new_snapshot=_get_env_bool("MCP_REQUIRE_NEW_SNAPSHOT"),
            max_turns=_get_env_int("AGENT_MAX_TURNS", 60),
            max_tool_calls=_get_env_int("AGENT_MAX_TOOL_CALLS", 40),
            execute_response_max_chars=_get_env_int("EXECUTE_RESPONSE_MAX_CHARS", 8_000),
            branch_output_max_chars=_get_env_int("BRANCH_OUTPUT_MAX_CHARS", 20_000),
            project_name=project,
            workspace_dir=workspace_dir or None,
            playbook_path=os.getenv("PLAYBOOK_PATH") or None,
        )

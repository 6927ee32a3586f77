"""Shared test doubles for the control plane, the LLM and the clock."""

from __future__ import annotations

import json
import threading
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest

from branch_orchestrator.mcp import MCPNotFoundError
from branch_orchestrator.models import FunctionCall, ToolCall
from branch_orchestrator.tools import PollingPolicy, ToolHandler


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeControlPlane:
    """In-memory control plane.

    Every launched branch succeeds immediately unless `statuses` scripts its
    status sequence; the last scripted status repeats. Output text comes from
    `responder(agent, prompt, parent_branch_id)`.
    """

    def __init__(
        self,
        *,
        responder: Optional[Callable[[str, str, str], str]] = None,
        statuses: Optional[Dict[str, List[str]]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._responder = responder or (lambda agent, prompt, parent: "done")
        self.statuses: Dict[str, List[str]] = {k: list(v) for k, v in (statuses or {}).items()}
        self.launches: List[Dict[str, Any]] = []
        self.outputs: Dict[str, str] = {}
        self.artifacts: Dict[str, str] = {}
        self.artifact_results: List[Any] = []
        self.output_errors: Dict[bool, Exception] = {}
        self.launch_error: Optional[Exception] = None
        self.launch_response: Optional[Dict[str, Any]] = None
        self.status_calls: List[str] = []

    def parallel_explore(self, project_name, parent_branch_id, prompts, agent, num_branches=1):
        if self.launch_error is not None:
            raise self.launch_error
        if self.launch_response is not None:
            return self.launch_response
        with self._lock:
            branch_id = f"branch-{len(self.launches) + 1}"
            self.launches.append(
                {
                    "branch_id": branch_id,
                    "agent": agent,
                    "project_name": project_name,
                    "parent_branch_id": parent_branch_id,
                    "prompt": prompts[0],
                }
            )
        self.outputs[branch_id] = self._responder(agent, prompts[0], parent_branch_id)
        return {"parallel_explore": {"branches": [{"branch_id": branch_id}]}}

    def get_branch(self, branch_id):
        with self._lock:
            self.status_calls.append(branch_id)
            script = self.statuses.get(branch_id)
            if script:
                status = script.pop(0) if len(script) > 1 else script[0]
            else:
                status = "succeed"
        return {"branch_id": branch_id, "status": status}

    def branch_read_file(self, branch_id, file_path):
        with self._lock:
            if self.artifact_results:
                outcome = self.artifact_results.pop(0)
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        if file_path in self.artifacts:
            return {"content": self.artifacts[file_path]}
        raise MCPNotFoundError(f"file {file_path} not found on {branch_id}")

    def branch_output(self, branch_id, full_output=False):
        error = self.output_errors.get(full_output)
        if error is not None:
            raise error
        return {"output": self.outputs.get(branch_id, "")}


class FakeBrain:
    """Returns scripted assistant messages; a callable script sees the request."""

    def __init__(self, script: Any = None) -> None:
        self._script = script if callable(script) else list(script or [])
        self.requests: List[List[Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def complete(self, messages, tools=None):
        with self._lock:
            self.requests.append([dict(m) for m in messages])
            if callable(self._script):
                message = self._script(messages)
            else:
                message = self._script.pop(0)
        if isinstance(message, Exception):
            raise message
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def text_message(content: str) -> SimpleNamespace:
    return SimpleNamespace(content=content, tool_calls=None)


def tool_call(name: str, call_id: str = "call_1", **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, function=FunctionCall(name=name, arguments=json.dumps(arguments)))


def tool_message(*calls: ToolCall, content: str = "") -> SimpleNamespace:
    return SimpleNamespace(content=content, tool_calls=list(calls))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture()
def make_handler(clock):
    def _make(client, **kwargs: Any) -> ToolHandler:
        kwargs.setdefault("workspace_dir", "/workspace")
        kwargs.setdefault("policy", PollingPolicy(initial=5, maximum=60, timeout=600, backoff=2.0))
        return ToolHandler(client, "demo", monotonic=clock.monotonic, sleep=clock.sleep, **kwargs)

    return _make

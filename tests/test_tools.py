from __future__ import annotations

import pytest
from hypothesis import given, settings, strategies as st

from conftest import FakeClock, FakeControlPlane, tool_call
from branch_orchestrator.mcp import MCPError, MCPNotFoundError
from branch_orchestrator.models import Instruction, ToolFailure, ToolSuccess
from branch_orchestrator.tools import (
    PollingPolicy,
    ToolExecutionError,
    ToolHandler,
    extract_branch_id,
    get_tool_definitions,
    truncate_text,
)


def test_truncate_keeps_tail():
    text = "".join(str(i % 10) for i in range(30_000))
    excerpt, truncated = truncate_text(text, 20_000)
    assert truncated is True
    assert excerpt == text[-20_000:]


def test_truncate_short_text_unchanged():
    excerpt, truncated = truncate_text("all good", 20_000)
    assert excerpt == "all good"
    assert truncated is False


def test_truncate_head_mode():
    excerpt, truncated = truncate_text("abcdef", 3, tail=False)
    assert (excerpt, truncated) == ("abc", True)


@given(st.text(min_size=1).map(str.strip).filter(bool), st.integers(min_value=1, max_value=500))
def test_truncate_returns_suffix_within_budget(text, budget):
    excerpt, truncated = truncate_text(text, budget)
    assert len(excerpt) <= budget
    assert text.endswith(excerpt)
    assert truncated == (len(text) > budget)


@settings(max_examples=50)
@given(
    st.floats(min_value=0.1, max_value=100),
    st.floats(min_value=0, max_value=1000),
    st.floats(min_value=1.01, max_value=5),
)
def test_poll_intervals_non_decreasing_and_capped(initial, extra, backoff):
    policy = PollingPolicy(initial=initial, maximum=initial + extra, timeout=10_000, backoff=backoff)
    intervals = policy.intervals()
    values = [next(intervals) for _ in range(40)]
    assert values[0] == initial
    assert all(b >= a for a, b in zip(values, values[1:]))
    assert all(v <= policy.maximum for v in values)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"initial": 0},
        {"initial": 10, "maximum": 5},
        {"timeout": 0},
        {"backoff": 1.0},
    ],
)
def test_polling_policy_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        PollingPolicy(**kwargs)


def test_extract_branch_id_variants():
    assert extract_branch_id({"parallel_explore": {"branches": [{"branch_id": "a"}]}}) == "a"
    assert extract_branch_id({"branches": [{}, {"id": "b"}]}) == "b"
    assert extract_branch_id({"branch": {"id": "c"}}) == "c"
    assert extract_branch_id({"branch_id": "d"}) == "d"
    assert extract_branch_id({"branches": []}) is None
    assert extract_branch_id("nope") is None


def test_run_agent_polls_until_success_and_records_latest(make_handler, clock):
    client = FakeControlPlane(
        responder=lambda agent, prompt, parent: "work done\nPR: https://example/pr/1",
        statuses={"branch-1": ["running", "running", "succeed"]},
    )
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="claude_code", prompt="do it", parent_branch_id="root"))

    assert isinstance(result, ToolSuccess)
    assert result.data["branch_id"] == "branch-1"
    assert result.data["status"] == "succeed"
    assert result.data["response"].endswith("https://example/pr/1")
    assert result.data["response_truncated"] is False
    assert result.data["full_output_hint"]["arguments"]["tail"] is True
    assert client.status_calls == ["branch-1"] * 3
    assert clock.sleeps == [5, 10]
    assert handler.branch_range == {"start_branch_id": "branch-1", "latest_branch_id": "branch-1"}
    assert client.launches[0]["project_name"] == "demo"


def test_lineage_tracks_first_and_latest_success(make_handler):
    client = FakeControlPlane()
    handler = make_handler(client)
    handler.run_agent("codex", "demo", "root", "one")
    handler.run_agent("codex", "demo", "branch-1", "two")
    assert handler.branch_range == {"start_branch_id": "branch-1", "latest_branch_id": "branch-2"}


def test_timeout_is_fatal_and_within_one_interval(make_handler, clock):
    client = FakeControlPlane(statuses={"branch-1": ["running"]})
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="codex", prompt="p", parent_branch_id="root"))

    assert isinstance(result, ToolFailure)
    assert result.finishes_workflow
    assert result.details["branch_id"] == "branch-1"
    assert result.details["last_status"] == "running"
    assert 600 <= clock.now < 600 + 60
    assert handler.branch_range["latest_branch_id"] is None


@settings(max_examples=30)
@given(
    st.integers(min_value=1, max_value=30),
    st.integers(min_value=0, max_value=120),
    st.integers(min_value=31, max_value=3600),
)
def test_total_wait_never_overshoots_deadline_by_more_than_one_interval(initial, extra, timeout):
    clock = FakeClock()
    policy = PollingPolicy(initial=initial, maximum=initial + extra, timeout=timeout, backoff=1.5)
    client = FakeControlPlane(statuses={"branch-1": ["running"]})

    handler = ToolHandler(client, "demo", policy=policy, monotonic=clock.monotonic, sleep=clock.sleep)
    with pytest.raises(ToolExecutionError):
        handler.wait_for_branch("branch-1")
    assert timeout <= clock.now < timeout + policy.maximum


def test_failed_branch_carries_excerpt_and_instruction(make_handler):
    client = FakeControlPlane(
        responder=lambda agent, prompt, parent: "x" * 1000,
        statuses={"branch-1": ["running", "failed"]},
    )
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="codex", prompt="p", parent_branch_id="root"))

    assert isinstance(result, ToolFailure)
    assert result.instruction is Instruction.FINISHED_WITH_ERROR
    assert result.details == {"status": "failed", "branch_id": "branch-1"}
    assert "x" * 400 + "..." in result.message
    assert "x" * 401 not in result.message
    assert handler.branch_range["latest_branch_id"] is None


def test_launch_failure_is_fatal_and_not_retried(make_handler):
    client = FakeControlPlane()
    client.launch_error = MCPError("connection refused")
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="codex", prompt="p", parent_branch_id="root"))

    assert isinstance(result, ToolFailure)
    assert result.finishes_workflow
    assert "connection refused" in result.message
    assert client.status_calls == []


def test_missing_branch_id_is_fatal(make_handler):
    client = FakeControlPlane()
    client.launch_response = {"branches": []}
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="codex", prompt="p", parent_branch_id="root"))

    assert isinstance(result, ToolFailure)
    assert result.finishes_workflow
    assert "Missing branch id" in result.message


def test_full_output_failure_falls_back_to_default_fetch(make_handler):
    client = FakeControlPlane(responder=lambda agent, prompt, parent: "default output")
    client.output_errors[True] = MCPError("too large")
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="codex", prompt="p", parent_branch_id="root"))

    assert isinstance(result, ToolSuccess)
    assert result.data["response"] == "default output"


def test_branch_output_tool_falls_back_to_default_fetch(make_handler, control_plane):
    control_plane.outputs["b-1"] = "default output text"
    control_plane.output_errors[True] = MCPError("too large")
    handler = make_handler(control_plane)

    result = handler.handle(tool_call("branch_output", branch_id="b-1", full_output=True))

    assert isinstance(result, ToolSuccess)
    assert result.data["output"] == "default output text"
    assert result.data["full_output_fetched"] is False


def test_branch_output_tool_fails_when_no_fetch_succeeds(make_handler, control_plane):
    control_plane.output_errors[True] = MCPError("too large")
    control_plane.output_errors[False] = MCPError("unavailable")
    handler = make_handler(control_plane)

    result = handler.handle(tool_call("branch_output", branch_id="b-1", full_output=True))

    assert isinstance(result, ToolFailure)
    assert not result.finishes_workflow
    assert result.details == {"branch_id": "b-1"}


def test_no_output_anywhere_is_a_recoverable_error(make_handler):
    client = FakeControlPlane(responder=lambda agent, prompt, parent: "")
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="codex", prompt="p", parent_branch_id="root"))

    assert isinstance(result, ToolFailure)
    assert not result.finishes_workflow
    # The branch did succeed, so lineage still advances.
    assert handler.branch_range["latest_branch_id"] == "branch-1"


def test_long_output_is_truncated_to_tail_with_hint(make_handler):
    client = FakeControlPlane(responder=lambda agent, prompt, parent: "a" * 100 + "# VERDICT: CONFIRMED")
    handler = make_handler(client, execute_response_max_chars=30, branch_output_max_chars=500)

    result = handler.handle(tool_call("execute_agent", agent="codex", prompt="p", parent_branch_id="root"))

    assert result.data["response_truncated"] is True
    assert result.data["response"].endswith("# VERDICT: CONFIRMED")
    assert len(result.data["response"]) == 30
    assert result.data["full_output_hint"] == {
        "tool": "branch_output",
        "arguments": {"branch_id": "branch-1", "full_output": True, "tail": True, "max_chars": 500},
    }


def test_review_agent_retries_until_log_appears(make_handler):
    client = FakeControlPlane(responder=lambda agent, prompt, parent: "review finished")
    client.artifact_results = [
        MCPNotFoundError("404"),
        MCPNotFoundError("404"),
        {"content": "P0: null dereference in parser.py:42"},
    ]
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="review_code", prompt="review", parent_branch_id="root"))

    assert isinstance(result, ToolSuccess)
    assert result.data["review_report"] == "P0: null dereference in parser.py:42"
    assert result.data["branch_id"] == "branch-3"
    assert "attempts" not in result.data
    assert handler.last_review_attempts == 3
    assert [launch["prompt"] for launch in client.launches] == ["review"] * 3


def test_review_agent_other_read_error_aborts(make_handler):
    client = FakeControlPlane()
    client.artifact_results = [MCPError("permission denied")]
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="review_code", prompt="review", parent_branch_id="root"))

    assert isinstance(result, ToolFailure)
    assert result.finishes_workflow
    assert result.details["attempts"] == 1
    assert result.details["last_branch_id"] == "branch-1"
    assert len(client.launches) == 1


def test_review_agent_exhaustion_reports_attempts(make_handler):
    client = FakeControlPlane()
    handler = make_handler(client)

    result = handler.handle(tool_call("execute_agent", agent="review_code", prompt="review", parent_branch_id="root"))

    assert isinstance(result, ToolFailure)
    assert result.finishes_workflow
    assert result.details == {
        "attempts": 3,
        "artifact_path": "/workspace/code_review.log",
        "last_branch_id": "branch-3",
    }


def test_review_agent_requires_workspace(make_handler):
    handler = make_handler(FakeControlPlane(), workspace_dir="")
    result = handler.handle(tool_call("execute_agent", agent="review_code", prompt="r", parent_branch_id="root"))
    assert isinstance(result, ToolFailure)
    assert not result.finishes_workflow


def test_branch_output_tail_fetches_full_log_and_doubles_hint(make_handler, control_plane):
    control_plane.outputs["b-7"] = "0123456789" * 5
    handler = make_handler(control_plane)

    result = handler.handle(tool_call("branch_output", branch_id="b-7", tail=True, max_chars=10))

    assert isinstance(result, ToolSuccess)
    assert result.data["output"] == "0123456789"
    assert result.data["output_truncated"] is True
    assert result.data["full_output_fetched"] is True
    assert result.data["output_excerpt_mode"] == "tail"
    assert result.data["full_output_hint"]["arguments"]["max_chars"] == 20


def test_branch_output_validates_arguments(make_handler, control_plane):
    handler = make_handler(control_plane)
    assert isinstance(handler.handle(tool_call("branch_output")), ToolFailure)
    assert isinstance(handler.handle(tool_call("branch_output", branch_id="b", tail="yes")), ToolFailure)
    assert isinstance(handler.handle(tool_call("branch_output", branch_id="b", max_chars="many")), ToolFailure)


def test_read_artifact_not_found_is_recoverable(make_handler, control_plane):
    handler = make_handler(control_plane)
    result = handler.handle(tool_call("read_artifact", branch_id="b", path="worklog.md"))
    assert isinstance(result, ToolFailure)
    assert not result.finishes_workflow
    assert result.details == {"branch_id": "b", "path": "worklog.md"}


def test_read_artifact_returns_content(make_handler, control_plane):
    control_plane.artifacts["worklog.md"] = "notes"
    handler = make_handler(control_plane)
    result = handler.handle(tool_call("read_artifact", branch_id="b", path="worklog.md"))
    assert result.to_payload() == {"status": "success", "data": {"content": "notes"}}


def test_invalid_arguments_and_unknown_tool(make_handler, control_plane):
    handler = make_handler(control_plane)
    bad = tool_call("execute_agent")
    bad.function.arguments = "{not json"
    assert "Invalid JSON" in handler.handle(bad).message
    assert "Unsupported tool" in handler.handle(tool_call("deploy")).message
    missing = handler.handle(tool_call("execute_agent", agent="codex", prompt="p"))
    assert "parent_branch_id" in missing.message


def test_snapshot_guard_waits_for_new_snapshot(make_handler, clock):
    class SnapshotPlane(FakeControlPlane):
        def get_branch(self, branch_id):
            if branch_id == "parent":
                return {"branch_id": "parent", "status": "succeed", "latest_snap_id": "snap-0"}
            self.status_calls.append(branch_id)
            snap = "snap-0" if len(self.status_calls) < 3 else "snap-1"
            return {"branch_id": branch_id, "status": "succeed", "parent_id": "parent", "latest_snap_id": snap}

    client = SnapshotPlane()
    handler = make_handler(client, require_new_snapshot=True)

    resp = handler.wait_for_branch("child")

    assert resp["latest_snap_id"] == "snap-1"
    assert len(client.status_calls) == 3


def test_tool_definitions_cover_three_tools():
    names = [tool["function"]["name"] for tool in get_tool_definitions()]
    assert names == ["execute_agent", "read_artifact", "branch_output"]

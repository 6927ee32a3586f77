"""Tool definitions and the branch dispatch/polling engine."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .config import AgentConfig
from .mcp import ControlPlaneClient, MCPNotFoundError
from .models import Instruction, ToolFailure, ToolResult, ToolSuccess

logger = logging.getLogger(__name__)

REVIEW_CODE_AGENT = "review_code"
REVIEW_ARTIFACT_NAME = "code_review.log"
REVIEW_MAX_ATTEMPTS = 3

SUCCESS_STATUSES = frozenset({"succeed", "ready_for_manifest", "finished", "manifesting"})
FAILURE_STATUSES = frozenset({"failed"})

DEFAULT_EXECUTE_RESPONSE_MAX_CHARS = 8_000
DEFAULT_BRANCH_OUTPUT_MAX_CHARS = 20_000
FAILURE_EXCERPT_CHARS = 400


class ToolExecutionError(RuntimeError):
    """Raised when a tool call cannot be executed."""

    def __init__(
        self,
        message: str,
        *,
        instruction: Optional[Instruction] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.instruction = instruction
        self.details = dict(details or {})

    def to_failure(self) -> ToolFailure:
        return ToolFailure(self.message, self.instruction, self.details)


class BranchTracker:
    """Track the starting and latest branch ids that completed successfully."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_branch_id: Optional[str] = None
        self._latest_branch_id: Optional[str] = None

    def record(self, branch_id: Optional[str]) -> None:
        if not branch_id or not isinstance(branch_id, str):
            return
        with self._lock:
            if not self._start_branch_id:
                self._start_branch_id = branch_id
            self._latest_branch_id = branch_id

    @property
    def start_branch_id(self) -> Optional[str]:
        return self._start_branch_id

    @property
    def latest_branch_id(self) -> Optional[str]:
        return self._latest_branch_id

    def as_dict(self) -> Dict[str, Optional[str]]:
        with self._lock:
            return {
                "start_branch_id": self._start_branch_id,
                "latest_branch_id": self._latest_branch_id,
            }


@dataclass(frozen=True)
class PollingPolicy:
    """Adaptive polling schedule, all values in seconds."""

    initial: float = 5.0
    maximum: float = 600.0
    timeout: float = 3 * 60 * 60.0
    backoff: float = 1.5

    def __post_init__(self) -> None:
        if self.initial <= 0:
            raise ValueError("initial poll interval must be positive")
        if self.maximum < self.initial:
            raise ValueError("maximum poll interval must be >= initial interval")
        if self.timeout <= 0:
            raise ValueError("poll timeout must be positive")
        if self.backoff <= 1.0:
            raise ValueError("backoff factor must be greater than 1.0")

    @classmethod
    def from_config(cls, cfg: AgentConfig) -> "PollingPolicy":
        return cls(
            initial=cfg.poll_initial_interval.total_seconds(),
            maximum=cfg.poll_max_interval.total_seconds(),
            timeout=cfg.poll_timeout.total_seconds(),
            backoff=cfg.poll_backoff_factor,
        )

    def intervals(self) -> Iterator[float]:
        """Yield successive sleep intervals: non-decreasing, capped at maximum."""
        current = self.initial
        while True:
            yield current
            current = min(current * self.backoff, self.maximum)


def extract_branch_id(payload: Any) -> Optional[str]:
    """Find a branch id in a launch or status payload."""
    if not isinstance(payload, dict):
        return None
    explore = payload.get("parallel_explore")
    if isinstance(explore, dict):
        branch_id = extract_branch_id(explore)
        if branch_id:
            return branch_id
    branches = payload.get("branches")
    if isinstance(branches, list):
        for item in branches:
            branch_id = extract_branch_id(item)
            if branch_id:
                return branch_id
    branch_id = extract_branch_id(payload.get("branch"))
    if branch_id:
        return branch_id
    for key in ("branch_id", "id"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def branch_output_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    output = payload.get("output")
    return output.strip() if isinstance(output, str) else ""


def status_payload_text(payload: Dict[str, Any]) -> str:
    output = payload.get("output")
    if isinstance(output, str) and output.strip():
        return output.strip()
    manifest = payload.get("manifest")
    if isinstance(manifest, dict):
        summary = manifest.get("summary")
        if isinstance(summary, str) and summary.strip():
            return summary.strip()
    return ""


def truncate_text(text: str, max_chars: int, tail: bool = True) -> Tuple[str, bool]:
    """Cut text to max_chars, keeping the end by default (VERDICT lines and PR urls come last)."""
    text = (text or "").strip()
    if max_chars <= 0 or len(text) <= max_chars:
        return text, False
    if tail:
        return text[-max_chars:], True
    return text[:max_chars], True


def _normalize_whitespace(value: str) -> str:
    return " ".join(value.split())


def _status_lower(value: Any) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def branch_status_summary(resp: Dict[str, Any], verbose: bool) -> str:
    parts = [f"status={_status_lower(resp.get('status')) or 'unknown'}"]
    status_text = resp.get("status_text")
    if verbose and isinstance(status_text, str) and status_text.strip():
        parts.append(f"status_text={_normalize_whitespace(status_text)[:240]!r}")
    for key in ("updated_at", "latest_snap_id"):
        value = resp.get(key)
        if isinstance(value, str) and value.strip():
            parts.append(f"{key}={value.strip()}")
    latest = resp.get("latest_snap")
    if isinstance(latest, dict):
        for key in ("manifest_status", "snap_status"):
            value = latest.get(key)
            if isinstance(value, str) and value.strip():
                parts.append(f"{key}={value.strip()}")
    return " ".join(parts)


def _fatal(message: str, **details: Any) -> ToolExecutionError:
    return ToolExecutionError(
        message,
        instruction=Instruction.FINISHED_WITH_ERROR,
        details={k: v for k, v in details.items() if v is not None},
    )


class ToolHandler:
    """Dispatches LLM tool calls to control-plane operations.

    `execute_agent` is a blocking call: it launches a branch, polls it to a
    terminal state and returns the (truncated) output.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        default_project_name: Optional[str],
        *,
        workspace_dir: Optional[str] = None,
        policy: Optional[PollingPolicy] = None,
        require_new_snapshot: bool = False,
        execute_response_max_chars: int = DEFAULT_EXECUTE_RESPONSE_MAX_CHARS,
        branch_output_max_chars: int = DEFAULT_BRANCH_OUTPUT_MAX_CHARS,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._default_project_name = default_project_name
        self._workspace_dir = (workspace_dir or "").strip() or None
        self._policy = policy or PollingPolicy()
        self._require_new_snapshot = require_new_snapshot
        self._execute_response_max_chars = execute_response_max_chars
        self._branch_output_max_chars = branch_output_max_chars
        self._monotonic = monotonic
        self._sleep = sleep
        self._branch_tracker = BranchTracker()
        self.last_review_attempts = 0

    @classmethod
    def from_config(cls, client: ControlPlaneClient, cfg: AgentConfig, **kwargs: Any) -> "ToolHandler":
        return cls(
            client,
            cfg.project_name,
            workspace_dir=cfg.workspace_dir,
            policy=PollingPolicy.from_config(cfg),
            require_new_snapshot=cfg.require_new_snapshot,
            execute_response_max_chars=cfg.execute_response_max_chars,
            branch_output_max_chars=cfg.branch_output_max_chars,
            **kwargs,
        )

    @property
    def branch_range(self) -> Dict[str, Optional[str]]:
        """Expose the observed branch range."""
        return self._branch_tracker.as_dict()

    @property
    def tracker(self) -> BranchTracker:
        return self._branch_tracker

    def handle(self, tool_call: Any) -> ToolResult:
        """Execute a tool call from the LLM and return a tagged result."""

        name = getattr(getattr(tool_call, "function", None), "name", None)
        arguments_payload = getattr(getattr(tool_call, "function", None), "arguments", "{}")

        if not name:
            return ToolFailure("Missing tool name in call.")

        try:
            arguments = json.loads(arguments_payload or "{}")
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON arguments for tool %s: %s", name, arguments_payload)
            return ToolFailure(f"Invalid JSON arguments: {exc}")
        if not isinstance(arguments, dict):
            return ToolFailure("Tool arguments must be a JSON object.")

        return self.dispatch(name, arguments)

    def dispatch(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        try:
            if name == "execute_agent":
                result = self.execute_agent(arguments)
            elif name == "read_artifact":
                result = self.read_artifact(arguments)
            elif name == "branch_output":
                result = self.branch_output(arguments)
            else:
                raise ToolExecutionError(f"Unsupported tool: {name}")
        except ToolExecutionError as exc:
            logger.error("Tool %s failed: %s", name, exc)
            return exc.to_failure()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Tool %s raised unexpected error", name)
            return ToolFailure(f"Execution error: {exc}")

        return ToolSuccess(result)

    def execute_agent(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        agent = arguments.get("agent")
        prompt = arguments.get("prompt")
        project_name = arguments.get("project_name") or self._default_project_name
        parent_branch_id = arguments.get("parent_branch_id")

        if not agent or not isinstance(agent, str):
            raise ToolExecutionError("`agent` string argument is required.")
        if not prompt or not isinstance(prompt, str):
            raise ToolExecutionError("`prompt` string argument is required.")
        if not parent_branch_id or not isinstance(parent_branch_id, str):
            raise ToolExecutionError("`parent_branch_id` string argument is required.")
        if not project_name or not isinstance(project_name, str):
            raise ToolExecutionError("`project_name` string argument is required or set via config.")

        if agent == REVIEW_CODE_AGENT:
            return self.execute_review_agent(project_name, parent_branch_id, prompt)
        result, _ = self.run_agent(agent, project_name, parent_branch_id, prompt)
        return result

    def run_agent(self, agent: str, project_name: str, parent_branch_id: str, prompt: str) -> Tuple[Dict[str, Any], str]:
        """Launch one branch, wait for it, and return its output excerpt."""
        logger.info("Executing agent %s on project %s from parent %s", agent, project_name, parent_branch_id)
        try:
            response = self._client.parallel_explore(
                project_name=project_name,
                parent_branch_id=parent_branch_id,
                prompts=[prompt],
                agent=agent,
                num_branches=1,
            )
        except Exception as exc:  # noqa: BLE001
            raise _fatal(f"parallel_explore failed: {exc}", agent=agent, parent_branch_id=parent_branch_id) from exc
        if isinstance(response, dict) and (response.get("isError") or "error" in response):
            raise _fatal(f"parallel_explore returned error: {response.get('error') or response}", agent=agent)

        branch_id = extract_branch_id(response)
        if not branch_id:
            raise _fatal(f"Missing branch id in parallel_explore response: {response}", agent=agent)

        logger.info("Waiting for branch %s to complete.", branch_id)
        status_payload = self.wait_for_branch(branch_id)

        # Only a branch observed in a terminal-success state joins the lineage.
        self._branch_tracker.record(branch_id)

        text = self._fetch_output(branch_id, status_payload)
        excerpt, truncated = truncate_text(text, self._execute_response_max_chars, tail=True)
        result: Dict[str, Any] = {
            "branch_id": branch_id,
            "status": _status_lower(status_payload.get("status")) or "unknown",
            "response": excerpt,
            "response_truncated": truncated,
            "response_max_chars": self._execute_response_max_chars,
            "response_excerpt_mode": "tail",
            "full_output_hint": {
                "tool": "branch_output",
                "arguments": {
                    "branch_id": branch_id,
                    "full_output": True,
                    "tail": True,
                    "max_chars": self._branch_output_max_chars,
                },
            },
        }
        logger.info(
            "Branch %s completed (status=%s). Response excerpt (tail, truncated=%s):\n%s",
            branch_id,
            result["status"],
            truncated,
            excerpt,
        )
        return result, branch_id

    def _read_output(self, branch_id: str, full_output: bool = True) -> Tuple[str, bool]:
        """Fetch branch output text, falling back to the default fetch when a full fetch fails.

        Returns the text and whether it came from the full log.
        """
        if full_output:
            try:
                return branch_output_text(self._client.branch_output(branch_id, True)), True
            except Exception as exc:  # noqa: BLE001
                logger.warning("Full branch_output failed for %s: %s. Falling back to default output.", branch_id, exc)
        try:
            return branch_output_text(self._client.branch_output(branch_id, False)), False
        except Exception as exc:  # noqa: BLE001
            logger.warning("Default branch_output failed for %s: %s", branch_id, exc)
            return "", False

    def _fetch_output(self, branch_id: str, status_payload: Dict[str, Any]) -> str:
        # Prefer full output (then truncate locally) so tail markers survive.
        text, _ = self._read_output(branch_id)
        text = text or status_payload_text(status_payload)
        if not text:
            raise ToolExecutionError(
                "branch_output returned no textual output",
                details={"branch_id": branch_id},
            )
        return text

    def execute_review_agent(self, project_name: str, parent_branch_id: str, prompt: str) -> Dict[str, Any]:
        """Run review_code until it leaves its review log behind."""
        if not self._workspace_dir:
            raise ToolExecutionError("workspace directory not configured for review_code validation")
        artifact_path = os.path.join(self._workspace_dir, REVIEW_ARTIFACT_NAME)

        last_branch: Optional[str] = None
        for attempt in range(1, REVIEW_MAX_ATTEMPTS + 1):
            self.last_review_attempts = attempt
            result, branch_id = self.run_agent(REVIEW_CODE_AGENT, project_name, parent_branch_id, prompt)
            last_branch = branch_id
            try:
                artifact = self._client.branch_read_file(branch_id, artifact_path)
            except MCPNotFoundError:
                logger.warning(
                    "review_code attempt %s/%s did not produce %s (branch=%s)",
                    attempt,
                    REVIEW_MAX_ATTEMPTS,
                    artifact_path,
                    branch_id,
                )
                continue
            except Exception as exc:  # noqa: BLE001
                raise _fatal(
                    f"Reading {artifact_path} from branch {branch_id} failed: {exc}",
                    attempts=attempt,
                    artifact_path=artifact_path,
                    last_branch_id=branch_id,
                ) from exc
            content = artifact.get("content") if isinstance(artifact, dict) else None
            if isinstance(content, str) and content.strip():
                result["review_report"] = content
            return result

        raise _fatal(
            f"review_code failed to produce {artifact_path} after {REVIEW_MAX_ATTEMPTS} attempts "
            f"(last_branch_id={last_branch}). Inspect manifest {last_branch} in Pantheon.",
            attempts=REVIEW_MAX_ATTEMPTS,
            artifact_path=artifact_path,
            last_branch_id=last_branch,
        )

    def wait_for_branch(self, branch_id: str) -> Dict[str, Any]:
        """Poll get_branch until the branch is terminal or the deadline passes."""
        policy = self._policy
        deadline = self._monotonic() + policy.timeout
        intervals = policy.intervals()
        last_status = ""
        last_status_text = ""

        logger.info("Checking status for branch %s (timeout=%ss)", branch_id, int(policy.timeout))
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self._client.get_branch(branch_id)
            except Exception as exc:  # noqa: BLE001
                raise _fatal(f"get_branch failed for branch {branch_id}: {exc}", branch_id=branch_id) from exc
            if not isinstance(resp, dict) or "error" in resp:
                error = resp.get("error") if isinstance(resp, dict) else resp
                raise _fatal(f"get_branch returned error for branch {branch_id}: {error}", branch_id=branch_id)
            if not extract_branch_id(resp):
                raise _fatal(
                    f"Branch status response missing branch identifier. Response: {resp}",
                    branch_id=branch_id,
                )

            status = _status_lower(resp.get("status"))
            status_text = resp.get("status_text")
            status_text = _normalize_whitespace(status_text) if isinstance(status_text, str) else ""
            verbose = attempt == 1 or status != last_status or (status_text and status_text != last_status_text)
            if last_status and status != last_status:
                logger.info("Branch %s status changed: %s -> %s", branch_id, last_status, status)
            logger.info("Branch %s poll (attempt %s): %s", branch_id, attempt, branch_status_summary(resp, bool(verbose)))
            logger.debug("Branch %s response (attempt %s): %s", branch_id, attempt, json.dumps(resp, default=str))

            if status in FAILURE_STATUSES:
                raise self._failed_branch_error(branch_id, status)
            if status in SUCCESS_STATUSES and self._has_new_snapshot(resp):
                return resp

            last_status = status
            last_status_text = status_text

            if self._monotonic() >= deadline:
                raise _fatal(
                    f"Timed out waiting for branch {branch_id} (last status={status or 'unknown'})",
                    branch_id=branch_id,
                    last_status=status or "unknown",
                    attempts=attempt,
                    timeout_seconds=policy.timeout,
                )
            delay = next(intervals)
            logger.info("Branch %s still active (status=%s). Sleeping %.1fs.", branch_id, status or "unknown", delay)
            self._sleep(delay)

    def _has_new_snapshot(self, resp: Dict[str, Any]) -> bool:
        if not self._require_new_snapshot:
            return True
        parent_id = resp.get("parent_id")
        if not isinstance(parent_id, str) or not parent_id:
            return True
        try:
            parent = self._client.get_branch(parent_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error getting parent branch %s: %s", parent_id, exc)
            return False
        parent_snap = _status_lower(parent.get("latest_snap_id")) if isinstance(parent, dict) else ""
        return not parent_snap or parent_snap != _status_lower(resp.get("latest_snap_id"))

    def _failed_branch_error(self, branch_id: str, status: str) -> ToolExecutionError:
        excerpt = ""
        try:
            excerpt = branch_output_text(self._client.branch_output(branch_id, True))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not fetch output of failed branch %s: %s", branch_id, exc)
        if len(excerpt) > FAILURE_EXCERPT_CHARS:
            excerpt = excerpt[:FAILURE_EXCERPT_CHARS] + "..."
        if excerpt:
            message = f"Branch {branch_id} reported failed status: {excerpt}. Inspect manifest {branch_id} in Pantheon."
        else:
            message = f"Branch {branch_id} reported failed status. Inspect manifest {branch_id} in Pantheon."
        return _fatal(message, status=status, branch_id=branch_id)

    def read_artifact(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        branch_id = arguments.get("branch_id")
        path = arguments.get("path")
        if not branch_id or not isinstance(branch_id, str):
            raise ToolExecutionError("`branch_id` string argument is required.")
        if not path or not isinstance(path, str):
            raise ToolExecutionError("`path` string argument is required.")
        logger.info("Reading artifact %s from branch %s", path, branch_id)
        try:
            return self._client.branch_read_file(branch_id, path)
        except MCPNotFoundError as exc:
            raise ToolExecutionError(
                f"Artifact {path} not found on branch {branch_id}",
                details={"branch_id": branch_id, "path": path},
            ) from exc

    def branch_output(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        raw_branch_id = arguments.get("branch_id")
        branch_id = raw_branch_id.strip() if isinstance(raw_branch_id, str) else ""
        if not branch_id:
            raise ToolExecutionError("`branch_id` string argument is required.")

        full_output = arguments.get("full_output", False)
        if not isinstance(full_output, bool):
            raise ToolExecutionError("`full_output` must be a boolean.")
        tail = arguments.get("tail", False)
        if not isinstance(tail, bool):
            raise ToolExecutionError("`tail` must be a boolean.")
        max_chars = arguments.get("max_chars")
        if max_chars is None:
            max_chars = self._branch_output_max_chars
        elif isinstance(max_chars, bool) or not isinstance(max_chars, (int, float)):
            raise ToolExecutionError("`max_chars` must be a number.")
        elif int(max_chars) <= 0:
            max_chars = self._branch_output_max_chars
        max_chars = int(max_chars)

        # Tail excerpts need the whole log; truncate locally.
        fetch_full = full_output or tail
        logger.info(
            "Retrieving branch_output for %s (full_output=%s, tail=%s, max_chars=%s)",
            branch_id,
            fetch_full,
            tail,
            max_chars,
        )
        text, fetched_full = self._read_output(branch_id, fetch_full)
        if not text:
            raise ToolExecutionError("branch_output returned no textual output", details={"branch_id": branch_id})

        excerpt, truncated = truncate_text(text, max_chars, tail=tail)
        result: Dict[str, Any] = {
            "branch_id": branch_id,
            "output": excerpt,
            "output_truncated": truncated,
            "output_max_chars": max_chars,
            "output_excerpt_mode": "tail" if tail else "head",
            "full_output_fetched": fetched_full,
        }
        if truncated:
            result["full_output_hint"] = {
                "tool": "branch_output",
                "arguments": {
                    "branch_id": branch_id,
                    "full_output": True,
                    "tail": tail,
                    "max_chars": max_chars * 2,
                },
            }
        return result


def get_tool_definitions() -> List[Dict[str, Any]]:
    """Return OpenAI-compatible tool definitions for the dispatch engine."""

    return [
        {
            "type": "function",
            "function": {
                "name": "execute_agent",
                "description": (
                    "Launch a parallel_explore job for a specialist agent (num_branches=1) and wait "
                    "until the branch is terminal. Returns a tail excerpt of the output plus "
                    "response_truncated/full_output_hint to control context size."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "agent": {
                            "type": "string",
                            "description": "Target specialist agent name, e.g. claude_code, codex or review_code.",
                        },
                        "prompt": {
                            "type": "string",
                            "description": "Prompt that describes the task for the agent.",
                        },
                        "project_name": {
                            "type": "string",
                            "description": "Pantheon project name.",
                        },
                        "parent_branch_id": {
                            "type": "string",
                            "description": "Branch UUID to branch from for this run.",
                        },
                    },
                    "required": ["agent", "prompt", "project_name", "parent_branch_id"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "read_artifact",
                "description": (
                    "Read a text artifact produced by a branch. "
                    "Pass a branch id and the artifact path or filename."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "branch_id": {
                            "type": "string",
                            "description": "Branch that produced the artifact.",
                        },
                        "path": {
                            "type": "string",
                            "description": "Artifact path or filename, e.g. worklog.md or code_review.log.",
                        },
                    },
                    "required": ["branch_id", "path"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "branch_output",
                "description": (
                    "Retrieve the text output that a branch produced. "
                    "The handler may truncate the returned text to control context size."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "branch_id": {
                            "type": "string",
                            "description": "Branch that produced the output.",
                        },
                        "full_output": {
                            "type": "boolean",
                            "description": "Return the complete output log instead of any default truncation.",
                        },
                        "tail": {
                            "type": "boolean",
                            "description": "Return the end of the output log (implies full_output=true).",
                        },
                        "max_chars": {
                            "type": "integer",
                            "description": "Maximum number of characters to return.",
                        },
                    },
                    "required": ["branch_id"],
                },
            },
        },
    ]

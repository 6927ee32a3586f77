"""Turn-based tool-calling loop that drives the orchestrator LLM."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional

from .brain import CompletionService, first_message, parse_json_object
from .events import EventStream, sanitize_tool_args
from .models import ReportStatus, ToolFailure, ToolResult
from .prompts import build_system_prompt
from .tools import ToolHandler, extract_branch_id, get_tool_definitions

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 60
DEFAULT_MAX_TOOL_CALLS = 40
MAX_POLICY_RETRY_TURNS = 6

ITERATION_LIMIT_SUMMARY = "Reached iteration limit before a final report; resume from latest_branch_id."

ALLOWED_REPORT_KEYS = frozenset(
    {
        "finished",
        "status",
        "summary",
        "instructions",
        "task",
        "start_branch_id",
        "latest_branch_id",
        "pr_url",
        "pr_number",
        "pr_head_branch",
        "error",
        "instruction",
    }
)
OPTIONAL_STRING_KEYS = ("instructions", "pr_url", "pr_head_branch")

FINALIZER_SYSTEM_PROMPT = """You are the report finalizer for an automated Pantheon run.

Given an input report, output a CLEAN final JSON report.

Rules:
- Output JSON only. No code fences, no prose.
- Keep the original status semantics; do not invent success or failure.
- Required fields: finished, status, task, summary, instructions.
- Allowed optional fields (only if present and non-empty): start_branch_id, latest_branch_id, pr_url, pr_number,
  pr_head_branch, error, instruction.
- Do NOT include any other keys or any null/empty fields.

instructions should be actionable next steps. If status is iteration_limit, include rerun guidance using
latest_branch_id as --parent-branch-id."""


def build_initial_messages(
    task: str,
    project_name: str,
    workspace_dir: Optional[str],
    parent_branch_id: str,
    *,
    playbook: str = "",
) -> List[Dict[str, Any]]:
    """Create the system and user messages that kick off the orchestrator loop."""
    user_payload = {
        "task": task.strip(),
        "parent_branch_id": parent_branch_id,
        "project_name": project_name,
        "workspace_dir": workspace_dir,
        "notes": (
            "Follow the rules in the system prompt. One tool call per turn. Track branch lineage and "
            "stop when the latest review reports no P0/P1 issues."
        ),
    }
    return [
        {"role": "system", "content": build_system_prompt(playbook)},
        {"role": "user", "content": json.dumps(user_payload, indent=2)},
    ]


def assistant_message_to_dict(message: Any) -> Dict[str, Any]:
    """Convert an OpenAI assistant message to a dict suitable for the next request."""
    payload: Dict[str, Any] = {"role": "assistant", "content": message.content or ""}
    if getattr(message, "tool_calls", None):
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": call.type,
                "function": {
                    "name": call.function.name,
                    "arguments": call.function.arguments,
                },
            }
            for call in message.tool_calls
        ]
    return payload


def parse_final_report(message: Any) -> Optional[Dict[str, Any]]:
    """Try to parse the assistant content as the final report JSON."""
    content = getattr(message, "content", None)
    if not content:
        return None
    try:
        payload = json.loads(content.strip())
    except (TypeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict) or not payload.get("finished"):
        return None
    return payload


def ensure_report_defaults(report: Dict[str, Any], task: str, status: ReportStatus) -> Dict[str, Any]:
    if task:
        report.setdefault("task", task)
    report.setdefault("status", status.value)
    report.setdefault("finished", True)
    return report


def build_error_final_report(
    task: str,
    summary: str,
    instruction: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    summary = (summary or "").strip() or "Workflow halted due to a tool execution error."
    report: Dict[str, Any] = {
        "finished": True,
        "status": ReportStatus.FINISHED_WITH_ERROR.value,
        "summary": summary,
    }
    if task.strip():
        report["task"] = task.strip()
    error: Dict[str, Any] = {"message": summary}
    if instruction:
        report["instruction"] = instruction
        error["instruction"] = instruction
    if details:
        error["details"] = details
    report["error"] = error
    return report


def iteration_limit_report(task: str) -> Dict[str, Any]:
    return {
        "finished": False,
        "status": ReportStatus.ITERATION_LIMIT.value,
        "task": task,
        "summary": ITERATION_LIMIT_SUMMARY,
    }


def _policy_violation_message(count: int) -> str:
    return (
        f"policy violation: expected exactly 1 tool call, got {count}. No tool calls executed. "
        "Please retry with a single tool call."
    )


def _summarize_result(result: ToolResult) -> str:
    if isinstance(result, ToolFailure):
        return result.message
    response = result.data.get("response")
    if isinstance(response, str) and response:
        return response
    status = result.data.get("status")
    return f"status={status}" if status else "success"


def orchestrate(
    brain: CompletionService,
    handler: ToolHandler,
    messages: List[Dict[str, Any]],
    *,
    task: str,
    max_turns: int = DEFAULT_MAX_TURNS,
    max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
    events: Optional[EventStream] = None,
    echo: bool = False,
) -> Dict[str, Any]:
    """Run the LLM loop until a final report, a fatal tool error, or a limit.

    Always returns a report dict. With echo=True the conversation is printed in
    chat style (assistant>, tool>, tool<).
    """
    tools = get_tool_definitions()
    total_tool_calls = 0
    executed_tool_calls = 0
    consecutive_violations = 0

    for iteration in range(1, max_turns + 1):
        turn_id = f"turn_{iteration}"
        logger.info("LLM iteration %s", iteration)
        if echo:
            print(f"[iter {iteration}] requesting completion...")
        if events:
            events.turn_started(turn_id, iteration, len(messages), total_tool_calls)

        message = first_message(brain.complete(messages, tools=tools))
        messages.append(assistant_message_to_dict(message))
        tool_calls = getattr(message, "tool_calls", None) or []
        if echo and message.content:
            print(f"assistant> {message.content}")
        if events:
            events.assistant_message(turn_id, message.content or "", len(tool_calls))

        if tool_calls:
            total_tool_calls += len(tool_calls)

            if len(tool_calls) != 1:
                consecutive_violations += 1
                violation = _policy_violation_message(len(tool_calls))
                logger.warning("%s (consecutive=%s)", violation, consecutive_violations)
                if echo:
                    print(f"note: {violation}")
                if events:
                    events.error("tool_policy", violation, tool_call_count=len(tool_calls), turn_id=turn_id)
                for call in tool_calls:
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": json.dumps(ToolFailure(violation).to_payload()),
                        }
                    )
                if events:
                    events.turn_completed(turn_id, iteration, len(tool_calls), False)
                if consecutive_violations >= MAX_POLICY_RETRY_TURNS:
                    report = build_error_final_report(
                        task,
                        "Too many policy-violation retries; aborting.",
                        details={"turn_id": turn_id, "consecutive_violations": consecutive_violations},
                    )
                    return ensure_report_defaults(report, task, ReportStatus.FINISHED_WITH_ERROR)
                continue

            consecutive_violations = 0
            call = tool_calls[0]
            if echo:
                print(f"tool> {call.function.name} {call.function.arguments}")
            item_id = ""
            started = time.monotonic()
            if events:
                try:
                    args = json.loads(call.function.arguments or "{}")
                except json.JSONDecodeError:
                    args = {}
                if not isinstance(args, dict):
                    args = {}
                item_id = events.item_started(
                    "tool_call", call.function.name, sanitize_tool_args(call.function.name, args)
                )

            result = handler.handle(call)
            executed_tool_calls += 1
            payload = result.to_payload()
            content = json.dumps(payload)
            messages.append({"role": "tool", "tool_call_id": call.id, "content": content})
            if echo:
                print(f"tool< {content[:2000]}")
            if events:
                branch_id = extract_branch_id(result.data) if not isinstance(result, ToolFailure) else None
                elapsed = time.monotonic() - started
                events.item_completed(item_id, payload["status"], elapsed, branch_id, _summarize_result(result))

            if isinstance(result, ToolFailure) and result.finishes_workflow:
                instruction = result.instruction.value if result.instruction else None
                logger.error("Tool %s requested workflow stop: %s", call.function.name, result.message)
                if events:
                    events.error("tool_instruction", result.message, instruction=instruction)
                    events.turn_completed(turn_id, iteration, 1, False)
                report = build_error_final_report(task, result.message, instruction, result.details)
                return ensure_report_defaults(report, task, ReportStatus.FINISHED_WITH_ERROR)

            if events:
                events.turn_completed(turn_id, iteration, 1, False)
            if executed_tool_calls >= max_tool_calls:
                logger.error("Reached tool-call limit without final report.")
                break
            continue

        final_report = parse_final_report(message)
        if events:
            events.turn_completed(turn_id, iteration, 0, final_report is not None)
        if final_report is not None:
            if echo:
                print("assistant< final_report")
            return ensure_report_defaults(final_report, task, ReportStatus.COMPLETED)
        logger.info("Assistant response was not a final report; continuing.")
        if echo:
            print("assistant< not final yet, continuing...")

    logger.error("Reached iteration limit without final report.")
    return iteration_limit_report(task)


def attach_branch_range(report: Dict[str, Any], branch_range: Dict[str, Optional[str]]) -> Dict[str, Any]:
    for key in ("start_branch_id", "latest_branch_id"):
        if branch_range.get(key):
            report[key] = branch_range[key]
    return report


def sanitize_final_report(report: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unknown keys and empty optional fields."""
    cleaned = {k: v for k, v in report.items() if k in ALLOWED_REPORT_KEYS}
    for key in OPTIONAL_STRING_KEYS:
        value = cleaned.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            cleaned.pop(key, None)
    pr_number = cleaned.get("pr_number")
    if pr_number in (None, 0, "", "0"):
        cleaned.pop("pr_number", None)
    return cleaned


def finalize_report(brain: CompletionService, report: Dict[str, Any]) -> Dict[str, Any]:
    """Ask the LLM for a cleaned report with next-step instructions.

    Raises on any failure; callers keep the input report in that case.
    """
    response = brain.complete(
        [
            {"role": "system", "content": FINALIZER_SYSTEM_PROMPT},
            {"role": "user", "content": "INPUT_REPORT_JSON:\n" + json.dumps(report, indent=2)},
        ]
    )
    finalized = parse_json_object(first_message(response).content or "")

    # Status semantics and lineage come from the input, never from the model.
    for key in ("status", "task", "start_branch_id", "latest_branch_id", "error", "instruction"):
        if key in report:
            finalized[key] = report[key]
    finalized["finished"] = report.get("finished", True)
    for key in ("pr_url", "pr_number", "pr_head_branch"):
        if key not in finalized and key in report:
            finalized[key] = report[key]

    if not str(finalized.get("summary") or "").strip():
        raise ValueError("finalizer output missing summary")
    if not str(finalized.get("instructions") or "").strip():
        raise ValueError("finalizer output missing instructions")
    return sanitize_final_report(finalized)

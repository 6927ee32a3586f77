"""Command-line entry point for the branch orchestrator."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

from .brain import LLMBrain
from .config import AgentConfig
from .events import EventStream
from .mcp import MCPClient
from .models import ReportStatus
from .orchestrator import (
    attach_branch_range,
    build_error_final_report,
    build_initial_messages,
    finalize_report,
    orchestrate,
    sanitize_final_report,
)
from .prompts import load_playbook
from .tools import ToolHandler

logger = logging.getLogger("branch_orchestrator")

EXIT_CODES = {
    ReportStatus.COMPLETED.value: 0,
    ReportStatus.FINISHED_WITH_ERROR.value: 1,
    ReportStatus.ITERATION_LIMIT.value: 2,
}


def configure_logging(stream_json: bool = False) -> None:
    # NDJSON owns stdout in stream mode; keep only errors on stderr.
    logging.basicConfig(
        level=logging.ERROR if stream_json else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def load_config(project_name: Optional[str] = None, max_turns: Optional[int] = None) -> AgentConfig:
    cfg = AgentConfig.from_env()
    if project_name:
        cfg = replace(cfg, project_name=project_name)
    if max_turns is not None:
        if max_turns < 1:
            raise ValueError("--max-turns must be >= 1")
        cfg = replace(cfg, max_turns=max_turns)
    if not cfg.project_name:
        raise ValueError("Project name must be provided via PROJECT_NAME or --project-name")
    return cfg


def read_task(task: Optional[str]) -> str:
    if task and task.strip():
        return task.strip()
    try:
        return input("Task: ").strip()
    except EOFError:
        return ""


def exit_code_for(report: Dict[str, Any]) -> int:
    return EXIT_CODES.get(str(report.get("status")), 1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tool-calling orchestrator for remote agent branches")
    parser.add_argument("--task", help="User task description (prompted if omitted)")
    parser.add_argument("--parent-branch-id", required=True, help="Parent branch UUID")
    parser.add_argument("--project-name", help="Optional project name override")
    parser.add_argument("--headless", action="store_true", help="Do not echo the conversation")
    parser.add_argument("--stream-json", action="store_true", help="Emit NDJSON events on stdout (implies --headless)")
    parser.add_argument("--max-turns", type=int, help="Override AGENT_MAX_TURNS")
    parser.add_argument("--no-finalize", action="store_true", help="Skip the LLM report finalizer")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    headless = args.headless or args.stream_json
    configure_logging(args.stream_json)

    task = read_task(args.task)
    if not task:
        logger.error("A task is required.")
        return 1

    try:
        cfg = load_config(args.project_name, args.max_turns)
    except (EnvironmentError, ValueError) as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    events = EventStream(enabled=args.stream_json)
    events.thread_started(task, cfg.project_name or "", args.parent_branch_id)

    brain = LLMBrain(cfg.azure_api_key, cfg.azure_endpoint, cfg.azure_deployment, cfg.azure_api_version)
    handler = ToolHandler.from_config(MCPClient(cfg.mcp_base_url), cfg)
    messages = build_initial_messages(
        task,
        cfg.project_name or "",
        cfg.workspace_dir,
        args.parent_branch_id,
        playbook=load_playbook(cfg.playbook_path),
    )

    try:
        report = orchestrate(
            brain,
            handler,
            messages,
            task=task,
            max_turns=cfg.max_turns,
            max_tool_calls=cfg.max_tool_calls,
            events=events,
            echo=not headless,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Orchestrator failed")
        events.error("orchestrator", str(exc))
        report = build_error_final_report(task, f"Orchestrator failed: {exc}")

    report = sanitize_final_report(attach_branch_range(report, handler.branch_range))
    if not args.no_finalize:
        try:
            report = finalize_report(brain, report)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Report finalizer failed; using sanitized report: %s", exc)

    events.thread_completed(str(report.get("status")), str(report.get("summary") or ""), report)
    if not args.stream_json:
        print(json.dumps(report, indent=2))
    return exit_code_for(report)


if __name__ == "__main__":
    sys.exit(main())

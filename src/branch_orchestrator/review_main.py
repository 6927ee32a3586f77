"""Command-line entry point for the review workflow."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from .brain import LLMBrain
from .events import EventStream
from .main import configure_logging, load_config, read_task
from .mcp import MCPClient
from .orchestrator import attach_branch_range, build_error_final_report, sanitize_final_report
from .review import ReviewOptions, ReviewRunner
from .tools import ToolHandler

logger = logging.getLogger("branch_orchestrator.review")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Verify code review findings with reviewer/verifier consensus")
    parser.add_argument("--task", help="Review task or PR context (prompted if omitted)")
    parser.add_argument("--parent-branch-id", required=True, help="Branch holding the change under review")
    parser.add_argument("--project-name", help="Optional project name override")
    parser.add_argument("--skip-scout", action="store_true", help="Skip the change-analysis scout stage")
    parser.add_argument("--skip-summary", action="store_true", help="Skip the summary report stage")
    parser.add_argument("--stream-json", action="store_true", help="Emit NDJSON events on stdout")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.stream_json)

    task = read_task(args.task)
    if not task:
        logger.error("A task is required.")
        return 1

    try:
        cfg = load_config(args.project_name)
    except (EnvironmentError, ValueError) as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    events = EventStream(enabled=args.stream_json)
    events.thread_started(task, cfg.project_name or "", args.parent_branch_id)

    handler = ToolHandler.from_config(MCPClient(cfg.mcp_base_url), cfg)
    runner = ReviewRunner(
        LLMBrain(cfg.azure_api_key, cfg.azure_endpoint, cfg.azure_deployment, cfg.azure_api_version),
        handler,
        ReviewOptions(
            task=task,
            parent_branch_id=args.parent_branch_id,
            project_name=cfg.project_name or "",
            workspace_dir=cfg.workspace_dir,
            skip_scout=args.skip_scout,
            skip_summary=args.skip_summary,
        ),
        events=events,
    )

    try:
        result = runner.run()
    except Exception as exc:  # noqa: BLE001
        logger.error("Review failed: %s", exc)
        events.error("review", str(exc))
        report = build_error_final_report(task, f"Review failed: {exc}")
        report = sanitize_final_report(attach_branch_range(report, handler.branch_range))
        events.thread_completed(report["status"], report["summary"], report)
        if not args.stream_json:
            print(json.dumps(report, indent=2))
        return 1

    payload = result.as_dict()
    events.thread_completed(result.status.value, result.summary, payload)
    if not args.stream_json:
        print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Review workflow: find issues, then verify each one by reviewer/verifier consensus."""

from __future__ import annotations

import json
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .brain import CompletionService, complete_text, parse_json_object
from .consensus import ROLE_AGENT, ConsensusEngine
from .events import EventStream, sanitize_tool_args
from .models import IssueReport, IssueStatus, ReviewerLog, ReviewStatus, RunResult, ToolFailure
from .prompts import (
    build_has_real_issue_prompt,
    build_issue_finder_prompt,
    build_issue_parser_prompt,
    build_scout_prompt,
    build_summary_report_prompt,
)
from .stats import ReviewStatistics
from .tools import REVIEW_CODE_AGENT, ToolHandler, extract_branch_id

logger = logging.getLogger(__name__)

CHANGE_ANALYSIS_NAME = "change_analysis.md"
SUMMARY_REPORT_NAME = "review_summary.md"
CLEAN_SUMMARY = "Clean change: no blocking P0/P1 issues found."
NO_ISSUE_MARKERS = ("no p0/p1 issues found", "no p0/p1 issue")
DEFAULT_MAX_PARALLEL_ISSUES = 4


class ReviewError(RuntimeError):
    """Raised when the review workflow cannot continue."""


@dataclass(frozen=True)
class ReviewOptions:
    task: str
    parent_branch_id: str
    project_name: str
    workspace_dir: Optional[str] = None
    skip_scout: bool = False
    skip_summary: bool = False
    max_parallel_issues: int = DEFAULT_MAX_PARALLEL_ISSUES


class ReviewRunner:
    """Drives scout, review, pre-filter, split, verification and summary stages."""

    def __init__(
        self,
        brain: CompletionService,
        handler: ToolHandler,
        options: ReviewOptions,
        *,
        events: Optional[EventStream] = None,
        statistics: Optional[ReviewStatistics] = None,
    ) -> None:
        if not options.task.strip():
            raise ValueError("task is required")
        if not options.parent_branch_id.strip():
            raise ValueError("parent_branch_id is required")
        if not options.project_name.strip():
            raise ValueError("project_name is required")
        self._brain = brain
        self._handler = handler
        self._options = options
        self._events = events
        self.statistics = statistics or ReviewStatistics()

    def run(self) -> RunResult:
        opts = self._options
        logger.info("Starting review workflow for parent %s", opts.parent_branch_id)
        result = RunResult(task=opts.task)

        review_parent = opts.parent_branch_id
        analysis_path = ""
        if opts.skip_scout:
            logger.info("Skipping scout stage by request.")
        else:
            with self.statistics.step("scout"):
                try:
                    review_parent, analysis_path = self.run_scout(opts.parent_branch_id)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Scout soft-failed; continuing without change analysis: %s", exc)
                    self.statistics.record_abnormal_step("scout", f"Scout soft-failed: {exc}")

        with self.statistics.step("review"):
            try:
                review_log = self.run_single_review(review_parent, analysis_path)
            except Exception as exc:
                self.statistics.record_abnormal_step("review", f"Review failed: {exc}")
                raise
        result.reviewer_logs.append(review_log)

        if not review_log.report.strip():
            return self._clean(result)
        if not self.has_real_issue(review_log.report):
            logger.info("Pre-filter found no blocking issue in the review report.")
            return self._clean(result)

        issues = self.parse_issues(review_log.report)
        if not issues:
            return self._clean(result)

        logger.info("Parsed %s issues from review report, verifying each in parallel", len(issues))
        result.issues, result.verification_errors = self.verify_issues(
            issues, review_log.branch_id or review_parent, analysis_path
        )

        if not result.issues:
            if result.verification_errors:
                logger.warning("All %s issue verifications failed: %s", len(issues), result.verification_errors)
            return self._clean(result)

        confirmed, unresolved, dismissed = summarize_issue_counts(result.issues)
        result.status = ReviewStatus.ISSUES_FOUND if confirmed else ReviewStatus.CLEAN
        result.summary = (
            f"Verified {len(result.issues)} P0/P1 issues "
            f"({confirmed} confirmed, {unresolved} unresolved, {dismissed} dismissed)."
        )
        self._finish(result)

        if not self._options.skip_summary:
            try:
                result.summary_branch_id = self.generate_summary_report(opts.parent_branch_id, result)
                logger.info("Summary report generated in branch %s", result.summary_branch_id)
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to generate summary report: %s", exc)
                self.statistics.record_abnormal_step("summary", f"Summary report failed: {exc}")
            result.statistics = self.statistics.as_dict()
        return result

    def _clean(self, result: RunResult) -> RunResult:
        result.status = ReviewStatus.CLEAN
        result.summary = CLEAN_SUMMARY
        return self._finish(result)

    def _finish(self, result: RunResult) -> RunResult:
        lineage = self._handler.branch_range
        result.start_branch_id = lineage.get("start_branch_id")
        result.latest_branch_id = lineage.get("latest_branch_id")
        self.statistics.finalize(result.issues)
        result.statistics = self.statistics.as_dict()
        return result

    def verify_issues(
        self, issues: List[str], start_branch_id: str, analysis_path: str
    ) -> Tuple[List[IssueReport], List[str]]:
        """Verify issues concurrently; one outcome per issue, merged in issue order."""
        engine = ConsensusEngine(
            self.execute_agent,
            task=self._options.task,
            analysis_path=analysis_path,
            statistics=self.statistics,
        )
        total = len(issues)
        workers = max(1, min(total, self._options.max_parallel_issues))
        reports: List[IssueReport] = []
        errors: List[str] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="issue") as pool:
            futures = [pool.submit(engine.confirm_issue, text, start_branch_id) for text in issues]
            for index, future in enumerate(futures, start=1):
                try:
                    reports.append(future.result())
                except Exception as exc:  # noqa: BLE001
                    message = f"Issue {index}/{total} verification failed: {exc}"
                    logger.error(message)
                    errors.append(message)
        return reports, errors

    def run_scout(self, parent_branch_id: str) -> Tuple[str, str]:
        workspace = self._require_workspace("scout output")
        analysis_path = os.path.join(workspace, CHANGE_ANALYSIS_NAME)
        data = self.execute_agent(ROLE_AGENT, build_scout_prompt(self._options.task, analysis_path), parent_branch_id)
        branch_id = extract_branch_id(data)
        if not branch_id:
            raise ReviewError("scout branch did not return branch_id")
        artifact = self.call_tool("read_artifact", {"branch_id": branch_id, "path": analysis_path})
        if not str(artifact.get("content") or "").strip():
            raise ReviewError(f"scout wrote empty analysis file: {analysis_path}")
        return branch_id, analysis_path

    def run_single_review(self, parent_branch_id: str, analysis_path: str = "") -> ReviewerLog:
        prompt = build_issue_finder_prompt(self._options.task, analysis_path)
        data = self.execute_agent(REVIEW_CODE_AGENT, prompt, parent_branch_id)
        return ReviewerLog(
            branch_id=extract_branch_id(data) or "",
            report=str(data.get("review_report") or "").strip(),
        )

    def has_real_issue(self, report_text: str) -> bool:
        raw = complete_text(
            self._brain,
            "Analyze code review reports. Reply only with JSON.",
            build_has_real_issue_prompt(report_text),
        )
        try:
            payload = parse_json_object(raw)
        except ValueError as exc:
            raise ReviewError(f"failed to parse has_issue JSON: {exc}") from exc
        return bool(payload.get("has_issue"))

    def parse_issues(self, report_text: str) -> List[str]:
        """Split a review report into issue statements, falling back to the whole report."""
        try:
            raw = complete_text(
                self._brain,
                "Parse code review reports and extract individual P0/P1 issues. Reply only with JSON.",
                build_issue_parser_prompt(report_text),
            )
            payload = parse_json_object(raw)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to split issues, treating entire report as a single issue: %s", exc)
            return [report_text]

        entries = payload.get("issues")
        if not isinstance(entries, list) or not entries:
            if any(marker in report_text.lower() for marker in NO_ISSUE_MARKERS):
                return []
            logger.warning("Issue splitter returned nothing usable, treating entire report as a single issue")
            return [report_text]

        issues = []
        for entry in entries:
            text = entry.get("text") if isinstance(entry, dict) else entry
            if isinstance(text, str) and text.strip():
                issues.append(text.strip())
        if not issues:
            logger.warning("All split issues had empty text, treating entire report as a single issue")
            return [report_text]
        return issues

    def generate_summary_report(self, parent_branch_id: str, result: RunResult) -> str:
        workspace = self._require_workspace("summary report output")
        report_path = os.path.join(workspace, SUMMARY_REPORT_NAME)
        issue_lines = [
            f"- [{issue.status.value}{' / dismissed' if issue.dismissed else ''}] {issue.issue_text}"
            for issue in result.issues
        ]
        prompt = build_summary_report_prompt(self._options.task, report_path, issue_lines, result.summary)
        data = self.execute_agent(ROLE_AGENT, prompt, parent_branch_id)
        branch_id = extract_branch_id(data)
        if not branch_id:
            raise ReviewError("summary report branch did not return branch_id")
        return branch_id

    def execute_agent(self, agent: str, prompt: str, parent_branch_id: str) -> Dict[str, Any]:
        return self.call_tool(
            "execute_agent",
            {
                "agent": agent,
                "prompt": prompt,
                "project_name": self._options.project_name,
                "parent_branch_id": parent_branch_id,
            },
        )

    def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch one tool through the handler and unwrap its data or raise ReviewError."""
        item_id = ""
        started = time.monotonic()
        if self._events:
            item_id = self._events.item_started("tool_call", name, sanitize_tool_args(name, arguments))

        result = self._handler.dispatch(name, arguments)

        if isinstance(result, ToolFailure):
            if self._events:
                self._events.item_completed(item_id, "error", time.monotonic() - started, summary=result.message)
            detail = f" ({json.dumps(result.details, default=str)})" if result.details else ""
            raise ReviewError(f"{name} failed: {result.message}{detail}")

        data = result.data
        if self._events:
            response = data.get("response")
            self._events.item_completed(
                item_id,
                "success",
                time.monotonic() - started,
                extract_branch_id(data),
                response if isinstance(response, str) else None,
            )
        return data

    def _require_workspace(self, purpose: str) -> str:
        workspace = (self._options.workspace_dir or "").strip()
        if not workspace:
            raise ReviewError(f"workspace dir is required for {purpose}")
        return workspace


def summarize_issue_counts(reports: List[IssueReport]) -> Tuple[int, int, int]:
    """Return (confirmed, unresolved, dismissed); dismissed issues are not counted as unresolved."""
    confirmed = sum(1 for r in reports if r.status is IssueStatus.CONFIRMED)
    dismissed = sum(1 for r in reports if r.dismissed)
    unresolved = sum(1 for r in reports if r.status is IssueStatus.UNRESOLVED and not r.dismissed)
    return confirmed, unresolved, dismissed

"""Prompt templates for the orchestrator and the review roles."""

from __future__ import annotations

import logging
import os
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_PREAMBLE = """You are an expert software engineer and a Pantheon workflow orchestrator.

You control a strict, evidence-first implement/review/fix loop by launching long-running Pantheon branches via tools.

### Agents
* **claude_code**: Implements solutions and tests. Summarizes work in `worklog.md`.
* **review_code**: Reviews code for P0/P1 issues and records findings in `code_review.log`.
* **codex**: General-purpose engineer for fixes and follow-up analysis.

### Hard rules
* Each assistant response MUST either (a) call exactly ONE tool, or (b) output the FINAL REPORT as JSON and nothing else.
* execute_agent always runs a single branch and blocks until the branch is terminal.
* Track branch lineage: the next phase starts from the branch id returned by the previous phase.
* If a tool result carries an error, read it; do not repeat the same call blindly.

### Tool note
execute_agent returns a response excerpt (the tail of the output). If response_truncated=true, use full_output_hint
to fetch more via branch_output with tail/max_chars.
"""

OUTPUT_RULE = """Stop by outputting JSON only, with this shape:
{
  "finished": true,
  "status": "completed",
  "task": "<original user task>",
  "summary": "<concise outcome>"
}
Never include any extra text around the JSON."""

PLAYBOOK_CANDIDATES = ("SKILL.md", os.path.join("branch_orchestrator", "SKILL.md"))

VERDICT_FORMAT = "# VERDICT: CONFIRMED | REJECTED"


def load_playbook(path: Optional[str] = None) -> str:
    """Return the playbook text from an explicit path or a well-known location."""
    candidates: Iterable[str] = (path,) if path else PLAYBOOK_CANDIDATES
    for candidate in candidates:
        try:
            with open(candidate, encoding="utf-8") as fh:
                text = fh.read().strip()
        except OSError:
            continue
        if text:
            logger.info("Loaded playbook from %s", candidate)
            return text
    if path:
        logger.warning("Playbook %s is missing or empty; continuing without it.", path)
    return ""


def build_system_prompt(playbook: str = "") -> str:
    sections = [SYSTEM_PROMPT_PREAMBLE.strip()]
    if playbook:
        sections.append("=== Playbook (authoritative) ===\n\n" + playbook)
    sections.append("=== Output rule ===\n\n" + OUTPUT_RULE)
    return "\n\n".join(sections) + "\n"


def _block(title: str, body: str) -> str:
    return f"{title}:\n{body.strip()}\n"


def build_scout_prompt(task: str, analysis_path: str) -> str:
    lines = [
        "You are a SCOUT preparing context for a code review.",
        "",
        _block("Task / PR context", task),
        "Goals:",
        "- Identify the base branch and the merge base of this change.",
        "- Summarize every changed file: intent, risky areas, and touched invariants.",
        f"- Write the analysis to {analysis_path}. Do not modify any other file.",
    ]
    return "\n".join(lines) + "\n"


def build_issue_finder_prompt(task: str, analysis_path: str = "") -> str:
    lines = [
        "You are running review_code on a change set.",
        "",
        _block("Task", task),
        "Instructions:",
        "- Review the code changes against the base branch (git merge-base HEAD BASE_BRANCH, then",
        "  git diff MERGE_BASE_SHA).",
        "- Report only blocking P0/P1 defects with file/line anchors and a concrete failure scenario.",
        "- Provide prioritized, actionable findings. If nothing blocks, say 'No P0/P1 issues found'.",
    ]
    if analysis_path:
        lines.append(f"- A change analysis is available at {analysis_path}; read it first.")
    return "\n".join(lines) + "\n"


def build_reviewer_prompt(task: str, issue_text: str, analysis_path: str = "") -> str:
    lines = [
        "ROLE: REVIEWER",
        "Simulate a group of senior programmers reviewing this code change.",
        "",
        _block("Task / PR context", task),
        _block("Issue under review", issue_text),
        "Your job:",
        "- Analyze the code logic for correctness along the real code paths.",
        "- Check edge cases and error handling regressions.",
        "- Understand the architectural intent (Chesterton's Fence) before calling something a bug.",
        "- This is static logic analysis. Do NOT claim you ran tests or executed anything.",
        "",
        "Evidence standards: actual code paths, concrete inputs/outputs, history that proves intent.",
        "Not evidence: fabricated mocks, 'should' statements, gut feelings.",
    ]
    if analysis_path:
        lines.append(f"Change analysis: {analysis_path}")
    lines += [
        "",
        "Response format (first line):",
        VERDICT_FORMAT,
        "Then: Issue Location, Problem Summary, Root Cause, Impact, Suggested Fix (or the evidence for REJECTED).",
    ]
    return "\n".join(lines) + "\n"


def build_verifier_prompt(task: str, issue_text: str, analysis_path: str = "") -> str:
    lines = [
        "ROLE: VERIFIER",
        "Simulate an adversarial QA engineer who reproduces issues by running code.",
        "",
        _block("Task / PR context", task),
        _block("Issue under review", issue_text),
        "Your job:",
        "- You MUST actually run code: write and run a minimal failing test or command sequence.",
        "- Trace actual execution and capture real error messages or stack traces.",
        "- Do NOT fabricate output. If you could not reproduce it, say so.",
    ]
    if analysis_path:
        lines.append(f"Change analysis: {analysis_path}")
    lines += [
        "",
        "Response format (first line):",
        "# VERDICT: CONFIRMED (with test evidence) | REJECTED (could not reproduce)",
        "Then include the key command or code snippet you ran and the observed output.",
    ]
    return "\n".join(lines) + "\n"


def build_exchange_prompt(
    role: str,
    round_number: int,
    task: str,
    issue_text: str,
    self_opinion: str,
    peer_opinion: str,
    analysis_path: str = "",
) -> str:
    is_reviewer = role == "reviewer"
    lines = [
        f"ROLE: {role.upper()}",
        f"Round {round_number}: Exchange Opinions.",
        "Your peer reached a different verdict. Challenge their findings and reconcile the difference.",
        "",
        _block("Task / PR context", task),
        _block("Issue under review", issue_text),
        "YOUR PREVIOUS OPINION:\n<<<SELF_OPINION>>>\n" + self_opinion.strip() + "\n<<<END_SELF_OPINION>>>",
        "",
        "PEER'S OPINION:\n<<<PEER_OPINION>>>\n" + peer_opinion.strip() + "\n<<<END_PEER_OPINION>>>",
        "",
        "Instructions:",
    ]
    if is_reviewer:
        lines += [
            "- Stay with logic analysis of the real code paths.",
            "- Do NOT claim you ran tests; weigh the peer's execution evidence on its merits.",
        ]
    else:
        lines += [
            "- run code to settle the disagreement; real execution evidence beats argument.",
            "- Do NOT fabricate output.",
        ]
    lines += [
        "- If the evidence stays inconclusive, prefer REJECTED: when in doubt, do not report.",
    ]
    if analysis_path:
        lines.append(f"Change analysis: {analysis_path}")
    lines += [
        "",
        "Response format (first line):",
        VERDICT_FORMAT,
        "Then: Response to Peer, Final Reasoning.",
    ]
    return "\n".join(lines) + "\n"


def build_has_real_issue_prompt(report_text: str) -> str:
    return (
        "Decide whether the following code review report describes at least one real, blocking "
        "P0/P1 defect. Reports that only say no issues were found, list style nits, or speculate "
        "without a concrete failure do not count.\n\n"
        "Report:\n<<<REPORT>>>\n" + report_text.strip() + "\n<<<END_REPORT>>>\n\n"
        'Reply ONLY with JSON: {"has_issue": true} or {"has_issue": false}.\n'
    )


def build_issue_parser_prompt(report_text: str) -> str:
    return (
        "Split the following code review report into its distinct P0/P1 issues. Each issue text "
        "must be self-contained: location, problem, impact and any reproduction hints.\n\n"
        "Report:\n<<<REPORT>>>\n" + report_text.strip() + "\n<<<END_REPORT>>>\n\n"
        'Reply ONLY with JSON: {"issues": [{"text": "...", "priority": "P0"}]}.\n'
    )


def build_summary_report_prompt(task: str, report_path: str, issue_lines: List[str], summary: str) -> str:
    body = "\n".join(issue_lines) if issue_lines else "(no issues)"
    return (
        "Write a concise review summary in Markdown.\n\n"
        + _block("Task", task)
        + _block("Outcome", summary)
        + _block("Issues", body)
        + f"\nWrite the summary to {report_path}. Do not modify any other file. "
        "Report only the confirmed issues as findings; list unresolved ones separately as not posted.\n"
    )

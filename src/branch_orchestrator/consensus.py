"""Reviewer/verifier consensus protocol for one suspected defect."""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from .models import IssueReport, IssueStatus, Transcript, Verdict, VerdictDecision, VerificationRound
from .prompts import build_exchange_prompt, build_reviewer_prompt, build_verifier_prompt
from .stats import ReviewStatistics

logger = logging.getLogger(__name__)

MAX_ROUNDS = 3
VERDICT_SCAN_LINES = 10
ROLE_AGENT = "codex"
REVIEWER = "reviewer"
VERIFIER = "verifier"
MISSING_VERDICT_REASON = "missing explicit transcript verdict marker"

_MARKER_RE = re.compile(r"^[#*\s]*verdict[*\s]*:[*\s]*(?P<body>.*?)[*\s]*$", re.IGNORECASE)
_BRACKETED_RE = re.compile(r"^\[\s*(?P<word>confirmed|rejected)\s*\]", re.IGNORECASE)

# execute(agent, prompt, parent_branch_id) -> execute_agent result data
AgentExecutor = Callable[[str, str, str], Dict[str, Any]]


def _is_template_line(body: str) -> bool:
    upper = body.upper()
    return "|" in upper and "CONFIRMED" in upper and "REJECTED" in upper


def _qualified(body: str, canonical: str) -> bool:
    """Accept VERDICT bodies like `CONFIRMED`, `CONFIRMED (with tests)` or `REJECTED - reason`."""
    if not body.upper().startswith(canonical):
        return False
    remainder = body[len(canonical) :].strip()
    if not remainder:
        return True
    if remainder[0] == "(":
        return remainder.endswith(")") and bool(remainder[1:-1].strip())
    if remainder[0] in "-:":
        return bool(remainder[1:].strip())
    return False


def extract_transcript_verdict(text: str, scan_lines: int = VERDICT_SCAN_LINES) -> Optional[VerdictDecision]:
    """Find an explicit VERDICT marker in the first non-quoted lines of a transcript."""
    scanned = 0
    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if not line or line.startswith(">"):
            continue
        scanned += 1
        if scanned > scan_lines:
            break
        match = _MARKER_RE.match(line)
        if not match:
            continue
        body = _BRACKETED_RE.sub(lambda m: m.group("word"), match.group("body").strip())
        if _is_template_line(body):
            continue
        for verdict in (Verdict.CONFIRMED, Verdict.REJECTED):
            if _qualified(body, verdict.value.upper()):
                return VerdictDecision(verdict, f"explicit verdict marker: {line}")
        logger.debug("Ignoring unrecognized verdict marker: %s", line)
    return None


def determine_verdict(text: str) -> VerdictDecision:
    """Explicit marker or a conservative rejection; never inferred."""
    decision = extract_transcript_verdict(text)
    if decision is not None:
        return decision
    return VerdictDecision(Verdict.REJECTED, MISSING_VERDICT_REASON, explicit=False)


def _verdict_name(transcript: Transcript) -> str:
    return transcript.verdict.value if transcript.verdict else "unknown"


class ConsensusEngine:
    """Runs up to three reviewer/verifier rounds for one issue.

    Round 1 runs both roles in parallel from the same branch. Later rounds are
    exchanges: the reviewer answers the verifier's last opinion, then the
    verifier answers the reviewer's new one, each continuing from its own
    previous branch.
    """

    def __init__(
        self,
        execute: AgentExecutor,
        *,
        task: str,
        analysis_path: str = "",
        statistics: Optional[ReviewStatistics] = None,
        max_rounds: int = MAX_ROUNDS,
    ) -> None:
        self._execute = execute
        self._task = task
        self._analysis_path = analysis_path
        self._statistics = statistics or ReviewStatistics()
        self._max_rounds = max_rounds

    def confirm_issue(self, issue_text: str, start_branch_id: str) -> IssueReport:
        """Return the consensus report; raises only if the round-1 reviewer fails."""
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="round1") as pool:
            reviewer_future = pool.submit(
                self._run_role,
                REVIEWER,
                1,
                build_reviewer_prompt(self._task, issue_text, self._analysis_path),
                start_branch_id,
            )
            verifier_future = pool.submit(
                self._run_role,
                VERIFIER,
                1,
                build_verifier_prompt(self._task, issue_text, self._analysis_path),
                start_branch_id,
            )
            reviewer = reviewer_future.result()
            try:
                verifier = verifier_future.result()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Verifier round 1 failed: %s. Continuing with reviewer result only.", exc)
                return IssueReport(
                    issue_text=issue_text,
                    status=IssueStatus.UNRESOLVED,
                    rounds=[VerificationRound(1, reviewer)],
                    exchange_rounds=0,
                    explanation=f"Round 1: reviewer {_verdict_name(reviewer)} but verifier failed: {exc}",
                )

        rounds: List[VerificationRound] = [VerificationRound(1, reviewer, verifier)]
        exchange_rounds = 0
        for round_number in range(1, self._max_rounds + 1):
            if round_number > 1:
                exchange_rounds = round_number - 1
                reviewer = self._exchange(REVIEWER, round_number, issue_text, reviewer, verifier)
                verifier = self._exchange(VERIFIER, round_number, issue_text, verifier, reviewer)
                rounds.append(VerificationRound(round_number, reviewer, verifier))

            if reviewer.verdict == verifier.verdict:
                return self._agreement(issue_text, rounds, exchange_rounds, round_number, reviewer, verifier)
            logger.info(
                "Round %s: reviewer %s, verifier %s - inconsistent",
                round_number,
                _verdict_name(reviewer),
                _verdict_name(verifier),
            )

        return IssueReport(
            issue_text=issue_text,
            status=IssueStatus.UNRESOLVED,
            rounds=rounds,
            exchange_rounds=exchange_rounds,
            explanation=(
                f"After {self._max_rounds} rounds: reviewer {_verdict_name(reviewer)} and verifier "
                f"{_verdict_name(verifier)} - still inconsistent; when in doubt, do not report"
            ),
        )

    def _agreement(
        self,
        issue_text: str,
        rounds: List[VerificationRound],
        exchange_rounds: int,
        round_number: int,
        reviewer: Transcript,
        verifier: Transcript,
    ) -> IssueReport:
        confirmed = reviewer.verdict is Verdict.CONFIRMED
        return IssueReport(
            issue_text=issue_text,
            status=IssueStatus.CONFIRMED if confirmed else IssueStatus.UNRESOLVED,
            rounds=rounds,
            exchange_rounds=exchange_rounds,
            explanation=(
                f"Round {round_number}: reviewer {_verdict_name(reviewer)} and verifier "
                f"{_verdict_name(verifier)} - consistent"
            ),
            final_verdict=Verdict.CONFIRMED if confirmed else Verdict.REJECTED,
        )

    def _exchange(
        self,
        role: str,
        round_number: int,
        issue_text: str,
        previous: Transcript,
        peer: Transcript,
    ) -> Transcript:
        prompt = build_exchange_prompt(
            role,
            round_number,
            self._task,
            issue_text,
            previous.text,
            peer.peer_view(),
            self._analysis_path,
        )
        try:
            return self._run_role(role, round_number, prompt, previous.branch_id or "")
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s round %s failed: %s. Reusing round %s result.", role, round_number, exc, previous.round)
            return previous

    def _run_role(self, role: str, round_number: int, prompt: str, parent_branch_id: str) -> Transcript:
        step_name = f"{role}_round{round_number}"
        with self._statistics.step(step_name):
            try:
                data = self._execute(ROLE_AGENT, prompt, parent_branch_id)
            except Exception as exc:
                self._statistics.record_abnormal_step(step_name, f"Error: {exc}")
                raise
        text = str(data.get("response") or "").strip()
        decision = determine_verdict(text)
        if decision.explicit:
            logger.info("Parsed explicit verdict for %s (round %s): %s", role, round_number, decision.verdict.value)
        else:
            logger.warning("%s (round %s) gave no verdict marker; treating as rejected", role, round_number)
            self._statistics.record_abnormal_step(step_name, MISSING_VERDICT_REASON)
        branch_id = data.get("branch_id")
        return Transcript(
            agent=role,
            round=round_number,
            text=text,
            branch_id=branch_id if isinstance(branch_id, str) and branch_id else None,
            verdict=decision.verdict,
            verdict_reason=decision.reason,
        )

"""Data models used across the orchestrator and review workflow."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Instruction(str, Enum):
    """Control codes attached to tool failures."""

    FINISHED_WITH_ERROR = "FINISHED_WITH_ERROR"


class ReportStatus(str, Enum):
    """Terminal status of one orchestration run."""

    COMPLETED = "completed"
    ITERATION_LIMIT = "iteration_limit"
    FINISHED_WITH_ERROR = "finished_with_error"


class Verdict(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class IssueStatus(str, Enum):
    CONFIRMED = "confirmed"
    UNRESOLVED = "unresolved"


class ReviewStatus(str, Enum):
    CLEAN = "clean"
    ISSUES_FOUND = "issues_found"


@dataclass
class FunctionCall:
    name: str
    arguments: str = "{}"


@dataclass
class ToolCall:
    """A tool request emitted by the LLM, shaped like the OpenAI SDK object."""

    id: str
    function: FunctionCall
    type: str = "function"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }


@dataclass(frozen=True)
class ToolSuccess:
    data: Dict[str, Any]

    @property
    def finishes_workflow(self) -> bool:
        return False

    def to_payload(self) -> Dict[str, Any]:
        return {"status": "success", "data": self.data}


@dataclass(frozen=True)
class ToolFailure:
    message: str
    instruction: Optional[Instruction] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def finishes_workflow(self) -> bool:
        return self.instruction is Instruction.FINISHED_WITH_ERROR

    def to_payload(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"message": self.message.strip() or "tool execution error"}
        if self.instruction is not None:
            error["instruction"] = self.instruction.value
        if self.details:
            error["details"] = self.details
        return {"status": "error", "error": error}


ToolResult = Union[ToolSuccess, ToolFailure]


@dataclass(frozen=True)
class VerdictDecision:
    verdict: Verdict
    reason: str
    explicit: bool = True


@dataclass(frozen=True)
class Transcript:
    """One verification agent's output for one role and round."""

    agent: str
    round: int
    text: str
    branch_id: Optional[str] = None
    verdict: Optional[Verdict] = None
    verdict_reason: Optional[str] = None

    def peer_view(self) -> str:
        verdict = self.verdict.value.upper() if self.verdict else "UNKNOWN"
        return f"Verdict: {verdict}\nReason: {self.verdict_reason or ''}\nAnalysis:\n{self.text}"

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["verdict"] = self.verdict.value if self.verdict else None
        return {k: v for k, v in payload.items() if v is not None}


@dataclass(frozen=True)
class VerificationRound:
    round: int
    reviewer: Transcript
    verifier: Optional[Transcript] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"round": self.round, "reviewer": self.reviewer.as_dict()}
        if self.verifier is not None:
            payload["verifier"] = self.verifier.as_dict()
        return payload


@dataclass(frozen=True)
class IssueReport:
    """Consensus outcome for one issue."""

    issue_text: str
    status: IssueStatus
    rounds: List[VerificationRound]
    exchange_rounds: int
    explanation: str
    final_verdict: Optional[Verdict] = None

    @property
    def dismissed(self) -> bool:
        """Both roles agreed the issue is not a defect."""
        return self.final_verdict is Verdict.REJECTED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "issue_text": self.issue_text,
            "status": self.status.value,
            "final_verdict": self.final_verdict.value if self.final_verdict else None,
            "exchange_rounds": self.exchange_rounds,
            "explanation": self.explanation,
            "rounds": [r.as_dict() for r in self.rounds],
        }


@dataclass(frozen=True)
class ReviewerLog:
    branch_id: str
    report: str


@dataclass
class RunResult:
    """Externally visible outcome of one review run."""

    task: str
    status: ReviewStatus = ReviewStatus.CLEAN
    summary: str = ""
    reviewer_logs: List[ReviewerLog] = field(default_factory=list)
    issues: List[IssueReport] = field(default_factory=list)
    verification_errors: List[str] = field(default_factory=list)
    start_branch_id: Optional[str] = None
    latest_branch_id: Optional[str] = None
    summary_branch_id: Optional[str] = None
    statistics: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "task": self.task,
            "status": self.status.value,
            "summary": self.summary,
            "reviewer_logs": [asdict(log) for log in self.reviewer_logs],
            "issues": [issue.as_dict() for issue in self.issues],
        }
        optional = {
            "verification_errors": self.verification_errors,
            "start_branch_id": self.start_branch_id,
            "latest_branch_id": self.latest_branch_id,
            "summary_branch_id": self.summary_branch_id,
            "review_statistics": self.statistics,
        }
        payload.update({k: v for k, v in optional.items() if v})
        return payload

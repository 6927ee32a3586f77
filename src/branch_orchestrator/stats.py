"""Run-level statistics for the review workflow."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from .models import IssueReport


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class StepTiming:
    step_name: str
    start_time: str
    end_time: Optional[str] = None
    duration_seconds: Optional[float] = None


@dataclass
class AbnormalStep:
    step_name: str
    description: str
    timestamp: str
    issue: str = "Error or unusual behavior"


@dataclass
class IssueStatistic:
    issue_text: str
    reviewer_rounds: int
    verifier_rounds: int
    steps: int


class ReviewStatistics:
    """Step counters and timings, safe to record from parallel verification tasks."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._started = clock()
        self.total_steps = 0
        self.step_timings: List[StepTiming] = []
        self.abnormal_steps: List[AbnormalStep] = []
        self.issue_statistics: Dict[str, IssueStatistic] = {}
        self.total_duration_seconds: Optional[float] = None

    def record_step_start(self, step_name: str) -> None:
        with self._lock:
            self.total_steps += 1
            self.step_timings.append(StepTiming(step_name=step_name, start_time=_now()))

    def record_step_end(self, step_name: str, duration_seconds: float) -> None:
        with self._lock:
            # Close the most recent open timing with this name.
            for timing in reversed(self.step_timings):
                if timing.step_name == step_name and timing.end_time is None:
                    timing.end_time = _now()
                    timing.duration_seconds = round(duration_seconds, 3)
                    break

    def record_abnormal_step(self, step_name: str, description: str) -> None:
        with self._lock:
            self.abnormal_steps.append(AbnormalStep(step_name=step_name, description=description, timestamp=_now()))

    @contextmanager
    def step(self, step_name: str) -> Iterator[None]:
        """Time a block as one step; the end is recorded even if the block raises."""
        started = self._clock()
        self.record_step_start(step_name)
        try:
            yield
        finally:
            self.record_step_end(step_name, self._clock() - started)

    def finalize(self, issues: Iterable[IssueReport]) -> None:
        with self._lock:
            self.total_duration_seconds = round(self._clock() - self._started, 3)
            for issue in issues:
                reviewer_rounds = issue.exchange_rounds + 1
                verifier_ran = bool(issue.rounds) and issue.rounds[0].verifier is not None
                verifier_rounds = issue.exchange_rounds + 1 if verifier_ran else 0
                self.issue_statistics[issue.issue_text] = IssueStatistic(
                    issue_text=issue.issue_text,
                    reviewer_rounds=reviewer_rounds,
                    verifier_rounds=verifier_rounds,
                    steps=reviewer_rounds + verifier_rounds,
                )

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_steps": self.total_steps,
                "total_duration_seconds": self.total_duration_seconds,
                "step_timings": [asdict(t) for t in self.step_timings],
                "abnormal_steps": [asdict(s) for s in self.abnormal_steps],
                "issue_statistics": {k: asdict(v) for k, v in self.issue_statistics.items()},
            }

"""Domain models for the fix-and-review loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from code_rover.storage.common import to_iso


class ReviewSeverity(str, Enum):
    MUST_FIX = "must_fix"
    SHOULD_FIX = "should_fix"
    SUGGESTION = "suggestion"

    @classmethod
    def parse(cls, value: object) -> ReviewSeverity:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.SUGGESTION


ACTIONABLE_SEVERITIES = frozenset({ReviewSeverity.MUST_FIX, ReviewSeverity.SHOULD_FIX})


@dataclass(slots=True)
class ReviewItem:
    severity: ReviewSeverity
    description: str
    file: str | None = None

    @property
    def actionable(self) -> bool:
        return self.severity in ACTIONABLE_SEVERITIES

    def to_dict(self) -> dict[str, Any]:
        return {"severity": self.severity.value, "description": self.description, "file": self.file}


@dataclass(slots=True)
class ReviewAnalysis:
    """Classified review; a clean analysis never carries items."""

    is_clean: bool
    items: list[ReviewItem] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.is_clean and self.items:
            raise ValueError("A clean review analysis cannot carry items.")

    @property
    def actionable_items(self) -> list[ReviewItem]:
        return [item for item in self.items if item.actionable]

    @classmethod
    def merge(cls, analyses: list[ReviewAnalysis]) -> ReviewAnalysis:
        items = [item for analysis in analyses for item in analysis.items]
        return cls(is_clean=all(analysis.is_clean for analysis in analyses), items=items)


@dataclass(slots=True)
class DismissalVerification:
    all_verified: bool
    remaining_items: list[ReviewItem] = field(default_factory=list)


class ReviewPass(str, Enum):
    ARCHITECTURE = "architecture"
    BUG = "bug"
    PERFORMANCE = "performance"
    COMPLETENESS = "completeness"

    @property
    def label(self) -> str:
        return f"{self.value.capitalize()} Review"


@dataclass(slots=True)
class FullReview:
    """Raw text of every review pass that ran, in pass order."""

    passes: dict[ReviewPass, str]

    @property
    def combined(self) -> str:
        return "\n\n".join(f"## {review_pass.label}\n\n{text}" for review_pass, text in self.passes.items())


class FixStatus(str, Enum):
    SUCCESS = "success"
    ITERATION_LIMIT = "iteration_limit"
    ERROR = "error"
    ALREADY_FIXED = "already_fixed"


class FixPhase(str, Enum):
    PENDING = "pending"
    WORKTREE = "worktree"
    FIXING = "fixing"
    REVIEWING = "reviewing"
    ITERATING = "iterating"
    COMPLETE = "complete"
    ALREADY_FIXED = "already_fixed"
    ERROR = "error"


@dataclass(slots=True)
class FixProgress:
    issue_id: str
    phase: FixPhase
    iteration: int
    max_iterations: int
    message: str
    actionable_items: int | None = None


@dataclass(slots=True)
class FixResult:
    issue_id: str
    status: FixStatus
    worktree_path: str
    branch_name: str
    iterations: int
    duration_seconds: float
    error: str | None = None


@dataclass(slots=True)
class IssueContext:
    """Ticket text handed to the fix agent."""

    id: str
    content: str
    ticket_path: str

    @property
    def summary(self) -> str:
        """First meaningful line of the ticket, trimmed for display."""

        for line in self.content.splitlines():
            cleaned = line.strip().lstrip("#").strip()
            if not cleaned or cleaned.startswith("---"):
                continue
            return cleaned if len(cleaned) <= 100 else cleaned[:97] + "..."
        return "Fix issue"


@dataclass(slots=True)
class ReviewTrace:
    passes: dict[str, str]
    parsed_items: list[ReviewItem]
    actionable_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "passes": dict(self.passes),
            "parsed_items": [item.to_dict() for item in self.parsed_items],
            "actionable_count": self.actionable_count,
        }


@dataclass(slots=True)
class IterationTrace:
    iteration: int
    started_at: datetime
    completed_at: datetime | None = None
    session_id: str | None = None
    agent_output: str = ""
    exit_code: int | None = None
    already_fixed: bool = False
    review_not_applicable: bool = False
    review: ReviewTrace | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at) if self.completed_at else None,
            "session_id": self.session_id,
            "agent_output": self.agent_output,
            "exit_code": self.exit_code,
            "already_fixed": self.already_fixed,
            "review_not_applicable": self.review_not_applicable,
            "review": self.review.to_dict() if self.review else None,
        }


@dataclass(slots=True)
class FixTrace:
    """Audit trail of one fix session, persisted next to the fix state."""

    issue_id: str
    started_at: datetime
    iterations: list[IterationTrace] = field(default_factory=list)
    completed_at: datetime | None = None
    final_status: FixStatus = FixStatus.ERROR
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at) if self.completed_at else None,
            "iterations": [iteration.to_dict() for iteration in self.iterations],
            "final_status": self.final_status.value,
            "error": self.error,
        }


class BatchIssueStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


class BatchFixStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


@dataclass(slots=True)
class BatchIssueResult:
    issue_id: str
    status: BatchIssueStatus
    error: str | None = None


@dataclass(slots=True)
class BatchFixResult:
    """Several issues fixed on one branch, reviewed together."""

    branch_name: str
    worktree_path: str
    issue_results: list[BatchIssueResult]
    status: BatchFixStatus
    iterations: int
    duration_seconds: float
    error: str | None = None

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.issue_results if result.status == BatchIssueStatus.SUCCESS)

    @property
    def failed_count(self) -> int:
        return len(self.issue_results) - self.success_count

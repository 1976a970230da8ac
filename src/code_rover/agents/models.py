"""Domain models for scan agents and batch runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from code_rover.storage.run_state import AgentResultSummary


class IssueSeverity(str, Enum):
    """Severity of a detected issue; also the ticket folder name."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: object) -> IssueSeverity:
        """Lenient parse for agent output; unknown values become medium."""

        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.MEDIUM


class IssueStatus(str, Enum):
    """Lifecycle of a stored issue; ignored issues stay stored for deduplication."""

    OPEN = "open"
    WONT_FIX = "wont_fix"

    @classmethod
    def parse(cls, value: object) -> IssueStatus:
        try:
            return cls(str(value or cls.OPEN.value).strip().lower())
        except ValueError:
            return cls.OPEN


class BatchPhase(str, Enum):
    """Phase reported by pipeline progress callbacks."""

    SCANNING = "scanning"
    CHECKING = "checking"
    ARBITRATING = "arbitrating"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(slots=True)
class LineRange:
    start: int
    end: int

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


@dataclass(slots=True)
class CandidateIssue:
    """Issue proposed by a scanner, not yet checked."""

    id: str
    agent_id: str
    title: str
    description: str
    severity: IssueSeverity
    file_path: str
    category: str
    recommendation: str
    line_range: LineRange | None = None
    code_snippet: str | None = None

    @property
    def location(self) -> str:
        if self.line_range is None:
            return self.file_path
        return f"{self.file_path}:{self.line_range}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "file_path": self.file_path,
            "line_range": (
                {"start": self.line_range.start, "end": self.line_range.end}
                if self.line_range
                else None
            ),
            "category": self.category,
            "recommendation": self.recommendation,
            "code_snippet": self.code_snippet,
        }


@dataclass(slots=True)
class ApprovedIssue(CandidateIssue):
    """Checked issue with a ticket on disk."""

    approved_at: datetime | None = None
    ticket_path: str = ""
    ticket_id: str = ""
    status: IssueStatus = IssueStatus.OPEN

    @property
    def ignored(self) -> bool:
        return self.status == IssueStatus.WONT_FIX

    @classmethod
    def from_candidate(
        cls,
        issue: CandidateIssue,
        *,
        approved_at: datetime,
        ticket_path: str = "",
        ticket_id: str = "",
    ) -> ApprovedIssue:
        return cls(
            id=issue.id,
            agent_id=issue.agent_id,
            title=issue.title,
            description=issue.description,
            severity=issue.severity,
            file_path=issue.file_path,
            category=issue.category,
            recommendation=issue.recommendation,
            line_range=issue.line_range,
            code_snippet=issue.code_snippet,
            approved_at=approved_at,
            ticket_path=ticket_path,
            ticket_id=ticket_id,
        )


@dataclass(slots=True)
class IssueSummary:
    """Short form of a stored issue, fed to scanners for deduplication."""

    id: str
    title: str
    file_path: str
    category: str


@dataclass(slots=True)
class AgentDefinition:
    """Registered scanning agent."""

    agent_id: str
    name: str
    description: str
    guidelines: str
    file_patterns: tuple[str, ...] = ()


@dataclass(slots=True)
class ScanResult:
    issues: list[CandidateIssue] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass(slots=True)
class CheckDecision:
    issue_id: str
    approve: bool
    reasoning: str = ""


@dataclass(slots=True)
class CheckerResult:
    approved_ids: list[str] = field(default_factory=list)
    rejected_ids: list[str] = field(default_factory=list)
    decisions: list[CheckDecision] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass(slots=True)
class ArbitratorResult:
    approved_issues: list[ApprovedIssue] = field(default_factory=list)
    rejected_issues: list[CandidateIssue] = field(default_factory=list)
    tickets_created: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AgentResult:
    """Outcome of one agent pipeline.

    A failed pipeline carries empty scan/check/arbitrate results and an
    `error`; it is otherwise shaped exactly like a success.
    """

    agent_id: str
    agent_name: str
    scan_result: ScanResult = field(default_factory=ScanResult)
    checker_result: CheckerResult = field(default_factory=CheckerResult)
    arbitrator_result: ArbitratorResult = field(default_factory=ArbitratorResult)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def summary(self) -> AgentResultSummary:
        return AgentResultSummary(
            candidate_issues=len(self.scan_result.issues),
            approved_issues=len(self.arbitrator_result.approved_issues),
            rejected_issues=len(self.arbitrator_result.rejected_issues),
            tickets_created=len(self.arbitrator_result.tickets_created),
        )


@dataclass(slots=True)
class BatchProgress:
    """Progress event emitted while a batch is running."""

    phase: BatchPhase
    agent_id: str
    agent_name: str
    completed_count: int
    total_agents: int
    message: str = ""
    issues_checked: int | None = None
    issues_to_check: int | None = None


@dataclass(frozen=True, slots=True)
class BatchTotals:
    """Associative fold of per-agent counts."""

    candidate_issues: int = 0
    approved_issues: int = 0
    rejected_issues: int = 0
    tickets: int = 0
    failed_agents: int = 0

    @classmethod
    def of(cls, result: AgentResult) -> BatchTotals:
        summary = result.summary()
        return cls(
            candidate_issues=summary.candidate_issues,
            approved_issues=summary.approved_issues,
            rejected_issues=summary.rejected_issues,
            tickets=summary.tickets_created,
            failed_agents=1 if result.failed else 0,
        )

    def __add__(self, other: BatchTotals) -> BatchTotals:
        return BatchTotals(
            candidate_issues=self.candidate_issues + other.candidate_issues,
            approved_issues=self.approved_issues + other.approved_issues,
            rejected_issues=self.rejected_issues + other.rejected_issues,
            tickets=self.tickets + other.tickets,
            failed_agents=self.failed_agents + other.failed_agents,
        )


@dataclass(slots=True)
class BatchRunResult:
    """Aggregated result of a batch run."""

    agent_results: list[AgentResult]
    total_candidate_issues: int
    total_approved_issues: int
    total_rejected_issues: int
    total_tickets: int
    total_duration_seconds: float
    failed_agents: int
    skipped_agents: int = 0

    @classmethod
    def from_results(
        cls,
        results: list[AgentResult],
        *,
        duration_seconds: float,
        skipped_agents: int = 0,
    ) -> BatchRunResult:
        totals = sum((BatchTotals.of(result) for result in results), BatchTotals())
        return cls(
            agent_results=results,
            total_candidate_issues=totals.candidate_issues,
            total_approved_issues=totals.approved_issues,
            total_rejected_issues=totals.rejected_issues,
            total_tickets=totals.tickets,
            total_duration_seconds=duration_seconds,
            failed_agents=totals.failed_agents,
            skipped_agents=skipped_agents,
        )

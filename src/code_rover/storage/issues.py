"""Approved-issue store and markdown tickets under `.rover/`."""

from __future__ import annotations

import json
import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from code_rover.agents.models import ApprovedIssue, IssueSeverity, IssueStatus, IssueSummary, LineRange
from code_rover.config import rover_dir
from code_rover.storage.common import from_iso, load_json, to_iso, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

STORE_VERSION = "1.0.0"
ISSUES_FILE = "issues.json"
TICKETS_DIR = "tickets"
SEVERITY_FOLDERS = (
    IssueSeverity.CRITICAL,
    IssueSeverity.HIGH,
    IssueSeverity.MEDIUM,
    IssueSeverity.LOW,
)

_TICKET_ID_RE = re.compile(r"^ISSUE-(\d+)$", re.IGNORECASE)
_TICKET_FILE_RE = re.compile(r"^ISSUE-(\d+)\.md$")


def parse_ticket_number(ticket_id: str) -> int | None:
    match = _TICKET_ID_RE.match(ticket_id.strip())
    if match is None:
        return None
    return int(match.group(1))


def format_ticket_id(number: int) -> str:
    return f"ISSUE-{number:03d}"


def normalize_ticket_id(ticket_id: str) -> str | None:
    """`issue-7` -> `ISSUE-007`; None for anything that is not a ticket id."""

    number = parse_ticket_number(ticket_id)
    return format_ticket_id(number) if number is not None else None


@dataclass(slots=True)
class RemoveIssuesResult:
    removed: list[str] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class IgnoreIssuesResult:
    ignored: list[str] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class IssueStats:
    total_issues: int
    ignored_issues: int
    by_category: dict[str, int]
    by_severity: dict[str, int]
    last_scan_at: str | None


class FileIssueStore:
    """JSON issue store plus one markdown ticket per approved issue.

    Ticket numbering and store writes happen under one lock so concurrent
    pipelines never hand out the same ticket number.
    """

    def __init__(self, target_path: Path) -> None:
        self.target_path = target_path
        self.issues_path = rover_dir(target_path) / ISSUES_FILE
        self.tickets_dir = rover_dir(target_path) / TICKETS_DIR
        self._lock = threading.RLock()

    def load(self) -> list[ApprovedIssue]:
        return self._load_document()[0]

    def list_issues(self, *, include_ignored: bool = False) -> list[ApprovedIssue]:
        """Stored issues; `wont_fix` ones only when asked for."""

        return [issue for issue in self.load() if include_ignored or not issue.ignored]

    def existing_summaries(self) -> list[IssueSummary]:
        return [
            IssueSummary(
                id=issue.id,
                title=issue.title,
                file_path=issue.file_path,
                category=issue.category,
            )
            for issue in self.load()
        ]

    def summarize_existing(self) -> str:
        """Plain-text list of stored issues for scanner prompts."""

        issues = self.load()
        if not issues:
            return "No existing issues detected yet."
        lines = [f'- [{issue.category}] "{issue.title}" in {issue.location}' for issue in issues]
        return f"Previously detected issues ({len(issues)} total):\n" + "\n".join(lines)

    def record_approved(self, issues: list[ApprovedIssue]) -> list[ApprovedIssue]:
        """Write a ticket per issue, persist them, return issues with ticket references."""

        if not issues:
            return []
        with self._lock:
            ticketed = self.create_tickets(issues)
            self.add_approved_issues(ticketed)
        return ticketed

    def create_tickets(self, issues: list[ApprovedIssue]) -> list[ApprovedIssue]:
        with self._lock:
            next_number = self._next_ticket_number()
            ticketed: list[ApprovedIssue] = []
            for offset, issue in enumerate(issues):
                ticket_id = format_ticket_id(next_number + offset)
                folder = self.tickets_dir / issue.severity.value
                folder.mkdir(parents=True, exist_ok=True)
                path = folder / f"{ticket_id}.md"
                issue.ticket_id = ticket_id
                issue.ticket_path = str(path)
                path.write_text(render_ticket(issue), "utf-8")
                ticketed.append(issue)
            return ticketed

    def add_approved_issues(self, issues: list[ApprovedIssue]) -> None:
        with self._lock:
            stored, _ = self._load_document()
            existing = {issue.id for issue in stored}
            stored.extend(issue for issue in issues if issue.id not in existing)
            self._save(stored)

    def ticket_path(self, ticket_id: str) -> Path | None:
        normalized = normalize_ticket_id(ticket_id)
        if normalized is None:
            return None
        for severity in SEVERITY_FOLDERS:
            path = self.tickets_dir / severity.value / f"{normalized}.md"
            if path.exists():
                return path
        return None

    def ticket_exists(self, ticket_id: str) -> bool:
        return self.ticket_path(ticket_id) is not None

    def load_ticket(self, ticket_id: str) -> ApprovedIssue | None:
        """Stored issue behind a live ticket; None once the ticket is gone."""

        normalized = normalize_ticket_id(ticket_id)
        if normalized is None or not self.ticket_exists(normalized):
            return None
        for issue in self.load():
            if _issue_ticket_id(issue) == normalized:
                return issue
        return None

    def remove_issues(self, ticket_ids: list[str]) -> RemoveIssuesResult:
        """Drop issues from the store and delete their ticket files."""

        result = RemoveIssuesResult()
        with self._lock:
            stored, _ = self._load_document()
            for ticket_id in ticket_ids:
                normalized = normalize_ticket_id(ticket_id)
                if normalized is None:
                    result.errors[ticket_id] = f"Invalid ticket ID format: {ticket_id}"
                    continue
                match = next(
                    (issue for issue in stored if _issue_ticket_id(issue) == normalized),
                    None,
                )
                if match is None:
                    result.not_found.append(ticket_id)
                    continue
                stored.remove(match)
                path = self.ticket_path(normalized)
                if path is not None:
                    path.unlink(missing_ok=True)
                result.removed.append(ticket_id)
            self._save(stored)
        return result

    def ignore_issues(self, ticket_ids: list[str]) -> IgnoreIssuesResult:
        """Mark issues `wont_fix`: hidden from listings, still known to scanners."""

        result = IgnoreIssuesResult()
        with self._lock:
            stored, _ = self._load_document()
            for ticket_id in ticket_ids:
                normalized = normalize_ticket_id(ticket_id)
                if normalized is None:
                    result.errors[ticket_id] = f"Invalid ticket ID format: {ticket_id}"
                    continue
                match = next(
                    (issue for issue in stored if _issue_ticket_id(issue) == normalized),
                    None,
                )
                if match is None:
                    result.not_found.append(ticket_id)
                    continue
                match.status = IssueStatus.WONT_FIX
                result.ignored.append(normalized)
            if result.ignored:
                self._save(stored)
        logger.info("Ignored issues: %s", result.ignored)
        return result

    def stats(self) -> IssueStats:
        """Counts over active issues; ignored ones are only counted."""

        stored, last_scan_at = self._load_document()
        issues = [issue for issue in stored if not issue.ignored]
        return IssueStats(
            total_issues=len(issues),
            ignored_issues=len(stored) - len(issues),
            by_category=dict(Counter(issue.category for issue in issues)),
            by_severity=dict(Counter(issue.severity.value for issue in issues)),
            last_scan_at=last_scan_at if stored else None,
        )

    def _next_ticket_number(self) -> int:
        numbers: list[int] = []
        for severity in SEVERITY_FOLDERS:
            folder = self.tickets_dir / severity.value
            if not folder.is_dir():
                continue
            for entry in folder.iterdir():
                match = _TICKET_FILE_RE.match(entry.name)
                if match:
                    numbers.append(int(match.group(1)))
        return max(numbers) + 1 if numbers else 1

    def _load_document(self) -> tuple[list[ApprovedIssue], str | None]:
        if not self.issues_path.exists():
            return [], None
        try:
            payload = load_json(self.issues_path)
            issues = [issue_from_dict(item) for item in payload.get("issues", [])]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
            logger.warning("Failed to parse %s, starting with empty store: %s", self.issues_path, error)
            return [], None
        return issues, payload.get("last_scan_at")

    def _save(self, issues: list[ApprovedIssue]) -> None:
        write_json_atomic(
            self.issues_path,
            {
                "version": STORE_VERSION,
                "issues": [issue_to_dict(issue) for issue in issues],
                "last_scan_at": to_iso(utc_now()),
            },
        )


def issue_to_dict(issue: ApprovedIssue) -> dict[str, Any]:
    payload = issue.to_dict()
    payload["approved_at"] = to_iso(issue.approved_at) if issue.approved_at else None
    payload["ticket_path"] = issue.ticket_path
    payload["ticket_id"] = issue.ticket_id
    payload["status"] = issue.status.value
    return payload


def issue_from_dict(payload: dict[str, Any]) -> ApprovedIssue:
    line_range = payload.get("line_range")
    approved_at = payload.get("approved_at")
    return ApprovedIssue(
        id=str(payload["id"]),
        agent_id=str(payload.get("agent_id", "")),
        title=str(payload.get("title", "")),
        description=str(payload.get("description", "")),
        severity=IssueSeverity.parse(payload.get("severity")),
        file_path=str(payload.get("file_path", "")),
        category=str(payload.get("category", "General")),
        recommendation=str(payload.get("recommendation", "")),
        line_range=(
            LineRange(start=int(line_range["start"]), end=int(line_range["end"]))
            if isinstance(line_range, dict)
            else None
        ),
        code_snippet=payload.get("code_snippet"),
        approved_at=from_iso(approved_at) if approved_at else None,
        ticket_path=str(payload.get("ticket_path", "")),
        ticket_id=str(payload.get("ticket_id", "")),
        status=IssueStatus.parse(payload.get("status")),
    )


def render_ticket(issue: ApprovedIssue) -> str:
    lines = [
        f"# {issue.ticket_id}: {issue.title}",
        "",
        f"**Severity**: {issue.severity.value.capitalize()}",
        f"**Category**: {issue.category}",
        f"**Detected by**: {issue.agent_id}",
        f"**File**: `{issue.location}`",
        "",
        "## Description",
        "",
        issue.description,
        "",
    ]
    if issue.code_snippet:
        lines.extend(["## Problematic Code", "", "```", issue.code_snippet, "```", ""])
    lines.extend(["## Recommendation", "", issue.recommendation, ""])
    if issue.approved_at is not None:
        lines.extend(["---", f"*Generated by code-rover on {issue.approved_at.date().isoformat()}*"])
    return "\n".join(lines) + "\n"


def _issue_ticket_id(issue: ApprovedIssue) -> str | None:
    if issue.ticket_id:
        return normalize_ticket_id(issue.ticket_id)
    match = re.search(r"ISSUE-\d+", issue.ticket_path)
    return match.group(0) if match else None

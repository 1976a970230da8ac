"""Arbitration stage: keep approved candidates and hand them to the issue store."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from code_rover.agents.models import ApprovedIssue, ArbitratorResult, CandidateIssue
from code_rover.storage.common import utc_now
from code_rover.storage.issues import FileIssueStore

logger = logging.getLogger(__name__)


def split_by_approval(
    candidates: list[CandidateIssue],
    approved_ids: Iterable[str],
    *,
    approved_at: datetime,
) -> tuple[list[ApprovedIssue], list[CandidateIssue]]:
    """Partition candidates by checker approval, preserving order."""

    approved_set = set(approved_ids)
    approved: list[ApprovedIssue] = []
    rejected: list[CandidateIssue] = []
    for issue in candidates:
        if issue.id in approved_set:
            approved.append(ApprovedIssue.from_candidate(issue, approved_at=approved_at))
        else:
            rejected.append(issue)
    return approved, rejected


class Arbitrator:
    def __init__(self, issue_store: FileIssueStore) -> None:
        self.issue_store = issue_store

    def arbitrate(self, candidates: list[CandidateIssue], approved_ids: Iterable[str]) -> ArbitratorResult:
        approved, rejected = split_by_approval(candidates, approved_ids, approved_at=utc_now())
        ticketed = self.issue_store.record_approved(approved)
        logger.info("Arbitration created %d tickets, rejected %d issues", len(ticketed), len(rejected))
        return ArbitratorResult(
            approved_issues=ticketed,
            rejected_issues=rejected,
            tickets_created=[issue.ticket_path for issue in ticketed],
        )

from __future__ import annotations

import threading
from pathlib import Path

import allure

from code_rover.agents.models import IssueStatus
from code_rover.storage.issues import FileIssueStore, normalize_ticket_id

pytestmark = [
    allure.epic("Batch Scan"),
    allure.feature("Issue and Ticket Store"),
]


def test_normalize_ticket_id() -> None:
    assert normalize_ticket_id("issue-7") == "ISSUE-007"
    assert normalize_ticket_id("ISSUE-123") == "ISSUE-123"
    assert normalize_ticket_id("BUG-1") is None


def test_record_approved_numbers_tickets_and_writes_markdown(target_repo: Path, make_issue) -> None:
    store = FileIssueStore(target_repo)

    ticketed = store.record_approved([make_issue("a"), make_issue("b", title="Second")])

    assert [issue.ticket_id for issue in ticketed] == ["ISSUE-001", "ISSUE-002"]
    ticket = Path(ticketed[1].ticket_path)
    assert ticket.parent.name == "high"
    assert ticket.read_text("utf-8").startswith("# ISSUE-002: Second")
    assert [issue.id for issue in store.load()] == ["a", "b"]


def test_numbering_continues_after_existing_tickets(seeded_store: FileIssueStore, make_issue) -> None:
    ticketed = seeded_store.record_approved([make_issue("c")])

    assert ticketed[0].ticket_id == "ISSUE-003"


def test_concurrent_recording_never_reuses_ticket_numbers(target_repo: Path, make_issue) -> None:
    store = FileIssueStore(target_repo)

    def _record(prefix: str) -> None:
        store.record_approved([make_issue(f"{prefix}-{index}") for index in range(5)])

    threads = [threading.Thread(target=_record, args=(f"agent{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    ticket_ids = [issue.ticket_id for issue in store.load()]
    assert len(ticket_ids) == 20
    assert len(set(ticket_ids)) == 20


def test_summarize_existing(target_repo: Path, seeded_store: FileIssueStore) -> None:
    assert FileIssueStore(target_repo / "empty").summarize_existing() == "No existing issues detected yet."

    summary = seeded_store.summarize_existing()

    assert summary.startswith("Previously detected issues (2 total):")
    assert '- [Logic] "Unchecked index" in app.py' in summary


def test_load_ticket_and_remove_issues(seeded_store: FileIssueStore) -> None:
    issue = seeded_store.load_ticket("issue-1")
    assert issue is not None
    assert issue.id == "logic-1"

    result = seeded_store.remove_issues(["ISSUE-001", "ISSUE-999", "nonsense"])

    assert result.removed == ["ISSUE-001"]
    assert result.not_found == ["ISSUE-999"]
    assert "nonsense" in result.errors
    assert not seeded_store.ticket_exists("ISSUE-001")
    assert seeded_store.ticket_exists("ISSUE-002")
    assert [issue.id for issue in seeded_store.load()] == ["logic-2"]


def test_corrupt_store_reads_as_empty(target_repo: Path) -> None:
    store = FileIssueStore(target_repo)
    store.issues_path.parent.mkdir(parents=True)
    store.issues_path.write_text("[1, 2", "utf-8")

    assert store.load() == []
    assert store.stats().total_issues == 0


def test_stats_counts_by_severity_and_category(seeded_store: FileIssueStore) -> None:
    stats = seeded_store.stats()

    assert stats.total_issues == 2
    assert stats.by_severity == {"high": 2}
    assert stats.by_category == {"Logic": 2}
    assert stats.last_scan_at is not None


def test_ignore_issues_hides_them_but_keeps_them_for_scanners(target_repo: Path, seeded_store: FileIssueStore) -> None:
    result = seeded_store.ignore_issues(["issue-1", "ISSUE-999", "nonsense"])

    assert result.ignored == ["ISSUE-001"]
    assert result.not_found == ["ISSUE-999"]
    assert "nonsense" in result.errors

    reloaded = FileIssueStore(target_repo)
    assert [issue.id for issue in reloaded.list_issues()] == ["logic-2"]
    assert [issue.id for issue in reloaded.list_issues(include_ignored=True)] == ["logic-1", "logic-2"]
    assert reloaded.load()[0].status == IssueStatus.WONT_FIX
    assert reloaded.ticket_exists("ISSUE-001")
    assert '"Missing key check" in app.py' in reloaded.summarize_existing()

    stats = reloaded.stats()
    assert stats.total_issues == 1
    assert stats.ignored_issues == 1


def test_ignore_unknown_issues_leaves_store_untouched(seeded_store: FileIssueStore) -> None:
    before = seeded_store.issues_path.read_text("utf-8")

    result = seeded_store.ignore_issues(["ISSUE-404"])

    assert result.ignored == []
    assert seeded_store.issues_path.read_text("utf-8") == before

"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from code_rover.agents.backend.base import AgentRunRequest, AgentRunResult
from code_rover.agents.models import ApprovedIssue, IssueSeverity
from code_rover.storage.issues import FileIssueStore

Reply = AgentRunResult | str | Exception
Responder = Callable[[AgentRunRequest], Reply]


class FakeInvoker:
    """In-process agent: records requests, answers through a responder."""

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.requests: list[AgentRunRequest] = []
        self._lock = threading.Lock()

    def invoke(self, request: AgentRunRequest) -> AgentRunResult:
        with self._lock:
            self.requests.append(request)
        reply = self.responder(request)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return AgentRunResult(result_text=reply, exit_code=0, session_id="fake-session")
        return reply

    def prompts_containing(self, marker: str) -> list[str]:
        return [request.prompt for request in self.requests if marker in request.prompt]


class FakeWorktrees:
    """Worktree manager double: plain directories, scripted diff."""

    def __init__(self, root: Path, diff: str = "diff --git a/app.py b/app.py\n+fixed\n") -> None:
        self.root = root
        self.diff_text = diff
        self.created: list[str] = []
        self.removed: list[Path] = []

    def create(self, base_branch_name: str) -> tuple[str, Path]:
        path = self.root / base_branch_name
        path.mkdir(parents=True, exist_ok=True)
        self.created.append(base_branch_name)
        return base_branch_name, path

    def remove(self, path: Path) -> None:
        self.removed.append(path)

    def diff(self, cwd: Path) -> str:
        return self.diff_text

    def changed_files(self, cwd: Path) -> list[str]:
        return ["app.py"] if self.diff_text.strip() else []


@pytest.fixture()
def make_invoker() -> Callable[[Responder], FakeInvoker]:
    return FakeInvoker


@pytest.fixture()
def target_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "app.py").write_text("def handler(data):\n    return data['user']\n", "utf-8")
    return repo


def _approved_issue(issue_id: str, *, title: str = "Missing key check", file_path: str = "app.py") -> ApprovedIssue:
    return ApprovedIssue(
        id=issue_id,
        agent_id="logic-detective",
        title=title,
        description="`data['user']` raises KeyError for anonymous requests.",
        severity=IssueSeverity.HIGH,
        file_path=file_path,
        category="Logic",
        recommendation="Use data.get('user') and handle None.",
        approved_at=datetime(2026, 1, 5, tzinfo=UTC),
    )


@pytest.fixture()
def seeded_store(target_repo: Path) -> FileIssueStore:
    """Issue store with two approved issues, ISSUE-001 and ISSUE-002."""

    store = FileIssueStore(target_repo)
    store.record_approved([_approved_issue("logic-1"), _approved_issue("logic-2", title="Unchecked index")])
    return store


@pytest.fixture()
def make_issue() -> Callable[..., ApprovedIssue]:
    return _approved_issue


@pytest.fixture()
def fake_worktrees(tmp_path: Path) -> FakeWorktrees:
    return FakeWorktrees(tmp_path / "worktrees")

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from code_rover.errors import GitCommandError
from code_rover.fix.worktree import GitWorktreeManager, copy_local_config

pytestmark = [
    allure.epic("Fix Loop"),
    allure.feature("Git Worktrees"),
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)  # noqa: S603, S607


@pytest.fixture()
def git_repo(target_repo: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(name, "Rover Test")
    for name in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(name, "rover@example.com")
    (target_repo / ".gitignore").write_text(".env*\n.rover/\n", "utf-8")
    (target_repo / ".env").write_text("TOKEN=local\n", "utf-8")
    (target_repo / ".env.example").write_text("TOKEN=\n", "utf-8")
    (target_repo / "pkg").mkdir()
    (target_repo / "pkg" / ".env.local").write_text("DEBUG=1\n", "utf-8")
    _git(target_repo, "init", "-q", "-b", "main")
    _git(target_repo, "add", ".")
    _git(target_repo, "commit", "-q", "-m", "initial")
    return target_repo


def test_create_allocates_unique_branches_and_copies_local_config(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)

    first_branch, first_path = manager.create("fix/ISSUE-001")
    second_branch, second_path = manager.create("fix/ISSUE-001")

    assert first_branch == "fix/ISSUE-001"
    assert second_branch == "fix/ISSUE-001-2"
    assert first_path == git_repo / ".rover" / "fix" / "ISSUE-001"
    assert (first_path / "app.py").exists()
    assert (first_path / ".env").read_text("utf-8") == "TOKEN=local\n"
    assert (first_path / "pkg" / ".env.local").exists()
    assert not (first_path / ".env.example").exists()
    assert manager.branch_exists(second_branch)
    assert second_path.is_dir()


def test_diff_and_changed_files_against_default_branch(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)
    _branch, path = manager.create("fix/ISSUE-002")

    assert manager.diff(path).strip() == ""
    assert manager.changed_files(path) == []

    (path / "app.py").write_text("def handler(data):\n    return data.get('user')\n", "utf-8")
    _git(path, "commit", "-q", "-am", "fix(ISSUE-002): handle missing user")

    assert manager.default_branch(path) == "main"
    assert "data.get('user')" in manager.diff(path)
    assert manager.changed_files(path) == ["app.py"]


def test_remove_deletes_worktree(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)
    _branch, path = manager.create("fix/ISSUE-003")

    manager.remove(path)

    assert not path.exists()


def test_git_failure_raises_command_error(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)

    with pytest.raises(GitCommandError, match="git rev-parse"):
        manager.git(["rev-parse", "--verify", "refs/heads/does-not-exist"])


def test_configured_default_branch_wins(git_repo: Path) -> None:
    assert GitWorktreeManager(git_repo, default_branch="develop").default_branch() == "develop"


def test_copy_local_config_skips_existing_and_ignored_dirs(tmp_path: Path) -> None:
    source = tmp_path / "src"
    target = tmp_path / "dst"
    (source / "node_modules" / "lib").mkdir(parents=True)
    (source / "node_modules" / "lib" / ".env").write_text("x", "utf-8")
    (source / ".mcp.json").write_text("{}", "utf-8")
    (source / ".env").write_text("NEW=1", "utf-8")
    target.mkdir()
    (target / ".env").write_text("OLD=1", "utf-8")

    copied = copy_local_config(source, target)

    assert copied == 1
    assert (target / ".mcp.json").exists()
    assert (target / ".env").read_text("utf-8") == "OLD=1"
    assert not (target / "node_modules").exists()

"""Git worktree helpers: one isolated checkout per fix session."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path

from code_rover.config import ROVER_DIR_NAME, rover_dir
from code_rover.errors import GitCommandError, RoverError

logger = logging.getLogger(__name__)

FALLBACK_DEFAULT_BRANCH = "main"
MAX_BRANCH_SUFFIX = 100

_SKIPPED_DIRS = frozenset({"node_modules", ".git", "dist", ROVER_DIR_NAME})
_LOCAL_CONFIG_FILES = frozenset({".mcp.json"})


class GitWorktreeManager:
    """Create, inspect and remove worktrees of one repository.

    Branch allocation and worktree creation share a lock so concurrent fix
    sessions never race for the same branch name or git's index lock.
    """

    def __init__(self, repo_path: Path, *, default_branch: str | None = None) -> None:
        self.repo_path = repo_path
        self._default_branch = default_branch
        self._lock = threading.Lock()

    def git(self, args: list[str], *, cwd: Path | None = None) -> str:
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", *args],  # noqa: S607
                cwd=cwd or self.repo_path,
                check=False,
                capture_output=True,
                text=True,
            )
        except OSError as error:
            raise GitCommandError(args, str(error)) from error
        if completed.returncode != 0:
            raise GitCommandError(args, completed.stderr or completed.stdout)
        return completed.stdout

    def branch_exists(self, branch_name: str) -> bool:
        try:
            self.git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"])
        except GitCommandError:
            return False
        return True

    def unique_branch_name(self, base_name: str) -> str:
        """`base_name`, or the first free `base_name-N` for N in 2..100."""

        if not self.branch_exists(base_name):
            return base_name
        for suffix in range(2, MAX_BRANCH_SUFFIX + 1):
            candidate = f"{base_name}-{suffix}"
            if not self.branch_exists(candidate):
                return candidate
        raise RoverError(f"No free branch name for {base_name} after {MAX_BRANCH_SUFFIX} attempts")

    def worktree_path(self, branch_name: str) -> Path:
        return rover_dir(self.repo_path) / branch_name

    def create(self, base_branch_name: str) -> tuple[str, Path]:
        """Allocate a free branch name and check it out in a new worktree."""

        with self._lock:
            branch_name = self.unique_branch_name(base_branch_name)
            path = self.worktree_path(branch_name)
            path.parent.mkdir(parents=True, exist_ok=True)
            self.git(["worktree", "add", str(path), "-b", branch_name])
        copied = copy_local_config(self.repo_path, path)
        logger.info("Created worktree %s on branch %s (%d local config files copied)", path, branch_name, copied)
        return branch_name, path

    def remove(self, path: Path) -> None:
        with self._lock:
            self.git(["worktree", "remove", str(path), "--force"])
        logger.info("Removed worktree %s", path)

    def default_branch(self, cwd: Path | None = None) -> str:
        if self._default_branch:
            return self._default_branch
        try:
            ref = self.git(["symbolic-ref", "refs/remotes/origin/HEAD"], cwd=cwd).strip()
        except GitCommandError:
            return FALLBACK_DEFAULT_BRANCH
        return ref.rsplit("/", 1)[-1] or FALLBACK_DEFAULT_BRANCH

    def diff(self, cwd: Path) -> str:
        return self.git(["diff", f"{self.default_branch(cwd)}...HEAD"], cwd=cwd)

    def changed_files(self, cwd: Path) -> list[str]:
        output = self.git(["diff", "--name-only", f"{self.default_branch(cwd)}...HEAD"], cwd=cwd)
        return [line.strip() for line in output.splitlines() if line.strip()]


def copy_local_config(source_root: Path, target_root: Path) -> int:
    """Copy untracked local config (`.env*`, `.mcp.json`) into a fresh worktree."""

    copied = 0
    for directory, dirnames, filenames in os.walk(source_root):
        dirnames[:] = [name for name in dirnames if name not in _SKIPPED_DIRS]
        for filename in filenames:
            if not _is_local_config(filename):
                continue
            source = Path(directory) / filename
            target = target_root / source.relative_to(source_root)
            if target.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
            copied += 1
    return copied


def _is_local_config(filename: str) -> bool:
    if filename in _LOCAL_CONFIG_FILES:
        return True
    return filename.startswith(".env") and filename != ".env.example"

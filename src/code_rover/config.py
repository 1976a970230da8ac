"""Runtime configuration for scan and fix workflows."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

ROVER_DIR_NAME = ".rover"


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI invocation settings."""

    command: str = "claude"
    scan_model: str = "opus"
    review_model: str = "sonnet"
    fix_model: str | None = None
    timeout_seconds: int | None = None


@dataclass(slots=True)
class BatchSettings:
    """Batch scan scheduler settings."""

    concurrency: int = 4
    max_retries: int = 2
    retry_base_seconds: float = 1.0
    check_batch_size: int = 10
    stale_after_hours: int = 24


@dataclass(slots=True)
class FixSettings:
    """Fix session settings."""

    max_iterations: int = 10
    concurrency: int = 4
    max_retries: int = 2
    retry_base_seconds: float = 1.0


@dataclass(slots=True)
class ReviewSettings:
    """Reviewer settings."""

    prompt_dir: Path | None = None
    default_branch: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by workflow."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    fix: FixSettings = field(default_factory=FixSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suited to local runs."""

        prompt_dir = os.getenv("CODE_ROVER_REVIEW_PROMPT_DIR", "").strip()
        return cls(
            agent=AgentSettings(
                command=os.getenv("CODE_ROVER_AGENT_COMMAND", "claude"),
                scan_model=os.getenv("CODE_ROVER_SCAN_MODEL", "opus"),
                review_model=os.getenv("CODE_ROVER_REVIEW_MODEL", "sonnet"),
                fix_model=os.getenv("CODE_ROVER_FIX_MODEL") or None,
                timeout_seconds=_env_optional_int("CODE_ROVER_AGENT_TIMEOUT_SECONDS"),
            ),
            batch=BatchSettings(
                concurrency=int(os.getenv("CODE_ROVER_CONCURRENCY", "4")),
                max_retries=int(os.getenv("CODE_ROVER_MAX_RETRIES", "2")),
                retry_base_seconds=float(os.getenv("CODE_ROVER_RETRY_BASE_SECONDS", "1.0")),
                check_batch_size=int(os.getenv("CODE_ROVER_CHECK_BATCH_SIZE", "10")),
                stale_after_hours=int(os.getenv("CODE_ROVER_STALE_AFTER_HOURS", "24")),
            ),
            fix=FixSettings(
                max_iterations=int(os.getenv("CODE_ROVER_FIX_MAX_ITERATIONS", "10")),
                concurrency=int(os.getenv("CODE_ROVER_FIX_CONCURRENCY", "4")),
                max_retries=int(os.getenv("CODE_ROVER_FIX_MAX_RETRIES", "2")),
                retry_base_seconds=float(
                    os.getenv("CODE_ROVER_FIX_RETRY_BASE_SECONDS", "1.0"),
                ),
            ),
            review=ReviewSettings(
                prompt_dir=Path(prompt_dir) if prompt_dir else None,
                default_branch=os.getenv("CODE_ROVER_DEFAULT_BRANCH") or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the workflows cannot run with."""

        if not self.agent.command.strip():
            raise ValueError("CODE_ROVER_AGENT_COMMAND must not be empty.")
        if self.agent.timeout_seconds is not None and self.agent.timeout_seconds <= 0:
            raise ValueError("CODE_ROVER_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.batch.concurrency <= 0:
            raise ValueError("CODE_ROVER_CONCURRENCY must be a positive integer.")
        if self.batch.max_retries < 0:
            raise ValueError("CODE_ROVER_MAX_RETRIES must be >= 0.")
        if self.batch.retry_base_seconds < 0:
            raise ValueError("CODE_ROVER_RETRY_BASE_SECONDS must be >= 0.")
        if self.batch.check_batch_size <= 0:
            raise ValueError("CODE_ROVER_CHECK_BATCH_SIZE must be a positive integer.")
        if self.batch.stale_after_hours <= 0:
            raise ValueError("CODE_ROVER_STALE_AFTER_HOURS must be > 0.")
        if self.fix.max_iterations <= 0:
            raise ValueError("CODE_ROVER_FIX_MAX_ITERATIONS must be a positive integer.")
        if self.fix.concurrency <= 0:
            raise ValueError("CODE_ROVER_FIX_CONCURRENCY must be a positive integer.")
        if self.fix.max_retries < 0:
            raise ValueError("CODE_ROVER_FIX_MAX_RETRIES must be >= 0.")
        if self.review.prompt_dir is not None and not self.review.prompt_dir.is_dir():
            raise ValueError(
                f"CODE_ROVER_REVIEW_PROMPT_DIR is not a directory: {self.review.prompt_dir}",
            )


def rover_dir(target_path: Path) -> Path:
    """Directory holding run state, issues, tickets and fix state for a target."""

    return target_path / ROVER_DIR_NAME


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error

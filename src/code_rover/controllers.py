"""CLI controllers for scan, fix and status commands."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Generic, TypeVar

from code_rover.agents.arbitrator import Arbitrator
from code_rover.agents.backend.cli_backend import ClaudeCliBackend
from code_rover.agents.batch_runner import BatchRunner, record_state_changes
from code_rover.agents.checker import Checker
from code_rover.agents.definitions import AgentRegistry
from code_rover.agents.models import AgentResult, BatchProgress, BatchRunResult, IssueSeverity
from code_rover.agents.pipeline import AgentPipeline
from code_rover.agents.retry import RetryPolicy
from code_rover.agents.scanner import Scanner
from code_rover.config import Settings
from code_rover.errors import RoverError, TargetPathError
from code_rover.fix.models import BatchFixResult, FixProgress, FixResult
from code_rover.fix.reviewer import Reviewer
from code_rover.fix.session import FixSessionController
from code_rover.fix.worktree import GitWorktreeManager
from code_rover.storage.fix_state import FixStateStore
from code_rover.storage.issues import FileIssueStore
from code_rover.storage.memory import append_memory
from code_rover.storage.run_state import (
    BatchRunState,
    RunStateRecorder,
    RunStateStore,
    agents_to_run,
    completed_agent_ids,
    create_run_state,
    prepare_resume,
)

logger = logging.getLogger(__name__)

_SENTINEL = object()
_SEVERITY_RANK = {
    IssueSeverity.CRITICAL: 0,
    IssueSeverity.HIGH: 1,
    IssueSeverity.MEDIUM: 2,
    IssueSeverity.LOW: 3,
}
T = TypeVar("T")


@dataclass(slots=True)
class ScanCommand:
    """Input for scan CLI command."""

    target_path: Path
    agent_ids: tuple[str, ...] = ()
    concurrency: int | None = None
    resume: bool = True


@dataclass(slots=True)
class FixCommand:
    """Input for fix CLI command."""

    target_path: Path
    issue_ids: tuple[str, ...]
    max_iterations: int | None = None
    concurrency: int | None = None
    batch: bool = False


@dataclass(slots=True)
class StatusCommand:
    """Input for status CLI command."""

    target_path: Path


@dataclass(slots=True)
class IssuesCommand:
    """Input for issues CLI command."""

    target_path: Path
    include_ignored: bool = False


@dataclass(slots=True)
class IgnoreCommand:
    """Input for ignore CLI command."""

    target_path: Path
    issue_ids: tuple[str, ...]


@dataclass(slots=True)
class RememberCommand:
    """Input for remember CLI command."""

    target_path: Path
    entry: str


class _Outcome(Generic[T]):
    def __init__(self) -> None:
        self.value: T | None = None
        self.error: Exception | None = None


class CodeRoverCliController:
    """CLI controller for scan, fix and status operations."""

    def __init__(self, settings_factory: Callable[[], Settings] = Settings.from_env) -> None:
        self._settings_factory = settings_factory

    def settings(self) -> Settings:
        settings = self._settings_factory()
        settings.validate()
        return settings

    def list_agents(self) -> Iterator[str]:
        registry = AgentRegistry()
        for agent_id in registry.ids():
            agent = registry.get(agent_id)
            yield f"{agent.agent_id:<20} {agent.name}: {agent.description}"

    def scan(self, command: ScanCommand) -> Iterator[str]:
        """Run a batch scan, yielding real-time progress lines."""

        settings = self.settings()
        target_path = command.target_path.resolve()
        if not target_path.exists():
            raise TargetPathError(str(target_path))

        registry = AgentRegistry()
        concurrency = command.concurrency or settings.batch.concurrency
        store = RunStateStore.for_target(
            target_path,
            stale_after=timedelta(hours=settings.batch.stale_after_hours),
        )

        state, skip_ids, resume_lines = _select_run_state(
            store,
            command,
            target_path,
            concurrency,
            agent_ids=list(command.agent_ids) or registry.ids(),
            agent_name=registry.name_of,
        )
        yield from resume_lines
        recorder = RunStateRecorder(store, state)

        invoker = ClaudeCliBackend(settings.agent.command, timeout_seconds=settings.agent.timeout_seconds)
        issue_store = FileIssueStore(target_path)
        runner = BatchRunner(
            AgentPipeline(
                registry=registry,
                scanner=Scanner(invoker, model=settings.agent.scan_model),
                checker=Checker(
                    invoker,
                    model=settings.agent.scan_model,
                    batch_size=settings.batch.check_batch_size,
                ),
                arbitrator=Arbitrator(issue_store),
                issue_store=issue_store,
                retry_policy=RetryPolicy(
                    max_retries=settings.batch.max_retries,
                    base_seconds=settings.batch.retry_base_seconds,
                ),
            ),
        )

        yield (
            f"Scanning {target_path} with {len(state.requested_agent_ids) - len(skip_ids)} agents "
            f"(concurrency {concurrency}, run {state.run_id})"
        )

        def _work(emit: Callable[[str], None]) -> BatchRunResult:
            def _on_progress(progress: BatchProgress) -> None:
                emit(_format_batch_progress(progress))

            def _on_complete(result: AgentResult) -> None:
                emit(_format_agent_result(result))

            return runner.run(
                state.requested_agent_ids,
                target_path,
                concurrency,
                skip_agent_ids=skip_ids,
                on_progress=_on_progress,
                on_agent_complete=_on_complete,
                on_state_change=record_state_changes(recorder),
            )

        outcome: _Outcome[BatchRunResult] = _Outcome()
        yield from _stream_progress(_work, outcome)
        if outcome.error is not None:
            raise outcome.error
        if outcome.value is not None:
            yield from _format_batch_result(outcome.value)

    def fix(self, command: FixCommand) -> Iterator[str]:
        """Run fix sessions, yielding real-time progress lines."""

        settings = self.settings()
        target_path = command.target_path.resolve()
        if not target_path.exists():
            raise TargetPathError(str(target_path))
        max_iterations = command.max_iterations or settings.fix.max_iterations
        concurrency = command.concurrency or settings.fix.concurrency

        invoker = ClaudeCliBackend(settings.agent.command, timeout_seconds=settings.agent.timeout_seconds)
        worktrees = GitWorktreeManager(target_path, default_branch=settings.review.default_branch)
        controller = FixSessionController(
            invoker=invoker,
            reviewer=Reviewer(
                invoker,
                worktrees,
                model=settings.agent.review_model,
                prompt_dir=settings.review.prompt_dir,
            ),
            worktrees=worktrees,
            issue_store=FileIssueStore(target_path),
            fix_state=FixStateStore(target_path),
            max_iterations=max_iterations,
            retry_policy=RetryPolicy(
                max_retries=settings.fix.max_retries,
                base_seconds=settings.fix.retry_base_seconds,
            ),
            model=settings.agent.fix_model,
        )

        if command.batch:
            yield f"Fixing {len(command.issue_ids)} issues on one branch (max {max_iterations} iterations)"
            batch_outcome: _Outcome[BatchFixResult] = _Outcome()
            yield from _stream_progress(
                lambda emit: controller.fix_batch(
                    command.issue_ids,
                    lambda progress: emit(_format_fix_progress(progress)),
                ),
                batch_outcome,
            )
            if batch_outcome.error is not None:
                raise batch_outcome.error
            if batch_outcome.value is not None:
                yield from _format_batch_fix_result(batch_outcome.value)
            return

        yield (
            f"Fixing {len(command.issue_ids)} issues "
            f"(concurrency {concurrency}, max {max_iterations} iterations)"
        )
        outcome: _Outcome[list[FixResult]] = _Outcome()
        yield from _stream_progress(
            lambda emit: controller.run_fix(
                command.issue_ids,
                concurrency,
                lambda progress: emit(_format_fix_progress(progress)),
            ),
            outcome,
        )
        if outcome.error is not None:
            raise outcome.error
        for result in outcome.value or []:
            yield _format_fix_result(result)

    def status(self, command: StatusCommand) -> Iterator[str]:
        """Show the last batch run, issue counts and fix sessions of a target."""

        target_path = command.target_path.resolve()
        state = RunStateStore.for_target(target_path).load()
        if state is None:
            yield "No batch run recorded."
        else:
            yield from _format_run_state(state)

        stats = FileIssueStore(target_path).stats()
        ignored = f" ({stats.ignored_issues} ignored)" if stats.ignored_issues else ""
        yield f"Issues: {stats.total_issues}{ignored}"
        for severity, count in sorted(stats.by_severity.items()):
            yield f"  {severity}: {count}"

        records = FixStateStore(target_path).records()
        if not records:
            yield "No fix sessions recorded."
            return
        yield f"Fix sessions: {len(records)}"
        for record in records:
            line = f"  {record.issue_id} [{record.status.value}] {record.branch_name} iterations={record.iterations}"
            if record.error:
                line += f" error={record.error}"
            yield line

    def issues(self, command: IssuesCommand) -> Iterator[str]:
        """List stored issues with their ticket ids, most severe first."""

        store = FileIssueStore(command.target_path.resolve())
        issues = store.list_issues(include_ignored=command.include_ignored)
        if not issues:
            yield "No issues recorded. Run `code-rover scan` first."
            return
        for issue in sorted(issues, key=lambda item: _SEVERITY_RANK[item.severity]):
            ignored = " [ignored]" if issue.ignored else ""
            yield f"{issue.ticket_id or issue.id} [{issue.severity.value}] {issue.title}{ignored} ({issue.location})"
        hidden = store.stats().ignored_issues if not command.include_ignored else 0
        if hidden:
            yield f"{hidden} ignored issues hidden; use --all to show them."

    def ignore(self, command: IgnoreCommand) -> Iterator[str]:
        """Mark issues won't-fix so scanners keep skipping them."""

        result = FileIssueStore(command.target_path.resolve()).ignore_issues(list(command.issue_ids))
        if result.ignored:
            yield f"Ignored {len(result.ignored)} issues: {', '.join(result.ignored)}"
        if result.not_found:
            yield f"Not found: {', '.join(result.not_found)}"
        if result.errors:
            raise ValueError("; ".join(result.errors.values()))
        if not result.ignored:
            raise RoverError("No issues were ignored.")

    def remember(self, command: RememberCommand) -> Iterator[str]:
        """Add an entry to the memory every scanning agent is told to respect."""

        path = append_memory(command.target_path.resolve(), command.entry)
        yield f"Added to memory: {command.entry.strip()}"
        yield f"Location: {path}"


def _select_run_state(  # noqa: PLR0913
    store: RunStateStore,
    command: ScanCommand,
    target_path: Path,
    concurrency: int,
    *,
    agent_ids: list[str],
    agent_name: Callable[[str], str],
) -> tuple[BatchRunState, list[str], list[str]]:
    """Pick the run to execute: resume an unfinished one or start fresh."""

    lines: list[str] = []
    existing = store.load() if command.resume else None
    if existing is not None and existing.target_path != str(target_path):
        existing = None
    if existing is not None and not agents_to_run(existing):
        existing = None
    if existing is not None and existing.is_stale:
        lines.append(f"Previous run {existing.run_id} is stale; starting a fresh run.")
    elif existing is not None and set(existing.requested_agent_ids) != set(agent_ids):
        previous_ids = ", ".join(existing.requested_agent_ids)
        lines.append(
            f"Previous run {existing.run_id} covered different agents ({previous_ids}); starting a fresh run.",
        )
    elif existing is not None:
        resumed = prepare_resume(existing)
        skip_ids = completed_agent_ids(resumed)
        lines.append(
            f"Resuming run {resumed.run_id}: {len(skip_ids)} of "
            f"{len(resumed.requested_agent_ids)} agents already completed, "
            f"{len(agents_to_run(resumed))} to run.",
        )
        logger.info("Resuming run %s, skipping %s", resumed.run_id, skip_ids)
        return resumed, skip_ids, lines

    state = create_run_state(target_path, agent_ids, concurrency, agent_name=agent_name)
    return state, [], lines


def _stream_progress(work: Callable[[Callable[[str], None]], T], outcome: _Outcome[T]) -> Iterator[str]:
    """Run `work` on a background thread and yield the lines it emits."""

    progress_q: queue.Queue[str | object] = queue.Queue()

    def _run() -> None:
        try:
            outcome.value = work(progress_q.put)
        except Exception as exc:  # noqa: BLE001
            outcome.error = exc
        finally:
            progress_q.put(_SENTINEL)

    worker_thread = threading.Thread(target=_run, name="rover-cli", daemon=True)
    worker_thread.start()
    while True:
        item = progress_q.get()
        if item is _SENTINEL:
            break
        yield str(item)
    worker_thread.join()


def _format_batch_progress(progress: BatchProgress) -> str:
    counter = f"[{progress.completed_count}/{progress.total_agents}]"
    return f"{counter} {progress.agent_name} ({progress.phase.value}): {progress.message}"


def _format_agent_result(result: AgentResult) -> str:
    if result.failed:
        return f"✗ {result.agent_name} failed: {result.error}"
    summary = result.summary()
    return (
        f"✓ {result.agent_name}: {summary.candidate_issues} candidates, "
        f"{summary.approved_issues} approved, {summary.tickets_created} tickets"
    )


def _format_batch_result(result: BatchRunResult) -> Iterator[str]:
    yield ""
    yield "Batch scan complete"
    yield f"  Agents run:        {len(result.agent_results)}"
    if result.skipped_agents:
        yield f"  Agents skipped:    {result.skipped_agents}"
    yield f"  Failed agents:     {result.failed_agents}"
    yield f"  Candidate issues:  {result.total_candidate_issues}"
    yield f"  Approved issues:   {result.total_approved_issues}"
    yield f"  Rejected issues:   {result.total_rejected_issues}"
    yield f"  Tickets created:   {result.total_tickets}"
    yield f"  Duration:          {result.total_duration_seconds:.1f}s"


def _format_fix_progress(progress: FixProgress) -> str:
    return (
        f"{progress.issue_id} [{progress.phase.value} {progress.iteration}/{progress.max_iterations}] "
        f"{progress.message}"
    )


def _format_fix_result(result: FixResult) -> str:
    line = f"{result.issue_id}: {result.status.value} after {result.iterations} iterations"
    if result.branch_name:
        line += f" on {result.branch_name}"
    if result.worktree_path:
        line += f" ({result.worktree_path})"
    if result.error:
        line += f" - {result.error}"
    return line


def _format_batch_fix_result(result: BatchFixResult) -> Iterator[str]:
    yield f"Batch fix {result.status.value}: {result.success_count} fixed, {result.failed_count} not fixed"
    if result.branch_name:
        yield f"  Branch: {result.branch_name}"
    if result.worktree_path:
        yield f"  Worktree: {result.worktree_path}"
    for issue_result in result.issue_results:
        line = f"  {issue_result.issue_id}: {issue_result.status.value}"
        if issue_result.error:
            line += f" - {issue_result.error}"
        yield line
    if result.error:
        yield f"  Error: {result.error}"


def _format_run_state(state: BatchRunState) -> Iterator[str]:
    status = "complete" if not state.is_incomplete else "incomplete"
    stale = " (stale)" if state.is_stale else ""
    yield f"Run {state.run_id}: {status}{stale}, started {state.started_at.isoformat()}"
    for agent in state.agents:
        line = f"  {agent.agent_id:<20} {agent.status.value} attempts={agent.attempts}"
        if agent.error:
            line += f" error={agent.error}"
        yield line

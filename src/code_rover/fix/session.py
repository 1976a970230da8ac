"""Fix-and-review convergence loop, one worktree per issue."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from code_rover.agents.backend.base import AgentInvoker, AgentRunRequest, AgentRunResult
from code_rover.agents.retry import RetryPolicy, run_with_retry
from code_rover.agents.work_queue import run_work_queue
from code_rover.errors import IssueNotFoundError, RoverError
from code_rover.fix.models import (
    BatchFixResult,
    BatchFixStatus,
    BatchIssueResult,
    BatchIssueStatus,
    FixPhase,
    FixProgress,
    FixResult,
    FixStatus,
    FixTrace,
    IssueContext,
    IterationTrace,
    ReviewItem,
    ReviewTrace,
)
from code_rover.fix.prompts import (
    ALREADY_FIXED,
    BLOCKED,
    REVIEW_NOT_APPLICABLE,
    build_initial_fix_prompt,
    build_iteration_prompt,
    contains_marker,
    marker_reason,
)
from code_rover.fix.reviewer import Reviewer, has_actionable_items
from code_rover.fix.worktree import GitWorktreeManager
from code_rover.storage.common import utc_now
from code_rover.storage.fix_state import FixRecord, FixRecordStatus, FixStateStore
from code_rover.storage.issues import FileIssueStore, normalize_ticket_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
BATCH_BRANCH_PREFIX = "fix/batch-"

ProgressCallback = Callable[[FixProgress], None]


def _ignore_progress(_progress: FixProgress) -> None:
    return None


class FixSessionController:
    """Drive issues from a fresh worktree to a reviewed branch."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        invoker: AgentInvoker,
        reviewer: Reviewer,
        worktrees: GitWorktreeManager,
        issue_store: FileIssueStore,
        fix_state: FixStateStore,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        retry_policy: RetryPolicy | None = None,
        model: str | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if max_iterations <= 0:
            raise ValueError("max_iterations must be a positive integer.")
        self.invoker = invoker
        self.reviewer = reviewer
        self.worktrees = worktrees
        self.issue_store = issue_store
        self.fix_state = fix_state
        self.max_iterations = max_iterations
        self.retry_policy = retry_policy or RetryPolicy()
        self.model = model
        self._sleep = sleep or time.sleep

    def run_fix(
        self,
        issue_ids: Iterable[str],
        concurrency: int = 1,
        on_progress: ProgressCallback | None = None,
        on_result: Callable[[FixResult], None] | None = None,
    ) -> list[FixResult]:
        """Run independent fix sessions for many issues on the work queue."""

        requested = list(dict.fromkeys(issue_ids))
        logger.info("Fixing %d issues with concurrency %d", len(requested), concurrency)

        def _on_error(issue_id: str, error: Exception) -> FixResult:
            return _error_result(issue_id, str(error) or type(error).__name__)

        return run_work_queue(
            requested,
            concurrency=concurrency,
            handle=lambda issue_id: self.fix_issue(issue_id, on_progress),
            on_error=_on_error,
            on_result=on_result,
            thread_name="rover-fix",
        )

    def fix_issue(self, issue_id: str, on_progress: ProgressCallback | None = None) -> FixResult:
        """Run one fix session to a terminal status; never raises for per-issue failures."""

        report = on_progress or _ignore_progress
        started = time.monotonic()
        try:
            issue = self.load_issue(issue_id)
        except IssueNotFoundError as error:
            report(FixProgress(issue_id, FixPhase.ERROR, 0, self.max_iterations, str(error)))
            return _error_result(issue_id, str(error))

        if issue is None:
            normalized = normalize_ticket_id(issue_id) or issue_id
            self.issue_store.remove_issues([normalized])
            report(
                FixProgress(
                    normalized,
                    FixPhase.ALREADY_FIXED,
                    0,
                    self.max_iterations,
                    "Ticket no longer exists; treating issue as already fixed",
                ),
            )
            logger.info("Ticket for %s is gone, marking it already fixed", normalized)
            return FixResult(
                issue_id=normalized,
                status=FixStatus.ALREADY_FIXED,
                worktree_path="",
                branch_name="",
                iterations=0,
                duration_seconds=time.monotonic() - started,
            )

        return _FixSession(self, issue, report, started).run()

    def load_issue(self, issue_id: str) -> IssueContext | None:
        """Ticket content for a live issue; None when the ticket was already removed.

        Raises `IssueNotFoundError` for ids that are malformed or never existed.
        """

        normalized = normalize_ticket_id(issue_id)
        if normalized is None:
            raise IssueNotFoundError(f"Invalid ticket ID format: {issue_id}")
        ticket_path = self.issue_store.ticket_path(normalized)
        if ticket_path is None:
            known = any(
                normalize_ticket_id(issue.ticket_id or "") == normalized for issue in self.issue_store.load()
            )
            if not known:
                raise IssueNotFoundError(f"Issue not found: {normalized}")
            return None
        return IssueContext(id=normalized, content=ticket_path.read_text("utf-8"), ticket_path=str(ticket_path))

    def invoke_fix_agent(
        self,
        prompt: str,
        worktree_path: Path,
        session_id: str | None,
        on_progress: Callable[[str], None] | None = None,
    ) -> AgentRunResult:
        request = AgentRunRequest(
            prompt=prompt,
            cwd=worktree_path,
            model=self.model,
            session_id=session_id,
            on_progress=on_progress,
        )
        return run_with_retry(
            lambda: self.invoker.invoke(request),
            self.retry_policy,
            sleep=self._sleep,
        )

    def fix_batch(self, issue_ids: Iterable[str], on_progress: ProgressCallback | None = None) -> BatchFixResult:
        """Fix several issues one after another on a shared branch, then review them together."""

        return _BatchFixSession(self, list(dict.fromkeys(issue_ids)), on_progress or _ignore_progress).run()


class _FixSession:
    """State of one running fix session."""

    def __init__(
        self,
        controller: FixSessionController,
        issue: IssueContext,
        report: ProgressCallback,
        started: float,
    ) -> None:
        self.controller = controller
        self.issue = issue
        self.report_callback = report
        self.started = started
        self.max_iterations = controller.max_iterations
        self.trace = FixTrace(issue_id=issue.id, started_at=utc_now())
        self.branch_name = ""
        self.worktree_path: Path | None = None
        self.session_id: str | None = None
        self.iteration = 0

    def report(self, phase: FixPhase, message: str, actionable_items: int | None = None) -> None:
        self.report_callback(
            FixProgress(
                issue_id=self.issue.id,
                phase=phase,
                iteration=self.iteration,
                max_iterations=self.max_iterations,
                message=message,
                actionable_items=actionable_items,
            ),
        )

    def run(self) -> FixResult:
        controller = self.controller
        self.report(FixPhase.WORKTREE, "Creating worktree...")
        try:
            self.branch_name, self.worktree_path = controller.worktrees.create(f"fix/{self.issue.id}")
        except RoverError as error:
            return self.finish(FixStatus.ERROR, iterations=0, error=f"Failed to create worktree: {error}")

        controller.fix_state.upsert(
            FixRecord(
                issue_id=self.issue.id,
                branch_name=self.branch_name,
                worktree_path=str(self.worktree_path),
                status=FixRecordStatus.IN_PROGRESS,
                iterations=0,
                started_at=self.trace.started_at,
                issue_summary=self.issue.summary,
            ),
        )
        logger.info("Fix session for %s started on %s", self.issue.id, self.branch_name)
        return self.loop()

    def loop(self) -> FixResult:  # noqa: PLR0911
        controller = self.controller
        worktree_path = self.worktree_path
        assert worktree_path is not None
        pending_items: list[ReviewItem] = []

        for iteration in range(1, self.max_iterations + 1):
            self.iteration = iteration
            iteration_trace = IterationTrace(iteration=iteration, started_at=utc_now())
            self.trace.iterations.append(iteration_trace)
            if iteration == 1:
                prompt = build_initial_fix_prompt(self.issue.id, self.issue.content)
                self.report(FixPhase.FIXING, "Running fix agent...")
            else:
                prompt = build_iteration_prompt(self.issue.id, pending_items)
                self.report(
                    FixPhase.ITERATING,
                    f"Addressing {len(pending_items)} review items...",
                    actionable_items=len(pending_items),
                )

            try:
                answer = controller.invoke_fix_agent(
                    prompt,
                    worktree_path,
                    self.session_id,
                    lambda message: self.report(FixPhase.FIXING, message),
                )
            except Exception as error:  # noqa: BLE001
                iteration_trace.completed_at = utc_now()
                return self.finish(FixStatus.ERROR, iterations=iteration - 1, error=f"Fix agent failed: {error}")

            iteration_trace.session_id = answer.session_id or None
            iteration_trace.agent_output = answer.result_text
            iteration_trace.exit_code = answer.exit_code
            if answer.session_id:
                self.session_id = answer.session_id
            controller.fix_state.update(self.issue.id, iterations=iteration)

            if answer.exit_code != 0:
                iteration_trace.completed_at = utc_now()
                return self.finish(
                    FixStatus.ERROR,
                    iterations=iteration,
                    error=f"Fix agent exited with code {answer.exit_code}",
                )

            if iteration == 1 and contains_marker(answer, ALREADY_FIXED):
                iteration_trace.already_fixed = True
                iteration_trace.completed_at = utc_now()
                return self.already_fixed()

            if contains_marker(answer, BLOCKED):
                iteration_trace.completed_at = utc_now()
                return self.finish(
                    FixStatus.ERROR,
                    iterations=iteration,
                    error=f"Blocked: {marker_reason(answer.result_text, BLOCKED)}",
                )

            if iteration > 1 and contains_marker(answer, REVIEW_NOT_APPLICABLE):
                iteration_trace.review_not_applicable = True
                self.report(FixPhase.REVIEWING, "Verifying review dismissal...")
                verification = controller.reviewer.verify_dismissal(
                    pending_items,
                    marker_reason(answer.result_text, REVIEW_NOT_APPLICABLE),
                    worktree_path,
                )
                iteration_trace.completed_at = utc_now()
                if verification.all_verified:
                    return self.finish(FixStatus.SUCCESS, iterations=iteration)
                pending_items = verification.remaining_items
                continue

            self.report(FixPhase.REVIEWING, "Reviewing changes...")
            try:
                review = controller.reviewer.run_full_review(
                    worktree_path,
                    self.issue.content,
                    lambda message: self.report(FixPhase.REVIEWING, message),
                )
                analysis = controller.reviewer.analyze(review, worktree_path)
            except Exception as error:  # noqa: BLE001
                iteration_trace.completed_at = utc_now()
                return self.finish(FixStatus.ERROR, iterations=iteration, error=f"Review failed: {error}")

            actionable = analysis.actionable_items
            iteration_trace.review = ReviewTrace(
                passes={review_pass.value: text for review_pass, text in review.passes.items()},
                parsed_items=analysis.items,
                actionable_count=len(actionable),
            )
            iteration_trace.completed_at = utc_now()
            if not has_actionable_items(analysis):
                return self.finish(FixStatus.SUCCESS, iterations=iteration)
            logger.info("%s review iteration %d found %d actionable items", self.issue.id, iteration, len(actionable))
            pending_items = actionable

        return self.finish(FixStatus.ITERATION_LIMIT, iterations=self.max_iterations)

    def already_fixed(self) -> FixResult:
        controller = self.controller
        assert self.worktree_path is not None
        try:
            controller.worktrees.remove(self.worktree_path)
        except RoverError as error:
            logger.warning("Could not remove worktree %s: %s", self.worktree_path, error)
        controller.issue_store.remove_issues([self.issue.id])
        controller.fix_state.remove(self.issue.id)
        self.report(FixPhase.ALREADY_FIXED, "Issue is already fixed")
        result = self.result(FixStatus.ALREADY_FIXED, iterations=1, error=None)
        result.worktree_path = ""
        self.save_trace(result)
        return result

    def finish(self, status: FixStatus, *, iterations: int, error: str | None = None) -> FixResult:
        result = self.result(status, iterations=iterations, error=error)
        if self.worktree_path is not None:
            self.controller.fix_state.update(
                self.issue.id,
                status=FixRecordStatus.ERROR if status == FixStatus.ERROR else FixRecordStatus.READY_FOR_REVIEW,
                iterations=iterations,
                completed_at=utc_now(),
                error=error,
            )
        if status == FixStatus.ERROR:
            logger.warning("Fix session for %s failed: %s", self.issue.id, error)
            self.report(FixPhase.ERROR, error or "Fix failed")
        else:
            logger.info("Fix session for %s ended %s after %d iterations", self.issue.id, status.value, iterations)
            self.report(FixPhase.COMPLETE, f"Finished with status {status.value}")
        self.save_trace(result)
        return result

    def result(self, status: FixStatus, *, iterations: int, error: str | None) -> FixResult:
        return FixResult(
            issue_id=self.issue.id,
            status=status,
            worktree_path=str(self.worktree_path) if self.worktree_path else "",
            branch_name=self.branch_name,
            iterations=iterations,
            duration_seconds=time.monotonic() - self.started,
            error=error,
        )

    def save_trace(self, result: FixResult) -> None:
        self.trace.completed_at = utc_now()
        self.trace.final_status = result.status
        self.trace.error = result.error
        try:
            self.controller.fix_state.save_trace(self.issue.id, self.trace.to_dict())
        except OSError as error:
            logger.warning("Could not save fix trace for %s: %s", self.issue.id, error)


class _BatchFixSession:
    """Several issues fixed on one branch, followed by one shared review loop."""

    def __init__(self, controller: FixSessionController, issue_ids: list[str], report: ProgressCallback) -> None:
        self.controller = controller
        self.issue_ids = issue_ids
        self.report_callback = report
        self.started = time.monotonic()
        self.session_id: str | None = None

    def report(self, issue_id: str, phase: FixPhase, iteration: int, message: str) -> None:
        self.report_callback(FixProgress(issue_id, phase, iteration, self.controller.max_iterations, message))

    def run(self) -> BatchFixResult:  # noqa: PLR0912
        controller = self.controller
        if not self.issue_ids:
            raise ValueError("fix_batch needs at least one issue id.")

        issues: list[IssueContext] = []
        issue_results: list[BatchIssueResult] = []
        for issue_id in self.issue_ids:
            try:
                issue = controller.load_issue(issue_id)
            except IssueNotFoundError as error:
                issue_results.append(BatchIssueResult(issue_id, BatchIssueStatus.ERROR, str(error)))
                continue
            if issue is None:
                issue_results.append(BatchIssueResult(issue_id, BatchIssueStatus.SKIPPED, "Ticket no longer exists"))
                continue
            issues.append(issue)
        if not issues:
            return self.result("", "", issue_results, BatchFixStatus.ERROR, 0, "No fixable issues")

        lead_id = issues[0].id
        try:
            branch_name, worktree_path = controller.worktrees.create(f"{BATCH_BRANCH_PREFIX}{lead_id}")
        except RoverError as error:
            return self.result("", "", issue_results, BatchFixStatus.ERROR, 0, f"Failed to create worktree: {error}")

        fixed: list[IssueContext] = []
        for issue in issues:
            status, error = self.fix_one(issue, worktree_path)
            issue_results.append(BatchIssueResult(issue.id, status, error))
            if status == BatchIssueStatus.SUCCESS:
                fixed.append(issue)
            elif status == BatchIssueStatus.SKIPPED:
                controller.issue_store.remove_issues([issue.id])

        if not fixed:
            try:
                controller.worktrees.remove(worktree_path)
            except RoverError as error:
                logger.warning("Could not remove worktree %s: %s", worktree_path, error)
            return self.result(branch_name, "", issue_results, BatchFixStatus.ERROR, 0, "No issues were fixed")

        combined = "\n\n---\n\n".join(f"## {issue.id}\n\n{issue.content}" for issue in fixed)
        iterations = self.review_loop(lead_id, worktree_path, combined)

        all_succeeded = len(fixed) == len(self.issue_ids)
        now = utc_now()
        for issue in fixed:
            controller.fix_state.upsert(
                FixRecord(
                    issue_id=issue.id,
                    branch_name=branch_name,
                    worktree_path=str(worktree_path),
                    status=FixRecordStatus.READY_FOR_REVIEW,
                    iterations=iterations,
                    started_at=now,
                    completed_at=now,
                    issue_summary=issue.summary,
                ),
            )
        return self.result(
            branch_name,
            str(worktree_path),
            issue_results,
            BatchFixStatus.SUCCESS if all_succeeded else BatchFixStatus.PARTIAL,
            iterations,
            None,
        )

    def fix_one(self, issue: IssueContext, worktree_path: Path) -> tuple[BatchIssueStatus, str | None]:
        self.report(issue.id, FixPhase.FIXING, 1, "Running fix agent...")
        try:
            answer = self.controller.invoke_fix_agent(
                build_initial_fix_prompt(issue.id, issue.content),
                worktree_path,
                self.session_id,
                lambda message: self.report(issue.id, FixPhase.FIXING, 1, message),
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Batch fix of %s failed: %s", issue.id, error)
            return BatchIssueStatus.ERROR, f"Fix agent failed: {error}"
        if answer.session_id:
            self.session_id = answer.session_id
        if answer.exit_code != 0:
            return BatchIssueStatus.ERROR, f"Fix agent exited with code {answer.exit_code}"
        if contains_marker(answer, ALREADY_FIXED):
            self.report(issue.id, FixPhase.ALREADY_FIXED, 1, "Issue is already fixed")
            return BatchIssueStatus.SKIPPED, None
        self.report(issue.id, FixPhase.COMPLETE, 1, "Fix committed")
        return BatchIssueStatus.SUCCESS, None

    def review_loop(self, lead_id: str, worktree_path: Path, combined_content: str) -> int:
        """Review and iterate on the shared branch; returns review rounds used."""

        controller = self.controller
        reviewer = controller.reviewer
        for iteration in range(1, controller.max_iterations + 1):
            self.report(lead_id, FixPhase.REVIEWING, iteration, "Reviewing batch changes...")
            try:
                review = reviewer.run_full_review(worktree_path, combined_content)
                analysis = reviewer.analyze(review, worktree_path)
            except Exception as error:  # noqa: BLE001
                logger.warning("Batch review failed: %s", error)
                return iteration
            if not has_actionable_items(analysis):
                return iteration
            if iteration == controller.max_iterations:
                return iteration
            items = analysis.actionable_items
            self.report(lead_id, FixPhase.ITERATING, iteration, f"Addressing {len(items)} review items...")
            try:
                answer = controller.invoke_fix_agent(
                    build_iteration_prompt(lead_id, items),
                    worktree_path,
                    self.session_id,
                )
            except Exception as error:  # noqa: BLE001
                logger.warning("Batch iteration failed: %s", error)
                return iteration
            if answer.session_id:
                self.session_id = answer.session_id
        return controller.max_iterations

    def result(  # noqa: PLR0913
        self,
        branch_name: str,
        worktree_path: str,
        issue_results: list[BatchIssueResult],
        status: BatchFixStatus,
        iterations: int,
        error: str | None,
    ) -> BatchFixResult:
        return BatchFixResult(
            branch_name=branch_name,
            worktree_path=worktree_path,
            issue_results=issue_results,
            status=status,
            iterations=iterations,
            duration_seconds=time.monotonic() - self.started,
            error=error,
        )


def _error_result(issue_id: str, error: str) -> FixResult:
    return FixResult(
        issue_id=issue_id,
        status=FixStatus.ERROR,
        worktree_path="",
        branch_name="",
        iterations=0,
        duration_seconds=0.0,
        error=error,
    )

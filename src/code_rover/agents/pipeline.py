"""Single-agent pipeline: scan, check, arbitrate, under one retry policy."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from code_rover.agents.arbitrator import Arbitrator
from code_rover.agents.checker import Checker
from code_rover.agents.definitions import AgentRegistry
from code_rover.agents.models import AgentDefinition, AgentResult, BatchPhase, CheckerResult
from code_rover.agents.retry import RetryPolicy, run_with_retry
from code_rover.agents.scanner import Scanner
from code_rover.storage.issues import FileIssueStore
from code_rover.storage.memory import load_memory

logger = logging.getLogger(__name__)

PhaseReporter = Callable[[BatchPhase, str, int | None, int | None], None]


def _no_report(_phase: BatchPhase, _message: str, _checked: int | None, _total: int | None) -> None:
    return None


class AgentPipeline:
    """Run one agent through scanning, checking and arbitration.

    Errors propagate to the caller once the retry policy gives up; the
    scheduler turns them into a failed `AgentResult`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: AgentRegistry,
        scanner: Scanner,
        checker: Checker,
        arbitrator: Arbitrator,
        issue_store: FileIssueStore,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.registry = registry
        self.scanner = scanner
        self.checker = checker
        self.arbitrator = arbitrator
        self.issue_store = issue_store
        self.retry_policy = retry_policy
        self._sleep = sleep or time.sleep

    def run(self, agent_id: str, target_path: Path, report: PhaseReporter | None = None) -> AgentResult:
        reporter = report or _no_report
        agent = self.registry.get(agent_id)

        def _on_retry(retry_number: int, error: BaseException, delay: float) -> None:
            reporter(
                BatchPhase.SCANNING,
                f"Retrying ({retry_number}/{self.retry_policy.max_retries}) after error: {error}",
                None,
                None,
            )

        return run_with_retry(
            lambda: self._run_once(agent, target_path, reporter),
            self.retry_policy,
            _on_retry,
            sleep=self._sleep,
        )

    def _run_once(self, agent: AgentDefinition, target_path: Path, report: PhaseReporter) -> AgentResult:
        report(BatchPhase.SCANNING, f"Starting scan with {agent.name}...", None, None)
        scan_result = self.scanner.scan(
            agent,
            target_path,
            existing_issues=self.issue_store.summarize_existing(),
            memory=load_memory(target_path),
            on_progress=lambda message: report(BatchPhase.SCANNING, message, None, None),
        )

        if not scan_result.issues:
            report(BatchPhase.COMPLETE, "No candidate issues found", None, None)
            return AgentResult(agent_id=agent.agent_id, agent_name=agent.name, scan_result=scan_result)

        total = len(scan_result.issues)
        report(BatchPhase.CHECKING, f"Checking {total} candidate issues...", 0, total)
        checker_result: CheckerResult = self.checker.check(
            agent,
            target_path,
            scan_result.issues,
            on_batch=lambda checked, to_check: report(
                BatchPhase.CHECKING,
                f"Checked {checked}/{to_check} issues",
                checked,
                to_check,
            ),
        )

        report(BatchPhase.ARBITRATING, "Creating tickets for approved issues...", None, None)
        arbitrator_result = self.arbitrator.arbitrate(scan_result.issues, checker_result.approved_ids)
        report(
            BatchPhase.COMPLETE,
            f"{len(arbitrator_result.approved_issues)} approved, "
            f"{len(arbitrator_result.rejected_issues)} rejected",
            None,
            None,
        )
        return AgentResult(
            agent_id=agent.agent_id,
            agent_name=agent.name,
            scan_result=scan_result,
            checker_result=checker_result,
            arbitrator_result=arbitrator_result,
        )

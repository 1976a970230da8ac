"""Batch scheduler: many agent pipelines over one bounded work queue."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from code_rover.agents.models import AgentResult, BatchPhase, BatchProgress, BatchRunResult
from code_rover.agents.pipeline import AgentPipeline
from code_rover.agents.work_queue import run_work_queue
from code_rover.errors import RoverError, TargetPathError
from code_rover.storage.run_state import AgentRunStatus, RunStateRecorder

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
ATTEMPTS_WARNING_THRESHOLD = 3

StateChangeCallback = Callable[[str, AgentRunStatus, AgentResult | None], None]


class BatchRunner:
    """Run agent pipelines concurrently and fold their results."""

    def __init__(self, pipeline: AgentPipeline) -> None:
        self.pipeline = pipeline

    def run(  # noqa: PLR0913
        self,
        agent_ids: Iterable[str],
        target_path: Path,
        concurrency: int = DEFAULT_CONCURRENCY,
        *,
        skip_agent_ids: Iterable[str] = (),
        on_progress: Callable[[BatchProgress], None] | None = None,
        on_agent_complete: Callable[[AgentResult], None] | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> BatchRunResult:
        if not target_path.exists():
            raise TargetPathError(str(target_path))
        if concurrency <= 0:
            raise ValueError("concurrency must be a positive integer.")

        requested = list(dict.fromkeys(agent_ids))
        skip = set(skip_agent_ids)
        runnable = [agent_id for agent_id in requested if agent_id not in skip]
        skipped = len(requested) - len(runnable)
        total = len(runnable)
        started = time.monotonic()
        registry = self.pipeline.registry

        completed_count = 0
        count_lock = threading.Lock()

        logger.info(
            "Batch run over %s: %d agents (%d skipped), concurrency %d",
            target_path,
            total,
            skipped,
            concurrency,
        )

        def _progress(agent_id: str) -> Callable[[BatchPhase, str, int | None, int | None], None]:
            def _report(phase: BatchPhase, message: str, checked: int | None, to_check: int | None) -> None:
                if on_progress is None:
                    return
                on_progress(
                    BatchProgress(
                        phase=phase,
                        agent_id=agent_id,
                        agent_name=registry.name_of(agent_id),
                        completed_count=completed_count,
                        total_agents=total,
                        message=message,
                        issues_checked=checked,
                        issues_to_check=to_check,
                    ),
                )

            return _report

        def _handle(agent_id: str) -> AgentResult:
            if on_state_change is not None:
                on_state_change(agent_id, AgentRunStatus.RUNNING, None)
            return self.pipeline.run(agent_id, target_path, _progress(agent_id))

        def _on_error(agent_id: str, error: Exception) -> AgentResult:
            _progress(agent_id)(BatchPhase.ERROR, f"Failed: {error}", None, None)
            return AgentResult(
                agent_id=agent_id,
                agent_name=registry.name_of(agent_id),
                error=str(error) or type(error).__name__,
            )

        def _finalize(result: AgentResult) -> None:
            nonlocal completed_count
            with count_lock:
                completed_count += 1
            if on_state_change is not None:
                status = AgentRunStatus.ERROR if result.failed else AgentRunStatus.COMPLETED
                try:
                    on_state_change(result.agent_id, status, result)
                except (RoverError, OSError) as error:
                    logger.error("Failed to record %s state for %s: %s", status.value, result.agent_id, error)
            if on_agent_complete is not None:
                on_agent_complete(result)

        results = run_work_queue(
            runnable,
            concurrency=concurrency,
            handle=_handle,
            on_error=_on_error,
            on_result=_finalize,
            thread_name="rover-agent",
        )
        batch_result = BatchRunResult.from_results(
            results,
            duration_seconds=time.monotonic() - started,
            skipped_agents=skipped,
        )
        logger.info(
            "Batch run finished: %d candidates, %d approved, %d failed agents",
            batch_result.total_candidate_issues,
            batch_result.total_approved_issues,
            batch_result.failed_agents,
        )
        return batch_result


def record_state_changes(recorder: RunStateRecorder) -> StateChangeCallback:
    """State-change callback that persists every transition through `recorder`."""

    def _record(agent_id: str, status: AgentRunStatus, result: AgentResult | None) -> None:
        if status == AgentRunStatus.RUNNING:
            state = recorder.record(agent_id, status)
            agent = state.agent(agent_id)
            if agent is not None and agent.attempts > ATTEMPTS_WARNING_THRESHOLD:
                logger.warning("Agent %s is on attempt %d across resumed runs", agent_id, agent.attempts)
            return
        recorder.record(
            agent_id,
            status,
            error=result.error if result is not None else None,
            result=result.summary() if result is not None and not result.failed else None,
        )

    return _record

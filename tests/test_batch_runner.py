from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import allure
import pytest

from code_rover.agents.arbitrator import Arbitrator
from code_rover.agents.backend.base import AgentRunRequest
from code_rover.agents.batch_runner import BatchRunner, record_state_changes
from code_rover.agents.checker import Checker
from code_rover.agents.definitions import AgentRegistry
from code_rover.agents.models import AgentDefinition, AgentResult
from code_rover.agents.pipeline import AgentPipeline
from code_rover.agents.retry import RetryPolicy
from code_rover.agents.scanner import Scanner
from code_rover.agents.work_queue import run_work_queue
from code_rover.errors import AgentInvocationError, TargetPathError
from code_rover.storage.issues import FileIssueStore
from code_rover.storage.run_state import AgentRunStatus, RunStateRecorder, RunStateStore, create_run_state

pytestmark = [
    allure.epic("Batch Scan"),
    allure.feature("Work-Queue Scheduler"),
]

_AGENT_IDS = [f"agent-{index}" for index in range(1, 6)]


def _registry() -> AgentRegistry:
    return AgentRegistry(
        AgentDefinition(
            agent_id=agent_id,
            name=f"Agent {agent_id}",
            description="test agent",
            guidelines=f"GUIDE<{agent_id}>",
        )
        for agent_id in _AGENT_IDS
    )


def _agent_in(request: AgentRunRequest) -> str | None:
    for agent_id in _AGENT_IDS:
        if f"GUIDE<{agent_id}>" in request.prompt or f'"Agent {agent_id}"' in request.prompt:
            return agent_id
    return None


def _responder(failing: frozenset[str] = frozenset(), delay: float = 0.0):
    def _respond(request: AgentRunRequest) -> str:
        agent_id = _agent_in(request)
        if delay:
            time.sleep(delay)
        if "You are scanning the codebase" in request.prompt:
            if agent_id in failing:
                raise AgentInvocationError("Agent command not found: claude", transient=False)
            return json.dumps(
                {
                    "issues": [
                        {"id": f"{agent_id}-x", "title": "x", "severity": "low", "file_path": "app.py"},
                        {"id": f"{agent_id}-y", "title": "y", "severity": "low", "file_path": "app.py"},
                    ],
                },
            )
        ids = [line.split("ID: ", 1)[1] for line in request.prompt.splitlines() if line.startswith("- ID: ")]
        return json.dumps({"decisions": [{"id": issue_id, "approve": issue_id.endswith("-x")} for issue_id in ids]})

    return _respond


def _runner(invoker, target_repo: Path) -> BatchRunner:
    store = FileIssueStore(target_repo)
    return BatchRunner(
        AgentPipeline(
            registry=_registry(),
            scanner=Scanner(invoker),
            checker=Checker(invoker),
            arbitrator=Arbitrator(store),
            issue_store=store,
            retry_policy=RetryPolicy(max_retries=2, base_seconds=0.0),
            sleep=lambda _seconds: None,
        ),
    )


def test_one_failing_agent_does_not_stop_the_batch(make_invoker, target_repo: Path) -> None:
    invoker = make_invoker(_responder(failing=frozenset({"agent-3"})))

    result = _runner(invoker, target_repo).run(_AGENT_IDS, target_repo, concurrency=2)

    assert len(result.agent_results) == 5
    assert result.failed_agents == 1
    failed = [agent for agent in result.agent_results if agent.failed]
    assert [agent.agent_id for agent in failed] == ["agent-3"]
    assert failed[0].summary().candidate_issues == 0
    assert result.total_candidate_issues == 8
    assert result.total_approved_issues == 4
    assert result.total_tickets == 4


def test_totals_do_not_depend_on_concurrency(make_invoker, tmp_path: Path) -> None:
    totals = []
    for concurrency in (1, 4):
        repo = tmp_path / f"repo-{concurrency}"
        repo.mkdir()
        result = _runner(make_invoker(_responder()), repo).run(_AGENT_IDS, repo, concurrency=concurrency)
        totals.append(
            (
                result.total_candidate_issues,
                result.total_approved_issues,
                result.total_rejected_issues,
                result.total_tickets,
                result.failed_agents,
            ),
        )

    assert totals[0] == totals[1] == (10, 5, 5, 5, 0)


def test_missing_target_aborts_before_any_invocation(make_invoker, tmp_path: Path) -> None:
    invoker = make_invoker(_responder())

    with pytest.raises(TargetPathError):
        _runner(invoker, tmp_path).run(_AGENT_IDS, tmp_path / "missing", concurrency=2)

    assert invoker.requests == []


def test_skip_set_and_duplicates(make_invoker, target_repo: Path) -> None:
    invoker = make_invoker(_responder())

    result = _runner(invoker, target_repo).run(
        ["agent-1", "agent-2", "agent-2", "agent-4"],
        target_repo,
        concurrency=3,
        skip_agent_ids={"agent-4"},
    )

    assert sorted(agent.agent_id for agent in result.agent_results) == ["agent-1", "agent-2"]
    assert result.skipped_agents == 1


def test_state_changes_arrive_in_lifecycle_order(make_invoker, target_repo: Path) -> None:
    events: list[tuple[str, AgentRunStatus]] = []
    lock = threading.Lock()

    def _on_state_change(agent_id: str, status: AgentRunStatus, _result: AgentResult | None) -> None:
        with lock:
            events.append((agent_id, status))

    _runner(make_invoker(_responder(failing=frozenset({"agent-2"}))), target_repo).run(
        _AGENT_IDS,
        target_repo,
        concurrency=3,
        on_state_change=_on_state_change,
    )

    for agent_id in _AGENT_IDS:
        statuses = [status for event_agent, status in events if event_agent == agent_id]
        expected_end = AgentRunStatus.ERROR if agent_id == "agent-2" else AgentRunStatus.COMPLETED
        assert statuses == [AgentRunStatus.RUNNING, expected_end]



def test_failed_state_save_still_reports_agent_completion(make_invoker, target_repo: Path, caplog) -> None:
    completed: list[str] = []

    def _on_state_change(_agent_id: str, status: AgentRunStatus, _result: AgentResult | None) -> None:
        if status != AgentRunStatus.RUNNING:
            raise OSError("disk full")

    result = _runner(make_invoker(_responder()), target_repo).run(
        _AGENT_IDS,
        target_repo,
        concurrency=2,
        on_agent_complete=lambda agent_result: completed.append(agent_result.agent_id),
        on_state_change=_on_state_change,
    )

    assert sorted(completed) == sorted(_AGENT_IDS)
    assert result.failed_agents == 0
    errors = [
        record for record in caplog.records if record.levelname == "ERROR" and record.name.endswith("batch_runner")
    ]
    assert len(errors) == len(_AGENT_IDS)
    assert "disk full" in errors[0].getMessage()


def test_never_more_than_concurrency_agents_in_flight(make_invoker, target_repo: Path) -> None:
    in_flight = 0
    peak = 0
    lock = threading.Lock()
    respond = _responder(delay=0.02)

    def _tracking(request: AgentRunRequest) -> str:
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        try:
            return respond(request)
        finally:
            with lock:
                in_flight -= 1

    _runner(make_invoker(_tracking), target_repo).run(_AGENT_IDS, target_repo, concurrency=2)

    assert 1 <= peak <= 2


def test_recorded_run_state_resumes_with_completed_skip_set(make_invoker, target_repo: Path) -> None:
    store = RunStateStore.for_target(target_repo)
    recorder = RunStateRecorder(store, create_run_state(target_repo, _AGENT_IDS, 2))

    _runner(make_invoker(_responder(failing=frozenset({"agent-5"}))), target_repo).run(
        _AGENT_IDS,
        target_repo,
        concurrency=2,
        on_state_change=record_state_changes(recorder),
    )

    saved = store.load()
    assert saved is not None
    assert saved.completed_at is not None
    assert saved.agent("agent-5").status == AgentRunStatus.ERROR
    assert saved.agent("agent-5").error == "Agent command not found: claude"
    assert saved.agent("agent-1").result is not None
    assert saved.agent("agent-1").result.tickets_created == 1


def test_work_queue_turns_handler_errors_into_results() -> None:
    results = run_work_queue(
        [1, 2, 3],
        concurrency=2,
        handle=lambda item: 10 // (item - 2),
        on_error=lambda item, error: -item,
    )

    assert sorted(results) == [-10, -2, 10]


def test_work_queue_rejects_non_positive_concurrency() -> None:
    with pytest.raises(ValueError):
        run_work_queue([1], concurrency=0, handle=lambda item: item, on_error=lambda item, _error: item)

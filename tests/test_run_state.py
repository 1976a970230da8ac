from __future__ import annotations

import dataclasses
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from code_rover.errors import InvalidTransitionError
from code_rover.storage.run_state import (
    AgentResultSummary,
    AgentRunStatus,
    RunStateRecorder,
    RunStateStore,
    agents_to_run,
    completed_agent_ids,
    create_run_state,
    prepare_resume,
    update_agent_status,
)

pytestmark = [
    allure.epic("Batch Scan"),
    allure.feature("Run State Persistence"),
]

_STARTED = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _state(agent_ids: list[str]):
    return create_run_state("/repo", agent_ids, concurrency=2, now=_STARTED)


def test_create_marks_every_agent_pending() -> None:
    state = _state(["a", "b"])

    assert [agent.status for agent in state.agents] == [AgentRunStatus.PENDING] * 2
    assert state.requested_agent_ids == ("a", "b")
    assert state.completed_at is None
    assert state.run_id.startswith("run-")


def test_update_returns_new_value_and_leaves_original_untouched() -> None:
    state = _state(["a"])

    updated = update_agent_status(state, "a", AgentRunStatus.RUNNING)

    assert state.agents[0].status == AgentRunStatus.PENDING
    assert updated.agents[0].status == AgentRunStatus.RUNNING
    assert updated.agents[0].attempts == 1
    with pytest.raises(dataclasses.FrozenInstanceError):
        updated.concurrency = 5  # type: ignore[misc]


def test_completed_at_is_stamped_only_when_every_agent_is_terminal() -> None:
    state = _state(["a", "b"])
    state = update_agent_status(state, "a", AgentRunStatus.RUNNING)
    state = update_agent_status(state, "a", AgentRunStatus.COMPLETED, result=AgentResultSummary(candidate_issues=2))
    assert state.completed_at is None

    state = update_agent_status(state, "b", AgentRunStatus.RUNNING)
    state = update_agent_status(state, "b", AgentRunStatus.ERROR, error="boom")

    assert state.completed_at is not None
    assert state.agent("a").result == AgentResultSummary(candidate_issues=2)
    assert state.agent("b").error == "boom"


def test_backward_transition_raises() -> None:
    state = _state(["a"])
    state = update_agent_status(state, "a", AgentRunStatus.RUNNING)
    state = update_agent_status(state, "a", AgentRunStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        update_agent_status(state, "a", AgentRunStatus.RUNNING)


def test_unknown_agent_transition_raises() -> None:
    with pytest.raises(InvalidTransitionError):
        update_agent_status(_state(["a"]), "ghost", AgentRunStatus.RUNNING)


def test_resume_skips_only_completed_agents() -> None:
    state = _state(["a", "b", "c"])
    for agent_id in ("a", "b", "c"):
        state = update_agent_status(state, agent_id, AgentRunStatus.RUNNING)
    state = update_agent_status(state, "a", AgentRunStatus.COMPLETED)
    state = update_agent_status(state, "b", AgentRunStatus.ERROR, error="exhausted retries")

    resumed = prepare_resume(state)

    assert completed_agent_ids(resumed) == ["a"]
    assert resumed.agent("b").status == AgentRunStatus.PENDING
    assert resumed.agent("c").status == AgentRunStatus.PENDING
    assert resumed.agent("b").attempts == 1
    assert agents_to_run(resumed) == ["b", "c"]
    assert agents_to_run(state) == ["b", "c"]
    assert resumed.completed_at is None


@pytest.mark.parametrize(
    ("age", "expected_stale"),
    [
        (timedelta(hours=23, minutes=59), False),
        (timedelta(hours=24, seconds=1), True),
    ],
)
def test_staleness_threshold(tmp_path: Path, age: timedelta, expected_stale: bool) -> None:
    store = RunStateStore(tmp_path / "state.json")
    store.save(_state(["a"]))

    loaded = store.load(now=_STARTED + age)

    assert loaded is not None
    assert loaded.is_stale is expected_stale
    assert (tmp_path / "state.json").exists()


def test_stale_flag_is_not_persisted(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state.json")
    store.save(_state(["a"]))
    stale = store.load(now=_STARTED + timedelta(days=3))
    assert stale is not None

    store.save(stale)

    payload = json.loads((tmp_path / "state.json").read_text("utf-8"))
    assert "is_stale" not in payload


def test_missing_or_corrupt_file_loads_as_none(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state.json")
    assert store.load() is None

    (tmp_path / "state.json").write_text("{not json", "utf-8")

    assert store.load() is None


def test_recorder_persists_every_transition(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state.json")
    recorder = RunStateRecorder(store, _state(["a", "b"]))

    recorder.record("a", AgentRunStatus.RUNNING)
    on_disk = store.load(now=_STARTED)
    assert on_disk is not None
    assert on_disk.agent("a").status == AgentRunStatus.RUNNING

    recorder.record("a", AgentRunStatus.COMPLETED, result=AgentResultSummary(approved_issues=1))
    on_disk = store.load(now=_STARTED)
    assert on_disk is not None
    assert on_disk.agent("a").result == AgentResultSummary(approved_issues=1)
    assert on_disk.agent("b").status == AgentRunStatus.PENDING
    assert recorder.state == on_disk


def test_round_trip_preserves_attempts(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state.json")
    state = update_agent_status(_state(["a"]), "a", AgentRunStatus.RUNNING)
    store.save(state)

    loaded = store.load(now=_STARTED)

    assert loaded is not None
    assert loaded.agent("a").attempts == 1
    assert loaded.started_at == _STARTED

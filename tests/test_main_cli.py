from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from code_rover import __version__
from code_rover.agents.backend.echo_agent import REPLY_ENV
from code_rover.main import code_rover
from code_rover.storage.fix_state import FixStateStore
from code_rover.storage.issues import FileIssueStore
from code_rover.storage.memory import load_memory
from code_rover.storage.run_state import AgentRunStatus, RunStateStore, create_run_state, update_agent_status

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Scan, Fix, Status Commands"),
]


@pytest.fixture()
def echo_agent_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CODE_ROVER_AGENT_COMMAND", f"{sys.executable} -m code_rover.agents.backend.echo_agent")
    monkeypatch.setenv("CODE_ROVER_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv(REPLY_ENV, json.dumps({"issues": []}))


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(code_rover, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_agents_lists_builtin_agents():
    result = CliRunner().invoke(code_rover, ["agents"])

    assert result.exit_code == 0
    assert "logic-detective" in result.output


def test_status_of_fresh_target(tmp_path: Path):
    result = CliRunner().invoke(code_rover, ["status", "--target", str(tmp_path)])

    assert result.exit_code == 0
    assert "No batch run recorded." in result.output
    assert "Issues: 0" in result.output
    assert "No fix sessions recorded." in result.output


def test_scan_missing_target_fails(tmp_path: Path):
    result = CliRunner().invoke(code_rover, ["scan", "--target", str(tmp_path / "missing")])

    assert result.exit_code != 0
    assert "Target path does not exist" in result.output


def test_scan_with_echo_agent_records_completed_run(target_repo: Path, echo_agent_env: None):
    runner = CliRunner()

    result = runner.invoke(
        code_rover,
        ["scan", "--target", str(target_repo), "--agent", "logic-detective", "--agent", "security-sweeper"],
    )

    assert result.exit_code == 0, result.output
    assert "Batch scan complete" in result.output
    assert "Tickets created:   0" in result.output

    status = runner.invoke(code_rover, ["status", "--target", str(target_repo)])
    assert "logic-detective" in status.output
    assert "completed" in status.output


def test_scan_unknown_agent_is_reported_per_agent(target_repo: Path, echo_agent_env: None):
    result = CliRunner().invoke(code_rover, ["scan", "--target", str(target_repo), "--agent", "no-such-agent"])

    assert result.exit_code == 0, result.output
    assert "Unknown agent: no-such-agent" in result.output
    assert "Failed agents:     1" in result.output


def test_fix_unknown_issue_reports_error(target_repo: Path, echo_agent_env: None):
    result = CliRunner().invoke(code_rover, ["fix", "--target", str(target_repo), "ISSUE-999"])

    assert result.exit_code == 0, result.output
    assert "ISSUE-999: error after 0 iterations - Issue not found: ISSUE-999" in result.output
    assert FixStateStore(target_repo).records() == []


def test_invalid_settings_become_click_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CODE_ROVER_CONCURRENCY", "0")

    result = CliRunner().invoke(code_rover, ["scan", "--target", str(tmp_path)])

    assert result.exit_code != 0
    assert "CODE_ROVER_CONCURRENCY" in result.output


def _save_interrupted_run(target_repo: Path, agent_ids: list[str]) -> str:
    state = create_run_state(target_repo.resolve(), agent_ids, 2)
    state = update_agent_status(state, agent_ids[0], AgentRunStatus.RUNNING)
    RunStateStore.for_target(target_repo.resolve()).save(state)
    return state.run_id


def test_scan_with_other_agents_starts_fresh_run(target_repo: Path, echo_agent_env: None):
    old_run_id = _save_interrupted_run(target_repo, ["logic-detective", "security-sweeper"])

    result = CliRunner().invoke(code_rover, ["scan", "--target", str(target_repo), "--agent", "depth-gauge"])

    assert result.exit_code == 0, result.output
    assert f"Previous run {old_run_id} covered different agents" in result.output
    saved = RunStateStore.for_target(target_repo.resolve()).load()
    assert saved is not None
    assert saved.run_id != old_run_id
    assert saved.requested_agent_ids == ("depth-gauge",)


def test_scan_with_same_agents_resumes_run(target_repo: Path, echo_agent_env: None):
    old_run_id = _save_interrupted_run(target_repo, ["logic-detective", "security-sweeper"])

    result = CliRunner().invoke(
        code_rover,
        ["scan", "--target", str(target_repo), "--agent", "security-sweeper", "--agent", "logic-detective"],
    )

    assert result.exit_code == 0, result.output
    assert f"Resuming run {old_run_id}: 0 of 2 agents already completed, 2 to run." in result.output
    saved = RunStateStore.for_target(target_repo.resolve()).load()
    assert saved is not None
    assert saved.run_id == old_run_id
    assert saved.completed_at is not None


def test_ignore_hides_issue_from_listing_and_status(seeded_store: FileIssueStore, target_repo: Path):
    runner = CliRunner()

    ignored = runner.invoke(code_rover, ["ignore", "--target", str(target_repo), "issue-1"])
    assert ignored.exit_code == 0, ignored.output
    assert "Ignored 1 issues: ISSUE-001" in ignored.output

    listing = runner.invoke(code_rover, ["issues", "--target", str(target_repo)])
    assert "ISSUE-002 [high] Unchecked index (app.py)" in listing.output
    assert "ISSUE-001" not in listing.output
    assert "1 ignored issues hidden" in listing.output

    full = runner.invoke(code_rover, ["issues", "--target", str(target_repo), "--all"])
    assert "ISSUE-001 [high] Missing key check [ignored] (app.py)" in full.output

    status = runner.invoke(code_rover, ["status", "--target", str(target_repo)])
    assert "Issues: 1 (1 ignored)" in status.output


def test_ignore_unknown_issue_fails(target_repo: Path):
    result = CliRunner().invoke(code_rover, ["ignore", "--target", str(target_repo), "ISSUE-404"])

    assert result.exit_code != 0
    assert "Not found: ISSUE-404" in result.output
    assert "No issues were ignored." in result.output


def test_remember_appends_to_memory(target_repo: Path):
    result = CliRunner().invoke(
        code_rover,
        ["remember", "--target", str(target_repo), "Skip", "the", "generated", "client"],
    )

    assert result.exit_code == 0, result.output
    assert "Added to memory: Skip the generated client" in result.output
    assert "Skip the generated client" in load_memory(target_repo.resolve())

from __future__ import annotations

from pathlib import Path

import allure
import pytest

from code_rover.config import AgentSettings, BatchSettings, FixSettings, ReviewSettings, Settings, rover_dir

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CODE_ROVER_AGENT_COMMAND",
        "CODE_ROVER_FIX_MODEL",
        "CODE_ROVER_AGENT_TIMEOUT_SECONDS",
        "CODE_ROVER_CONCURRENCY",
        "CODE_ROVER_FIX_MAX_ITERATIONS",
        "CODE_ROVER_REVIEW_PROMPT_DIR",
        "CODE_ROVER_DEFAULT_BRANCH",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.agent.command == "claude"
    assert settings.agent.scan_model == "opus"
    assert settings.agent.review_model == "sonnet"
    assert settings.agent.fix_model is None
    assert settings.agent.timeout_seconds is None
    assert settings.batch.concurrency == 4
    assert settings.batch.stale_after_hours == 24
    assert settings.fix.max_iterations == 10
    assert settings.review.prompt_dir is None
    settings.validate()


def test_from_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CODE_ROVER_AGENT_COMMAND", "my-agent --flag")
    monkeypatch.setenv("CODE_ROVER_FIX_MODEL", "opus")
    monkeypatch.setenv("CODE_ROVER_AGENT_TIMEOUT_SECONDS", "90")
    monkeypatch.setenv("CODE_ROVER_CONCURRENCY", "2")
    monkeypatch.setenv("CODE_ROVER_FIX_MAX_ITERATIONS", "3")
    monkeypatch.setenv("CODE_ROVER_REVIEW_PROMPT_DIR", str(tmp_path))
    monkeypatch.setenv("CODE_ROVER_DEFAULT_BRANCH", "develop")

    settings = Settings.from_env()

    assert settings.agent.command == "my-agent --flag"
    assert settings.agent.fix_model == "opus"
    assert settings.agent.timeout_seconds == 90
    assert settings.batch.concurrency == 2
    assert settings.fix.max_iterations == 3
    assert settings.review.prompt_dir == tmp_path
    assert settings.review.default_branch == "develop"
    settings.validate()


def test_from_env_rejects_non_integer_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CODE_ROVER_AGENT_TIMEOUT_SECONDS", "soon")

    with pytest.raises(ValueError, match="CODE_ROVER_AGENT_TIMEOUT_SECONDS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(agent=AgentSettings(command="  ")), "CODE_ROVER_AGENT_COMMAND"),
        (Settings(agent=AgentSettings(timeout_seconds=0)), "CODE_ROVER_AGENT_TIMEOUT_SECONDS"),
        (Settings(batch=BatchSettings(concurrency=0)), "CODE_ROVER_CONCURRENCY"),
        (Settings(batch=BatchSettings(max_retries=-1)), "CODE_ROVER_MAX_RETRIES"),
        (Settings(batch=BatchSettings(check_batch_size=0)), "CODE_ROVER_CHECK_BATCH_SIZE"),
        (Settings(batch=BatchSettings(stale_after_hours=0)), "CODE_ROVER_STALE_AFTER_HOURS"),
        (Settings(fix=FixSettings(max_iterations=0)), "CODE_ROVER_FIX_MAX_ITERATIONS"),
        (Settings(fix=FixSettings(concurrency=-2)), "CODE_ROVER_FIX_CONCURRENCY"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_rejects_missing_prompt_dir(tmp_path: Path) -> None:
    settings = Settings(review=ReviewSettings(prompt_dir=tmp_path / "nope"))

    with pytest.raises(ValueError, match="not a directory"):
        settings.validate()


def test_rover_dir_lives_inside_target(tmp_path: Path) -> None:
    assert rover_dir(tmp_path) == tmp_path / ".rover"

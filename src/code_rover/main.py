"""CLI entrypoint for code-rover."""

import logging
from collections.abc import Iterable
from pathlib import Path

import rich_click as click

from code_rover import __version__
from code_rover.controllers import (
    CodeRoverCliController,
    FixCommand,
    IgnoreCommand,
    IssuesCommand,
    RememberCommand,
    ScanCommand,
    StatusCommand,
)
from code_rover.errors import RoverError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CodeRoverCliController()

_TARGET_OPTION = click.option(
    "--target",
    "target_path",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Repository to work on.",
)


@click.group()
@click.version_option(version=__version__, prog_name="code-rover")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def code_rover(verbose: bool) -> None:
    """Code quality scanning and automated fixing with LLM agents."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@code_rover.command("agents")
def list_agents() -> None:
    """List built-in scanning agents."""

    _emit_lines(CONTROLLER.list_agents())


@code_rover.command("scan")
@_TARGET_OPTION
@click.option(
    "--agent",
    "agent_ids",
    multiple=True,
    help="Agent id to run. Can be repeated. Runs every built-in agent when omitted.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Agents running at once. Defaults to CODE_ROVER_CONCURRENCY (4).",
)
@click.option(
    "--resume/--fresh",
    default=True,
    show_default=True,
    help="Resume an unfinished run of the same target, or start over.",
)
def scan(target_path: Path, agent_ids: tuple[str, ...], concurrency: int | None, resume: bool) -> None:
    """Run scanning agents in parallel and create tickets for approved issues.

    Exits 0 even when individual agents fail; failures are listed in the output.
    """

    _emit_lines(
        CONTROLLER.scan(
            ScanCommand(
                target_path=target_path,
                agent_ids=agent_ids,
                concurrency=concurrency,
                resume=resume,
            ),
        ),
    )


@code_rover.command("fix")
@_TARGET_OPTION
@click.argument("issue_ids", nargs=-1, required=True)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Fix/review rounds per issue. Defaults to CODE_ROVER_FIX_MAX_ITERATIONS (10).",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Issues fixed at once. Defaults to CODE_ROVER_FIX_CONCURRENCY (4).",
)
@click.option(
    "--batch",
    is_flag=True,
    default=False,
    help="Fix all issues on one branch and review them together.",
)
def fix(
    target_path: Path,
    issue_ids: tuple[str, ...],
    max_iterations: int | None,
    concurrency: int | None,
    batch: bool,
) -> None:
    """Fix issues by ticket id (for example ISSUE-001) in isolated git worktrees."""

    _emit_lines(
        CONTROLLER.fix(
            FixCommand(
                target_path=target_path,
                issue_ids=issue_ids,
                max_iterations=max_iterations,
                concurrency=concurrency,
                batch=batch,
            ),
        ),
    )


@code_rover.command("status")
@_TARGET_OPTION
def status(target_path: Path) -> None:
    """Show the last batch run, stored issues and fix sessions."""

    _emit_lines(CONTROLLER.status(StatusCommand(target_path=target_path)))


@code_rover.command("issues")
@_TARGET_OPTION
@click.option("--all", "include_ignored", is_flag=True, default=False, help="Include ignored issues.")
def issues(target_path: Path, include_ignored: bool) -> None:
    """List stored issues by ticket id, most severe first."""

    _emit_lines(CONTROLLER.issues(IssuesCommand(target_path=target_path, include_ignored=include_ignored)))


@code_rover.command("ignore")
@_TARGET_OPTION
@click.argument("issue_ids", nargs=-1, required=True)
def ignore(target_path: Path, issue_ids: tuple[str, ...]) -> None:
    """Mark issues as won't fix.

    Ignored issues disappear from `issues` and `status` but stay known to
    scanners, so they are not reported again.
    """

    _emit_lines(CONTROLLER.ignore(IgnoreCommand(target_path=target_path, issue_ids=issue_ids)))


@code_rover.command("remember")
@_TARGET_OPTION
@click.argument("text", nargs=-1, required=True)
def remember(target_path: Path, text: tuple[str, ...]) -> None:
    """Add a note to `.rover/memory.md`; scanners skip issues it describes."""

    _emit_lines(CONTROLLER.remember(RememberCommand(target_path=target_path, entry=" ".join(text))))


def _emit_lines(lines: Iterable[str]) -> None:
    try:
        for line in lines:
            click.echo(line)
    except (RoverError, ValueError) as error:
        raise click.ClickException(str(error)) from error


if __name__ == "__main__":  # pragma: no cover
    code_rover()

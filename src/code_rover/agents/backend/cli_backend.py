"""Subprocess-based backend for stream-JSON agent CLIs."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import threading
from collections.abc import Callable, Iterable
from typing import Any

from code_rover.agents.backend.base import WRITE_TOOLS, AgentRunRequest, AgentRunResult
from code_rover.errors import AgentInvocationError, AgentTimeoutError

logger = logging.getLogger(__name__)

_BASE_ARGS: tuple[str, ...] = ("--print", "--output-format", "stream-json", "--verbose")
_WRITE_ARGS: tuple[str, ...] = ("--permission-mode", "bypassPermissions")
_PROGRESS_TEXT_LIMIT = 60


class ClaudeCliBackend:
    """Run an agent CLI that reads the prompt on stdin and streams JSON lines."""

    def __init__(
        self,
        command: str = "claude",
        *,
        timeout_seconds: int | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.env = env

    def invoke(self, request: AgentRunRequest) -> AgentRunResult:
        run_args = build_run_args(
            self.command,
            model=request.model,
            allowed_tools=request.allowed_tools,
            session_id=request.session_id,
            read_only=request.read_only,
        )
        env = os.environ.copy()
        if self.env:
            env.update(self.env)

        logger.debug(
            "Invoking agent in %s (prompt %d chars, tools=%s)",
            request.cwd,
            len(request.prompt),
            ",".join(request.allowed_tools) or "-",
        )
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.cwd,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            raise AgentInvocationError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentInvocationError(
                f"Agent command failed to start: {error}",
                transient=True,
            ) from error

        return _collect_process_output(
            process,
            prompt=request.prompt,
            timeout_seconds=self.timeout_seconds,
            on_progress=request.on_progress,
        )


def build_run_args(
    command: str,
    *,
    model: str | None,
    allowed_tools: Iterable[str],
    session_id: str | None = None,
    read_only: bool = False,
) -> list[str]:
    """Command line for one invocation.

    Read-only runs never get `bypassPermissions` and explicitly deny the
    editing and shell tools; other runs may act without approval prompts.
    """

    argv = shlex.split(command.strip())
    if not argv:
        raise AgentInvocationError("Agent command is empty.", transient=False)
    argv.extend(_BASE_ARGS)
    if read_only:
        argv.extend(["--disallowedTools", ",".join(WRITE_TOOLS)])
    else:
        argv.extend(_WRITE_ARGS)
    if session_id:
        argv.extend(["--resume", session_id])
    if model:
        argv.extend(["--model", model])
    tools = [tool for tool in allowed_tools if tool]
    if tools:
        argv.extend(["--allowedTools", ",".join(tools)])
    return argv


def _collect_process_output(
    process: subprocess.Popen[str],
    *,
    prompt: str,
    timeout_seconds: int | None,
    on_progress: Callable[[str], None] | None,
) -> AgentRunResult:
    timed_out = threading.Event()
    watchdog: threading.Timer | None = None
    if timeout_seconds is not None:

        def _expire() -> None:
            timed_out.set()
            _terminate_process(process)

        watchdog = threading.Timer(timeout_seconds, _expire)
        watchdog.daemon = True
        watchdog.start()

    stderr_chunks: list[str] = []
    stderr_reader = threading.Thread(
        target=_drain,
        args=(process.stderr, stderr_chunks),
        daemon=True,
    )
    stderr_reader.start()

    try:
        _write_prompt(process, prompt)
        stdout_lines: list[str] = []
        assert process.stdout is not None
        for line in process.stdout:
            stdout_lines.append(line)
            if on_progress is None:
                continue
            for message in progress_messages(line):
                on_progress(message)
        exit_code = process.wait()
    finally:
        if watchdog is not None:
            watchdog.cancel()
    stderr_reader.join(timeout=2)

    if timed_out.is_set():
        raise AgentTimeoutError(f"Agent timed out after {timeout_seconds}s")

    raw_output = "".join(stdout_lines)
    if exit_code != 0:
        logger.debug("Agent exited with %s: %s", exit_code, "".join(stderr_chunks).strip()[:500])
    return AgentRunResult(
        result_text=extract_result_text(raw_output),
        exit_code=exit_code,
        session_id=parse_session_id(raw_output),
        raw_output=raw_output,
    )


def _write_prompt(process: subprocess.Popen[str], prompt: str) -> None:
    assert process.stdin is not None
    try:
        process.stdin.write(prompt)
        process.stdin.close()
    except BrokenPipeError:
        # Child exited before reading; its exit code tells the rest.
        logger.debug("Agent closed stdin before the prompt was written")


def _drain(stream: Any, sink: list[str]) -> None:
    if stream is None:
        return
    for chunk in stream:
        sink.append(chunk)


def iter_events(raw_output: str) -> Iterable[dict[str, Any]]:
    """Parsed JSON objects from stream output; other lines are skipped."""

    for line in raw_output.splitlines():
        event = _parse_event(line)
        if event is not None:
            yield event


def _parse_event(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _assistant_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    if event.get("type") != "assistant":
        return []
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def extract_result_text(raw_output: str) -> str:
    """Join every assistant text block, in stream order."""

    parts: list[str] = []
    for event in iter_events(raw_output):
        for block in _assistant_blocks(event):
            if block.get("type") == "text" and block.get("text"):
                parts.append(str(block["text"]))
    return "\n".join(parts)


def parse_session_id(raw_output: str) -> str:
    for event in iter_events(raw_output):
        session_id = event.get("session_id") or event.get("sessionId")
        if session_id:
            return str(session_id)
    return ""


def progress_messages(line: str) -> list[str]:
    """One-line progress descriptions for the blocks of a stream line."""

    event = _parse_event(line)
    if event is None:
        return []
    messages: list[str] = []
    for block in _assistant_blocks(event):
        if block.get("type") == "tool_use":
            messages.append(describe_tool_use(str(block.get("name", "")), block.get("input")))
        elif block.get("type") == "text" and block.get("text"):
            first_line = str(block["text"]).strip().split("\n", 1)[0]
            if len(first_line) > _PROGRESS_TEXT_LIMIT:
                first_line = first_line[:_PROGRESS_TEXT_LIMIT] + "..."
            if first_line:
                messages.append(first_line)
    return messages


def describe_tool_use(name: str, tool_input: object) -> str:
    params = tool_input if isinstance(tool_input, dict) else {}
    if name == "Read":
        return f"Reading: {params.get('file_path', 'file')}"
    if name == "Glob":
        return f"Searching for files: {params.get('pattern', 'files')}"
    if name == "Grep":
        return f"Searching for: {params.get('pattern', 'pattern')}"
    if name in {"Edit", "Write"}:
        return f"{'Editing' if name == 'Edit' else 'Writing'}: {params.get('file_path', 'file')}"
    if name == "Bash":
        command = str(params.get("command", ""))
        return f"Running: {command[:50]}{'...' if len(command) > 50 else ''}"
    return f"Using {name or 'tool'}"


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

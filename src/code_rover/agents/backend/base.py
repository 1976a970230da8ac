"""Agent invocation interface shared by scan, review and fix workflows."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

WRITE_TOOLS: tuple[str, ...] = ("Edit", "MultiEdit", "Write", "NotebookEdit", "Bash")


@dataclass(slots=True)
class AgentRunRequest:
    """One prompt sent to an agent.

    `read_only` requests run without permission bypass and with the
    editing and shell tools denied.
    """

    prompt: str
    cwd: Path
    allowed_tools: tuple[str, ...] = ()
    model: str | None = None
    session_id: str | None = None
    read_only: bool = False
    on_progress: Callable[[str], None] | None = field(default=None, repr=False)


@dataclass(slots=True)
class AgentRunResult:
    """Outcome of one agent invocation."""

    result_text: str
    exit_code: int
    session_id: str = ""
    raw_output: str = field(default="", repr=False)


class AgentInvoker(Protocol):
    """Protocol implemented by agent backends."""

    def invoke(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent to completion and return its output."""

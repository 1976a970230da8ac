"""Error types shared by the scan and fix workflows."""

from __future__ import annotations


class RoverError(RuntimeError):
    """Base error with retryability hint."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class AgentInvocationError(RoverError):
    """Agent subprocess could not be started or failed mid-stream."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, transient=transient)
        self.exit_code = exit_code


class AgentTimeoutError(AgentInvocationError):
    """Agent subprocess exceeded the configured timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True, exit_code=124)


class AgentOutputParseError(RoverError):
    """Agent answered, but the expected JSON payload could not be parsed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class UnknownAgentError(RoverError):
    """Requested agent id is not registered."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Unknown agent: {agent_id}", transient=False)
        self.agent_id = agent_id


class TargetPathError(RoverError):
    """Scan target is missing; aborts the run before any worker starts."""

    def __init__(self, target_path: str) -> None:
        super().__init__(f"Target path does not exist: {target_path}", transient=False)
        self.target_path = target_path


class GitCommandError(RoverError):
    """A git command exited non-zero."""

    def __init__(self, args: list[str], output: str) -> None:
        super().__init__(f"git {' '.join(args)} failed: {output.strip()}", transient=False)
        self.args_list = args


class InvalidTransitionError(RoverError):
    """Run-state update would move an agent backwards."""


class IssueNotFoundError(RoverError):
    """Ticket id is malformed or unknown to the issue store."""

"""Agent backend implementations."""

from code_rover.agents.backend.base import AgentInvoker, AgentRunRequest, AgentRunResult
from code_rover.agents.backend.cli_backend import ClaudeCliBackend

__all__ = [
    "AgentInvoker",
    "AgentRunRequest",
    "AgentRunResult",
    "ClaudeCliBackend",
]

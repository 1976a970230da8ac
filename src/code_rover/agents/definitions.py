"""Built-in scanning agents."""

from __future__ import annotations

from collections.abc import Iterable

from code_rover.agents.models import AgentDefinition
from code_rover.errors import UnknownAgentError

_SOURCE_PATTERNS = (
    "**/*.py",
    "**/*.ts",
    "**/*.tsx",
    "**/*.js",
    "**/*.jsx",
    "!**/node_modules/**",
    "!**/.venv/**",
)
_TEST_EXCLUDES = ("!**/test_*.py", "!**/*.test.*", "!**/*.spec.*")

BUILTIN_AGENTS: tuple[AgentDefinition, ...] = (
    AgentDefinition(
        agent_id="logic-detective",
        name="The Logic Detective",
        description="Find dormant bugs through static analysis patterns",
        guidelines=(
            "Find dormant bugs in existing code: missing awaits, floating promises or "
            "unawaited coroutines, off-by-one loops, inverted conditions, mutable default "
            "arguments, and state that is read before it is assigned. Report only bugs you "
            "can point to in a concrete line."
        ),
        file_patterns=_SOURCE_PATTERNS + _TEST_EXCLUDES,
    ),
    AgentDefinition(
        agent_id="exception-auditor",
        name="The Exception Auditor",
        description="Find swallowed errors and misleading error handling",
        guidelines=(
            "Find catch blocks that swallow errors, broad handlers that hide failures, "
            "error messages that lose the original cause, and fallbacks that silently "
            "return wrong data. Prefer failing fast over masking a failure."
        ),
        file_patterns=_SOURCE_PATTERNS + _TEST_EXCLUDES,
    ),
    AgentDefinition(
        agent_id="security-sweeper",
        name="The Security Sweeper",
        description="Find injection, secret leakage and unsafe input handling",
        guidelines=(
            "Find hard-coded secrets, shell or SQL built from untrusted input, path "
            "traversal, unsafe deserialization, and missing authorization checks on "
            "request handlers."
        ),
        file_patterns=_SOURCE_PATTERNS,
    ),
    AgentDefinition(
        agent_id="depth-gauge",
        name="The Depth Gauge",
        description="Find shallow modules whose interface is as complex as their body",
        guidelines=(
            "Find pass-through wrappers, classes that only forward calls, and modules "
            "whose public surface is larger than the behaviour they hide. Recommend "
            "merging or deepening them."
        ),
        file_patterns=_SOURCE_PATTERNS + _TEST_EXCLUDES,
    ),
    AgentDefinition(
        agent_id="naming-renovator",
        name="The Naming Renovator",
        description="Find misleading or inconsistent names",
        guidelines=(
            "Find functions whose name contradicts what they do, boolean names that read "
            "backwards, and the same concept named differently across modules."
        ),
        file_patterns=_SOURCE_PATTERNS + _TEST_EXCLUDES,
    ),
    AgentDefinition(
        agent_id="config-cleaner",
        name="The Config Cleaner",
        description="Find dead, duplicated and unsafe configuration",
        guidelines=(
            "Find settings that are read but never defined, defined but never read, "
            "duplicated defaults that disagree, and configuration values parsed without "
            "validation."
        ),
        file_patterns=_SOURCE_PATTERNS + ("**/*.toml", "**/*.json", "**/*.yaml", "**/*.env*"),
    ),
)


class AgentRegistry:
    """Lookup of scanning agents by id."""

    def __init__(self, agents: Iterable[AgentDefinition] = BUILTIN_AGENTS) -> None:
        self._agents = {agent.agent_id: agent for agent in agents}

    def get(self, agent_id: str) -> AgentDefinition:
        try:
            return self._agents[agent_id]
        except KeyError:
            raise UnknownAgentError(agent_id) from None

    def ids(self) -> list[str]:
        return list(self._agents)

    def name_of(self, agent_id: str) -> str:
        agent = self._agents.get(agent_id)
        return agent.name if agent else agent_id

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

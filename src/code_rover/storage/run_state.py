"""Persisted, resumable batch scan progress.

The run state is an immutable value: every transition returns a new
`BatchRunState` and the store rewrites the whole document in one atomic
replace, immediately after the transition. A crash therefore loses at most
the agents that were in flight.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from code_rover.config import rover_dir
from code_rover.errors import InvalidTransitionError
from code_rover.storage.common import from_iso, load_json, to_iso, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

RUN_STATE_FILE = "batch-run-state.json"
RUN_STATE_VERSION = "1.0.0"
STALE_AFTER = timedelta(hours=24)


class AgentRunStatus(str, Enum):
    """Lifecycle of one agent inside a batch run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({AgentRunStatus.COMPLETED, AgentRunStatus.ERROR})

_ALLOWED_TRANSITIONS: dict[AgentRunStatus, frozenset[AgentRunStatus]] = {
    AgentRunStatus.PENDING: frozenset({AgentRunStatus.RUNNING}),
    AgentRunStatus.RUNNING: TERMINAL_STATUSES,
    AgentRunStatus.COMPLETED: frozenset(),
    AgentRunStatus.ERROR: frozenset(),
}


@dataclass(frozen=True, slots=True)
class AgentResultSummary:
    """Counts kept per finished agent; the full result is not persisted."""

    candidate_issues: int = 0
    approved_issues: int = 0
    rejected_issues: int = 0
    tickets_created: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "candidate_issues": self.candidate_issues,
            "approved_issues": self.approved_issues,
            "rejected_issues": self.rejected_issues,
            "tickets_created": self.tickets_created,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentResultSummary:
        return cls(
            candidate_issues=int(payload.get("candidate_issues", 0)),
            approved_issues=int(payload.get("approved_issues", 0)),
            rejected_issues=int(payload.get("rejected_issues", 0)),
            tickets_created=int(payload.get("tickets_created", 0)),
        )


@dataclass(frozen=True, slots=True)
class AgentRunState:
    """Persisted state of one agent."""

    agent_id: str
    agent_name: str
    status: AgentRunStatus = AgentRunStatus.PENDING
    error: str | None = None
    completed_at: datetime | None = None
    result: AgentResultSummary | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "status": self.status.value,
            "error": self.error,
            "completed_at": to_iso(self.completed_at) if self.completed_at else None,
            "result": self.result.to_dict() if self.result else None,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentRunState:
        completed_at = payload.get("completed_at")
        result = payload.get("result")
        return cls(
            agent_id=str(payload["agent_id"]),
            agent_name=str(payload.get("agent_name") or payload["agent_id"]),
            status=AgentRunStatus(payload["status"]),
            error=payload.get("error"),
            completed_at=from_iso(completed_at) if completed_at else None,
            result=AgentResultSummary.from_dict(result) if isinstance(result, dict) else None,
            attempts=int(payload.get("attempts", 0)),
        )


@dataclass(frozen=True, slots=True)
class BatchRunState:
    """Persisted state of an entire batch run."""

    run_id: str
    version: str
    target_path: str
    requested_agent_ids: tuple[str, ...]
    agents: tuple[AgentRunState, ...]
    started_at: datetime
    completed_at: datetime | None
    concurrency: int
    is_stale: bool = False

    def agent(self, agent_id: str) -> AgentRunState | None:
        for agent in self.agents:
            if agent.agent_id == agent_id:
                return agent
        return None

    @property
    def is_incomplete(self) -> bool:
        return self.completed_at is None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence; `is_stale` is derived on load and never stored."""

        return {
            "run_id": self.run_id,
            "version": self.version,
            "target_path": self.target_path,
            "requested_agent_ids": list(self.requested_agent_ids),
            "agents": [agent.to_dict() for agent in self.agents],
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at) if self.completed_at else None,
            "concurrency": self.concurrency,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BatchRunState:
        completed_at = payload.get("completed_at")
        return cls(
            run_id=str(payload["run_id"]),
            version=str(payload["version"]),
            target_path=str(payload.get("target_path", "")),
            requested_agent_ids=tuple(payload.get("requested_agent_ids", ())),
            agents=tuple(AgentRunState.from_dict(item) for item in payload["agents"]),
            started_at=from_iso(payload["started_at"]),
            completed_at=from_iso(completed_at) if completed_at else None,
            concurrency=int(payload.get("concurrency", 1)),
        )


def create_run_state(
    target_path: Path | str,
    agent_ids: Iterable[str],
    concurrency: int,
    *,
    agent_name: Callable[[str], str] | None = None,
    now: datetime | None = None,
) -> BatchRunState:
    """Create the initial state of a fresh run, all agents pending."""

    ids = tuple(agent_ids)
    started_at = now or utc_now()
    return BatchRunState(
        run_id=f"run-{int(time.time() * 1000)}-{uuid4().hex[:7]}",
        version=RUN_STATE_VERSION,
        target_path=str(target_path),
        requested_agent_ids=ids,
        agents=tuple(
            AgentRunState(agent_id=agent_id, agent_name=agent_name(agent_id) if agent_name else agent_id)
            for agent_id in ids
        ),
        started_at=started_at,
        completed_at=None if ids else started_at,
        concurrency=concurrency,
    )


def update_agent_status(
    state: BatchRunState,
    agent_id: str,
    status: AgentRunStatus,
    *,
    error: str | None = None,
    result: AgentResultSummary | None = None,
    now: datetime | None = None,
) -> BatchRunState:
    """Return a new state with one agent moved forward.

    Raises `InvalidTransitionError` for unknown agents and backward moves.
    The run's `completed_at` is stamped when no agent is left pending or
    running.
    """

    current = state.agent(agent_id)
    if current is None:
        raise InvalidTransitionError(f"Agent {agent_id} is not part of run {state.run_id}")
    if status not in _ALLOWED_TRANSITIONS[current.status]:
        raise InvalidTransitionError(
            f"Agent {agent_id} cannot move from {current.status.value} to {status.value}",
        )

    timestamp = now or utc_now()
    if status == AgentRunStatus.RUNNING:
        updated = replace(current, status=status, attempts=current.attempts + 1)
    else:
        updated = replace(
            current,
            status=status,
            completed_at=timestamp,
            error=error if status == AgentRunStatus.ERROR else None,
            result=result if status == AgentRunStatus.COMPLETED else None,
        )

    agents = tuple(updated if agent.agent_id == agent_id else agent for agent in state.agents)
    finished = all(agent.status in TERMINAL_STATUSES for agent in agents)
    return replace(
        state,
        agents=agents,
        completed_at=(state.completed_at or timestamp) if finished else None,
    )


def prepare_resume(state: BatchRunState) -> BatchRunState:
    """Reopen a run: every agent not completed goes back to pending.

    Agents left `running` by a crash and agents that ended in `error` are
    both rescheduled; the next claim starts a new attempt for them.
    """

    agents = tuple(
        agent
        if agent.status == AgentRunStatus.COMPLETED
        else replace(agent, status=AgentRunStatus.PENDING, completed_at=None)
        for agent in state.agents
    )
    finished = all(agent.status in TERMINAL_STATUSES for agent in agents)
    return replace(state, agents=agents, completed_at=state.completed_at if finished else None)


def completed_agent_ids(state: BatchRunState) -> list[str]:
    """Agent ids to skip on resume."""

    return [agent.agent_id for agent in state.agents if agent.status == AgentRunStatus.COMPLETED]


def agents_to_run(state: BatchRunState) -> list[str]:
    """Agent ids that still need a run (pending, abandoned running or errored)."""

    return [agent.agent_id for agent in state.agents if agent.status != AgentRunStatus.COMPLETED]


class RunStateStore:
    """Reads and writes the run-state document of one target."""

    def __init__(self, path: Path, *, stale_after: timedelta = STALE_AFTER) -> None:
        self.path = path
        self.stale_after = stale_after

    @classmethod
    def for_target(cls, target_path: Path, *, stale_after: timedelta = STALE_AFTER) -> RunStateStore:
        return cls(rover_dir(target_path) / RUN_STATE_FILE, stale_after=stale_after)

    def load(self, *, now: datetime | None = None) -> BatchRunState | None:
        """Load saved state; None when absent or corrupt. Old runs come back flagged stale."""

        if not self.path.exists():
            return None
        try:
            state = BatchRunState.from_dict(load_json(self.path))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
            logger.warning("Corrupted run state file %s, ignoring: %s", self.path, error)
            return None

        if (now or utc_now()) - state.started_at > self.stale_after:
            logger.info("Run %s started at %s is stale", state.run_id, state.started_at)
            return replace(state, is_stale=True)
        return state

    def save(self, state: BatchRunState) -> None:
        write_json_atomic(self.path, state.to_dict())

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class RunStateRecorder:
    """Serializes run-state transitions and persists each one immediately."""

    def __init__(self, store: RunStateStore, state: BatchRunState) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._state = state
        store.save(state)

    @property
    def state(self) -> BatchRunState:
        return self._state

    def record(
        self,
        agent_id: str,
        status: AgentRunStatus,
        *,
        error: str | None = None,
        result: AgentResultSummary | None = None,
    ) -> BatchRunState:
        with self._lock:
            updated = update_agent_status(
                self._state,
                agent_id,
                status,
                error=error,
                result=result,
            )
            self._store.save(updated)
            self._state = updated
            return updated

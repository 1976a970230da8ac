"""Fix-session records and per-session traces under `.rover/`."""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from code_rover.config import rover_dir
from code_rover.storage.common import from_iso, load_json, to_iso, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

FIX_STATE_FILE = "fix-state.json"
FIX_STATE_VERSION = "1.0.0"
TRACES_DIR = "traces"


class FixRecordStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"
    PR_CREATED = "pr_created"
    MERGED = "merged"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class FixRecord:
    """One fix session and the worktree it owns."""

    issue_id: str
    branch_name: str
    worktree_path: str
    status: FixRecordStatus
    iterations: int
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    issue_summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "branch_name": self.branch_name,
            "worktree_path": self.worktree_path,
            "status": self.status.value,
            "iterations": self.iterations,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at) if self.completed_at else None,
            "error": self.error,
            "issue_summary": self.issue_summary,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FixRecord:
        completed_at = payload.get("completed_at")
        return cls(
            issue_id=str(payload["issue_id"]),
            branch_name=str(payload["branch_name"]),
            worktree_path=str(payload["worktree_path"]),
            status=FixRecordStatus(payload["status"]),
            iterations=int(payload.get("iterations", 0)),
            started_at=from_iso(payload["started_at"]),
            completed_at=from_iso(completed_at) if completed_at else None,
            error=payload.get("error"),
            issue_summary=payload.get("issue_summary"),
        )


class FixStateStore:
    """Thread-safe store of fix records, rewritten atomically on every change."""

    def __init__(self, target_path: Path) -> None:
        self.target_path = target_path
        self.path = rover_dir(target_path) / FIX_STATE_FILE
        self.traces_dir = rover_dir(target_path) / TRACES_DIR
        self._lock = threading.Lock()

    def records(self) -> list[FixRecord]:
        with self._lock:
            return list(self._load().values())

    def get(self, issue_id: str) -> FixRecord | None:
        with self._lock:
            return self._load().get(issue_id)

    def upsert(self, record: FixRecord) -> FixRecord:
        with self._lock:
            records = self._load()
            records[record.issue_id] = record
            self._save(records)
        return record

    def update(self, issue_id: str, **changes: Any) -> FixRecord:
        """Apply field changes to an existing record.

        `iterations` may only grow; a smaller value raises ValueError.
        """

        with self._lock:
            records = self._load()
            current = records.get(issue_id)
            if current is None:
                raise KeyError(f"No fix record for {issue_id}")
            iterations = changes.get("iterations")
            if iterations is not None and iterations < current.iterations:
                raise ValueError(
                    f"Fix record {issue_id} iterations cannot go from "
                    f"{current.iterations} to {iterations}",
                )
            updated = replace(current, **changes)
            records[issue_id] = updated
            self._save(records)
        return updated

    def remove(self, issue_id: str) -> None:
        with self._lock:
            records = self._load()
            if records.pop(issue_id, None) is not None:
                self._save(records)

    def ready_for_review(self) -> list[FixRecord]:
        return [record for record in self.records() if record.status == FixRecordStatus.READY_FOR_REVIEW]

    def save_trace(self, issue_id: str, payload: dict[str, Any]) -> Path:
        path = self.traces_dir / f"{_safe_name(issue_id)}.json"
        write_json_atomic(path, payload)
        return path

    def _load(self) -> dict[str, FixRecord]:
        if not self.path.exists():
            return {}
        try:
            payload = load_json(self.path)
            records = [FixRecord.from_dict(item) for item in payload.get("fixes", [])]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
            logger.warning("Corrupted fix state file %s, ignoring: %s", self.path, error)
            return {}
        return {record.issue_id: record for record in records}

    def _save(self, records: dict[str, FixRecord]) -> None:
        write_json_atomic(
            self.path,
            {
                "version": FIX_STATE_VERSION,
                "target_path": str(self.target_path),
                "fixes": [record.to_dict() for record in records.values()],
                "last_updated_at": to_iso(utc_now()),
            },
        )


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value)

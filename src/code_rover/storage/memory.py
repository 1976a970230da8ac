"""User-maintained ignore list read by every scanning agent."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from code_rover.config import rover_dir
from code_rover.storage.common import utc_now

logger = logging.getLogger(__name__)

MEMORY_FILE = "memory.md"
MEMORY_HEADER = "# Rover Memory\n\nIssues and patterns listed here will be ignored by all agents.\n"


def memory_path(target_path: Path) -> Path:
    return rover_dir(target_path) / MEMORY_FILE


def load_memory(target_path: Path) -> str:
    """Memory file contents, or an empty string when nothing was remembered yet."""

    path = memory_path(target_path)
    if not path.exists():
        return ""
    return path.read_text("utf-8")


def append_memory(target_path: Path, entry: str, *, now: datetime | None = None) -> Path:
    """Append one timestamped entry, creating the file with its header first."""

    text = entry.strip()
    if not text:
        raise ValueError("Memory entry must not be empty.")
    path = memory_path(target_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    timestamp = (now or utc_now()).strftime("%Y-%m-%d %H:%M:%S")
    block = f"\n---\n\n## {timestamp}\n{text}\n"
    if path.exists():
        with path.open("a", encoding="utf-8") as handle:
            handle.write(block)
    else:
        path.write_text(MEMORY_HEADER + block, "utf-8")
    logger.info("Added memory entry to %s", path)
    return path

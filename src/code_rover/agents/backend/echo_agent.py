"""Local stand-in agent CLI for backend integration tests.

Speaks the same stream-JSON protocol as the real agent CLI: reads the prompt
from stdin and prints an init event, one tool-use event and one text event.
The reply text, exit code and an optional delay come from environment
variables.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
import uuid

REPLY_ENV = "CODE_ROVER_ECHO_REPLY"
EXIT_CODE_ENV = "CODE_ROVER_ECHO_EXIT_CODE"
DELAY_ENV = "CODE_ROVER_ECHO_DELAY_SECONDS"


def main(argv: list[str] | None = None) -> int:
    """Emit a deterministic stream for the prompt on stdin."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--model", default="echo")
    parser.add_argument("--resume", default=None)
    parser.add_argument("--allowedTools", default="")
    args, _unknown = parser.parse_known_args(argv)

    prompt = sys.stdin.read()
    session_id = args.resume or f"echo-{uuid.uuid4().hex[:12]}"
    reply = os.getenv(REPLY_ENV) or (prompt.strip().splitlines() or ["(empty prompt)"])[0]

    delay = float(os.getenv(DELAY_ENV, "0") or 0)
    if delay > 0:
        time.sleep(delay)

    _emit({"type": "system", "subtype": "init", "session_id": session_id, "model": args.model})
    print("echo agent: non-JSON diagnostic line", flush=True)
    _emit(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "tool_use", "name": "Read", "input": {"file_path": "README.md"}},
                ],
            },
        },
    )
    _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": reply}]}})
    _emit({"type": "result", "subtype": "success", "session_id": session_id})
    return int(os.getenv(EXIT_CODE_ENV, "0") or 0)


def _emit(event: dict[str, object]) -> None:
    print(json.dumps(event), flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

"""Best-effort recovery of a JSON object from free-form agent text."""

from __future__ import annotations

import json
import re

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


def extract_json_object(text: str, *, required_key: str | None = None) -> dict[str, object] | None:
    """Find the JSON object an agent answered with.

    Tries the whole text, then fenced blocks, then every object embedded in
    the prose. With `required_key`, only objects carrying that key count.
    """

    stripped = text.strip()
    if not stripped:
        return None

    direct = _try_load_dict(stripped)
    if _accepts(direct, required_key):
        return direct

    for match in _FENCED_JSON.finditer(stripped):
        fenced = _try_load_dict(match.group(1))
        if _accepts(fenced, required_key):
            return fenced

    decoder = json.JSONDecoder()
    embedded: dict[str, object] | None = None
    start = stripped.find("{")
    while start != -1:
        try:
            parsed, end = decoder.raw_decode(stripped, start)
        except json.JSONDecodeError:
            start = stripped.find("{", start + 1)
            continue
        if isinstance(parsed, dict) and _accepts(parsed, required_key):
            embedded = parsed
        start = stripped.find("{", end)
    if embedded is not None:
        return embedded

    first = stripped.find("{")
    last = stripped.rfind("}")
    if first == -1 or last <= first:
        return None
    spanning = _try_load_dict(stripped[first : last + 1])
    return spanning if _accepts(spanning, required_key) else None


def _accepts(payload: dict[str, object] | None, required_key: str | None) -> bool:
    if payload is None:
        return False
    return required_key is None or required_key in payload


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed

"""Scanning stage: one read-only agent invocation producing candidate issues."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from code_rover.agents.backend.base import AgentInvoker, AgentRunRequest
from code_rover.agents.json_output import extract_json_object
from code_rover.agents.models import (
    AgentDefinition,
    CandidateIssue,
    IssueSeverity,
    LineRange,
    ScanResult,
)
from code_rover.errors import AgentInvocationError, AgentOutputParseError

logger = logging.getLogger(__name__)

SCAN_TOOLS: tuple[str, ...] = ("Glob", "Grep", "Read")

SCAN_PROMPT_TEMPLATE = """\
You are scanning the codebase at the current working directory.

EXISTING ISSUES (DO NOT DUPLICATE THESE):
{existing_issues}
{memory_section}
SCANNING GUIDELINES:
{guidelines}

FILE PATTERNS TO FOCUS ON:
{file_patterns}

INSTRUCTIONS:
1. Use the Glob tool to find files matching the patterns above
2. Use the Read tool to examine the contents of relevant files
3. Use the Grep tool to search for specific patterns if needed
4. Analyze the code for issues according to your guidelines
5. DO NOT report issues that match any in the "EXISTING ISSUES" list above
6. Return your findings as a JSON object with an "issues" array

Each issue in the array should have:
- id: Unique identifier (format: {{category-slug}}-{{short-hash}})
- title: Short descriptive title
- description: Detailed explanation
- severity: "low" | "medium" | "high" | "critical"
- file_path: Relative path to the file
- line_range: {{"start": number, "end": number}} (optional)
- category: Category name
- recommendation: Specific actionable fix
- code_snippet: The problematic code (optional)

Return ONLY valid JSON. No markdown, no explanations outside the JSON.
"""

MEMORY_SECTION_TEMPLATE = """\
KNOWN ISSUES TO IGNORE:
{memory}

These are intentionally ignored issues or false positives. Do NOT report issues that match these descriptions.
"""


class Scanner:
    """Ask one agent to explore the target and list candidate issues."""

    def __init__(self, invoker: AgentInvoker, *, model: str | None = None) -> None:
        self.invoker = invoker
        self.model = model

    def scan(
        self,
        agent: AgentDefinition,
        target_path: Path,
        *,
        existing_issues: str,
        memory: str = "",
        on_progress: Callable[[str], None] | None = None,
    ) -> ScanResult:
        started = time.monotonic()
        prompt = build_scan_prompt(agent, existing_issues, memory)
        result = self.invoker.invoke(
            AgentRunRequest(
                prompt=prompt,
                cwd=target_path,
                allowed_tools=SCAN_TOOLS,
                model=self.model,
                on_progress=on_progress,
            ),
        )

        payload = extract_json_object(result.result_text, required_key="issues")
        if payload is None:
            if result.exit_code != 0:
                raise AgentInvocationError(
                    f"Scanner {agent.agent_id} exited with code {result.exit_code}",
                    transient=True,
                    exit_code=result.exit_code,
                )
            raise AgentOutputParseError(f"Scanner {agent.agent_id} returned no parseable JSON")

        issues = parse_candidate_issues(payload.get("issues"), agent_id=agent.agent_id)
        logger.info("Scanner %s found %d candidate issues", agent.agent_id, len(issues))
        return ScanResult(issues=issues, duration_seconds=time.monotonic() - started)


def build_scan_prompt(agent: AgentDefinition, existing_issues: str, memory: str = "") -> str:
    memory_section = MEMORY_SECTION_TEMPLATE.format(memory=memory.strip()) if memory.strip() else ""
    return SCAN_PROMPT_TEMPLATE.format(
        existing_issues=existing_issues,
        memory_section=memory_section,
        guidelines=agent.guidelines,
        file_patterns="\n".join(agent.file_patterns),
    )


def parse_candidate_issues(raw_issues: object, *, agent_id: str) -> list[CandidateIssue]:
    """Normalize scanner output; ids are made unique within one scan."""

    if not isinstance(raw_issues, list):
        raise AgentOutputParseError(f"Scanner {agent_id} returned a non-list 'issues' field")

    issues: list[CandidateIssue] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_issues):
        if not isinstance(item, dict):
            continue
        issue_id = str(item.get("id") or f"{agent_id}-issue-{index}")
        if issue_id in seen:
            issue_id = f"{issue_id}-{index}"
        seen.add(issue_id)
        issues.append(
            CandidateIssue(
                id=issue_id,
                agent_id=agent_id,
                title=str(item.get("title") or "Unknown Issue"),
                description=str(item.get("description") or ""),
                severity=IssueSeverity.parse(item.get("severity", "medium")),
                file_path=str(_field(item, "file_path", "filePath") or ""),
                category=str(item.get("category") or "General"),
                recommendation=str(item.get("recommendation") or ""),
                line_range=_line_range(_field(item, "line_range", "lineRange")),
                code_snippet=_field(item, "code_snippet", "codeSnippet") or None,
            ),
        )
    return issues


def _field(item: dict[str, Any], snake: str, camel: str) -> Any:
    value = item.get(snake)
    return item.get(camel) if value is None else value


def _line_range(value: object) -> LineRange | None:
    if not isinstance(value, dict):
        return None
    try:
        return LineRange(start=int(value["start"]), end=int(value["end"]))
    except (KeyError, TypeError, ValueError):
        return None

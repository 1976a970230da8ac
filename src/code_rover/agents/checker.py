"""Checking stage: batched validation of candidate issues."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from code_rover.agents.backend.base import AgentInvoker, AgentRunRequest
from code_rover.agents.json_output import extract_json_object
from code_rover.agents.models import AgentDefinition, CandidateIssue, CheckDecision, CheckerResult
from code_rover.errors import RoverError

logger = logging.getLogger(__name__)

CHECK_TOOLS: tuple[str, ...] = ("Read", "Glob", "Grep")
DEFAULT_BATCH_SIZE = 10

CHECK_PROMPT_TEMPLATE = """\
You are an independent code quality reviewer. Validate whether each detected \
issue below is genuine and worth addressing.

CONTEXT:
- These issues were detected by "{agent_name}"
- The scanner's focus was: {agent_description}

CANDIDATE ISSUES TO REVIEW:
{issues}

INSTRUCTIONS:
1. Use the Read tool to examine the actual files and verify each issue exists
2. Approve issues that are genuine and would improve the codebase if fixed
3. Reject false positives, overly pedantic findings, and fixes that would cause \
more harm than good

Return your decisions as JSON:
{{"decisions": [{{"id": "<issue id>", "approve": true, "reasoning": "<brief reason>"}}]}}

Include one decision per issue id. Return ONLY valid JSON.
"""


class Checker:
    """Approve or reject candidates in fixed-size batches, one invocation per batch."""

    def __init__(
        self,
        invoker: AgentInvoker,
        *,
        model: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be a positive integer.")
        self.invoker = invoker
        self.model = model
        self.batch_size = batch_size

    def check(
        self,
        agent: AgentDefinition,
        target_path: Path,
        issues: list[CandidateIssue],
        *,
        on_batch: Callable[[int, int], None] | None = None,
    ) -> CheckerResult:
        """Check all candidates; a failed batch rejects every issue in it."""

        started = time.monotonic()
        result = CheckerResult()
        checked = 0
        for batch in _batches(issues, self.batch_size):
            if on_batch is not None:
                on_batch(checked, len(issues))
            for decision in self._check_batch(agent, target_path, batch):
                result.decisions.append(decision)
                if decision.approve:
                    result.approved_ids.append(decision.issue_id)
                else:
                    result.rejected_ids.append(decision.issue_id)
            checked += len(batch)
        if on_batch is not None and issues:
            on_batch(checked, len(issues))
        result.duration_seconds = time.monotonic() - started
        logger.info(
            "Checker for %s approved %d of %d issues",
            agent.agent_id,
            len(result.approved_ids),
            len(issues),
        )
        return result

    def _check_batch(
        self,
        agent: AgentDefinition,
        target_path: Path,
        batch: list[CandidateIssue],
    ) -> list[CheckDecision]:
        prompt = build_check_prompt(agent, batch)
        try:
            answer = self.invoker.invoke(
                AgentRunRequest(
                    prompt=prompt,
                    cwd=target_path,
                    allowed_tools=CHECK_TOOLS,
                    model=self.model,
                    read_only=True,
                ),
            )
        except (RoverError, OSError) as error:
            logger.warning("Checker batch for %s failed, rejecting %d issues: %s", agent.agent_id, len(batch), error)
            return _reject_all(batch, f"Check failed: {error}")

        payload = extract_json_object(answer.result_text, required_key="decisions")
        raw_decisions = payload.get("decisions") if payload is not None else None
        if not isinstance(raw_decisions, list):
            logger.warning("Checker batch for %s returned no decisions, rejecting %d issues", agent.agent_id, len(batch))
            return _reject_all(batch, "Failed to parse checker response")

        answered: dict[str, CheckDecision] = {}
        for item in raw_decisions:
            if not isinstance(item, dict) or "id" not in item:
                continue
            issue_id = str(item["id"])
            answered[issue_id] = CheckDecision(
                issue_id=issue_id,
                approve=item.get("approve") is True,
                reasoning=str(item.get("reasoning") or ""),
            )

        return [
            answered.get(issue.id)
            or CheckDecision(issue_id=issue.id, approve=False, reasoning="No decision returned")
            for issue in batch
        ]


def build_check_prompt(agent: AgentDefinition, batch: list[CandidateIssue]) -> str:
    blocks = []
    for issue in batch:
        lines = [
            f"- ID: {issue.id}",
            f"  Title: {issue.title}",
            f"  Severity: {issue.severity.value}",
            f"  File: {issue.location}",
            f"  Category: {issue.category}",
            f"  Description: {issue.description}",
            f"  Recommendation: {issue.recommendation}",
        ]
        if issue.code_snippet:
            lines.append(f"  Code Snippet:\n```\n{issue.code_snippet}\n```")
        blocks.append("\n".join(lines))
    return CHECK_PROMPT_TEMPLATE.format(
        agent_name=agent.name,
        agent_description=agent.description,
        issues="\n\n".join(blocks),
    )


def _batches(issues: list[CandidateIssue], size: int) -> list[list[CandidateIssue]]:
    return [issues[start : start + size] for start in range(0, len(issues), size)]


def _reject_all(batch: list[CandidateIssue], reasoning: str) -> list[CheckDecision]:
    return [CheckDecision(issue_id=issue.id, approve=False, reasoning=reasoning) for issue in batch]

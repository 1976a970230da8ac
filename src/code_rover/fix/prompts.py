"""Prompt builders and output markers for fix and review invocations."""

from __future__ import annotations

import logging
from pathlib import Path

from code_rover.agents.backend.base import AgentRunResult
from code_rover.fix.models import ReviewItem, ReviewPass

logger = logging.getLogger(__name__)

ALREADY_FIXED = "ALREADY_FIXED"
REVIEW_NOT_APPLICABLE = "REVIEW_NOT_APPLICABLE"
COMMIT_COMPLETE = "COMMIT_COMPLETE"
BLOCKED = "BLOCKED:"

INITIAL_FIX_PROMPT_TEMPLATE = """\
You are fixing a code issue in this codebase.

ISSUE TO FIX ({issue_id}):
{issue_content}

INSTRUCTIONS:
1. Install project dependencies first if the project needs them; this is a fresh worktree
2. Read the issue carefully and explore the codebase to find the affected files
3. Check whether the issue has ALREADY been fixed; the code may have changed since detection
4. If it is already fixed, respond with "{already_fixed}" and explain briefly why
5. Otherwise implement the fix and run the tests if available
6. Review "git status" and stage ONLY the files directly related to this issue
7. Commit your changes

COMMIT DISCIPLINE:
- Use "git add <specific-file>" for each relevant file, NOT "git add ."
- Run "git diff --staged" before committing and unstage unrelated files
- Start the commit message with "fix({issue_id}):" followed by what was fixed and why

IMPORTANT:
- Fix only this issue and make the minimal change that does it
- If the issue is already resolved, respond with "{already_fixed}" and make no commits
- After committing, respond with "{commit_complete}"
- Never use credentials from .env files to reach external systems
- Implement every item in the issue; partial fixes are not acceptable
- If something truly cannot be implemented, respond with "{blocked} <reason>" instead of skipping it
"""

ITERATION_PROMPT_TEMPLATE = """\
The code review identified issues that need to be addressed for {issue_id}:

{items}

Please fix these issues and commit the changes.
Focus on "must_fix" items first, then "should_fix" items.

COMMIT DISCIPLINE:
- ONLY commit files you modified to address the review feedback
- Use "git add <specific-file>" for each relevant file, NOT "git add ."
- Run "git diff --staged" before committing

IMPORTANT:
- Make minimal changes to address the feedback
- Reference {issue_id} in the commit message
- After committing, respond with "{commit_complete}"
- If the feedback is NOT APPLICABLE to your changes (false positive, wrong files, \
hallucinated issues), respond with "{review_not_applicable}" and explain why. \
Make no commits in that case.
"""

DEFAULT_REVIEW_PROMPTS: dict[ReviewPass, str] = {
    ReviewPass.ARCHITECTURE: """\
You are a senior engineer reviewing a change for architectural quality.
Look for misplaced responsibilities, leaky abstractions, duplicated logic, \
inconsistent patterns with the surrounding code and changes that make the \
module harder to maintain.
Use Read, Glob, Grep and LS to inspect the code around the diff. Do not modify files.
For every finding give the file, what is wrong and how to fix it.
If the change is sound, say "LGTM".
""",
    ReviewPass.BUG: """\
You are reviewing a change for bugs.
Look for logic errors, unhandled edge cases, wrong error handling, race \
conditions, resource leaks and regressions in existing behavior.
Use Read, Glob, Grep and LS to inspect the code around the diff. Do not modify files.
For every finding give the file, what is wrong and how to fix it.
If you find nothing, say "No bugs found".
""",
    ReviewPass.PERFORMANCE: """\
You are reviewing a change for performance problems.
Look for needless work in hot paths, repeated I/O, unbounded memory growth \
and blocking calls where they hurt.
Use Read, Glob, Grep and LS to inspect the code around the diff. Do not modify files.
For every finding give the file, what is wrong and how to fix it.
If you find nothing, say "LGTM".
""",
    ReviewPass.COMPLETENESS: """\
You are verifying that a change fully resolves the issue it was written for.
Compare every item of the issue against the diff. Report each requirement \
that is missing or only partly implemented.
Use Read, Glob, Grep and LS to inspect the code. Do not modify files.
If every item is addressed, say "No issues found".
""",
}

CLASSIFICATION_PROMPT_TEMPLATE = """\
Analyze this code review output and classify every finding.

REVIEW OUTPUT:
{review_text}

Severity definitions:
- "must_fix": bugs, security problems, broken functionality, missing parts of the fix
- "should_fix": maintainability or correctness risks worth addressing before merge
- "suggestion": optional style or preference improvements

Respond with ONLY a JSON object in this shape:
{{"isClean": true, "items": [{{"severity": "must_fix", "description": "<what to change>", "file": "<path or null>"}}]}}

"isClean" is true only when the review contains no findings at all.
"""

VERIFICATION_PROMPT_TEMPLATE = """\
A coding agent dismissed the code review findings below as not applicable. \
Be skeptical: verify each dismissal against the actual code.

REVIEW FINDINGS:
{items}

AGENT'S JUSTIFICATION:
{justification}

Use Read, Glob, Grep and LS to check the code. A dismissal is valid only when \
the finding is demonstrably wrong for this code. Treat it as invalid when:
- The justification is vague or doesn't directly address the finding
- The code still shows the problem described
- The agent argues the fix is out of scope without evidence

Respond with ONLY a JSON object:
{{"items": [{{"index": 1, "valid": true, "reason": "<brief reason>"}}]}}

Use the 1-based index of each finding.
"""


def build_initial_fix_prompt(issue_id: str, issue_content: str) -> str:
    return INITIAL_FIX_PROMPT_TEMPLATE.format(
        issue_id=issue_id,
        issue_content=issue_content,
        already_fixed=ALREADY_FIXED,
        commit_complete=COMMIT_COMPLETE,
        blocked=BLOCKED,
    )


def build_iteration_prompt(issue_id: str, items: list[ReviewItem]) -> str:
    return ITERATION_PROMPT_TEMPLATE.format(
        issue_id=issue_id,
        items=format_review_items(items, uppercase=True),
        commit_complete=COMMIT_COMPLETE,
        review_not_applicable=REVIEW_NOT_APPLICABLE,
    )


def format_review_items(items: list[ReviewItem], *, uppercase: bool = False) -> str:
    lines = []
    for index, item in enumerate(items, start=1):
        severity = item.severity.value.upper() if uppercase else item.severity.value
        file_info = f" ({item.file})" if item.file else ""
        lines.append(f"{index}. [{severity}] {item.description}{file_info}")
    return "\n".join(lines)


def build_review_prompt(  # noqa: PLR0913
    template: str,
    *,
    review_pass: ReviewPass,
    diff: str,
    changed_files: list[str],
    issue_content: str | None,
) -> str:
    """Pass template, then the issue, then changed files and the diff."""

    sections = [template.rstrip()]
    if issue_content:
        if review_pass == ReviewPass.COMPLETENESS:
            sections.append(f"ORIGINAL ISSUE TO VERIFY:\n{issue_content}")
        else:
            sections.append(
                "ORIGINAL ISSUE TO FIX:\n"
                f"{issue_content}\n\n"
                "CRITICAL: any part of this issue the change fails to address is a must_fix finding.",
            )
    files = "\n".join(f"- {path}" for path in changed_files) or "(none)"
    sections.append(f"CHANGED FILES:\n{files}")
    sections.append(f"DIFF:\n```diff\n{diff}\n```")
    return "\n\n".join(sections) + "\n"


def build_classification_prompt(review_text: str) -> str:
    return CLASSIFICATION_PROMPT_TEMPLATE.format(review_text=review_text)


def build_verification_prompt(items: list[ReviewItem], justification: str) -> str:
    return VERIFICATION_PROMPT_TEMPLATE.format(
        items=format_review_items(items),
        justification=justification or "(no justification given)",
    )


def load_review_prompts(prompt_dir: Path | None) -> dict[ReviewPass, str]:
    """Built-in pass prompts, each replaced by `<prompt_dir>/<pass>.txt` when present."""

    prompts = dict(DEFAULT_REVIEW_PROMPTS)
    if prompt_dir is None:
        return prompts
    for review_pass in ReviewPass:
        path = prompt_dir / f"{review_pass.value}.txt"
        if path.is_file():
            prompts[review_pass] = path.read_text("utf-8")
            logger.debug("Loaded %s review prompt from %s", review_pass.value, path)
    return prompts


def contains_marker(result: AgentRunResult, marker: str) -> bool:
    """True when the agent's text, or a raw non-JSON output line, carries `marker`."""

    if marker in result.result_text:
        return True
    for line in result.raw_output.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("{") and marker in stripped:
            return True
    return False


def marker_reason(text: str, marker: str) -> str:
    """Text following `marker`, or the whole text when nothing follows it."""

    _, found, tail = text.partition(marker)
    if found and tail.strip(" :\n"):
        return tail.strip(" :\n")
    return text.strip()

"""Multi-pass review of a fix worktree, severity classification and dismissal checks."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from pathlib import Path

from code_rover.agents.backend.base import WRITE_TOOLS, AgentInvoker, AgentRunRequest
from code_rover.agents.json_output import extract_json_object
from code_rover.errors import RoverError
from code_rover.fix.models import (
    DismissalVerification,
    FullReview,
    ReviewAnalysis,
    ReviewItem,
    ReviewPass,
    ReviewSeverity,
)
from code_rover.fix.prompts import (
    build_classification_prompt,
    build_review_prompt,
    build_verification_prompt,
    load_review_prompts,
)
from code_rover.fix.worktree import GitWorktreeManager

logger = logging.getLogger(__name__)

READ_ONLY_TOOLS: tuple[str, ...] = ("Read", "Glob", "Grep", "LS")
EMPTY_DIFF_REVIEW = "No changes to review. LGTM."
PARSE_FAILURE_DESCRIPTION = "Could not parse review output. Manual review required."

_CLEAN_PHRASES = re.compile(
    r"\b(lgtm|looks good to me|no issues found|no actionable items|no bugs found)\b",
    re.IGNORECASE,
)
_ALWAYS_PASSES = (ReviewPass.ARCHITECTURE, ReviewPass.BUG, ReviewPass.PERFORMANCE)


class Reviewer:
    """Run review passes with read-only tools and classify what they report."""

    def __init__(  # noqa: PLR0913
        self,
        invoker: AgentInvoker,
        worktrees: GitWorktreeManager,
        *,
        model: str | None = "sonnet",
        prompt_dir: Path | None = None,
        allowed_tools: tuple[str, ...] = READ_ONLY_TOOLS,
    ) -> None:
        forbidden = sorted(set(allowed_tools) & set(WRITE_TOOLS))
        if forbidden:
            raise ValueError(f"Review passes must be read-only; refusing tools: {', '.join(forbidden)}")
        self.invoker = invoker
        self.worktrees = worktrees
        self.model = model
        self.allowed_tools = allowed_tools
        self.prompts = load_review_prompts(prompt_dir)

    def run_full_review(
        self,
        worktree_path: Path,
        issue_content: str | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> FullReview:
        """Run every applicable pass sequentially against the worktree diff.

        Git failures propagate as `GitCommandError`.
        """

        review_passes = list(_ALWAYS_PASSES)
        if issue_content:
            review_passes.append(ReviewPass.COMPLETENESS)

        diff = self.worktrees.diff(worktree_path)
        if not diff.strip():
            logger.info("Worktree %s has no changes against the default branch", worktree_path)
            return FullReview(passes={review_pass: EMPTY_DIFF_REVIEW for review_pass in review_passes})
        changed_files = self.worktrees.changed_files(worktree_path)

        passes: dict[ReviewPass, str] = {}
        for review_pass in review_passes:
            if on_progress is not None:
                on_progress(f"Running {review_pass.value} review...")
            passes[review_pass] = self.run_pass(
                review_pass,
                worktree_path,
                diff=diff,
                changed_files=changed_files,
                issue_content=issue_content,
                on_progress=on_progress,
            )
        return FullReview(passes=passes)

    def run_pass(  # noqa: PLR0913
        self,
        review_pass: ReviewPass,
        worktree_path: Path,
        *,
        diff: str,
        changed_files: list[str],
        issue_content: str | None,
        on_progress: Callable[[str], None] | None = None,
    ) -> str:
        prompt = build_review_prompt(
            self.prompts[review_pass],
            review_pass=review_pass,
            diff=diff,
            changed_files=changed_files,
            issue_content=issue_content,
        )
        result = self.invoker.invoke(
            AgentRunRequest(
                prompt=prompt,
                cwd=worktree_path,
                allowed_tools=self.allowed_tools,
                model=self.model,
                read_only=True,
                on_progress=on_progress,
            ),
        )
        if result.exit_code != 0:
            logger.warning("%s review exited with code %d", review_pass.label, result.exit_code)
            if not result.result_text.strip():
                return f"Review failed: agent exited with code {result.exit_code}"
        return result.result_text

    def parse_review(self, review_text: str, cwd: Path) -> ReviewAnalysis:
        """Classify one review text into severity-tagged items."""

        if _CLEAN_PHRASES.search(review_text):
            return ReviewAnalysis(is_clean=True)

        try:
            result = self.invoker.invoke(
                AgentRunRequest(
                    prompt=build_classification_prompt(review_text),
                    cwd=cwd,
                    model=self.model,
                    read_only=True,
                ),
            )
        except (RoverError, OSError) as error:
            logger.warning("Review classification failed: %s", error)
            return _unparsed_review()

        payload = extract_json_object(result.result_text, required_key="items")
        raw_items = payload.get("items") if payload is not None else None
        if payload is None or not isinstance(raw_items, list):
            logger.warning("Review classification returned no usable JSON")
            return _unparsed_review()

        items = [item for item in (_review_item(raw) for raw in raw_items) if item is not None]
        is_clean = payload.get("isClean") is True and not items
        return ReviewAnalysis(is_clean=is_clean, items=items)

    def analyze(self, review: FullReview, cwd: Path) -> ReviewAnalysis:
        """Parse each pass on its own and merge; clean only when every pass is."""

        return ReviewAnalysis.merge([self.parse_review(text, cwd) for text in review.passes.values()])

    def verify_dismissal(self, items: list[ReviewItem], justification: str, cwd: Path) -> DismissalVerification:
        """Skeptically check the fix agent's claim that review items do not apply.

        Items the verifier does not explicitly accept as dismissed stay in
        `remaining_items`; on any failure every item is kept.
        """

        if not items:
            return DismissalVerification(all_verified=True)
        try:
            result = self.invoker.invoke(
                AgentRunRequest(
                    prompt=build_verification_prompt(items, justification),
                    cwd=cwd,
                    allowed_tools=self.allowed_tools,
                    model=self.model,
                    read_only=True,
                ),
            )
        except (RoverError, OSError) as error:
            logger.warning("Dismissal verification failed, keeping all items: %s", error)
            return DismissalVerification(all_verified=False, remaining_items=list(items))

        payload = extract_json_object(result.result_text, required_key="items")
        raw_verdicts = payload.get("items") if payload is not None else None
        if not isinstance(raw_verdicts, list):
            logger.warning("Dismissal verification returned no usable JSON, keeping all items")
            return DismissalVerification(all_verified=False, remaining_items=list(items))

        dismissed: set[int] = set()
        for verdict in raw_verdicts:
            if not isinstance(verdict, dict) or verdict.get("valid") is not True:
                continue
            try:
                dismissed.add(int(verdict["index"]))
            except (KeyError, TypeError, ValueError):
                continue

        remaining = [item for index, item in enumerate(items, start=1) if index not in dismissed]
        logger.info("Dismissal verification accepted %d of %d items", len(items) - len(remaining), len(items))
        return DismissalVerification(all_verified=not remaining, remaining_items=remaining)


def has_actionable_items(analysis: ReviewAnalysis) -> bool:
    return not analysis.is_clean and bool(analysis.actionable_items)


def _review_item(raw: object) -> ReviewItem | None:
    if not isinstance(raw, dict):
        return None
    description = str(raw.get("description") or "").strip()
    if not description:
        return None
    file = raw.get("file")
    return ReviewItem(
        severity=ReviewSeverity.parse(raw.get("severity")),
        description=description,
        file=str(file) if file else None,
    )


def _unparsed_review() -> ReviewAnalysis:
    return ReviewAnalysis(
        is_clean=False,
        items=[ReviewItem(severity=ReviewSeverity.SHOULD_FIX, description=PARSE_FAILURE_DESCRIPTION)],
    )

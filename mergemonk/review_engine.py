"""Turn analysis output into a review: AI-backed, or rule-based when no model is available."""

from __future__ import annotations

from typing import Iterable, List, Tuple

from mergemonk.diff_positions import HUNK_HEADER_RE
from mergemonk.logger import get_logger, log_timing, log_with_context
from mergemonk.models.review import ChangedFile, FilePatch, LogicalComment, PullRequestReviewContext, ReviewResult
from mergemonk.openai_client import AIReview, OpenAIReviewClient

logger = get_logger()

DEBUG_PRINT_CALL = "console.log"
DEBUG_PRINT_PROMPT = (
    "Replace this console.log with a proper logger (e.g. logger.debug or logger.info) "
    "or remove it for production."
)
NO_ASSESSMENT = "_No assessment._"


def _with_suggested_prompt(body: str, prompt: str) -> str:
    prompt = prompt.strip()
    if not prompt:
        return body
    return f"{body}\n\n---\n**Suggested prompt for Cursor/AI:** *(copy into Cursor to fix)*\n\n{prompt}"


def run_ai_review(review: AIReview) -> ReviewResult:
    """Render a model review as the review body plus line-addressed comments."""

    sections = [
        "## MergeMonk AI Review",
        "",
        "### Summary",
        review.summary,
        "",
        f"### Code quality rating: {review.quality_rating:g}/10",
        f"*{review.quality_rating_reason}*" if review.quality_rating_reason else "",
        "",
        "### Security",
        review.security_assessment or NO_ASSESSMENT,
        "",
        "### System design",
        review.system_design_assessment or NO_ASSESSMENT,
        "",
        "### Scalability",
        review.scalability_assessment or NO_ASSESSMENT,
        "",
        "---",
        "",
        "### Overall",
        review.review_body,
    ]
    # Blank separators are dropped along with empty fields
    body = "\n".join(section for section in sections if section)

    comments = [
        LogicalComment(
            path=comment.path,
            line=comment.line,
            body=_with_suggested_prompt(comment.body, comment.suggested_prompt),
        )
        for comment in review.comments
    ]
    file_patches = [FilePatch(path=entry.path, patch=entry.patch) for entry in review.file_patches]
    return ReviewResult(body=body, comments=comments, file_patches=file_patches)


def infer_line_number(lines: List[str], index: int) -> int:
    """Approximate the new-file line number of the added line at ``lines[index]``.

    Uses ``newStart + additions since the hunk header - 1``. Context lines
    are not counted, so an added line that follows context lines in its
    hunk is reported too early by the number of those context lines.
    """
    new_start = 1
    added_in_hunk = 0
    for line in lines[: index + 1]:
        match = HUNK_HEADER_RE.match(line)
        if match:
            new_start = int(match.group("new_start"))
            added_in_hunk = 0
        elif line.startswith("+") and not line.startswith("+++"):
            added_in_hunk += 1
    return new_start + added_in_hunk - 1


def run_rule_based_review(files: Iterable[ChangedFile]) -> ReviewResult:
    """Flag debug prints on added lines; the only rule applied without a model."""

    comments: List[LogicalComment] = []
    for changed_file in files:
        if not changed_file.patch:
            continue
        lines = changed_file.patch.split("\n")
        for index, line in enumerate(lines):
            if not line.startswith("+") or line.startswith("+++"):
                continue
            if DEBUG_PRINT_CALL not in line:
                continue
            comments.append(
                LogicalComment(
                    path=changed_file.path,
                    line=infer_line_number(lines, index),
                    body=_with_suggested_prompt(
                        "⚠️ **MergeMonk:** Consider removing `console.log` before merging. "
                        "Use a proper logger or remove for production.",
                        DEBUG_PRINT_PROMPT,
                    ),
                )
            )

    if comments:
        body = "MergeMonk found potential issues. Please check the comments below."
    else:
        body = "MergeMonk reviewed this PR. No automated issues detected."
    return ReviewResult(body=body, comments=comments)


async def analyze_pull_request(
    context: PullRequestReviewContext,
    ai_client: OpenAIReviewClient | None = None,
) -> Tuple[ReviewResult, bool]:
    """Review with the model when a client is given, otherwise with the rules.

    Any model failure falls back to the rule-based review. The flag in the
    returned pair tells whether the model produced the result.
    """
    ctx_logger = log_with_context(logger, repository=context.repository, pull_number=context.pull_number)
    if ai_client is None:
        ctx_logger.info("No AI backend configured, running rule-based review")
        return run_rule_based_review(context.files), False

    try:
        with log_timing(ctx_logger, "ai_review"):
            review = await ai_client.review(context)
    except Exception as exc:
        # Timeouts, quota errors and malformed output all degrade to the rule-based review
        ctx_logger.warning(f"AI review failed, using rule-based fallback: {exc}")
        return run_rule_based_review(context.files), False
    return run_ai_review(review), True

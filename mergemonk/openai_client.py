"""Client wrapper for requesting pull request reviews from OpenAI."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, List

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mergemonk.config import (
    DEFAULT_MAX_PATCH_CHARS_PER_FILE,
    DEFAULT_MAX_TOTAL_PATCH_CHARS,
    DEFAULT_OPENAI_MODEL,
)
from mergemonk.logger import get_logger, log_timing, log_with_context
from mergemonk.models.review import ChangedFile, PullRequestReviewContext

logger = get_logger()

TRUNCATION_MARKER = "\n... (truncated)"
MAX_DESCRIPTION_CHARS = 2000
NEUTRAL_QUALITY_RATING = 5


class OpenAIReviewError(RuntimeError):
    """Raised when the AI review cannot be obtained or understood."""


def _text_or_empty(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class AIReviewComment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str = ""
    line: int = 1
    body: str = ""
    suggested_prompt: str = Field(default="", alias="suggestedPrompt")

    @field_validator("line", mode="before")
    @classmethod
    def _coerce_line(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            return 1
        return value

    @field_validator("path", "body", "suggested_prompt", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _text_or_empty(value)


class AIFilePatch(BaseModel):
    path: str
    patch: str


class AIReview(BaseModel):
    """Structured review returned by the model, with defaults for anything it left out."""

    model_config = ConfigDict(populate_by_name=True)

    summary: str = ""
    quality_rating: float = Field(default=NEUTRAL_QUALITY_RATING, alias="qualityRating")
    quality_rating_reason: str = Field(default="", alias="qualityRatingReason")
    security_assessment: str = Field(default="", alias="securityAssessment")
    system_design_assessment: str = Field(default="", alias="systemDesignAssessment")
    scalability_assessment: str = Field(default="", alias="scalabilityAssessment")
    review_body: str = Field(default="", alias="reviewBody")
    comments: List[AIReviewComment] = Field(default_factory=list)
    file_patches: List[AIFilePatch] = Field(default_factory=list, alias="filePatches")

    @field_validator("quality_rating", mode="before")
    @classmethod
    def _coerce_rating(cls, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return NEUTRAL_QUALITY_RATING
        return value

    @field_validator(
        "summary",
        "quality_rating_reason",
        "security_assessment",
        "system_design_assessment",
        "scalability_assessment",
        "review_body",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _text_or_empty(value)

    @field_validator("comments", mode="before")
    @classmethod
    def _coerce_comments(cls, value: Any) -> list:
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, dict)]

    @field_validator("file_patches", mode="before")
    @classmethod
    def _coerce_file_patches(cls, value: Any) -> list:
        if not isinstance(value, list):
            return []
        patches = []
        for entry in value:
            if not isinstance(entry, dict):
                continue
            path = entry.get("path")
            patch = entry.get("patch")
            if isinstance(path, str) and path.strip() and isinstance(patch, str) and patch.strip():
                patches.append({"path": path.strip(), "patch": patch})
        return patches


@dataclass(frozen=True, slots=True)
class TruncatedPatch:
    path: str
    patch: str
    truncated: bool = False

    @property
    def text(self) -> str:
        return self.patch + TRUNCATION_MARKER if self.truncated else self.patch


def truncate_patches(
    files: Iterable[ChangedFile],
    *,
    max_chars_per_file: int = DEFAULT_MAX_PATCH_CHARS_PER_FILE,
    max_total_chars: int = DEFAULT_MAX_TOTAL_PATCH_CHARS,
) -> List[TruncatedPatch]:
    """Fit file patches into the prompt budget.

    Files are taken in order until the total budget is spent. Each patch is
    cut to the per-file limit first and then to whatever budget remains, so
    the result is always a prefix of the patched files.
    """
    total = 0
    included: List[TruncatedPatch] = []
    for changed_file in files:
        patch = (changed_file.patch or "").strip()
        if not patch:
            continue
        remaining = max_total_chars - total
        if remaining <= 0:
            break
        truncated = False
        if len(patch) > max_chars_per_file:
            patch = patch[:max_chars_per_file]
            truncated = True
        if len(patch) > remaining:
            patch = patch[:remaining]
            truncated = True
        total += len(patch)
        included.append(TruncatedPatch(path=changed_file.path, patch=patch, truncated=truncated))
    return included


SYSTEM_PROMPT = """You are MergeMonk, a senior engineer performing production-grade code reviews. \
Focus on security, system design, scalability, maintainability, error handling and performance, \
not just style. Be specific and actionable.

Respond with a single JSON object only (no markdown fence, no extra text) of this shape:
{
  "summary": "2-4 sentences on what this PR does and its impact.",
  "qualityRating": <number 1-10>,
  "qualityRatingReason": "One sentence tying the rating to security, design and scalability.",
  "securityAssessment": "Secrets, input validation, auth, injection, dependencies, sensitive logging.",
  "systemDesignAssessment": "Separation of concerns, coupling, boundaries, error handling, state.",
  "scalabilityAssessment": "Concurrency, bottlenecks, caching, resource use, statelessness.",
  "reviewBody": "2-4 sentences: main strengths, then 1-3 concrete next steps.",
  "comments": [
    {
      "path": "exact/file/path.py",
      "line": <line number in the NEW file>,
      "body": "Brief, actionable inline comment.",
      "suggestedPrompt": "One instruction the author can paste into an AI assistant to fix it."
    }
  ],
  "filePatches": [
    {
      "path": "exact/file/path.py",
      "patch": "Unified diff hunks (@@ -a,b +c,d @@) against the NEW version of the file."
    }
  ]
}

Rules:
- Comment on every significant issue across all files; several comments per file are fine.
- Paths must match the diff exactly; line numbers refer to the new file.
- Only include filePatches for fixes you are confident in; hunks must carry exact context lines.
- Output only the JSON object."""


def build_user_prompt(
    title: str | None,
    description: str | None,
    patches: List[TruncatedPatch],
) -> str:
    sections = ["## Pull request", f"Title: {title or '(no title)'}", ""]
    if description:
        trimmed = description[:MAX_DESCRIPTION_CHARS]
        if len(description) > MAX_DESCRIPTION_CHARS:
            trimmed += "\n..."
        sections.extend(["Description:", trimmed, ""])
    sections.extend(
        [
            "## Changed files (diffs)",
            "",
            f"Review all {len(patches)} file(s) below.",
            "",
        ]
    )
    for patch in patches:
        sections.extend([f"### {patch.path}", "```diff", patch.text, "```", ""])
    return "\n".join(sections)


def _parse_review(raw_json: str) -> AIReview:
    try:
        data = json.loads(raw_json)
    except json.JSONDecodeError as exc:
        raise OpenAIReviewError(f"Model returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise OpenAIReviewError("Model returned JSON that is not an object.")
    try:
        return AIReview.model_validate(data)
    except ValidationError as exc:
        raise OpenAIReviewError(f"Model returned an unusable review: {exc}") from exc


class OpenAIReviewClient:
    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_OPENAI_MODEL,
        max_patch_chars_per_file: int = DEFAULT_MAX_PATCH_CHARS_PER_FILE,
        max_total_patch_chars: int = DEFAULT_MAX_TOTAL_PATCH_CHARS,
        timeout: float = 120.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._max_patch_chars_per_file = max_patch_chars_per_file
        self._max_total_patch_chars = max_total_patch_chars
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    async def review(self, context: PullRequestReviewContext) -> AIReview:
        ctx_logger = log_with_context(logger, repository=context.repository, pull_number=context.pull_number)

        patches = truncate_patches(
            context.files,
            max_chars_per_file=self._max_patch_chars_per_file,
            max_total_chars=self._max_total_patch_chars,
        )
        prompt = build_user_prompt(context.title, context.body, patches)
        ctx_logger.debug(
            f"Prompt built: {len(prompt)} characters, {len(patches)} of {len(context.files)} files included"
        )

        try:
            with log_timing(ctx_logger, "openai_completion"):
                completion = await self._client.chat.completions.create(
                    model=self._model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    response_format={"type": "json_object"},
                    temperature=0.2,
                )
        except OpenAIError as exc:
            raise OpenAIReviewError(f"OpenAI request failed: {exc}") from exc

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise OpenAIReviewError("Empty response from OpenAI.")

        review = _parse_review(content)
        ctx_logger.info(
            f"AI review parsed: {len(review.comments)} comments, {len(review.file_patches)} file patches, "
            f"rating={review.quality_rating:g}"
        )
        return review

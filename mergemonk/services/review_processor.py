"""Pull request review pipeline.

Stages run in order: fetch the pull request and its files, analyze them
(AI with a rule-based fallback), resolve comment positions against the
diffs, post the review, then optionally open a follow-up pull request with
suggested patches. Fetching and posting failures abort the run; analysis and
suggestion failures only degrade it.
"""

from __future__ import annotations

from typing import Callable, List, Tuple

import httpx

from mergemonk.config import GitHubCredentials, Settings, SettingsError, get_settings
from mergemonk.diff_positions import index_pull_request_files, resolve_comment_positions
from mergemonk.github_client import GitHubAPIError, GitHubInstallationClient
from mergemonk.logger import get_logger, log_failure, log_success, log_timing, log_with_context
from mergemonk.models.events import ReviewJob
from mergemonk.models.review import (
    PositionedComment,
    PullRequestReviewContext,
    ReviewOutcome,
    ReviewResult,
    SuggestionPullRequest,
)
from mergemonk.openai_client import OpenAIReviewClient
from mergemonk.review_engine import analyze_pull_request
from mergemonk.services.review_context import build_review_context
from mergemonk.services.suggestions import SuggestionPullRequestBuilder

logger = get_logger()

GitHubClientFactory = Callable[[Settings, GitHubCredentials], GitHubInstallationClient]
AIClientFactory = Callable[[Settings], OpenAIReviewClient]


class ReviewProcessorError(RuntimeError):
    """Raised when review processing fails."""

    def __init__(self, message: str, step: str, original_error: Exception | None = None):
        super().__init__(message)
        self.step = step
        self.original_error = original_error


def _default_github_client(settings: Settings, credentials: GitHubCredentials) -> GitHubInstallationClient:
    return GitHubInstallationClient(
        base_url=settings.normalized_github_api_base_url,
        app_id=credentials.github_app_id,
        private_key_pem=credentials.github_private_key_pem,
    )


def _default_ai_client(settings: Settings) -> OpenAIReviewClient:
    return OpenAIReviewClient(
        settings.openai_api_key,
        model=settings.openai_model,
        max_patch_chars_per_file=settings.max_patch_chars_per_file,
        max_total_patch_chars=settings.max_total_patch_chars,
    )


class ReviewProcessor:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        github_client_factory: GitHubClientFactory = _default_github_client,
        ai_client_factory: AIClientFactory = _default_ai_client,
    ) -> None:
        self._settings = settings
        self._github_client_factory = github_client_factory
        self._ai_client_factory = ai_client_factory

    async def __call__(self, job: ReviewJob) -> ReviewOutcome:
        repository = job.payload.repository.full_name
        pull_number = job.payload.pull_request.number
        target = f"{repository}#{pull_number}"
        ctx_logger = log_with_context(
            logger, delivery_id=job.delivery_id, repository=repository, pull_number=pull_number
        )
        ctx_logger.info(f"=== PROCESSOR: Starting review processing (action={job.payload.action}) ===")

        try:
            settings = self._settings if self._settings is not None else get_settings()
            credentials = settings.require_github_credentials()
        except SettingsError as exc:
            log_failure(logger, "Configuration missing", exc, repository=repository, pull_number=pull_number)
            raise ReviewProcessorError(
                f"Configuration incomplete for {target}: {exc}", "load_configuration", exc
            ) from exc

        github_client = self._github_client_factory(settings, credentials)
        try:
            try:
                context = await build_review_context(github_client, job)
            except (GitHubAPIError, httpx.HTTPError) as exc:
                log_failure(logger, f"Failed to fetch pull request (status={getattr(exc, 'status_code', 0)})", exc,
                            repository=repository, pull_number=pull_number)
                raise ReviewProcessorError(
                    f"Failed to fetch pull request {target}: {exc}", "fetch_pull_request", exc
                ) from exc
            except ValueError as exc:
                log_failure(logger, f"Invalid job payload: {exc}", exc, repository=repository, pull_number=pull_number)
                raise ReviewProcessorError(
                    f"Invalid job payload for {target}: {exc}", "fetch_pull_request", exc
                ) from exc

            result, used_ai = await self._analyze(context, settings)

            indexes = index_pull_request_files(context.files)
            positioned = resolve_comment_positions(result.comments, indexes)
            dropped = len(result.comments) - len(positioned)
            if dropped:
                ctx_logger.warning(f"Dropped {dropped} comment(s) that do not map onto the diff")

            event = settings.review_event
            try:
                with log_timing(ctx_logger, "post_review"):
                    await self._post_review(github_client, context, result.body, positioned, event)
            except (GitHubAPIError, httpx.HTTPError) as exc:
                log_failure(logger, f"Failed to post review (status={getattr(exc, 'status_code', 0)})", exc,
                            repository=repository, pull_number=pull_number)
                raise ReviewProcessorError(
                    f"Failed to post review for {target}: {exc}", "post_review", exc
                ) from exc

            suggestion = None
            if result.file_patches and settings.suggest_patches:
                suggestion = await self._suggest_patches(github_client, context, result)

            log_success(logger, f"Review posted for {target} ({len(positioned)} inline comments, event={event})",
                        repository=repository, pull_number=pull_number)
            return ReviewOutcome(
                repository=repository,
                pull_number=pull_number,
                event=event,
                used_ai=used_ai,
                comments_posted=len(positioned),
                comments_dropped=dropped,
                suggestion=suggestion,
            )
        finally:
            await github_client.aclose()
            ctx_logger.debug("GitHub client closed")

    async def _analyze(
        self,
        context: PullRequestReviewContext,
        settings: Settings,
    ) -> Tuple[ReviewResult, bool]:
        if not settings.ai_enabled:
            return await analyze_pull_request(context)

        ai_client = self._ai_client_factory(settings)
        try:
            return await analyze_pull_request(context, ai_client)
        finally:
            await ai_client.aclose()

    async def _post_review(
        self,
        github_client: GitHubInstallationClient,
        context: PullRequestReviewContext,
        body: str,
        comments: List[PositionedComment],
        event: str,
    ) -> None:
        ctx_logger = log_with_context(logger, repository=context.repository, pull_number=context.pull_number)
        ctx_logger.info(f"Submitting {event} review for PR #{context.pull_number} with {len(comments)} inline comments")
        await github_client.create_pull_request_review(
            installation_id=context.installation_id,
            full_name=context.repository,
            pull_number=context.pull_number,
            body=body,
            comments=[comment.as_payload() for comment in comments],
            event=event,
        )

    async def _suggest_patches(
        self,
        github_client: GitHubInstallationClient,
        context: PullRequestReviewContext,
        result: ReviewResult,
    ) -> SuggestionPullRequest | None:
        try:
            suggestion = await SuggestionPullRequestBuilder(github_client).build(context, result.file_patches)
        except Exception as exc:
            # The review is already posted; a failed follow-up must not undo that
            log_failure(logger, "Patch PR creation failed", exc,
                        repository=context.repository, pull_number=context.pull_number)
            return None

        if suggestion is None or not suggestion.pull_request_url:
            return suggestion
        try:
            await github_client.create_issue_comment(
                installation_id=context.installation_id,
                full_name=context.repository,
                issue_number=context.pull_number,
                body=(
                    "🩹 **MergeMonk** opened a pull request with suggested patches: "
                    f"{suggestion.pull_request_url}\n\nReview and merge it into this branch to apply the fixes."
                ),
            )
        except Exception as exc:
            log_failure(logger, "Failed to link patch PR from the reviewed PR", exc,
                        repository=context.repository, pull_number=context.pull_number)
        return suggestion

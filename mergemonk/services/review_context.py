"""Helpers to build review context from pull request jobs."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

from mergemonk.github_client import GitHubAPIError, GitHubInstallationClient
from mergemonk.logger import get_logger, log_timing, log_with_context
from mergemonk.models.events import ReviewJob
from mergemonk.models.review import ChangedFile, PullRequestReviewContext

logger = get_logger()


def _serialize_files(files: List[dict]) -> List[ChangedFile]:
    serialized: List[ChangedFile] = []
    skipped_count = 0
    for file in files:
        path = file.get("filename") or file.get("path")
        if not path:
            logger.warning(f"Skipping file entry missing filename/path: {file}")
            skipped_count += 1
            continue
        serialized.append(
            ChangedFile(
                path=path,
                status=file.get("status", ""),
                additions=int(file.get("additions", 0) or 0),
                deletions=int(file.get("deletions", 0) or 0),
                patch=file.get("patch"),
            )
        )
    if skipped_count > 0:
        logger.warning(f"Skipped {skipped_count} file(s) due to missing path/filename")
    logger.debug(f"Serialized {len(serialized)} file(s) from {len(files)} file entries")
    return serialized


def _repository_full_name(endpoint: Dict[str, Any]) -> str | None:
    repo = endpoint.get("repo") or {}
    if repo.get("full_name"):
        return repo["full_name"]
    owner = (repo.get("owner") or {}).get("login")
    if owner and repo.get("name"):
        return f"{owner}/{repo['name']}"
    return None


async def build_review_context(
    client: GitHubInstallationClient, job: ReviewJob
) -> PullRequestReviewContext:
    """Fetch pull request metadata and its changed files concurrently."""

    payload = job.payload
    if not payload.repository.full_name:
        raise ValueError("Pull request payload missing repository full name")
    full_name = payload.repository.full_name
    pull_number = payload.pull_request.number

    ctx_logger = log_with_context(
        logger,
        delivery_id=job.delivery_id,
        repository=full_name,
        pull_number=pull_number,
    )

    try:
        with log_timing(ctx_logger, "fetch_pull_request"):
            pull_request, files = await asyncio.gather(
                client.get_pull_request(
                    installation_id=payload.installation_id,
                    full_name=full_name,
                    pull_number=pull_number,
                ),
                client.list_pull_request_files(
                    installation_id=payload.installation_id,
                    full_name=full_name,
                    pull_number=pull_number,
                ),
            )
    except GitHubAPIError as exc:
        if exc.status_code == 404:
            ctx_logger.error(f"PR or repository not found (404): {exc}")
        elif exc.status_code == 403:
            ctx_logger.error(f"Permission denied (403): {exc}")
        elif exc.status_code == 429:
            ctx_logger.error(f"Rate limit exceeded (429): {exc}")
        else:
            ctx_logger.error(f"GitHub API error ({exc.status_code}): {exc}")
        raise

    serialized_files = _serialize_files(files)
    if not serialized_files:
        ctx_logger.warning(f"No files changed in PR #{pull_number}")

    head = pull_request.get("head") or {}
    base = pull_request.get("base") or {}
    ctx_logger.info(f"PullRequestReviewContext created: PR#{pull_number}, files={len(serialized_files)}")
    return PullRequestReviewContext(
        repository=full_name,
        installation_id=payload.installation_id,
        pull_number=pull_number,
        title=pull_request.get("title") or "",
        body=pull_request.get("body") or "",
        head_sha=head.get("sha"),
        base_sha=base.get("sha"),
        head_ref=head.get("ref"),
        base_ref=base.get("ref"),
        head_repository=_repository_full_name(head),
        files=serialized_files,
        url=pull_request.get("html_url"),
    )

"""Open a follow-up pull request carrying AI-suggested patches.

The new branch is cut from the reviewed pull request's head commit and the
follow-up targets the reviewed pull request's head branch, so the author
can merge the fixes on their own schedule. Only same-repository pull
requests qualify: the installation cannot push to forks.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping

import httpx

from mergemonk.github_client import GitHubAPIError, GitHubInstallationClient
from mergemonk.logger import get_logger, log_timing, log_with_context
from mergemonk.models.review import FilePatch, PullRequestReviewContext, SuggestionPullRequest
from mergemonk.patching import apply_patch

logger = get_logger()

PATCH_BRANCH_PREFIX = "mergemonk/patches-"
SHORT_SHA_LENGTH = 7


def unique_paths(file_patches: Iterable[FilePatch]) -> List[str]:
    """Return the patched paths once each, in first-seen order."""
    return list(dict.fromkeys(file_patch.path for file_patch in file_patches))


def patch_branch_name(pull_number: int, head_sha: str) -> str:
    return f"{PATCH_BRANCH_PREFIX}{pull_number}-{head_sha[:SHORT_SHA_LENGTH]}"


def commit_message(pull_number: int) -> str:
    return f"MergeMonk: suggested patches for #{pull_number}"


def pull_request_title(pull_number: int) -> str:
    return f"MergeMonk suggested patches for #{pull_number}"


def pull_request_body(context: PullRequestReviewContext) -> str:
    link = context.url or f"/{context.repository}/pull/{context.pull_number}"
    title = context.title or ""
    return (
        f"This PR applies **MergeMonk**-suggested patches for "
        f"[#{context.pull_number} {title}]({link}).\n\n"
        "Review the changes and merge into this branch to incorporate the fixes."
    )


def apply_file_patches(
    contents: Mapping[str, str],
    file_patches: Iterable[FilePatch],
    *,
    ctx_logger=logger,
) -> Dict[str, str]:
    """Apply each patch to its file's fetched content; files that do not apply are skipped.

    Every patch is applied to the fetched content independently. When a path
    is patched more than once, the last patch that applies wins.
    """
    patched: Dict[str, str] = {}
    for file_patch in file_patches:
        content = contents.get(file_patch.path)
        if content is None:
            continue
        new_content = apply_patch(content, file_patch.patch)
        if new_content is None:
            ctx_logger.warning(f"Patch did not apply for {file_patch.path}, skipping")
            continue
        patched[file_patch.path] = new_content
    return patched


class SuggestionPullRequestBuilder:
    def __init__(self, client: GitHubInstallationClient) -> None:
        self._client = client

    async def build(
        self,
        context: PullRequestReviewContext,
        file_patches: List[FilePatch],
    ) -> SuggestionPullRequest | None:
        ctx_logger = log_with_context(logger, repository=context.repository, pull_number=context.pull_number)

        if not file_patches:
            return None
        if not context.head_sha or not context.head_ref or not context.head_repository:
            ctx_logger.warning("Patch PR: missing head sha/ref/repository, skipping")
            return None
        if context.head_repository != context.repository:
            ctx_logger.info(f"Patch PR: head is in fork {context.head_repository}, skipping")
            return None

        paths = unique_paths(file_patches)
        contents = await self._fetch_contents(context, paths, ctx_logger)
        if not contents:
            ctx_logger.warning("Patch PR: could not fetch any file contents")
            return None

        patched = apply_file_patches(contents, file_patches, ctx_logger=ctx_logger)
        if not patched:
            ctx_logger.warning("Patch PR: no patches applied successfully")
            return None

        ctx_logger.info(f"Patch PR: {len(patched)} of {len(paths)} file(s) patched")
        with log_timing(ctx_logger, "create_patch_pull_request"):
            return await self._publish(context, patched, ctx_logger)

    async def _fetch_contents(
        self,
        context: PullRequestReviewContext,
        paths: List[str],
        ctx_logger,
    ) -> Dict[str, str]:
        contents: Dict[str, str] = {}
        for path in paths:
            try:
                content = await self._client.get_file_content(
                    installation_id=context.installation_id,
                    full_name=context.repository,
                    path=path,
                    ref=context.head_sha,
                )
            except (GitHubAPIError, httpx.HTTPError, ValueError) as exc:
                ctx_logger.warning(f"Could not fetch {path} at {context.head_sha}: {exc}")
                continue
            if content is None:
                ctx_logger.warning(f"Skipping {path}: not a file at {context.head_sha}")
                continue
            contents[path] = content
        return contents

    async def _publish(
        self,
        context: PullRequestReviewContext,
        patched: Mapping[str, str],
        ctx_logger,
    ) -> SuggestionPullRequest:
        # Each call consumes the sha produced by the one before it
        tree_entries = []
        for path, new_content in patched.items():
            blob = await self._client.create_blob(
                installation_id=context.installation_id,
                full_name=context.repository,
                content=new_content,
            )
            tree_entries.append({"path": path, "mode": "100644", "type": "blob", "sha": blob["sha"]})

        base_commit = await self._client.get_commit(
            installation_id=context.installation_id,
            full_name=context.repository,
            commit_sha=context.head_sha,
        )
        new_tree = await self._client.create_tree(
            installation_id=context.installation_id,
            full_name=context.repository,
            base_tree=base_commit["tree"]["sha"],
            tree=tree_entries,
        )
        new_commit = await self._client.create_commit(
            installation_id=context.installation_id,
            full_name=context.repository,
            message=commit_message(context.pull_number),
            tree=new_tree["sha"],
            parents=[context.head_sha],
        )

        branch = patch_branch_name(context.pull_number, context.head_sha)
        await self._client.create_ref(
            installation_id=context.installation_id,
            full_name=context.repository,
            ref=f"refs/heads/{branch}",
            sha=new_commit["sha"],
        )
        patch_pr = await self._client.create_pull_request(
            installation_id=context.installation_id,
            full_name=context.repository,
            title=pull_request_title(context.pull_number),
            head=branch,
            base=context.head_ref,
            body=pull_request_body(context),
        )

        url = patch_pr.get("html_url")
        ctx_logger.info(f"Patch PR created: {url} ({branch} -> {context.head_ref})")
        return SuggestionPullRequest(branch=branch, pull_request_url=url)

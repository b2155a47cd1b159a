from __future__ import annotations

import os
import tempfile
from typing import Any, Dict, List, Tuple

os.environ.setdefault("APP_LOG_DIR", tempfile.mkdtemp(prefix="mergemonk-logs-"))

import pytest  # noqa: E402

from mergemonk.config import Settings  # noqa: E402
from mergemonk.github_client import GitHubAPIError  # noqa: E402
from mergemonk.models.events import (  # noqa: E402
    PullRequestInfo,
    PullRequestPayload,
    RepositoryInfo,
    ReviewJob,
)
from mergemonk.models.review import ChangedFile, PullRequestReviewContext  # noqa: E402

REPOSITORY = "acme/widgets"
HEAD_SHA = "abcdef1234567890"

WRITE_CALLS = {
    "create_blob",
    "create_tree",
    "create_commit",
    "create_ref",
    "create_pull_request",
    "create_pull_request_review",
    "create_issue_comment",
}


class FakeGitHubClient:
    """In-memory stand-in for GitHubInstallationClient that records every call."""

    def __init__(
        self,
        *,
        pull_request: Dict[str, Any] | None = None,
        files: List[Dict[str, Any]] | None = None,
        contents: Dict[str, str | Exception] | None = None,
        failures: Dict[str, Exception] | None = None,
    ) -> None:
        self.pull_request = pull_request or make_pull_request()
        self.files = files or []
        self.contents = contents or {}
        self.failures = failures or {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.closed = False
        self._blob_count = 0

    def _record(self, name: str, kwargs: Dict[str, Any]) -> None:
        self.calls.append((name, kwargs))
        if name in self.failures:
            raise self.failures[name]

    def called(self, name: str) -> List[Dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    @property
    def write_calls(self) -> List[str]:
        return [name for name, _ in self.calls if name in WRITE_CALLS]

    async def get_pull_request(self, **kwargs):
        self._record("get_pull_request", kwargs)
        return self.pull_request

    async def list_pull_request_files(self, **kwargs):
        self._record("list_pull_request_files", kwargs)
        return self.files

    async def create_pull_request_review(self, **kwargs):
        self._record("create_pull_request_review", kwargs)
        return {"id": 1}

    async def create_issue_comment(self, **kwargs):
        self._record("create_issue_comment", kwargs)
        return {"id": 2}

    async def get_file_content(self, **kwargs):
        self._record("get_file_content", kwargs)
        path = kwargs["path"]
        if path not in self.contents:
            raise GitHubAPIError(f"{path} not found", 404)
        content = self.contents[path]
        if isinstance(content, Exception):
            raise content
        return content

    async def get_commit(self, **kwargs):
        self._record("get_commit", kwargs)
        return {"sha": kwargs["commit_sha"], "tree": {"sha": "base-tree-sha"}}

    async def create_blob(self, **kwargs):
        self._record("create_blob", kwargs)
        self._blob_count += 1
        return {"sha": f"blob-{self._blob_count}"}

    async def create_tree(self, **kwargs):
        self._record("create_tree", kwargs)
        return {"sha": "new-tree-sha"}

    async def create_commit(self, **kwargs):
        self._record("create_commit", kwargs)
        return {"sha": "new-commit-sha"}

    async def create_ref(self, **kwargs):
        self._record("create_ref", kwargs)
        return {"ref": kwargs["ref"]}

    async def create_pull_request(self, **kwargs):
        self._record("create_pull_request", kwargs)
        return {"html_url": f"https://github.com/{REPOSITORY}/pull/43", "number": 43}

    async def aclose(self) -> None:
        self.closed = True


def make_pull_request(*, head_repository: str = REPOSITORY) -> Dict[str, Any]:
    return {
        "number": 42,
        "title": "Add widget endpoint",
        "body": "Adds the widget endpoint.",
        "html_url": f"https://github.com/{REPOSITORY}/pull/42",
        "head": {"sha": HEAD_SHA, "ref": "feature/widgets", "repo": {"full_name": head_repository}},
        "base": {"sha": "base0000", "ref": "main", "repo": {"full_name": REPOSITORY}},
    }


def make_job(*, pull_number: int = 42) -> ReviewJob:
    return ReviewJob(
        delivery_id="delivery-1",
        payload=PullRequestPayload(
            installation_id=7,
            repository=RepositoryInfo(full_name=REPOSITORY),
            action="opened",
            pull_request=PullRequestInfo(number=pull_number),
        ),
    )


def make_context(
    *,
    files: List[ChangedFile] | None = None,
    head_repository: str | None = REPOSITORY,
) -> PullRequestReviewContext:
    return PullRequestReviewContext(
        repository=REPOSITORY,
        installation_id=7,
        pull_number=42,
        title="Add widget endpoint",
        body="Adds the widget endpoint.",
        head_sha=HEAD_SHA,
        base_sha="base0000",
        head_ref="feature/widgets",
        base_ref="main",
        head_repository=head_repository,
        files=files or [],
        url=f"https://github.com/{REPOSITORY}/pull/42",
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(github_app_id=1, github_private_key_pem="not-a-real-key")

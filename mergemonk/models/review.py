"""Shared data structures for review processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(slots=True)
class ChangedFile:
    path: str
    status: str
    additions: int
    deletions: int
    patch: str | None = None


@dataclass(slots=True)
class PullRequestReviewContext:
    repository: str
    installation_id: int
    pull_number: int
    title: str | None
    body: str | None
    head_sha: str | None
    base_sha: str | None
    head_ref: str | None = None
    base_ref: str | None = None
    head_repository: str | None = None
    files: List[ChangedFile] = field(default_factory=list)
    url: str | None = None


@dataclass(frozen=True, slots=True)
class LogicalComment:
    """A review comment addressed by new-file line number."""

    path: str
    line: int
    body: str


@dataclass(frozen=True, slots=True)
class PositionedComment:
    """A review comment addressed by diff position, as GitHub expects it."""

    path: str
    position: int
    body: str

    def as_payload(self) -> Dict[str, Any]:
        return {"path": self.path, "position": self.position, "body": self.body}


@dataclass(frozen=True, slots=True)
class FilePatch:
    path: str
    patch: str


@dataclass(slots=True)
class ReviewResult:
    body: str
    comments: List[LogicalComment] = field(default_factory=list)
    file_patches: List[FilePatch] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SuggestionPullRequest:
    branch: str
    pull_request_url: str | None = None


@dataclass(slots=True)
class ReviewOutcome:
    repository: str
    pull_number: int
    event: str
    used_ai: bool
    comments_posted: int
    comments_dropped: int
    suggestion: SuggestionPullRequest | None = None

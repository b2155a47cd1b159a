"""Data models for pull request review jobs.

Only what the pipeline needs to locate the pull request is kept; head and
base details are re-fetched from the API so a review never works from a
stale webhook snapshot.
"""

from __future__ import annotations

from pydantic import BaseModel


class RepositoryInfo(BaseModel):
    full_name: str


class PullRequestInfo(BaseModel):
    number: int


class PullRequestPayload(BaseModel):
    installation_id: int
    repository: RepositoryInfo
    action: str
    pull_request: PullRequestInfo


class ReviewJob(BaseModel):
    delivery_id: str | None = None
    payload: PullRequestPayload

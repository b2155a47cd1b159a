"""Installation-scoped GitHub REST client.

Authenticates as a GitHub App (RS256 JWT), exchanges that for a cached
installation token and exposes the pull request, review, contents and git
data endpoints the review pipeline needs. Every non-2xx response raises
:class:`GitHubAPIError`.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List
from urllib.parse import quote

import httpx
import jwt

DEFAULT_ACCEPT_HEADER = "application/vnd.github+json"
DEFAULT_API_VERSION = "2022-11-28"
FILES_PAGE_SIZE = 100


class GitHubAPIError(RuntimeError):
    """Raised when a GitHub API request fails."""

    def __init__(self, message: str, status_code: int, response_body: Any | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


@dataclass
class InstallationToken:
    token: str
    expires_at: datetime
    permissions: Dict[str, Any] | None = None

    def is_active(self, *, skew_seconds: int = 60) -> bool:
        return self.expires_at - timedelta(seconds=skew_seconds) > datetime.now(timezone.utc)


def _parse_github_timestamp(raw: str) -> datetime:
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw).astimezone(timezone.utc)


def _error_detail(response: httpx.Response) -> Any | None:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _repo_path(full_name: str) -> str:
    owner, _, repo = full_name.partition("/")
    if not owner or not repo:
        raise ValueError(f"Repository full name '{full_name}' is invalid.")
    return f"/repos/{owner}/{repo}"


class GitHubInstallationClient:
    """GitHub App helper for installation-scoped API operations."""

    def __init__(
        self,
        *,
        base_url: str,
        app_id: int,
        private_key_pem: str,
        timeout: float = 30.0,
        user_agent: str = "MergeMonk/1.0",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._app_id = app_id
        # PEMs read from environment variables usually carry escaped newlines
        self._private_key = private_key_pem.replace("\\n", "\n")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"User-Agent": user_agent},
        )
        self._installation_tokens: Dict[int, InstallationToken] = {}

    def _app_jwt(self) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            # Backdated to tolerate clock drift between us and GitHub
            "iat": int((now - timedelta(seconds=60)).timestamp()),
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": str(self._app_id),
        }
        try:
            return jwt.encode(claims, self._private_key, algorithm="RS256")
        except Exception as exc:
            raise GitHubAPIError(
                f"Failed to sign the app JWT: {exc}. GITHUB_PRIVATE_KEY must be an RSA private key in PEM format.",
                0,
            ) from exc

    async def _send(
        self,
        method: str,
        url: str,
        *,
        authorization: str,
        params: Dict[str, Any] | None = None,
        json: Any | None = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {authorization}",
            "Accept": DEFAULT_ACCEPT_HEADER,
            "X-GitHub-Api-Version": DEFAULT_API_VERSION,
        }
        try:
            response = await self._client.request(method, url, headers=headers, params=params, json=json)
        except httpx.HTTPError as exc:
            # Timeouts and dropped connections carry no status; 0 marks them as transport failures
            raise GitHubAPIError(f"GitHub API request {method} {url} failed: {exc}", 0) from exc
        if response.status_code >= 400:
            raise GitHubAPIError(
                f"GitHub API request {method} {url} failed with status {response.status_code}.",
                response.status_code,
                _error_detail(response),
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise GitHubAPIError(
                f"GitHub API returned invalid JSON for {method} {url}.",
                response.status_code,
                response.text,
            ) from exc

    async def _installation_request(self, method: str, url: str, *, installation_id: int, **kwargs: Any) -> Any:
        token = await self.get_installation_token(installation_id)
        return await self._send(method, url, authorization=token.token, **kwargs)

    async def get_installation_token(self, installation_id: int) -> InstallationToken:
        """Return a cached installation token, exchanging the app JWT when it is missing or expiring."""

        cached = self._installation_tokens.get(installation_id)
        if cached and cached.is_active():
            return cached

        data = await self._send(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            authorization=self._app_jwt(),
        )
        data = data or {}
        if not data.get("token") or not data.get("expires_at"):
            raise GitHubAPIError("GitHub returned an incomplete installation token response.", 200, data)

        token = InstallationToken(
            token=data["token"],
            expires_at=_parse_github_timestamp(data["expires_at"]),
            permissions=data.get("permissions"),
        )
        self._installation_tokens[installation_id] = token
        return token

    async def get_pull_request(self, *, installation_id: int, full_name: str, pull_number: int) -> Dict[str, Any]:
        return await self._installation_request(
            "GET", f"{_repo_path(full_name)}/pulls/{pull_number}", installation_id=installation_id
        )

    async def list_pull_request_files(
        self, *, installation_id: int, full_name: str, pull_number: int
    ) -> List[Dict[str, Any]]:
        """Collect every changed file, following pagination until a short page."""

        url = f"{_repo_path(full_name)}/pulls/{pull_number}/files"
        files: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch = await self._installation_request(
                "GET", url, installation_id=installation_id, params={"per_page": FILES_PAGE_SIZE, "page": page}
            )
            if not isinstance(batch, list):
                raise GitHubAPIError("Unexpected response while listing pull request files.", 200, batch)
            files.extend(batch)
            if len(batch) < FILES_PAGE_SIZE:
                return files
            page += 1

    async def create_pull_request_review(
        self,
        *,
        installation_id: int,
        full_name: str,
        pull_number: int,
        body: str | None,
        comments: Iterable[Dict[str, Any]],
        event: str = "COMMENT",
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"event": event}
        if body:
            payload["body"] = body
        comments = list(comments)
        # GitHub rejects an empty comments array on some review events
        if comments:
            payload["comments"] = comments
        return await self._installation_request(
            "POST", f"{_repo_path(full_name)}/pulls/{pull_number}/reviews", installation_id=installation_id, json=payload
        )

    async def create_issue_comment(
        self, *, installation_id: int, full_name: str, issue_number: int, body: str
    ) -> Dict[str, Any]:
        return await self._installation_request(
            "POST",
            f"{_repo_path(full_name)}/issues/{issue_number}/comments",
            installation_id=installation_id,
            json={"body": body},
        )

    async def get_file_content(self, *, installation_id: int, full_name: str, path: str, ref: str) -> str | None:
        """Return the UTF-8 text of ``path`` at ``ref``, or None for directories."""

        data = await self._installation_request(
            "GET",
            f"{_repo_path(full_name)}/contents/{quote(path)}",
            installation_id=installation_id,
            params={"ref": ref},
        )
        if not isinstance(data, dict):
            return None
        content = data.get("content") or ""
        if data.get("encoding") == "base64" and content:
            return base64.b64decode(content).decode("utf-8")
        return content

    async def get_commit(self, *, installation_id: int, full_name: str, commit_sha: str) -> Dict[str, Any]:
        return await self._installation_request(
            "GET", f"{_repo_path(full_name)}/git/commits/{commit_sha}", installation_id=installation_id
        )

    async def create_blob(self, *, installation_id: int, full_name: str, content: str) -> Dict[str, Any]:
        return await self._installation_request(
            "POST",
            f"{_repo_path(full_name)}/git/blobs",
            installation_id=installation_id,
            json={"content": content, "encoding": "utf-8"},
        )

    async def create_tree(
        self, *, installation_id: int, full_name: str, base_tree: str, tree: Iterable[Dict[str, Any]]
    ) -> Dict[str, Any]:
        return await self._installation_request(
            "POST",
            f"{_repo_path(full_name)}/git/trees",
            installation_id=installation_id,
            json={"base_tree": base_tree, "tree": list(tree)},
        )

    async def create_commit(
        self, *, installation_id: int, full_name: str, message: str, tree: str, parents: List[str]
    ) -> Dict[str, Any]:
        return await self._installation_request(
            "POST",
            f"{_repo_path(full_name)}/git/commits",
            installation_id=installation_id,
            json={"message": message, "tree": tree, "parents": parents},
        )

    async def create_ref(self, *, installation_id: int, full_name: str, ref: str, sha: str) -> Dict[str, Any]:
        return await self._installation_request(
            "POST", f"{_repo_path(full_name)}/git/refs", installation_id=installation_id, json={"ref": ref, "sha": sha}
        )

    async def create_pull_request(
        self, *, installation_id: int, full_name: str, title: str, head: str, base: str, body: str
    ) -> Dict[str, Any]:
        return await self._installation_request(
            "POST",
            f"{_repo_path(full_name)}/pulls",
            installation_id=installation_id,
            json={"title": title, "head": head, "base": base, "body": body},
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

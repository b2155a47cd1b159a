import asyncio
import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from mergemonk.github_client import GitHubAPIError, GitHubInstallationClient, InstallationToken

BASE_URL = "https://api.github.test"


def _client(handler, *, private_key_pem: str = "unused") -> GitHubInstallationClient:
    github = GitHubInstallationClient(
        base_url=BASE_URL,
        app_id=99,
        private_key_pem=private_key_pem,
        client=httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler)),
    )
    github._installation_tokens[7] = InstallationToken(
        token="ghs_cached",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    return github


def _run(handler, call):
    async def scenario():
        github = _client(handler)
        try:
            return await call(github)
        finally:
            await github.aclose()

    return asyncio.run(scenario())


def test_review_without_comments_omits_comments_field() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": 1})

    _run(
        handler,
        lambda github: github.create_pull_request_review(
            installation_id=7, full_name="acme/widgets", pull_number=42, body="Looks fine.", comments=[], event="COMMENT"
        ),
    )

    request = requests[0]
    assert request.method == "POST"
    assert request.url.path == "/repos/acme/widgets/pulls/42/reviews"
    assert request.headers["Authorization"] == "Bearer ghs_cached"
    assert json.loads(request.content) == {"event": "COMMENT", "body": "Looks fine."}


def test_review_with_comments_sends_positions() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": 1})

    comments = [{"path": "api.py", "position": 3, "body": "Check this."}]
    _run(
        handler,
        lambda github: github.create_pull_request_review(
            installation_id=7,
            full_name="acme/widgets",
            pull_number=42,
            body="Issues found.",
            comments=comments,
            event="REQUEST_CHANGES",
        ),
    )

    payload = json.loads(requests[0].content)
    assert payload["event"] == "REQUEST_CHANGES"
    assert payload["comments"] == comments


def test_file_listing_follows_pagination() -> None:
    pages = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        pages.append(page)
        assert request.url.params["per_page"] == "100"
        count = 100 if page == 1 else 1
        return httpx.Response(200, json=[{"filename": f"f{page}-{i}.py"} for i in range(count)])

    files = _run(
        handler,
        lambda github: github.list_pull_request_files(installation_id=7, full_name="acme/widgets", pull_number=42),
    )

    assert len(files) == 101
    assert pages == [1, 2]


def test_file_content_is_decoded_at_ref() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["ref"] = request.url.params["ref"]
        encoded = base64.b64encode("print('hi')\n".encode("utf-8")).decode("ascii")
        return httpx.Response(200, json={"type": "file", "encoding": "base64", "content": encoded})

    content = _run(
        handler,
        lambda github: github.get_file_content(installation_id=7, full_name="acme/widgets", path="src/app.py", ref="abc123"),
    )

    assert content == "print('hi')\n"
    assert seen == {"path": "/repos/acme/widgets/contents/src/app.py", "ref": "abc123"}


def test_directory_content_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"name": "app.py", "type": "file"}])

    content = _run(
        handler,
        lambda github: github.get_file_content(installation_id=7, full_name="acme/widgets", path="src", ref="abc123"),
    )

    assert content is None


def test_error_status_raises_with_details() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Not Found"})

    with pytest.raises(GitHubAPIError) as excinfo:
        _run(
            handler,
            lambda github: github.get_pull_request(installation_id=7, full_name="acme/widgets", pull_number=42),
        )

    assert excinfo.value.status_code == 404
    assert excinfo.value.response_body == {"message": "Not Found"}


def test_invalid_full_name_is_rejected() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(ValueError):
        _run(
            handler,
            lambda github: github.get_pull_request(installation_id=7, full_name="widgets", pull_number=42),
        )


def test_installation_token_is_exchanged_once_and_cached() -> None:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    token_requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/app/installations/8/access_tokens":
            token_requests.append(request)
            expires = (datetime.now(timezone.utc) + timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%SZ")
            return httpx.Response(201, json={"token": "ghs_fresh", "expires_at": expires})
        assert request.headers["Authorization"] == "Bearer ghs_fresh"
        return httpx.Response(200, json={"number": 42})

    async def scenario():
        github = _client(handler, private_key_pem=private_pem)
        try:
            await github.get_pull_request(installation_id=8, full_name="acme/widgets", pull_number=42)
            await github.get_pull_request(installation_id=8, full_name="acme/widgets", pull_number=42)
        finally:
            await github.aclose()

    asyncio.run(scenario())

    assert len(token_requests) == 1
    app_jwt = token_requests[0].headers["Authorization"].removeprefix("Bearer ")
    claims = jwt.decode(app_jwt, key.public_key(), algorithms=["RS256"])
    assert claims["iss"] == "99"


@pytest.mark.parametrize("error", [httpx.ConnectError("connection reset"), httpx.ReadTimeout("timed out")])
def test_transport_errors_raise_github_api_error(error) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise error

    with pytest.raises(GitHubAPIError) as excinfo:
        _run(
            handler,
            lambda github: github.create_issue_comment(
                installation_id=7, full_name="acme/widgets", issue_number=42, body="hi"
            ),
        )

    assert excinfo.value.status_code == 0
    assert excinfo.value.__cause__ is error
    assert "POST /repos/acme/widgets/issues/42/comments" in str(excinfo.value)

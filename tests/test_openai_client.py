import asyncio
import json
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from conftest import make_context

from mergemonk.models.review import ChangedFile
from mergemonk.openai_client import (
    TRUNCATION_MARKER,
    OpenAIReviewClient,
    OpenAIReviewError,
    _parse_review,
    build_user_prompt,
    truncate_patches,
)


def _file(path: str, patch: str | None) -> ChangedFile:
    return ChangedFile(path=path, status="modified", additions=1, deletions=0, patch=patch)


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    def __init__(self, completions: FakeCompletions):
        self.chat = SimpleNamespace(completions=completions)


def test_truncation_keeps_ordered_prefix_within_budget() -> None:
    files = [_file(name, name[0] * 10) for name in ("a.py", "b.py", "c.py", "d.py")]

    included = truncate_patches(files, max_chars_per_file=100, max_total_chars=25)

    assert [p.path for p in included] == ["a.py", "b.py", "c.py"]
    assert sum(len(p.patch) for p in included) <= 25
    assert [p.truncated for p in included] == [False, False, True]
    assert included[-1].patch == "ccccc"
    assert included[-1].text == "ccccc" + TRUNCATION_MARKER


def test_truncation_cuts_each_file_and_skips_empty_patches() -> None:
    files = [_file("empty.py", "   "), _file("none.py", None), _file("big.py", "x" * 50)]

    included = truncate_patches(files, max_chars_per_file=20, max_total_chars=1000)

    assert len(included) == 1
    assert included[0].path == "big.py"
    assert included[0].patch == "x" * 20
    assert included[0].truncated


def test_user_prompt_includes_title_description_and_diffs() -> None:
    patches = truncate_patches([_file("api.py", "@@ -1 +1 @@\n-a\n+b")])

    prompt = build_user_prompt("Add widgets", "d" * 2500, patches)

    assert "Title: Add widgets" in prompt
    assert "d" * 2000 + "\n..." in prompt
    assert "d" * 2001 not in prompt
    assert "### api.py\n```diff\n@@ -1 +1 @@\n-a\n+b\n```" in prompt


def test_parse_review_substitutes_defaults() -> None:
    raw = json.dumps(
        {
            "summary": "  Short summary.  ",
            "securityAssessment": None,
            "comments": [
                {"path": "api.py", "line": "7", "body": "Check this."},
                "not a comment",
                {"path": "api.py", "line": 3, "body": "Fine.", "suggestedPrompt": 12},
            ],
            "filePatches": [{"path": "api.py"}, {"path": "lib.py", "patch": "@@ -1 +1 @@\n-a\n+b"}],
        }
    )

    review = _parse_review(raw)

    assert review.summary == "Short summary."
    assert review.quality_rating == 5
    assert review.security_assessment == ""
    assert review.review_body == ""
    assert [(c.path, c.line) for c in review.comments] == [("api.py", 1), ("api.py", 3)]
    assert review.comments[1].suggested_prompt == ""
    assert [p.path for p in review.file_patches] == ["lib.py"]


def test_parse_review_tolerates_non_list_fields() -> None:
    review = _parse_review('{"qualityRating": "9", "comments": {}, "filePatches": "none"}')

    assert review.quality_rating == 5
    assert review.comments == []
    assert review.file_patches == []


@pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
def test_parse_review_rejects_unusable_output(raw: str) -> None:
    with pytest.raises(OpenAIReviewError):
        _parse_review(raw)


def test_review_requests_json_and_parses_result() -> None:
    completions = FakeCompletions(content=json.dumps({"summary": "ok", "qualityRating": 7}))
    client = OpenAIReviewClient("sk-test", model="gpt-test", client=FakeOpenAI(completions))
    context = make_context(files=[_file("api.py", "@@ -1 +1 @@\n-a\n+b")])

    review = asyncio.run(client.review(context))

    assert review.summary == "ok"
    assert review.quality_rating == 7
    request = completions.requests[0]
    assert request["model"] == "gpt-test"
    assert request["response_format"] == {"type": "json_object"}
    assert request["temperature"] == 0.2
    assert "### api.py" in request["messages"][1]["content"]


def test_review_wraps_provider_errors() -> None:
    completions = FakeCompletions(error=OpenAIError("quota exceeded"))
    client = OpenAIReviewClient("sk-test", client=FakeOpenAI(completions))

    with pytest.raises(OpenAIReviewError):
        asyncio.run(client.review(make_context()))


def test_review_rejects_empty_completion() -> None:
    client = OpenAIReviewClient("sk-test", client=FakeOpenAI(FakeCompletions(content="")))

    with pytest.raises(OpenAIReviewError):
        asyncio.run(client.review(make_context()))

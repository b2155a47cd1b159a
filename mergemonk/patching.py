"""Apply single-file unified diffs to in-memory file content.

Suggested patches are written against the pull request head, but the model
that produced them may have miscounted lines, so hunks are located by their
context rather than trusted blindly. A patch that does not fit is a normal
outcome: :func:`apply_patch` returns ``None`` and the caller skips the file.
"""

from __future__ import annotations

from typing import List

from unidiff import PatchSet
from unidiff.constants import LINE_TYPE_NO_NEWLINE
from unidiff.errors import UnidiffParseError

_SYNTHETIC_HEADER = "--- a/file\n+++ b/file\n"


def _normalize_patch(patch: str) -> str | None:
    if not (patch or "").strip():
        return None
    # Only blank lines are trimmed: a trailing " " is an empty context line
    text = patch.strip("\n") + "\n"

    for line in text.split("\n"):
        if line.startswith("@@"):
            return _SYNTHETIC_HEADER + text
        if line.startswith("--- "):
            return text
    return None


def _line_text(value: str) -> str:
    return value[:-1] if value.endswith("\n") else value


def _locate(lines: List[str], source: List[str], expected: int, lower_bound: int) -> int | None:
    """Find ``source`` in ``lines``, searching outward from ``expected``."""

    upper_bound = len(lines) - len(source)
    if upper_bound < lower_bound:
        return None
    expected = min(max(expected, lower_bound), upper_bound)

    distance = 0
    while True:
        forward = expected + distance
        backward = expected - distance
        if forward > upper_bound and backward < lower_bound:
            return None
        for index in (forward, backward):
            if lower_bound <= index <= upper_bound and lines[index:index + len(source)] == source:
                return index
        distance += 1


def apply_patch(content: str, patch: str) -> str | None:
    """Return ``content`` with ``patch`` applied, or ``None`` if it does not apply."""

    normalized = _normalize_patch(patch)
    if normalized is None:
        return None

    try:
        patch_set = PatchSet(normalized)
    except UnidiffParseError:
        return None
    if len(patch_set) != 1 or len(patch_set[0]) == 0:
        return None

    if content:
        lines = content.split("\n")
        trailing_newline = content.endswith("\n")
        if trailing_newline:
            lines.pop()
    else:
        lines = []
        trailing_newline = True

    offset = 0
    lower_bound = 0
    for hunk in patch_set[0]:
        source: List[str] = []
        target: List[str] = []
        previous_type = None
        for line in hunk:
            if line.line_type == LINE_TYPE_NO_NEWLINE:
                # The marker describes the line right before it
                if previous_type == "-":
                    trailing_newline = True
                elif previous_type is not None:
                    trailing_newline = False
                continue
            if line.is_context or line.is_removed:
                source.append(_line_text(line.value))
            if line.is_context or line.is_added:
                target.append(_line_text(line.value))
            previous_type = line.line_type

        # A zero-length source range names the line the insertion follows
        start = hunk.source_start - 1 if hunk.source_length else hunk.source_start
        index = _locate(lines, source, max(start, 0) + offset, lower_bound)
        if index is None:
            return None

        lines[index:index + len(source)] = target
        offset = index - max(start, 0) + len(target) - len(source)
        lower_bound = index + len(target)

    if not lines:
        return ""
    result = "\n".join(lines)
    return result + "\n" if trailing_newline else result

"""Unified diff helpers for GitHub pull request review comments.

GitHub's review API accepts ``position``: a 1-indexed line offset within a
file's ``patch`` (as returned by ``pulls/{number}/files``). The line just
below the first ``@@`` header is position 1, and every following diff line
advances the position, deletions included. Hunk headers and ``+++``/``---``
file markers do not.

Review comments are produced against new-file line numbers, so each file's
patch is indexed once and comments are translated through that index.
Comments that cannot be placed are dropped rather than failing the review.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping

from mergemonk.models.review import ChangedFile, LogicalComment, PositionedComment

HUNK_HEADER_RE = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? \+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)


@dataclass(frozen=True)
class PositionIndex:
    """Commentable positions of one file's diff."""

    valid_positions: frozenset[int] = frozenset()
    line_to_position: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))

    def position_for(self, line: int) -> int | None:
        position = self.line_to_position.get(line)
        if position is None or position not in self.valid_positions:
            return None
        return position


def build_position_index(patch: str | None) -> PositionIndex:
    """Index a single file's patch.

    Context and added lines are valid targets and map their new-file line
    number to their position. If two diff lines claim the same new-file
    line, the later one wins.
    """
    valid_positions: set[int] = set()
    line_to_position: Dict[int, int] = {}
    position = 0
    new_line: int | None = None

    for raw in (patch or "").split("\n"):
        match = HUNK_HEADER_RE.match(raw)
        if match:
            new_line = int(match.group("new_start"))
            continue
        if raw.startswith("+++") or raw.startswith("---"):
            continue

        position += 1
        if new_line is None:
            continue

        if raw.startswith(" ") or raw.startswith("+"):
            valid_positions.add(position)
            line_to_position[new_line] = position
            new_line += 1

    return PositionIndex(
        valid_positions=frozenset(valid_positions),
        line_to_position=MappingProxyType(line_to_position),
    )


def index_pull_request_files(files: Iterable[ChangedFile]) -> Dict[str, PositionIndex]:
    """Build a position index for every file that carries a non-empty patch."""

    indexes: Dict[str, PositionIndex] = {}
    for changed_file in files:
        patch = changed_file.patch or ""
        if not patch.strip():
            continue
        indexes[changed_file.path] = build_position_index(patch)
    return indexes


def resolve_comment_positions(
    comments: Iterable[LogicalComment],
    indexes: Mapping[str, PositionIndex],
) -> List[PositionedComment]:
    """Translate line-addressed comments to diff positions, dropping the unplaceable ones."""

    resolved: List[PositionedComment] = []
    for comment in comments:
        index = indexes.get(comment.path)
        if index is None:
            continue
        position = index.position_for(comment.line)
        if position is None:
            continue
        resolved.append(PositionedComment(path=comment.path, position=position, body=comment.body))
    return resolved

"""Rebuild a file's post-change content from its base revision and a unified diff."""

from __future__ import annotations

import re
from collections import defaultdict
from typing import Dict, List, Sequence, Set, Tuple

from testgen.logger import get_logger
from testgen.models.generation import ChangeKind, DiffHunk, HunkLine

logger = get_logger()

HUNK_HEADER_RE = re.compile(r"^@@\s*-(\d+)(?:,(\d+))?\s*\+(\d+)(?:,(\d+))?\s*@@")
NO_NEWLINE_MARKER = "\\"


class PatchParseError(ValueError):
    """Raised when a patch contains a hunk header that cannot be parsed."""


def parse_hunk_header(line: str) -> DiffHunk:
    """Parse ``@@ -a,b +c,d @@`` into an empty hunk with 0-based start lines."""

    match = HUNK_HEADER_RE.match(line)
    if not match:
        raise PatchParseError(f"Invalid hunk header format: {line!r}")

    original_start, original_count, new_start, new_count = match.groups()
    original_count_value = int(original_count) if original_count is not None else 1
    new_count_value = int(new_count) if new_count is not None else 1
    return DiffHunk(
        original_start=_to_index(int(original_start), original_count_value),
        original_count=original_count_value,
        new_start=_to_index(int(new_start), new_count_value),
        new_count=new_count_value,
    )


def _to_index(start: int, count: int) -> int:
    # An empty range names the line the hunk follows, not the first line it covers.
    if count == 0:
        return start
    return max(start - 1, 0)


def parse_patch(patch: str) -> List[DiffHunk]:
    """Split a unified diff into hunks; lines before the first header are ignored."""

    hunks: List[DiffHunk] = []
    current: DiffHunk | None = None

    for line in patch.splitlines():
        if line.startswith("@@"):
            current = parse_hunk_header(line)
            hunks.append(current)
            continue
        if current is None or line.startswith(NO_NEWLINE_MARKER):
            continue
        if line.startswith("-"):
            current.changes.append(HunkLine(ChangeKind.REMOVED, line[1:]))
        elif line.startswith("+"):
            current.changes.append(HunkLine(ChangeKind.ADDED, line[1:]))
        else:
            current.changes.append(HunkLine(ChangeKind.CONTEXT, line[1:]))

    return hunks


class PatchMerger:
    """Apply GitHub-style file patches to base content."""

    def merge(self, original_content: str | None, patch: str | None) -> str:
        """Return ``original_content`` with ``patch`` applied.

        Context mismatches are logged and tolerated; a malformed hunk header
        raises :class:`PatchParseError`.
        """

        original_content = original_content or ""
        if not patch or not patch.strip():
            logger.warning("Patch is empty, returning original content")
            return original_content

        lines: Tuple[str, ...] = tuple(original_content.splitlines())
        hunks = parse_patch(patch)

        # Later hunks first so earlier hunks still see their original indices.
        for hunk in sorted(hunks, key=lambda h: h.original_start, reverse=True):
            lines = self._apply_hunk(lines, hunk)

        merged = "\n".join(lines)
        if original_content.endswith(("\n", "\r")) and merged:
            merged += "\n"
        return merged

    def reconstruct_from_patch(self, patch: str | None) -> str:
        """Rebuild the content of a newly added file from its patch alone."""

        if not patch or not patch.strip():
            logger.warning("Patch is empty, nothing to reconstruct")
            return ""

        output: List[str] = []
        in_hunk = False
        for line in patch.splitlines():
            if line.startswith("@@"):
                in_hunk = True
                continue
            if not in_hunk or line.startswith(("-", NO_NEWLINE_MARKER)):
                continue
            output.append(line[1:])
        return "\n".join(output)

    def _apply_hunk(self, lines: Sequence[str], hunk: DiffHunk) -> Tuple[str, ...]:
        cursor = hunk.original_start
        removed: Set[int] = set()
        staged: List[Tuple[int, str]] = []
        consumed = 0

        logger.debug(
            f"Applying hunk at line {hunk.original_start + 1} with {len(hunk.changes)} changes"
        )

        for change in hunk.changes:
            if change.kind is ChangeKind.CONTEXT:
                if cursor < len(lines) and lines[cursor].rstrip() != change.text.rstrip():
                    logger.warning(
                        f"Context mismatch at line {cursor + 1}. "
                        f"Expected: {change.text.rstrip()!r}, Found: {lines[cursor].rstrip()!r}"
                    )
                cursor += 1
                consumed += 1
            elif change.kind is ChangeKind.REMOVED:
                if cursor < len(lines):
                    removed.add(cursor)
                cursor += 1
                consumed += 1
            else:
                staged.append((cursor, change.text))

        if consumed != hunk.original_count:
            logger.debug(
                f"Hunk at line {hunk.original_start + 1} declares {hunk.original_count} "
                f"original lines but spans {consumed}"
            )

        return _materialize(lines, removed, staged)


def _materialize(
    lines: Sequence[str], removed: Set[int], staged: Sequence[Tuple[int, str]]
) -> Tuple[str, ...]:
    """Build the new line sequence in one pass.

    Lines staged at index ``i`` land immediately before original line ``i``
    (or at the end when ``i`` is past the last line), in staging order.
    """

    insertions: Dict[int, List[str]] = defaultdict(list)
    for index, text in staged:
        insertions[min(index, len(lines))].append(text)

    result: List[str] = []
    for index, line in enumerate(lines):
        result.extend(insertions.get(index, ()))
        if index not in removed:
            result.append(line)
    result.extend(insertions.get(len(lines), ()))
    return tuple(result)

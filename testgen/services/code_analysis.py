"""Structural extraction and priority-based truncation of source files."""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Set

from testgen.logger import get_logger
from testgen.models.generation import AnalyzedCode

logger = get_logger()

TRUNCATION_MARKER = "# ... [code truncated for brevity] ..."

_WORD_SPLIT_RE = re.compile(r"[ \n\t\r]+")
_HUNK_NEW_START_RE = re.compile(r"\+(\d+)")

_CLASS_NAME_RE = re.compile(r"^[ \t]*class\s+(\w+)", re.MULTILINE)
_CALLABLE_NAME_RE = re.compile(r"^[ \t]*(?:async\s+)?def\s+(\w+)\s*\(", re.MULTILINE)
_IMPORT_RE = re.compile(r"^[ \t]*import\s+([\w.]+(?:\s+as\s+\w+)?(?:\s*,\s*[\w.]+(?:\s+as\s+\w+)?)*)", re.MULTILINE)
_FROM_IMPORT_RE = re.compile(r"^[ \t]*from\s+([\w.]+)\s+import\s+\(?([^)\n]+)\)?", re.MULTILINE)
_CLASS_BASES_RE = re.compile(r"^[ \t]*class\s+\w+\s*\(([^)]*)\)", re.MULTILINE)
_ANNOTATION_RE = re.compile(r"\b\w+\s*:\s*([A-Z]\w*)")

# Line classifiers, applied to stripped lines.
_CLASS_DECL_RE = re.compile(r"^class\s+\w+")
_CLASS_WITH_BASES_RE = re.compile(r"^class\s+\w+\s*\(\s*[^)\s]")
_CALLABLE_SIGNATURE_RE = re.compile(r"^(?:async\s+)?def\s+\w+\s*\(")
_ACCESSOR_RE = re.compile(r"^@(?:\w+\.)*(?:property|cached_property|setter|getter|deleter)\b")
_IMPORT_LINE_RE = re.compile(r"^(?:import\s+\w|from\s+[\w.]+\s+import\b)")
_COMMENT_PREFIXES = ("#", '"""', "'''")

CHANGED_LINE_PRIORITY = 100
CLASS_PRIORITY = 90
CALLABLE_PRIORITY = 80
INTERFACE_PRIORITY = 70
ACCESSOR_PRIORITY = 60
IMPORT_PRIORITY = 50
COMMENT_PRIORITY = 10
BLANK_PRIORITY = 1
PROXIMITY_RANGE = 3


def estimate_tokens(text: str | None) -> int:
    """Approximate token count: ``max(chars // 3, words)``."""

    if not text:
        return 0
    word_count = sum(1 for word in _WORD_SPLIT_RE.split(text) if word)
    return max(len(text) // 3, word_count)


def extract_changed_lines(patch: str | None) -> Set[int]:
    """Return the 1-based new-file line numbers touched by ``patch``."""

    changed: Set[int] = set()
    if not patch:
        return changed

    current_line = 0
    for line in patch.split("\n"):
        if line.startswith("@@"):
            match = _HUNK_NEW_START_RE.search(line)
            if match:
                current_line = int(match.group(1))
        elif line.startswith("+") or line.startswith("-"):
            changed.add(current_line)
            if line.startswith("+") and not line.startswith("+++"):
                current_line += 1
        elif not line.startswith("---") and not line.startswith("+++"):
            current_line += 1
    return changed


def extract_type_names(content: str) -> List[str]:
    return _CLASS_NAME_RE.findall(content)


def extract_callable_names(content: str) -> List[str]:
    return _CALLABLE_NAME_RE.findall(content)


def extract_references(content: str) -> List[str]:
    """Collect imported modules/names, base classes and annotated types, deduplicated."""

    references: Dict[str, None] = {}

    for match in _IMPORT_RE.finditer(content):
        for item in match.group(1).split(","):
            module = item.strip().split(" as ")[0].strip()
            if module:
                references[module] = None

    for match in _FROM_IMPORT_RE.finditer(content):
        references[match.group(1)] = None
        for item in match.group(2).split(","):
            name = item.strip().split(" as ")[0].strip()
            if name and name != "*":
                references[name] = None

    for match in _CLASS_BASES_RE.finditer(content):
        for base in match.group(1).split(","):
            base = base.strip()
            if base and "=" not in base:
                references[base] = None

    for match in _ANNOTATION_RE.finditer(content):
        references[match.group(1)] = None

    return list(references)


def line_priority(line: str, line_number: int, changed_lines: Iterable[int]) -> int:
    """Score one line; ``line_number`` is 1-based."""

    priority = 0
    stripped = line.strip()
    changed = changed_lines if isinstance(changed_lines, (set, frozenset)) else set(changed_lines)

    if line_number in changed:
        priority += CHANGED_LINE_PRIORITY
    if _CALLABLE_SIGNATURE_RE.match(stripped):
        priority += CALLABLE_PRIORITY
    if _CLASS_DECL_RE.match(stripped):
        priority += CLASS_PRIORITY
    if _ACCESSOR_RE.match(stripped):
        priority += ACCESSOR_PRIORITY
    if _IMPORT_LINE_RE.match(stripped):
        priority += IMPORT_PRIORITY
    if _CLASS_WITH_BASES_RE.match(stripped):
        priority += INTERFACE_PRIORITY
    if stripped.startswith(_COMMENT_PREFIXES):
        priority += COMMENT_PRIORITY
    if not stripped:
        priority += BLANK_PRIORITY

    for changed_line in changed:
        distance = abs(line_number - changed_line)
        if distance <= PROXIMITY_RANGE:
            priority += max(0, 30 - distance * 10)

    return priority


class ContentAnalyzer:
    """Extract structural facts from a file and cut it down to a token cap."""

    def __init__(self, max_tokens_per_file: int = 2000) -> None:
        self._max_tokens = max_tokens_per_file

    @property
    def max_tokens_per_file(self) -> int:
        return self._max_tokens

    def analyze(self, content: str, patch: str | None = None) -> AnalyzedCode:
        changed_lines = extract_changed_lines(patch)
        truncated = self.truncate(content, changed_lines)
        return AnalyzedCode(
            truncated_content=truncated,
            type_names=extract_type_names(content),
            callable_names=extract_callable_names(content),
            references=extract_references(content),
            estimated_tokens=estimate_tokens(truncated),
        )

    def truncate(self, content: str, changed_lines: Set[int]) -> str:
        """Keep the highest-priority lines that fit, in original order."""

        if estimate_tokens(content) <= self._max_tokens:
            return content

        lines = content.split("\n")
        scored = [
            (index, line_priority(line, index + 1, changed_lines))
            for index, line in enumerate(lines)
        ]
        # sorted() is stable, so equal priorities keep file order.
        ranked = sorted(scored, key=lambda item: item[1], reverse=True)

        selected: List[int] = []
        running = 0
        for index, _priority in ranked:
            line_tokens = estimate_tokens(lines[index])
            if running + line_tokens <= self._max_tokens:
                selected.append(index)
                running += line_tokens

        selected.sort()
        output: List[str] = []
        previous: int | None = None
        for index in selected:
            if previous is not None and index - previous > 1:
                output.append(TRUNCATION_MARKER)
            output.append(lines[index])
            previous = index

        logger.debug(
            f"Truncated content from {len(lines)} to {len(selected)} lines "
            f"(~{running} tokens, cap {self._max_tokens})"
        )
        return "\n".join(output)

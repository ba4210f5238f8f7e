"""Shared data structures for test generation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List


class ChangeKind(str, Enum):
    CONTEXT = "context"
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class HunkLine:
    kind: ChangeKind
    text: str


@dataclass(slots=True)
class DiffHunk:
    original_start: int
    original_count: int
    new_start: int
    new_count: int
    changes: List[HunkLine] = field(default_factory=list)


@dataclass(slots=True)
class ChangedFile:
    path: str
    status: str
    change_count: int
    patch: str | None = None


@dataclass(slots=True)
class AnalyzedCode:
    truncated_content: str
    type_names: List[str] = field(default_factory=list)
    callable_names: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)
    estimated_tokens: int = 0


@dataclass(slots=True)
class FileContext:
    path: str
    status: str
    change_count: int = 0
    patch: str | None = None
    content: str = ""
    type_names: List[str] = field(default_factory=list)
    callable_names: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)


@dataclass(slots=True)
class PullRequestContext:
    repository: str
    pr_number: int
    title: str | None = None
    description: str | None = None
    head_ref: str | None = None
    head_sha: str | None = None
    base_sha: str | None = None
    modified_files: List[FileContext] = field(default_factory=list)
    related_files: List[FileContext] = field(default_factory=list)
    estimated_token_count: int = 0


@dataclass(slots=True)
class Diagnostic:
    code: str
    message: str
    line: int
    column: int
    severity: str = "error"


@dataclass(slots=True)
class VerificationOutcome:
    succeeded: bool
    diagnostics: List[Diagnostic] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass(slots=True)
class GeneratedTest:
    class_name: str
    file_name: str
    test_source: str
    verification: VerificationOutcome | None = None

    @property
    def passed(self) -> bool:
        return self.verification is not None and self.verification.succeeded


@dataclass(slots=True)
class GenerationResult:
    success: bool
    tests: List[GeneratedTest] = field(default_factory=list)
    error_message: str | None = None

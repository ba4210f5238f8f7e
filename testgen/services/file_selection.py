"""Heuristic ranking of the files changed by a pull request."""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Final, List, Sequence

from testgen.logger import get_logger
from testgen.models.generation import ChangedFile

logger = get_logger()

DEFAULT_MAX_FILES: Final[int] = 10
CHANGE_COUNT_CAP: Final[int] = 100

STATUS_SCORES: Final[dict[str, int]] = {
    "added": 200,
    "modified": 150,
    "removed": 10,
}

TEST_PATH_PENALTY: Final[int] = -50
BUSINESS_ROLE_BONUS: Final[int] = 80
DATA_SHAPE_BONUS: Final[int] = 60
ARCHITECTURE_DIR_BONUS: Final[int] = 50
INFRASTRUCTURE_PENALTY: Final[int] = -20

BUSINESS_ROLES: Final[tuple[str, ...]] = (
    "service",
    "controller",
    "repository",
    "manager",
    "handler",
    "processor",
)
DATA_SHAPE_ROLES: Final[tuple[str, ...]] = ("model", "entity", "dto", "request", "response")
ARCHITECTURE_DIRS: Final[frozenset[str]] = frozenset(
    {"services", "controllers", "business", "core", "domain", "application"}
)
INFRASTRUCTURE_DIRS: Final[frozenset[str]] = frozenset({"infrastructure", "framework", "migrations"})
ENTRY_POINT_FILES: Final[frozenset[str]] = frozenset(
    {"__main__.py", "main.py", "manage.py", "wsgi.py", "asgi.py", "program.cs", "startup.cs"}
)
TEST_DIRS: Final[frozenset[str]] = frozenset({"test", "tests", "spec", "specs", "__tests__"})

_TEST_STEM_RE = re.compile(r"(^test_|_test$|_tests$|_spec$|\.spec$|\.test$|^conftest$)", re.IGNORECASE)
_CAMEL_TEST_STEM_RE = re.compile(r"(Tests?|Spec)$")


def is_test_path(path: str) -> bool:
    parts = PurePosixPath(path).parts
    if any(part.lower() in TEST_DIRS for part in parts[:-1]):
        return True
    stem = PurePosixPath(path).stem
    return bool(_TEST_STEM_RE.search(stem) or _CAMEL_TEST_STEM_RE.search(stem))


class FileSelector:
    """Score changed files and keep the most promising ones for test generation."""

    def __init__(self, max_files: int = DEFAULT_MAX_FILES) -> None:
        if max_files < 0:
            raise ValueError("max_files must not be negative")
        self._max_files = max_files

    def score(self, file: ChangedFile) -> int:
        score = min(max(file.change_count, 0), CHANGE_COUNT_CAP)
        score += STATUS_SCORES.get(file.status, 0)

        path = PurePosixPath(file.path)
        file_name = path.name.lower()
        directories = {part.lower() for part in path.parts[:-1]}

        if is_test_path(file.path):
            score += TEST_PATH_PENALTY
        if any(role in file_name for role in BUSINESS_ROLES):
            score += BUSINESS_ROLE_BONUS
        if any(role in file_name for role in DATA_SHAPE_ROLES):
            score += DATA_SHAPE_BONUS
        if directories & ARCHITECTURE_DIRS:
            score += ARCHITECTURE_DIR_BONUS
        if directories & INFRASTRUCTURE_DIRS or file_name in ENTRY_POINT_FILES:
            score += INFRASTRUCTURE_PENALTY

        return max(score, 0)

    def select(self, files: Sequence[ChangedFile]) -> List[ChangedFile]:
        """Return at most ``max_files`` files, best first, ties in input order."""

        ranked = sorted(files, key=self.score, reverse=True)
        selected = ranked[: self._max_files]
        logger.debug(
            f"Selected {len(selected)} of {len(files)} changed file(s): "
            f"{[file.path for file in selected]}"
        )
        return selected

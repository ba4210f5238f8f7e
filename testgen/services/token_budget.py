"""Fit a pull request context under a global token ceiling."""

from __future__ import annotations

from typing import Iterable, List

from testgen.logger import get_logger
from testgen.models.generation import FileContext, PullRequestContext
from testgen.services.code_analysis import estimate_tokens

logger = get_logger()

MODIFIED_FILES_SHARE = 0.8
BUDGET_TRUNCATION_MARKER = "# ... [content truncated to fit token limits] ..."


def total_tokens(files: Iterable[FileContext]) -> int:
    return sum(estimate_tokens(file.content) for file in files)


def truncate_to_token_limit(content: str, max_tokens: int) -> str:
    """Keep a leading fraction of lines proportional to ``max_tokens``.

    Content is expected to be ordered most-important first already.
    """

    current = estimate_tokens(content)
    if current <= max_tokens:
        return content

    lines = content.split("\n")
    keep = int(len(lines) * (max_tokens / current))
    return "\n".join(lines[:keep] + [BUDGET_TRUNCATION_MARKER])


class TokenBudgetAllocator:
    """Split a budget 80/20 between modified and related files."""

    def allocate(self, context: PullRequestContext, max_tokens: int) -> PullRequestContext:
        current_total = total_tokens(context.modified_files) + total_tokens(context.related_files)
        if current_total <= max_tokens:
            context.estimated_token_count = current_total
            return context

        modified_share = int(max_tokens * MODIFIED_FILES_SHARE)
        related_share = max_tokens - modified_share
        logger.info(
            f"Context of ~{current_total} tokens exceeds {max_tokens}; "
            f"allocating {modified_share} to modified and {related_share} to related files"
        )

        self._truncate_modified(context.modified_files, modified_share)
        context.related_files = self._fit_related(context.related_files, related_share)

        context.estimated_token_count = total_tokens(context.modified_files) + total_tokens(
            context.related_files
        )
        logger.info(f"Context reduced to ~{context.estimated_token_count} tokens")
        return context

    @staticmethod
    def _truncate_modified(files: List[FileContext], share: int) -> None:
        modified_total = total_tokens(files)
        if modified_total <= share:
            return

        for file in files:
            file_tokens = estimate_tokens(file.content)
            target = int(file_tokens / modified_total * share)
            if file_tokens > target:
                file.content = truncate_to_token_limit(file.content, target)
                logger.debug(f"Truncated {file.path} from ~{file_tokens} to ~{target} tokens")

    @staticmethod
    def _fit_related(files: List[FileContext], share: int) -> List[FileContext]:
        if total_tokens(files) <= share:
            return files

        ranked = sorted(
            files,
            key=lambda file: (file.change_count, len(file.callable_names)),
            reverse=True,
        )
        kept: List[FileContext] = []
        running = 0
        for file in ranked:
            file_tokens = estimate_tokens(file.content)
            if running + file_tokens <= share:
                kept.append(file)
                running += file_tokens
            else:
                logger.debug(f"Dropping related file {file.path} (~{file_tokens} tokens)")
        return kept

"""Helpers to build a token-bounded pull request context for test generation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Sequence

from testgen.config import Settings
from testgen.logger import get_logger, log_timing, log_with_context
from testgen.models.generation import ChangedFile, FileContext, PullRequestContext
from testgen.queue.models import PullRequestPayload
from testgen.services.code_analysis import ContentAnalyzer
from testgen.services.file_selection import FileSelector
from testgen.services.patch_merger import PatchMerger, PatchParseError
from testgen.services.token_budget import TokenBudgetAllocator

if TYPE_CHECKING:
    from testgen.services.generation import SourceControl

logger = get_logger()

ABSTRACTION_HINTS = ("Base", "Abstract", "Protocol", "Interface", "Mixin")
MAX_REFERENCE_SEARCHES = 5
SEARCH_HITS_PER_REFERENCE = 2
RELATED_STATUS = "related"


def filter_source_files(files: Sequence[ChangedFile], extensions: Sequence[str]) -> List[ChangedFile]:
    suffixes = tuple(ext.lower() for ext in extensions)
    if not suffixes:
        return list(files)
    return [file for file in files if file.path.lower().endswith(suffixes)]


def select_reference_candidates(references: Sequence[str], limit: int = MAX_REFERENCE_SEARCHES) -> List[str]:
    """Pick capitalised names to search for, abstractions first."""

    names: Dict[str, None] = {}
    for reference in references:
        name = reference.rsplit(".", 1)[-1]
        if name[:1].isupper():
            names[name] = None

    abstractions = [name for name in names if any(hint in name for hint in ABSTRACTION_HINTS)]
    others = [name for name in names if name not in abstractions]
    return (abstractions + others)[:limit]


async def _file_content(
    source_control: "SourceControl",
    merger: PatchMerger,
    file: ChangedFile,
    payload: PullRequestPayload,
) -> str | None:
    head_sha = payload.pull_request.head.sha
    base_sha = payload.pull_request.base.sha

    if file.status == "added":
        if file.patch:
            return merger.reconstruct_from_patch(file.patch)
        return await source_control.get_file_content(file.path, head_sha)

    if not file.patch:
        # GitHub omits patches for large or binary diffs
        return await source_control.get_file_content(file.path, head_sha)

    original = await source_control.get_file_content(file.path, base_sha)
    if original is None:
        return None
    return merger.merge(original, file.patch)


async def build_modified_files(
    source_control: "SourceControl",
    payload: PullRequestPayload,
    selected: Sequence[ChangedFile],
    *,
    merger: PatchMerger,
    analyzer: ContentAnalyzer,
) -> List[FileContext]:
    contexts: Dict[str, FileContext] = {}
    for file in selected:
        if file.status == "removed":
            logger.debug(f"Skipping removed file {file.path}")
            continue
        if file.path in contexts:
            continue

        try:
            content = await _file_content(source_control, merger, file, payload)
        except PatchParseError as exc:
            logger.warning(f"Skipping {file.path}: malformed patch ({exc})")
            continue
        if content is None:
            logger.warning(f"Skipping {file.path}: content unavailable")
            continue

        analyzed = analyzer.analyze(content, file.patch)
        contexts[file.path] = FileContext(
            path=file.path,
            status=file.status,
            change_count=file.change_count,
            patch=file.patch,
            content=analyzed.truncated_content,
            type_names=analyzed.type_names,
            callable_names=analyzed.callable_names,
            references=analyzed.references,
        )
    return list(contexts.values())


async def find_related_files(
    source_control: "SourceControl",
    modified_files: Sequence[FileContext],
    *,
    analyzer: ContentAnalyzer,
    extensions: Sequence[str],
    max_related_files: int,
    ref: str | None = None,
) -> List[FileContext]:
    if max_related_files <= 0:
        return []

    references: List[str] = []
    for file in modified_files:
        references.extend(file.references)
    candidates = select_reference_candidates(references)
    if not candidates:
        return []

    excluded = {file.path for file in modified_files}
    related: Dict[str, FileContext] = {}
    for name in candidates:
        paths = await source_control.search_code(name, extensions, SEARCH_HITS_PER_REFERENCE)
        for path in paths:
            if path in excluded or path in related:
                continue
            content = await source_control.get_file_content(path, ref)
            if not content:
                continue
            analyzed = analyzer.analyze(content, None)
            if not analyzed.type_names and not analyzed.callable_names:
                continue
            related[path] = FileContext(
                path=path,
                status=RELATED_STATUS,
                content=analyzed.truncated_content,
                type_names=analyzed.type_names,
                callable_names=analyzed.callable_names,
                references=analyzed.references,
            )
            if len(related) >= max_related_files:
                return list(related.values())
    return list(related.values())


async def build_pull_request_context(
    source_control: "SourceControl",
    payload: PullRequestPayload,
    settings: Settings,
    *,
    selector: FileSelector | None = None,
    merger: PatchMerger | None = None,
    analyzer: ContentAnalyzer | None = None,
    allocator: TokenBudgetAllocator | None = None,
) -> PullRequestContext:
    pr_info = payload.pull_request
    if not payload.repository.full_name:
        raise ValueError("Pull request payload missing repository full name")

    selector = selector or FileSelector(settings.max_files_per_pr)
    merger = merger or PatchMerger()
    analyzer = analyzer or ContentAnalyzer(settings.max_tokens_per_file)
    allocator = allocator or TokenBudgetAllocator()

    ctx_logger = log_with_context(logger, repository=payload.repository.full_name, pr_number=pr_info.number)
    ctx_logger.info(
        f"Fetching PR files: PR#{pr_info.number}, "
        f"head={pr_info.head.sha[:8] if pr_info.head.sha else 'none'}, "
        f"base={pr_info.base.sha[:8] if pr_info.base.sha else 'none'}"
    )

    with log_timing(ctx_logger, "list_changed_files"):
        changed = await source_control.list_changed_files(pr_info.number)

    source_files = filter_source_files(changed, settings.source_extensions)
    selected = selector.select(source_files)
    ctx_logger.info(
        f"{len(changed)} changed file(s), {len(source_files)} source file(s), {len(selected)} selected"
    )

    with log_timing(ctx_logger, "build_modified_files"):
        modified = await build_modified_files(
            source_control, payload, selected, merger=merger, analyzer=analyzer
        )

    with log_timing(ctx_logger, "find_related_files"):
        related = await find_related_files(
            source_control,
            modified,
            analyzer=analyzer,
            extensions=settings.source_extensions,
            max_related_files=settings.max_related_files,
            ref=pr_info.head.sha,
        )

    context = PullRequestContext(
        repository=payload.repository.full_name,
        pr_number=pr_info.number,
        title=pr_info.title,
        description=pr_info.body,
        head_ref=pr_info.head.ref,
        head_sha=pr_info.head.sha,
        base_sha=pr_info.base.sha,
        modified_files=modified,
        related_files=related,
    )
    allocator.allocate(context, settings.max_total_tokens)
    ctx_logger.info(
        f"PullRequestContext created: modified={len(context.modified_files)}, "
        f"related={len(context.related_files)}, ~{context.estimated_token_count} tokens"
    )
    return context

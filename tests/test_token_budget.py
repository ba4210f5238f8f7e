import pytest

from testgen.models.generation import FileContext, PullRequestContext
from testgen.services.code_analysis import estimate_tokens
from testgen.services.token_budget import (
    BUDGET_TRUNCATION_MARKER,
    MODIFIED_FILES_SHARE,
    TokenBudgetAllocator,
    total_tokens,
    truncate_to_token_limit,
)


def _context(modified, related):
    return PullRequestContext(
        repository="octo/widgets",
        pr_number=1,
        modified_files=modified,
        related_files=related,
    )


def test_context_that_fits_is_left_alone():
    modified = [FileContext(path="a.py", status="modified", content="def a():\n    return 1")]
    related = [FileContext(path="b.py", status="related", content="class B:\n    pass")]
    context = _context(modified, related)

    TokenBudgetAllocator().allocate(context, 10_000)

    assert context.modified_files[0].content == "def a():\n    return 1"
    assert context.related_files == related
    assert context.estimated_token_count == total_tokens(modified) + total_tokens(related)


def test_oversized_context_is_split_between_modified_and_related():
    big_modified = FileContext(
        path="a.py", status="modified", content="\n".join(["alpha beta gamma"] * 100)
    )
    big_related = FileContext(
        path="big.py", status="related", content="word " * 600, callable_names=["a", "b"]
    )
    small_related = FileContext(
        path="small.py", status="related", content="tiny content", callable_names=["a"]
    )
    context = _context([big_modified], [big_related, small_related])

    TokenBudgetAllocator().allocate(context, 200)

    modified_lines = context.modified_files[0].content.split("\n")
    assert len(modified_lines) == 29
    assert modified_lines[-1] == BUDGET_TRUNCATION_MARKER
    assert [f.path for f in context.related_files] == ["small.py"]
    assert context.estimated_token_count == total_tokens(context.modified_files) + total_tokens(
        context.related_files
    )


def test_modified_files_never_dropped():
    files = [
        FileContext(path=f"m{i}.py", status="modified", content="x = 1\n" * 200) for i in range(3)
    ]
    context = _context(files, [])

    TokenBudgetAllocator().allocate(context, 100)

    assert [f.path for f in context.modified_files] == ["m0.py", "m1.py", "m2.py"]


def test_truncate_to_token_limit_keeps_short_content():
    assert truncate_to_token_limit("short", 100) == "short"


@pytest.mark.parametrize("modified_count", [4, 10])
def test_allocated_context_stays_under_the_ceiling(modified_count):
    max_tokens = 1000
    modified = [
        FileContext(path=f"m{i}.py", status="modified", content="\n".join(["alpha beta gamma"] * 100))
        for i in range(modified_count)
    ]
    related = [
        FileContext(path=f"r{i}.py", status="related", content="word " * 200, callable_names=["f"])
        for i in range(3)
    ] + [FileContext(path="tiny.py", status="related", content="tiny content")]
    context = _context(modified, related)

    TokenBudgetAllocator().allocate(context, max_tokens)

    modified_share = int(max_tokens * MODIFIED_FILES_SHARE)
    # each truncated file may exceed its share by the appended marker line
    marker_slack = estimate_tokens("\n" + BUDGET_TRUNCATION_MARKER) + 1
    assert total_tokens(context.modified_files) <= modified_share + modified_count * marker_slack
    assert total_tokens(context.related_files) <= max_tokens - modified_share
    assert [f.path for f in context.related_files] == ["tiny.py"]
    assert context.estimated_token_count <= max_tokens
    assert context.estimated_token_count == total_tokens(context.modified_files) + total_tokens(
        context.related_files
    )
    assert all(f.content.endswith(BUDGET_TRUNCATION_MARKER) for f in context.modified_files)

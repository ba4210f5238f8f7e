import difflib

import pytest

from testgen.models.generation import ChangeKind
from testgen.services.patch_merger import (
    PatchMerger,
    PatchParseError,
    parse_hunk_header,
    parse_patch,
)


def _github_patch(before: str, after: str) -> str:
    diff = difflib.unified_diff(before.splitlines(), after.splitlines(), lineterm="", n=2)
    # GitHub file patches start at the first hunk header.
    return "\n".join(line for line in diff if not line.startswith(("---", "+++")))


def test_merge_replaces_line_and_inserts_after_context():
    merger = PatchMerger()
    patch = "@@ -2,2 +2,3 @@\n x\n-y\n+y2\n+z"

    merged = merger.merge("a\nx\ny\nb", patch)

    assert merged.split("\n") == ["a", "x", "y2", "z", "b"]


def test_merge_applies_multiple_hunks_against_original_positions():
    before = "\n".join(f"line {i}" for i in range(1, 21))
    after_lines = before.split("\n")
    after_lines[1] = "line 2 changed"
    after_lines.insert(10, "inserted")
    del after_lines[17]
    after = "\n".join(after_lines)

    merged = PatchMerger().merge(before, _github_patch(before, after))

    assert merged == after


def test_merge_round_trips_python_source():
    before = (
        "import os\n"
        "\n"
        "class Pricing:\n"
        "    def total(self, items):\n"
        "        return sum(items)\n"
        "\n"
        "    def tax(self):\n"
        "        return 0\n"
    )
    after = (
        "import os\n"
        "import math\n"
        "\n"
        "class Pricing:\n"
        "    def total(self, items, discount=0):\n"
        "        return sum(items) - discount\n"
        "\n"
        "    def rounded(self, value):\n"
        "        return math.floor(value)\n"
    )

    merged = PatchMerger().merge(before, _github_patch(before, after))

    assert merged == after


def test_merge_preserves_trailing_newline_and_normalises_crlf():
    merged = PatchMerger().merge("a\r\nb\r\n", "@@ -1,2 +1,2 @@\n a\n-b\n+c")

    assert merged == "a\nc\n"


def test_empty_patch_returns_original_unchanged():
    merger = PatchMerger()

    assert merger.merge("keep\nme\n", "") == "keep\nme\n"
    assert merger.merge("keep", None) == "keep"


def test_context_mismatch_is_tolerated():
    merged = PatchMerger().merge("a\nq\nc", "@@ -1,3 +1,3 @@\n a\n b\n-c\n+d")

    assert merged.split("\n") == ["a", "q", "d"]


def test_pure_insertion_after_line():
    merged = PatchMerger().merge("a\nb", "@@ -1,0 +2,1 @@\n+between")

    assert merged.split("\n") == ["a", "between", "b"]


def test_malformed_hunk_header_raises():
    with pytest.raises(PatchParseError):
        PatchMerger().merge("a", "@@ nonsense @@\n-a")


def test_reconstruct_from_add_only_patch():
    patch = "@@ -0,0 +1,3 @@\n+def f():\n+    return 1\n+"

    assert PatchMerger().reconstruct_from_patch(patch) == "def f():\n    return 1\n"


def test_reconstruct_skips_removed_and_header_lines():
    patch = "diff --git a/x b/x\n@@ -1,2 +1,2 @@\n keep\n-old\n+new\n\\ No newline at end of file"

    assert PatchMerger().reconstruct_from_patch(patch) == "keep\nnew"


def test_reconstruct_empty_patch_returns_empty_string():
    assert PatchMerger().reconstruct_from_patch("") == ""


def test_parse_hunk_header_defaults_missing_counts():
    hunk = parse_hunk_header("@@ -5 +6 @@ def total(self):")

    assert (hunk.original_start, hunk.original_count) == (4, 1)
    assert (hunk.new_start, hunk.new_count) == (5, 1)


def test_parse_patch_classifies_lines():
    hunks = parse_patch("--- a/f\n+++ b/f\n@@ -1,2 +1,2 @@\n ctx\n-old\n+new\n")

    assert len(hunks) == 1
    assert [change.kind for change in hunks[0].changes] == [
        ChangeKind.CONTEXT,
        ChangeKind.REMOVED,
        ChangeKind.ADDED,
    ]
    assert [change.text for change in hunks[0].changes] == ["ctx", "old", "new"]

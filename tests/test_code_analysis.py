from testgen.services.code_analysis import (
    TRUNCATION_MARKER,
    ContentAnalyzer,
    estimate_tokens,
    extract_callable_names,
    extract_changed_lines,
    extract_references,
    extract_type_names,
    line_priority,
)

SAMPLE = """import os, sys as system
from typing import List, Optional as Opt
from app.models import Base

class Pricing(BaseService, metaclass=ABCMeta):
    rate: Decimal

    async def total(self, items: List) -> int:
        pass

    def tax(self):
        pass

class Pricing:
    pass
"""


def test_estimate_tokens_uses_larger_of_chars_and_words():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abc def") == 2
    assert estimate_tokens("a b c d e f") == 6


def test_extract_changed_lines_tracks_new_file_counter():
    patch = "@@ -1,2 +1,3 @@\n ctx\n-old\n+new\n+new2"

    assert extract_changed_lines(patch) == {2, 3}
    assert extract_changed_lines(None) == set()


def test_extract_type_and_callable_names_keep_duplicates_in_order():
    assert extract_type_names(SAMPLE) == ["Pricing", "Pricing"]
    assert extract_callable_names(SAMPLE) == ["total", "tax"]


def test_extract_references_collects_imports_bases_and_annotations():
    assert extract_references(SAMPLE) == [
        "os",
        "sys",
        "typing",
        "List",
        "Optional",
        "app.models",
        "Base",
        "BaseService",
        "Decimal",
    ]


def test_line_priority_scores():
    assert line_priority("def f(x):", 5, set()) == 80
    assert line_priority("class A(B):", 5, set()) == 160
    assert line_priority("class A:", 5, set()) == 90
    assert line_priority("    @property", 5, set()) == 60
    assert line_priority("import os", 5, set()) == 50
    assert line_priority("# note", 5, set()) == 10
    assert line_priority("", 5, set()) == 1


def test_line_priority_changed_line_and_proximity():
    assert line_priority("x = 1", 5, {5}) == 130
    assert line_priority("x = 1", 6, {5}) == 20
    assert line_priority("x = 1", 9, {5}) == 0


def test_analyze_leaves_small_files_untouched():
    content = "def f():\n    pass"

    analyzed = ContentAnalyzer(max_tokens_per_file=2000).analyze(content, None)

    assert analyzed.truncated_content == content
    assert analyzed.callable_names == ["f"]
    assert analyzed.estimated_tokens == estimate_tokens(content)


def test_truncation_keeps_changed_code_and_marks_gaps():
    filler = [f"    value_{i:02d} = {i}  # padding text here" for i in range(1, 41)]
    content = "\n".join(["class Widget:", *filler, "    def changed(self):", "        return 42"])
    patch = "@@ -41,0 +42,2 @@\n+    def changed(self):\n+        return 42"

    analyzed = ContentAnalyzer(max_tokens_per_file=30).analyze(content, patch)
    lines = analyzed.truncated_content.split("\n")

    assert lines[0] == "class Widget:"
    assert lines[1] == TRUNCATION_MARKER
    assert lines[-2:] == ["    def changed(self):", "        return 42"]
    assert "value_01" not in analyzed.truncated_content
    kept = [line for line in lines if line != TRUNCATION_MARKER]
    assert sum(estimate_tokens(line) for line in kept) <= 30
    assert analyzed.type_names == ["Widget"]

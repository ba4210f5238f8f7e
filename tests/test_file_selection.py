import pytest

from testgen.models.generation import ChangedFile
from testgen.services.file_selection import FileSelector, is_test_path


def test_added_file_with_many_changes_scores_300():
    selector = FileSelector()

    assert selector.score(ChangedFile(path="Foo.cs", status="added", change_count=120)) == 300


@pytest.mark.parametrize(
    "path,status,changes,expected",
    [
        ("app/services/order_service.py", "modified", 10, 290),
        ("tests/test_order.py", "added", 5, 155),
        ("migrations/0001_init.py", "added", 3, 183),
        ("main.py", "modified", 1, 131),
        ("app/order_dto.py", "added", 0, 260),
        ("old.py", "removed", 0, 10),
        ("tests/test_gone.py", "removed", 0, 0),
    ],
)
def test_score_heuristics(path, status, changes, expected):
    assert FileSelector().score(ChangedFile(path=path, status=status, change_count=changes)) == expected


def test_select_is_bounded_and_deterministic():
    files = [
        ChangedFile(path="a.py", status="modified", change_count=5),
        ChangedFile(path="b.py", status="modified", change_count=5),
        ChangedFile(path="c.py", status="added", change_count=1),
        ChangedFile(path="d.py", status="removed", change_count=50),
    ]
    selector = FileSelector(max_files=3)

    first = selector.select(files)
    second = selector.select(list(files))

    assert [f.path for f in first] == ["c.py", "a.py", "b.py"]
    assert [f.path for f in second] == [f.path for f in first]


def test_select_with_fewer_files_than_limit_returns_all():
    files = [ChangedFile(path="x.py", status="modified", change_count=1)]

    assert FileSelector(max_files=10).select(files) == files
    assert FileSelector(max_files=10).select([]) == []


def test_negative_limit_rejected():
    with pytest.raises(ValueError):
        FileSelector(max_files=-1)


@pytest.mark.parametrize(
    "path,expected",
    [
        ("src/FooTests.cs", True),
        ("pkg/widget_test.py", True),
        ("conftest.py", True),
        ("spec/models/user.py", True),
        ("pkg/contest.py", False),
        ("src/latest.py", False),
    ],
)
def test_is_test_path(path, expected):
    assert is_test_path(path) is expected

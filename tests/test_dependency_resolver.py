"""Tests for dependency validation, ordering and readiness."""

from __future__ import annotations

import pytest

from conftest import make_task
from phasegate.dependency_resolver import (
    ISSUE_CIRCULAR,
    ISSUE_DUPLICATE,
    ISSUE_MISSING,
    ISSUE_SELF_REFERENCE,
    DependencyResolver,
)
from phasegate.errors import DependencyError
from phasegate.models import TaskStatus


def _ids(tasks) -> list[str]:
    return [t.id for t in tasks]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_valid_graph_has_no_issues() -> None:
    resolver = DependencyResolver([make_task("1.1"), make_task("1.2", ["1.1"])])
    report = resolver.validate()
    assert report.valid is True
    assert report.issues == []


def test_two_task_cycle_reports_one_circular_issue() -> None:
    resolver = DependencyResolver([make_task("2.1", ["2.2"]), make_task("2.2", ["2.1"])])

    report = resolver.validate()

    assert report.valid is False
    circular = report.by_kind(ISSUE_CIRCULAR)
    assert len(circular) == 1
    assert circular[0].cycle == ("2.1", "2.2", "2.1")
    assert circular[0].details == "Circular dependency: 2.1 -> 2.2 -> 2.1"

    with pytest.raises(DependencyError) as excinfo:
        resolver.get_execution_order()
    assert excinfo.value.kind == "circular"


def test_missing_dependency_is_reported_and_blocks() -> None:
    resolver = DependencyResolver([make_task("1.1", ["9.9"])])

    report = resolver.validate()

    missing = report.by_kind(ISSUE_MISSING)
    assert len(missing) == 1
    assert missing[0].task_id == "1.1"
    assert missing[0].dependency == "9.9"
    assert resolver.can_run("1.1") is False
    assert resolver.get_blocking_deps("1.1") == ["9.9"]


def test_self_reference_is_reported() -> None:
    resolver = DependencyResolver([make_task("1.1", ["1.1"])])
    report = resolver.validate()
    assert len(report.by_kind(ISSUE_SELF_REFERENCE)) == 1
    assert report.valid is False


def test_duplicate_ids_are_reported() -> None:
    resolver = DependencyResolver([make_task("1.1"), make_task("1.1")])
    report = resolver.validate()
    assert [issue.task_id for issue in report.by_kind(ISSUE_DUPLICATE)] == ["1.1"]
    assert len(resolver.tasks) == 1


def test_issue_to_dict_shape() -> None:
    resolver = DependencyResolver([make_task("1.1", ["1.5"])])
    issue = resolver.validate().issues[0]
    assert issue.to_dict() == {
        "type": "missing",
        "task_id": "1.1",
        "details": "Task 1.1 depends on non-existent task 1.5",
        "dependency": "1.5",
    }


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def test_execution_order_puts_dependencies_first_with_id_tiebreak() -> None:
    tasks = [
        make_task("1.4", ["1.3", "1.2"]),
        make_task("1.3", ["1.1"]),
        make_task("1.2", ["1.1"]),
        make_task("1.1"),
    ]
    resolver = DependencyResolver(tasks)

    order = _ids(resolver.get_execution_order())

    assert order == ["1.1", "1.2", "1.3", "1.4"]
    # Repeated calls over the same graph give the same answer.
    assert _ids(DependencyResolver(list(reversed(tasks))).get_execution_order()) == order


def test_ids_sort_numerically_not_lexically() -> None:
    resolver = DependencyResolver([make_task("10.1"), make_task("2.10"), make_task("2.2"), make_task("2.1")])
    assert _ids(resolver.get_execution_order()) == ["2.1", "2.2", "2.10", "10.1"]


def test_every_task_appears_exactly_once() -> None:
    tasks = [make_task("3.1"), make_task("3.2", ["3.1"]), make_task("3.3", ["3.1", "3.2"]), make_task("3.4")]
    order = _ids(DependencyResolver(tasks).get_execution_order())
    assert sorted(order) == ["3.1", "3.2", "3.3", "3.4"]
    assert len(order) == len(set(order))
    assert order.index("3.1") < order.index("3.2") < order.index("3.3")


def test_execution_batches_group_by_level() -> None:
    resolver = DependencyResolver([make_task("1.1"), make_task("1.2", ["1.1"]), make_task("1.3", ["1.1"])])
    assert resolver.get_execution_batches(2) == [["1.1"], ["1.2", "1.3"]]


def test_execution_batches_split_wide_levels() -> None:
    resolver = DependencyResolver([make_task("1.3"), make_task("1.1"), make_task("1.2")])
    assert resolver.get_execution_batches(2) == [["1.1", "1.2"], ["1.3"]]
    assert resolver.get_execution_batches() == [["1.1", "1.2", "1.3"]]


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


def test_can_run_requires_pending_and_satisfied_dependencies() -> None:
    first = make_task("1.1")
    second = make_task("1.2", ["1.1"])
    resolver = DependencyResolver([first, second])

    assert resolver.can_run("1.1") is True
    assert resolver.can_run("1.2") is False
    assert resolver.get_blocking_deps("1.2") == ["1.1"]

    first.status = TaskStatus.COMPLETE
    assert resolver.can_run("1.1") is False
    assert resolver.can_run("1.2") is True
    assert resolver.get_next_runnable().id == "1.2"


def test_failed_dependency_keeps_dependent_blocked() -> None:
    resolver = DependencyResolver([make_task("1.1", status=TaskStatus.FAILED), make_task("1.2", ["1.1"])])
    assert resolver.can_run("1.2") is False
    assert resolver.get_runnable() == []
    assert resolver.get_next_runnable() is None


def test_skipped_dependency_counts_as_satisfied() -> None:
    resolver = DependencyResolver([make_task("1.1", status=TaskStatus.SKIPPED), make_task("1.2", ["1.1"])])
    assert resolver.can_run("1.2") is True
    assert resolver.get_skipped_deps("1.2") == ["1.1"]
    assert resolver.get_skipped_deps("1.1") == []


def test_unknown_task_is_never_runnable() -> None:
    resolver = DependencyResolver([make_task("1.1")])
    assert resolver.can_run("7.7") is False
    assert resolver.get_blocking_deps("7.7") == []

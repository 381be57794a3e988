"""Test task status transitions."""

from __future__ import annotations

import pytest

from conftest import make_task
from phasegate import fsm
from phasegate.errors import StateError
from phasegate.models import TaskId, TaskResult, TaskStatus, task_sort_key


def _result(task_id: str, status: TaskStatus, **kwargs) -> TaskResult:
    return TaskResult(task_id=task_id, status=status, duration_seconds=1.5, cost_usd=0.2, **kwargs)


def test_happy_path_pending_to_complete() -> None:
    task = make_task("1.1")
    fsm.start(task)
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.started_at is not None

    fsm.complete(task, _result("1.1", TaskStatus.COMPLETE, commit_hash="abc123"))
    assert task.status == TaskStatus.COMPLETE
    assert task.duration_seconds == 1.5
    assert task.commit_hash == "abc123"
    assert task.failure_reason is None


def test_fail_then_retry_clears_run_fields() -> None:
    task = make_task("1.1")
    fsm.start(task)
    fsm.fail(task, _result("1.1", TaskStatus.FAILED, failure_reason="boom"))
    assert task.status == TaskStatus.FAILED
    assert task.failure_reason == "boom"

    fsm.reset_for_retry(task)
    assert task.status == TaskStatus.PENDING
    assert task.started_at is None
    assert task.completed_at is None
    assert task.failure_reason is None
    assert task.cost_usd is None


@pytest.mark.parametrize(
    "status",
    [TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETE, TaskStatus.SKIPPED],
)
def test_only_failed_tasks_can_be_retried(status: TaskStatus) -> None:
    task = make_task("1.1", status=status)
    with pytest.raises(StateError) as excinfo:
        fsm.reset_for_retry(task)
    assert excinfo.value.kind == "task_not_failed"


def test_cannot_complete_a_pending_task() -> None:
    task = make_task("1.1")
    with pytest.raises(StateError) as excinfo:
        fsm.complete(task, _result("1.1", TaskStatus.COMPLETE))
    assert excinfo.value.kind == "invalid_transition"
    assert task.status == TaskStatus.PENDING


def test_cannot_skip_in_progress_task() -> None:
    task = make_task("1.1", status=TaskStatus.IN_PROGRESS)
    with pytest.raises(StateError):
        fsm.skip(task, "not needed")


def test_skip_records_reason() -> None:
    task = make_task("1.1", status=TaskStatus.FAILED)
    fsm.skip(task, "covered elsewhere")
    assert task.status == TaskStatus.SKIPPED
    assert task.failure_reason == "covered elsewhere"
    assert fsm.is_terminal(task.status)


def test_transition_table_shape() -> None:
    assert fsm.valid_next_statuses(TaskStatus.PENDING) == [TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED]
    assert fsm.valid_next_statuses(TaskStatus.SKIPPED) == []
    assert fsm.is_valid_transition(TaskStatus.FAILED, TaskStatus.PENDING)
    assert not fsm.is_valid_transition(TaskStatus.COMPLETE, TaskStatus.PENDING)


# ---------------------------------------------------------------------------
# Task ids
# ---------------------------------------------------------------------------


def test_task_id_parse_and_order() -> None:
    assert TaskId.parse("2.3") == TaskId(2, 3)
    assert TaskId.parse("4") == TaskId(4, 0)
    assert str(TaskId.parse(" 10.1 ")) == "10.1"
    assert TaskId.parse("2.1") < TaskId.parse("10.1")
    with pytest.raises(ValueError):
        TaskId.parse("a.b")


def test_malformed_ids_sort_last() -> None:
    ids = ["setup", "10.1", "2.1"]
    assert sorted(ids, key=task_sort_key) == ["2.1", "10.1", "setup"]

"""Task status state machine.

    pending -> in_progress -> complete | failed
    failed  -> pending            (retry; clears timestamps and result fields)
    * (except in_progress) -> skipped   (administrative override)
"""

from __future__ import annotations

from typing import Optional

from .errors import StateError
from .models import Task, TaskResult, TaskStatus
from .utils import _now_iso

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETE, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.SKIPPED}),
    TaskStatus.COMPLETE: frozenset({TaskStatus.SKIPPED}),
    TaskStatus.SKIPPED: frozenset(),
}

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETE, TaskStatus.SKIPPED})


def is_valid_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return to_status in TASK_TRANSITIONS.get(from_status, frozenset())


def valid_next_statuses(status: TaskStatus) -> list[TaskStatus]:
    return sorted(TASK_TRANSITIONS.get(status, frozenset()), key=lambda s: s.value)


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def _ensure(task: Task, to_status: TaskStatus) -> None:
    if not is_valid_transition(task.status, to_status):
        raise StateError.invalid_transition(task.id, task.status.value, to_status.value)


def _clear_run_fields(task: Task) -> None:
    task.started_at = None
    task.completed_at = None
    task.duration_seconds = None
    task.cost_usd = None
    task.commit_hash = None
    task.failure_reason = None


def start(task: Task) -> Task:
    _ensure(task, TaskStatus.IN_PROGRESS)
    task.status = TaskStatus.IN_PROGRESS
    task.started_at = _now_iso()
    task.completed_at = None
    task.failure_reason = None
    return task


def complete(task: Task, result: TaskResult) -> Task:
    _ensure(task, TaskStatus.COMPLETE)
    task.status = TaskStatus.COMPLETE
    task.completed_at = result.completed_at
    task.duration_seconds = result.duration_seconds
    task.cost_usd = result.cost_usd
    task.commit_hash = result.commit_hash
    task.failure_reason = None
    return task


def fail(task: Task, result: TaskResult) -> Task:
    _ensure(task, TaskStatus.FAILED)
    task.status = TaskStatus.FAILED
    task.completed_at = result.completed_at
    task.duration_seconds = result.duration_seconds
    task.cost_usd = result.cost_usd
    task.failure_reason = result.failure_reason or result.summary or "Unknown failure"
    return task


def reset_for_retry(task: Task) -> Task:
    if task.status != TaskStatus.FAILED:
        raise StateError.task_not_failed(task.id, task.status.value)
    task.status = TaskStatus.PENDING
    _clear_run_fields(task)
    return task


def skip(task: Task, reason: Optional[str] = None) -> Task:
    _ensure(task, TaskStatus.SKIPPED)
    task.status = TaskStatus.SKIPPED
    task.failure_reason = reason
    return task

"""Run one task to a final status, retrying failed attempts.

The actual work is delegated to a `TaskRunner`. Every attempt moves the task
through the state machine via the `StateManager`; only the last attempt's
result is retained.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from loguru import logger

from .constants import (
    DEFAULT_MAX_RETRIES,
    FAILURE_REASON_MAX_CHARS,
    RESULT_RAW_OUTPUT_MAX_CHARS,
    RETRY_OUTPUT_EXCERPT_CHARS,
)
from .events import EventBus, EventType
from .git_workflow import GitWorkflowManager
from .models import Task, TaskResult, TaskStatus
from .state_manager import StateManager
from .utils import _now_iso, _truncate


@dataclass
class TaskContext:
    """What a runner knows about the surroundings of the task it executes."""

    project_name: str = ""
    phase_number: int = 0
    phase_name: str = ""
    specification_summary: str = ""
    completed_task_ids: list[str] = field(default_factory=list)
    skipped_dependencies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_name": self.project_name,
            "phase_number": self.phase_number,
            "phase_name": self.phase_name,
            "specification_summary": self.specification_summary,
            "completed_task_ids": list(self.completed_task_ids),
            "skipped_dependencies": list(self.skipped_dependencies),
        }


@dataclass(frozen=True)
class RetryContext:
    attempt: int
    previous_failure: str
    previous_output: str = ""

    @classmethod
    def from_result(cls, attempt: int, result: TaskResult) -> "RetryContext":
        return cls(
            attempt=attempt,
            previous_failure=result.failure_reason or result.summary or "Unknown failure",
            previous_output=_truncate(result.raw_output, RETRY_OUTPUT_EXCERPT_CHARS),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "previous_failure": self.previous_failure,
            "previous_output": self.previous_output,
        }


@dataclass
class ExecutionOutcome:
    """What a runner reports for one attempt."""

    success: bool
    duration_seconds: Optional[float] = None
    summary: str = ""
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    tests_passing: Optional[bool] = None
    tests_added: int = 0
    tokens_used: int = 0
    cost_usd: float = 0.0
    output: str = ""
    failure_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionOutcome":
        def _files(key: str) -> list[str]:
            value = data.get(key) or []
            return [str(item) for item in value] if isinstance(value, list) else []

        tests_passing = data.get("tests_passing")
        duration = data.get("duration_seconds")
        return cls(
            success=bool(data.get("success")),
            duration_seconds=None if duration is None else float(duration),
            summary=str(data.get("summary") or ""),
            files_created=_files("files_created"),
            files_modified=_files("files_modified"),
            files_deleted=_files("files_deleted"),
            tests_passing=None if tests_passing is None else bool(tests_passing),
            tests_added=int(data.get("tests_added") or 0),
            tokens_used=int(data.get("tokens_used") or 0),
            cost_usd=float(data.get("cost_usd") or 0.0),
            output=str(data.get("output") or ""),
            failure_reason=data.get("failure_reason"),
        )


class TaskRunner(Protocol):
    async def run(
        self,
        task: Task,
        context: TaskContext,
        retry: Optional[RetryContext] = None,
    ) -> ExecutionOutcome: ...


@dataclass(frozen=True)
class TaskExecutionEvent:
    type: str  # start | retry | complete | fail
    task_id: str
    message: str = ""
    attempt: int = 1
    result: Optional[TaskResult] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "task_id": self.task_id, "attempt": self.attempt}
        if self.message:
            data["message"] = self.message
        if self.result is not None:
            data["status"] = self.result.status.value
        return data


def outcome_to_result(
    task: Task,
    outcome: ExecutionOutcome,
    *,
    started_at: str,
    elapsed_seconds: float,
    attempt: int,
) -> TaskResult:
    """Freeze a runner outcome into a `TaskResult`."""
    status = TaskStatus.COMPLETE if outcome.success else TaskStatus.FAILED
    failure_reason = None
    if not outcome.success:
        failure_reason = _truncate(
            outcome.failure_reason or outcome.summary or "Task reported failure",
            FAILURE_REASON_MAX_CHARS,
        )
    duration = outcome.duration_seconds if outcome.duration_seconds is not None else elapsed_seconds
    return TaskResult(
        task_id=task.id,
        status=status,
        task_description=task.description,
        started_at=started_at,
        completed_at=_now_iso(),
        duration_seconds=round(float(duration), 3),
        summary=outcome.summary,
        files_created=tuple(outcome.files_created),
        files_modified=tuple(outcome.files_modified),
        files_deleted=tuple(outcome.files_deleted),
        tests_added=outcome.tests_added,
        tests_passing=outcome.tests_passing,
        tokens_used=outcome.tokens_used,
        cost_usd=outcome.cost_usd,
        attempts=attempt,
        raw_output=_truncate(outcome.output, RESULT_RAW_OUTPUT_MAX_CHARS),
        failure_reason=failure_reason,
    )


class TaskExecutor:
    """Attempt a task up to ``1 + max_retries`` times."""

    def __init__(
        self,
        state: StateManager,
        runner: TaskRunner,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        git: Optional[GitWorkflowManager] = None,
        events: Optional[EventBus] = None,
    ):
        self.state = state
        self.runner = runner
        self.max_retries = max(0, int(max_retries))
        self.git = git
        self.events = events
        self._aborted = False

    def abort(self) -> None:
        self._aborted = True

    def reset(self) -> None:
        self._aborted = False

    def _emit(self, context: TaskContext, event: TaskExecutionEvent) -> None:
        if self.events is None:
            return
        self.events.emit(
            EventType.TASK_EVENT,
            phase_number=context.phase_number,
            phase_name=context.phase_name,
            task_event=event,
        )

    async def _attempt(
        self,
        task: Task,
        context: TaskContext,
        retry: Optional[RetryContext],
        attempt: int,
    ) -> TaskResult:
        started_at = _now_iso()
        started = time.monotonic()
        try:
            outcome = await self.runner.run(task, context, retry)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Task {} attempt {} raised: {}", task.id, attempt, exc)
            outcome = ExecutionOutcome(success=False, failure_reason=str(exc) or exc.__class__.__name__)
        return outcome_to_result(
            task,
            outcome,
            started_at=started_at,
            elapsed_seconds=time.monotonic() - started,
            attempt=attempt,
        )

    async def execute_with_retry(self, task_id: str, context: TaskContext) -> TaskResult:
        """Run `task_id` until it succeeds or the retry budget is spent.

        Args:
            task_id: A pending task whose dependencies are satisfied.
            context: Phase/project context passed to the runner.

        Returns:
            The retained result of the final attempt.

        Raises:
            NotFoundError: If the task does not exist.
            StateError: If the task cannot be started.
        """
        task = self.state.require_task(task_id)
        retry: Optional[RetryContext] = None
        attempt = 1
        while True:
            if retry is None:
                self._emit(context, TaskExecutionEvent("start", task.id, f"Starting task {task.id}", attempt))
                logger.info("Executing task {}: {}", task.id, task.description)
            else:
                self.state.retry_task(task.id)
                self._emit(
                    context,
                    TaskExecutionEvent("retry", task.id, f"Retrying task {task.id} (attempt {attempt})", attempt),
                )
                logger.warning("Retrying task {} (attempt {}/{})", task.id, attempt, self.max_retries + 1)

            self.state.start_task(task.id)
            result = await self._attempt(task, context, retry, attempt)

            if result.succeeded:
                if self.git is not None:
                    loop = asyncio.get_running_loop()
                    commit_hash = await loop.run_in_executor(None, self.git.commit_task, task.id, result.summary)
                    if commit_hash:
                        result = result.with_commit(commit_hash)
                self.state.complete_task(task.id, result)
                self._emit(
                    context,
                    TaskExecutionEvent("complete", task.id, f"Task {task.id} completed", attempt, result),
                )
                logger.success("Task {} completed", task.id)
                return result

            self.state.fail_task(task.id, result)
            if self._aborted and attempt <= self.max_retries:
                logger.warning("Not retrying task {}: execution aborted", task.id)
            if attempt > self.max_retries or self._aborted:
                self._emit(
                    context,
                    TaskExecutionEvent(
                        "fail", task.id, f"Task {task.id} failed after {attempt} attempts", attempt, result
                    ),
                )
                logger.error("Task {} failed after {} attempt(s): {}", task.id, attempt, result.failure_reason)
                return result
            attempt += 1
            retry = RetryContext.from_result(attempt, result)

"""Drive one implementation phase to completion.

Tasks run in dependency order. Sequential mode dispatches one ready task
per iteration; parallel mode dispatches up to ``max_parallel`` ready tasks
as a batch and waits for the whole batch before recomputing readiness.
State is saved between batches, never while a batch is in flight.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from loguru import logger

from .config import OrchestratorConfig
from .dependency_resolver import DependencyIssue, DependencyResolver
from .errors import DocumentError
from .events import EventBus, EventType
from .git_workflow import GitWorkflowManager
from .models import ImplementationPhase, Task, TaskResult, TaskStatus
from .state_manager import StateManager
from .task_executor import TaskContext, TaskExecutor, TaskRunner
from .utils import _format_duration, _truncate


@dataclass
class PhaseExecutionResult:
    phase_number: int
    phase_name: str
    success: bool
    tasks_completed: int = 0
    tasks_failed: int = 0
    # Tasks never reached because of a stop, stall or abort.
    tasks_skipped: int = 0
    unreached_task_ids: list[str] = field(default_factory=list)
    # Tasks that were administratively skipped before the run.
    skipped_task_ids: list[str] = field(default_factory=list)
    failed_task_ids: list[str] = field(default_factory=list)
    validation_issues: list[DependencyIssue] = field(default_factory=list)
    stalled: bool = False
    aborted: bool = False
    batches: list[list[str]] = field(default_factory=list)
    branch: Optional[str] = None
    total_duration: float = 0.0
    results: list[TaskResult] = field(default_factory=list)

    @property
    def progress(self) -> dict[str, int]:
        total = self.tasks_completed + self.tasks_failed + self.tasks_skipped + len(self.skipped_task_ids)
        return {"completed": self.tasks_completed, "total": total, "failed": self.tasks_failed}

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_number": self.phase_number,
            "phase_name": self.phase_name,
            "success": self.success,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_skipped": self.tasks_skipped,
            "unreached_task_ids": list(self.unreached_task_ids),
            "skipped_task_ids": list(self.skipped_task_ids),
            "failed_task_ids": list(self.failed_task_ids),
            "validation_issues": [issue.to_dict() for issue in self.validation_issues],
            "stalled": self.stalled,
            "aborted": self.aborted,
            "batches": [list(batch) for batch in self.batches],
            "branch": self.branch,
            "total_duration": round(self.total_duration, 3),
        }


class PhaseExecutor:
    """Run the tasks of one phase, reusable across phases."""

    def __init__(
        self,
        state: StateManager,
        runner: TaskRunner,
        config: Optional[OrchestratorConfig] = None,
        *,
        git: Optional[GitWorkflowManager] = None,
        events: Optional[EventBus] = None,
    ):
        self.state = state
        self.config = config or OrchestratorConfig()
        self.git = git
        self.events = events or EventBus("phase")
        self.task_executor = TaskExecutor(
            state,
            runner,
            max_retries=self.config.max_retries,
            git=git,
            events=self.events,
        )
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        """Stop scheduling new batches and further retries.

        In-flight attempts finish normally. The request holds until
        `reset()`, so an abort that lands before `execute()` starts is kept.
        """
        self._aborted = True
        self.task_executor.abort()

    def reset(self) -> None:
        self._aborted = False
        self.task_executor.reset()

    def _emit_phase(self, event_type: EventType, phase: ImplementationPhase, result: PhaseExecutionResult) -> None:
        self.events.emit(
            event_type,
            phase_number=phase.phase_number,
            phase_name=phase.name,
            progress=result.progress,
            result=result,
        )

    def _save(self) -> None:
        try:
            self.state.save()
        except DocumentError as exc:
            logger.error("Failed to persist state ({}); will retry at the next checkpoint", exc)

    def _context_for(self, phase: ImplementationPhase, task: Task, resolver: DependencyResolver) -> TaskContext:
        project = self.state.project
        spec_summary = ""
        if project.specification is not None:
            names = [item.get("name") or item.get("category") for item in project.specification.tech_stack]
            stack = ", ".join(name for name in names if name)
            spec_summary = _truncate(project.specification.architecture, 1000)
            if stack:
                spec_summary = f"{spec_summary}\nTech stack: {stack}".strip()
        skipped = resolver.get_skipped_deps(task.id)
        if skipped:
            logger.warning("Task {} depends on skipped task(s) {}; running anyway", task.id, ", ".join(skipped))
        return TaskContext(
            project_name=project.meta.project_name,
            phase_number=phase.phase_number,
            phase_name=phase.name,
            specification_summary=spec_summary,
            completed_task_ids=[t.id for t in phase.tasks if t.status == TaskStatus.COMPLETE],
            skipped_dependencies=skipped,
        )

    @staticmethod
    def _blocked_by_failures(pending: list[Task], resolver: DependencyResolver, failed_ids: list[str]) -> bool:
        """True when every pending task waits, directly or transitively, on a failed task."""
        doomed = set(failed_ids)
        if not doomed:
            return False
        remaining = {t.id for t in pending}
        changed = True
        while changed:
            changed = False
            for task_id in list(remaining):
                if doomed.intersection(resolver.get_blocking_deps(task_id)):
                    doomed.add(task_id)
                    remaining.discard(task_id)
                    changed = True
        return not remaining

    async def execute(self, phase: Union[ImplementationPhase, int]) -> PhaseExecutionResult:
        """Execute every runnable task of `phase`.

        Args:
            phase: The phase object or its number.

        Returns:
            Tallies and per-task results. ``success`` is True iff no task
            failed and none was left unreached.

        Raises:
            NotFoundError: If the phase number is unknown.
        """
        if isinstance(phase, int):
            phase = self.state.require_phase(phase)
        started = time.monotonic()
        resolver = DependencyResolver(phase.tasks)
        result = PhaseExecutionResult(phase_number=phase.phase_number, phase_name=phase.name, success=False)
        result.tasks_completed = sum(1 for t in phase.tasks if t.status == TaskStatus.COMPLETE)
        result.skipped_task_ids = [t.id for t in resolver.tasks if t.status == TaskStatus.SKIPPED]
        result.failed_task_ids = [t.id for t in resolver.tasks if t.status == TaskStatus.FAILED]
        result.tasks_failed = len(result.failed_task_ids)

        logger.info("Phase {}: {} ({} tasks)", phase.phase_number, phase.name, len(phase.tasks))
        self._emit_phase(EventType.PHASE_START, phase, result)

        report = resolver.validate()
        if not report.valid:
            for issue in report.issues:
                logger.error("Phase {} dependency issue: {}", phase.phase_number, issue.details)
            result.validation_issues = list(report.issues)
            result.unreached_task_ids = [t.id for t in resolver.tasks if t.status == TaskStatus.PENDING]
            result.tasks_skipped = len(result.unreached_task_ids)
            result.total_duration = time.monotonic() - started
            self._emit_phase(EventType.PHASE_FAIL, phase, result)
            return result

        if self.git is not None:
            loop = asyncio.get_running_loop()
            result.branch = await loop.run_in_executor(None, self.git.begin_phase, phase.phase_number, phase.name)

        if result.failed_task_ids:
            logger.warning(
                "Phase {} has failed task(s) {}; retry them before they can run again",
                phase.phase_number,
                ", ".join(result.failed_task_ids),
            )

        pending: list[Task] = [t for t in resolver.tasks if t.status == TaskStatus.PENDING]
        stop_requested = False
        while pending and not self._aborted and not stop_requested:
            ready = [t for t in pending if resolver.can_run(t.id)]
            if not ready:
                if self._blocked_by_failures(pending, resolver, result.failed_task_ids):
                    logger.warning(
                        "Phase {}: {} task(s) blocked by failed task(s) {}",
                        phase.phase_number,
                        len(pending),
                        ", ".join(result.failed_task_ids),
                    )
                    break
                result.stalled = True
                for task in pending:
                    logger.error(
                        "Task {} cannot run; blocked by {}",
                        task.id,
                        ", ".join(resolver.get_blocking_deps(task.id)) or "unknown",
                    )
                logger.error("Phase {} stalled with {} pending task(s)", phase.phase_number, len(pending))
                break

            size = self.config.max_parallel if self.config.parallel else 1
            batch = ready[:size]
            for task in batch:
                pending.remove(task)
            result.batches.append([t.id for t in batch])
            if len(batch) > 1:
                logger.info("Running batch {}", ", ".join(t.id for t in batch))

            outcomes = await asyncio.gather(
                *(self.task_executor.execute_with_retry(t.id, self._context_for(phase, t, resolver)) for t in batch),
                return_exceptions=True,
            )
            errors: list[BaseException] = []
            for task, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    errors.append(outcome)
                    continue
                result.results.append(outcome)
                if outcome.succeeded:
                    result.tasks_completed += 1
                else:
                    result.tasks_failed += 1
                    result.failed_task_ids.append(task.id)
                    if self.config.stop_on_failure:
                        stop_requested = True

            self._save()
            if errors:
                raise errors[0]
            logger.info("Progress: {}/{} tasks", result.tasks_completed, len(phase.tasks))

        if stop_requested and pending:
            logger.warning("Stopping phase {} after failure", phase.phase_number)
        if self._aborted:
            result.aborted = True
        result.unreached_task_ids = [t.id for t in pending]
        result.tasks_skipped = len(pending)
        result.success = result.tasks_failed == 0 and not pending and not result.stalled
        result.total_duration = time.monotonic() - started
        self._save()

        if result.success:
            self._emit_phase(EventType.PHASE_COMPLETE, phase, result)
            logger.success("Phase {} complete in {}", phase.phase_number, _format_duration(result.total_duration))
        else:
            self._emit_phase(EventType.PHASE_FAIL, phase, result)
            logger.error(
                "Phase {} incomplete: {} failed, {} not reached",
                phase.phase_number,
                result.tasks_failed,
                result.tasks_skipped,
            )
        return result

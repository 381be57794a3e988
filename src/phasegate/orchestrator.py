"""Run a contiguous range of implementation phases in order."""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

from .config import OrchestratorConfig
from .dependency_resolver import DependencyIssue, DependencyResolver
from .errors import DependencyError
from .events import Event, EventBus, EventType
from .git_workflow import GitWorkflowManager
from .models import ImplementationPhase, PhaseStatus, TaskStatus
from .phase_executor import PhaseExecutionResult, PhaseExecutor
from .stages import impl_approval_key
from .state_manager import StateManager
from .task_executor import TaskRunner
from .utils import _format_duration

ConfirmCallback = Callable[[ImplementationPhase], Union[bool, Awaitable[bool]]]


@dataclass
class PhasePlan:
    """Dry-run description of what a phase would execute."""

    phase_number: int
    phase_name: str
    pending_task_ids: list[str] = field(default_factory=list)
    batches: list[list[str]] = field(default_factory=list)
    issues: list[DependencyIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_number": self.phase_number,
            "phase_name": self.phase_name,
            "pending_task_ids": list(self.pending_task_ids),
            "batches": [list(b) for b in self.batches],
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass
class OrchestratorResult:
    success: bool
    phases_completed: int = 0
    phases_failed: int = 0
    phases_declined: int = 0
    total_tasks: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_duration: float = 0.0
    dry_run: bool = False
    aborted: bool = False
    recovered_task_ids: list[str] = field(default_factory=list)
    phase_results: list[PhaseExecutionResult] = field(default_factory=list)
    plans: list[PhasePlan] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "phases_completed": self.phases_completed,
            "phases_failed": self.phases_failed,
            "phases_declined": self.phases_declined,
            "total_tasks": self.total_tasks,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "total_duration": round(self.total_duration, 3),
            "dry_run": self.dry_run,
            "aborted": self.aborted,
            "recovered_task_ids": list(self.recovered_task_ids),
            "phase_results": [r.to_dict() for r in self.phase_results],
            "plans": [p.to_dict() for p in self.plans],
        }


class Orchestrator:
    """Sequence phases through one reused `PhaseExecutor`.

    Progress is made durable by approving each successful phase and moving
    the persisted implementation cursor past it, so `resume()` needs nothing
    but the stored state.
    """

    def __init__(
        self,
        state: StateManager,
        runner: TaskRunner,
        config: Optional[OrchestratorConfig] = None,
        *,
        git: Optional[GitWorkflowManager] = None,
        confirm: Optional[ConfirmCallback] = None,
    ):
        self.state = state
        self.config = config or OrchestratorConfig()
        self.git = git
        self.confirm = confirm
        self.events = EventBus("orchestrator")
        self.phase_executor = PhaseExecutor(state, runner, self.config, git=git)
        self.phase_executor.events.subscribe_all(self._forward_phase_event)
        self._aborted = False

    def _forward_phase_event(self, event: Event) -> None:
        self.events.emit(EventType.PHASE_EVENT, phase_event=event)

    def abort(self) -> None:
        """Stop after the in-flight batch; no further batches or phases start."""
        self._aborted = True
        self.phase_executor.abort()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def select_phases(self, start_phase: Optional[int] = None, end_phase: Optional[int] = None) -> list[ImplementationPhase]:
        start = start_phase if start_phase is not None else self.config.start_phase
        end = end_phase if end_phase is not None else self.config.end_phase
        return [
            phase
            for phase in self.state.phases
            if (start is None or phase.phase_number >= start) and (end is None or phase.phase_number <= end)
        ]

    def plan(self, phase: ImplementationPhase) -> PhasePlan:
        resolver = DependencyResolver(phase.tasks)
        plan = PhasePlan(phase_number=phase.phase_number, phase_name=phase.name)
        report = resolver.validate()
        if not report.valid:
            plan.issues = list(report.issues)
            return plan
        pending = {t.id for t in phase.tasks if t.status == TaskStatus.PENDING}
        try:
            order = resolver.get_execution_order()
            batches = resolver.get_execution_batches(self.config.max_parallel if self.config.parallel else 1)
        except DependencyError as exc:
            logger.error("Phase {}: {}", phase.phase_number, exc)
            return plan
        plan.pending_task_ids = [t.id for t in order if t.id in pending]
        plan.batches = [batch for batch in ([i for i in b if i in pending] for b in batches) if batch]
        return plan

    async def _confirmed(self, phase: ImplementationPhase) -> bool:
        if not self.config.confirm_before_phase or self.confirm is None:
            return True
        answer = self.confirm(phase)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)

    def _already_approved(self, phase: ImplementationPhase) -> bool:
        approval = self.state.project.find_approval(impl_approval_key(phase.phase_number))
        return approval is not None and approval.status == "approved" and phase.status == PhaseStatus.COMPLETE

    def _progress(self, current: int, total: int, completed: int) -> dict[str, int]:
        return {"current_phase": current, "total_phases": total, "phases_completed": completed}

    async def _record_success(self, phase: ImplementationPhase) -> None:
        self.state.approve_phase(impl_approval_key(phase.phase_number))
        next_phase = self.state.finish_impl_phase(phase.phase_number)
        # Persist before anything else so a crash cannot re-run this phase.
        self.state.save()
        if self.git is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.git.commit_state_change, f"approve phase {phase.phase_number}")
        if next_phase is not None:
            logger.debug("Implementation cursor moved to phase {}", next_phase)

    async def execute(self, start_phase: Optional[int] = None, end_phase: Optional[int] = None) -> OrchestratorResult:
        """Run the selected phases.

        Raises:
            DocumentError: If the approval of a successful phase cannot be saved.
        """
        self._aborted = False
        self.phase_executor.reset()
        started = time.monotonic()
        result = OrchestratorResult(success=True, dry_run=self.config.dry_run)
        phases = self.select_phases(start_phase, end_phase)
        if not phases:
            logger.warning("No phases to execute")
            return result

        self.events.emit(
            EventType.ORCHESTRATION_START,
            progress=self._progress(phases[0].phase_number, len(phases), 0),
        )
        logger.info("Executing {} phase(s)", len(phases))

        if self.config.dry_run:
            logger.warning("DRY RUN - no tasks will be executed")
        else:
            result.recovered_task_ids = self.state.recover_interrupted()
            if result.recovered_task_ids:
                self.state.save()

        for phase in phases:
            if self._aborted:
                logger.warning("Execution aborted")
                result.aborted = True
                break

            if self._already_approved(phase):
                logger.info("Phase {} already complete and approved; skipping", phase.phase_number)
                continue

            if not await self._confirmed(phase):
                logger.info("Skipping phase {}", phase.phase_number)
                result.phases_declined += 1
                continue

            if self._aborted:
                logger.warning("Execution aborted before phase {} started", phase.phase_number)
                result.aborted = True
                break

            if self.config.dry_run:
                plan = self.plan(phase)
                result.plans.append(plan)
                if plan.valid:
                    logger.info(
                        "[DRY RUN] Would execute phase {}: {} ({} pending task(s) in {} batch(es))",
                        phase.phase_number,
                        phase.name,
                        len(plan.pending_task_ids),
                        len(plan.batches),
                    )
                else:
                    logger.error("[DRY RUN] Phase {} has {} dependency issue(s)", phase.phase_number, len(plan.issues))
                    result.phases_failed += 1
                continue

            phase_result = await self.phase_executor.execute(phase)
            result.phase_results.append(phase_result)
            if phase_result.aborted:
                result.aborted = True

            if phase_result.success:
                result.phases_completed += 1
                await self._record_success(phase)
                logger.success("Phase {} complete ({} tasks)", phase.phase_number, phase_result.tasks_completed)
            else:
                result.phases_failed += 1
                if self.config.stop_on_failure:
                    logger.error("Phase {} failed. Stopping execution.", phase.phase_number)
                    break

        for phase_result in result.phase_results:
            result.total_tasks += (
                phase_result.tasks_completed
                + phase_result.tasks_failed
                + phase_result.tasks_skipped
                + len(phase_result.skipped_task_ids)
            )
            result.tasks_completed += phase_result.tasks_completed
            result.tasks_failed += phase_result.tasks_failed
        result.success = result.phases_failed == 0 and not result.aborted
        result.total_duration = time.monotonic() - started

        progress = self._progress(phases[-1].phase_number, len(phases), result.phases_completed)
        if result.success:
            self.events.emit(EventType.ORCHESTRATION_COMPLETE, progress=progress, result=result)
            logger.success("Implementation run complete in {}", _format_duration(result.total_duration))
        else:
            self.events.emit(EventType.ORCHESTRATION_FAIL, progress=progress, result=result)
            logger.error(
                "Implementation incomplete: {} phase(s) failed{}",
                result.phases_failed,
                " (aborted)" if result.aborted else "",
            )
        return result

    async def resume(self) -> OrchestratorResult:
        """Restart from the persisted implementation cursor."""
        implementation = self.state.meta.implementation
        start = implementation.current_impl_phase if implementation is not None else None
        if start is None and self.state.phases:
            start = self.state.phases[0].phase_number
        logger.info("Resuming from phase {}", start)
        return await self.execute(start_phase=start)

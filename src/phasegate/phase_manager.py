"""Readiness checklists and pipeline stage advancement."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from loguru import logger

from .constants import MIN_USE_CASES
from .dependency_resolver import DependencyResolver
from .errors import StageTransitionError
from .models import ImplementationProgress, TaskStatus
from .stages import PipelineStage, ensure_transition, impl_approval_key, stage_for_approval_key
from .state_manager import StateManager

STATUS_NOT_STARTED = "not_started"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETE = "complete"
STATUS_APPROVED = "approved"


@dataclass
class ReadinessItem:
    item: str
    complete: bool
    required: bool = True


@dataclass
class ReadinessResult:
    ready: bool
    checklist: list[ReadinessItem] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)


class _Checklist:
    def __init__(self) -> None:
        self.items: list[ReadinessItem] = []
        self.blockers: list[str] = []

    def check(self, item: str, complete: bool, blocker: Optional[str] = None, required: bool = True) -> None:
        self.items.append(ReadinessItem(item=item, complete=complete, required=required))
        if required and not complete and blocker:
            self.blockers.append(blocker)

    def result(self) -> ReadinessResult:
        return ReadinessResult(ready=not self.blockers, checklist=self.items, blockers=self.blockers)


class PhaseManager:
    """Answer "can this stage be approved / left?" and move the stage pointer."""

    def __init__(self, state: StateManager):
        self.state = state

    def stage_status(self, stage: Optional[PipelineStage] = None) -> str:
        meta = self.state.meta
        stage = stage or meta.current_stage
        prefix = stage.gate_prefix
        if prefix is not None:
            if meta.gates.is_approved(prefix):
                return STATUS_APPROVED
            if meta.gates.is_complete(prefix):
                return STATUS_COMPLETE
            if meta.current_stage == stage and meta.stage_status != "pending":
                return STATUS_IN_PROGRESS
            return STATUS_NOT_STARTED

        phase = self.state.current_impl_phase()
        if phase is None:
            return STATUS_NOT_STARTED
        approval = self.state.project.find_approval(impl_approval_key(phase.phase_number))
        if approval is not None and approval.status == "approved":
            return STATUS_APPROVED
        if phase.tasks and all(t.status.satisfies_dependents for t in phase.tasks):
            return STATUS_COMPLETE
        if any(t.status != TaskStatus.PENDING for t in phase.tasks):
            return STATUS_IN_PROGRESS
        return STATUS_NOT_STARTED

    def is_approved(self, stage: Optional[PipelineStage] = None) -> bool:
        return self.stage_status(stage) == STATUS_APPROVED

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def readiness(self, target: Union[PipelineStage, str, None] = None) -> ReadinessResult:
        """Checklist for approving `target`.

        `target` may be a stage, an approval key (``phase-2``, ``impl-1``)
        or None for the current stage.
        """
        stage = self._resolve_target(target)
        if stage is None:
            return ReadinessResult(ready=False, blockers=["Unknown phase"])
        return {
            PipelineStage.IDEATION: self._ideation_readiness,
            PipelineStage.SPECIFICATION: self._specification_readiness,
            PipelineStage.PLANNING: self._planning_readiness,
            PipelineStage.IMPLEMENTATION: self._implementation_readiness,
        }[stage]()

    def _resolve_target(self, target: Union[PipelineStage, str, None]) -> Optional[PipelineStage]:
        if target is None:
            return self.state.meta.current_stage
        if isinstance(target, PipelineStage):
            return target
        text = str(target).strip()
        if text.lower().startswith("impl-"):
            return PipelineStage.IMPLEMENTATION
        stage = stage_for_approval_key(text)
        if stage is not None:
            return stage
        try:
            return PipelineStage.parse(text)
        except ValueError:
            return None

    def _ideation_readiness(self) -> ReadinessResult:
        ideation = self.state.project.ideation
        checks = _Checklist()
        checks.check(
            "Problem statement defined",
            bool(ideation and ideation.problem_statement),
            "Problem statement not defined",
        )
        checks.check(
            "Target users identified",
            bool(ideation and ideation.target_users),
            "Target users not identified",
        )
        use_cases = len(ideation.use_cases) if ideation else 0
        checks.check(
            f"At least {MIN_USE_CASES} use cases defined",
            use_cases >= MIN_USE_CASES,
            f"Only {use_cases} use cases (need at least {MIN_USE_CASES})",
        )
        checks.check(
            "Success criteria defined",
            bool(ideation and ideation.success_criteria),
            "Success criteria not defined",
        )
        checks.check("Constraints defined", bool(ideation and ideation.has_constraints), required=False)
        return checks.result()

    def _specification_readiness(self) -> ReadinessResult:
        spec = self.state.project.specification
        checks = _Checklist()
        checks.check("Architecture defined", bool(spec and spec.architecture), "Architecture not defined")
        checks.check("Tech stack selected", bool(spec and spec.tech_stack), "Tech stack not selected")
        checks.check("Data models defined", bool(spec and spec.data_models), "Data models not defined")
        checks.check("API contracts defined", bool(spec and spec.api_contracts), required=False)
        return checks.result()

    def _planning_readiness(self) -> ReadinessResult:
        phases = self.state.phases
        checks = _Checklist()
        checks.check("At least one implementation phase", bool(phases), "No implementation phases defined")
        empty = [p.name for p in phases if not p.tasks]
        checks.check(
            "All phases have tasks",
            not empty,
            f"Phase(s) without tasks: {', '.join(empty)}",
        )
        tasks = self.state.all_tasks()
        checks.check(
            "All tasks have acceptance criteria",
            all(t.acceptance_criteria for t in tasks),
            required=False,
        )
        issues: list[str] = []
        for phase in phases:
            issues.extend(DependencyResolver(phase.tasks).validate().messages())
        checks.check("No dependency issues", not issues)
        checks.blockers.extend(issues)
        return checks.result()

    def _implementation_readiness(self) -> ReadinessResult:
        phase = self.state.current_impl_phase()
        if phase is None:
            return ReadinessResult(ready=False, blockers=["No current implementation phase"])
        checks = _Checklist()
        all_done = all(t.status.satisfies_dependents for t in phase.tasks)
        failed = [t.id for t in phase.tasks if t.status == TaskStatus.FAILED]
        checks.check("All tasks complete or skipped", all_done)
        checks.check("No failed tasks", not failed)
        if not all_done:
            pending = sum(1 for t in phase.tasks if t.status == TaskStatus.PENDING)
            running = sum(1 for t in phase.tasks if t.status == TaskStatus.IN_PROGRESS)
            if pending:
                checks.blockers.append(f"{pending} task(s) pending")
            if running:
                checks.blockers.append(f"{running} task(s) in progress")
        if failed:
            checks.blockers.append(f"{len(failed)} failed task(s): {', '.join(failed)}")
        return checks.result()

    # ------------------------------------------------------------------
    # Advancement
    # ------------------------------------------------------------------

    def can_proceed(self) -> tuple[bool, Optional[str]]:
        meta = self.state.meta
        stage = meta.current_stage
        if not self.is_approved(stage):
            return False, f"{stage.display_name} must be approved before proceeding"
        if stage == PipelineStage.PLANNING and not self.state.phases:
            return False, "No implementation phases defined"
        if stage == PipelineStage.IMPLEMENTATION:
            phase = self.state.current_impl_phase()
            if phase is None:
                return False, "No current implementation phase"
            if self._next_phase_number(phase.phase_number) is None:
                return False, "All implementation phases complete"
        return True, None

    def proceed(self) -> PipelineStage:
        """Advance to the next stage (or next implementation phase).

        Raises:
            StageTransitionError: If the current stage is not approved or has
                no successor.
        """
        ok, reason = self.can_proceed()
        if not ok:
            raise StageTransitionError.blocked(reason or "unknown")
        meta = self.state.meta
        current = meta.current_stage
        if current == PipelineStage.IMPLEMENTATION:
            self.advance_impl_phase()
            self.state.save()
            return current

        target = current.next()
        ensure_transition(current, target)
        self.state.set_stage(target)
        if target == PipelineStage.IMPLEMENTATION:
            phases = self.state.phases
            meta.implementation = ImplementationProgress(
                total_phases=len(phases),
                completed_phases=0,
                current_impl_phase=phases[0].phase_number,
                current_impl_phase_name=phases[0].name,
            )
        else:
            meta.stage_status = "pending"
        self.state.save()
        logger.info("Transitioned to {}", target.display_name)
        return target

    def _next_phase_number(self, phase_number: int) -> Optional[int]:
        for phase in self.state.phases:
            if phase.phase_number > phase_number:
                return phase.phase_number
        return None

    def advance_impl_phase(self) -> int:
        """Move the implementation cursor to the next phase number.

        Raises:
            StageTransitionError: If not implementing or no later phase exists.
        """
        phase = self.state.current_impl_phase()
        if phase is None:
            raise StageTransitionError.blocked("Not in implementation stage")
        next_number = self._next_phase_number(phase.phase_number)
        if next_number is None:
            raise StageTransitionError.blocked("No more implementation phases")
        self.state.set_current_impl_phase(next_number)
        logger.debug("Advanced to implementation phase {}", next_number)
        return next_number

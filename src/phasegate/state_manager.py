"""Own the authoritative in-memory project state.

All mutations go through named methods that validate the target exists,
apply a legal transition, mark the state dirty and emit an event. `save()`
flushes dirty state through the document store at caller-chosen
checkpoints.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from . import fsm
from .constants import INTERRUPTED_REASON
from .dependency_resolver import DependencyResolver
from .document_store import DocumentStore, FileDocumentStore
from .errors import DocumentError, StateError
from .events import Event, EventBus, EventType
from .models import (
    Approval,
    IdeationContent,
    ImplementationPhase,
    ImplementationProgress,
    ProjectDocument,
    ProjectMeta,
    SpecificationContent,
    Task,
    TaskResult,
    TaskStatus,
)
from .stages import PipelineStage, stage_for_approval_key
from .utils import _now_iso


class StateManager:
    """Single owner of the task/phase/meta graph for one orchestration run."""

    def __init__(self, store: DocumentStore, document: Optional[ProjectDocument] = None):
        self.store = store
        self.events = EventBus("state")
        self._document = document
        self._results: dict[str, TaskResult] = {}
        self._lock = threading.RLock()
        self._dirty = document is not None
        self._structure_dirty = document is not None
        self._dirty_tasks: set[str] = set()
        self._dirty_results: set[str] = set()
        self._dropped_results: set[str] = set()
        self._dirty_approvals: set[str] = set()

    @classmethod
    def open(cls, project_dir: Path) -> "StateManager":
        manager = cls(FileDocumentStore(project_dir))
        manager.load()
        return manager

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Read the project document and every stored result into memory."""
        with self._lock:
            self._document = self.store.read_project()
            self._results = {result.task_id: result for result in self.store.read_all_results()}
            self._clear_dirty()
        logger.debug("State loaded ({} phases, {} results)", len(self._document.implementation_phases), len(self._results))

    def save(self) -> bool:
        """Persist dirty state.

        Returns:
            True if anything was written, False when the state was clean.

        Raises:
            DocumentError: If the store rejects a write. The dirty flags stay
                set so the next `save()` retries.
        """
        with self._lock:
            if not self._dirty or self._document is None:
                return False
            document = self._document
            document.meta.updated = _now_iso()
            if self._structure_dirty:
                write_project = getattr(self.store, "write_project", None)
                if write_project is None:
                    raise DocumentError.invalid_structure("store cannot persist structural changes")
                write_project(document)
            else:
                self.store.update_meta(document.meta)
                for phase in document.implementation_phases:
                    for task in phase.tasks:
                        if task.id in self._dirty_tasks:
                            self.store.update_task(phase.phase_number, task)
                for phase_key in sorted(self._dirty_approvals):
                    approval = document.find_approval(phase_key)
                    if approval is not None:
                        self.store.update_approval(approval)
            for task_id in sorted(self._dropped_results):
                if task_id not in self._results:
                    self.store.delete_result(task_id)
            for task_id in sorted(self._dirty_results):
                result = self._results.get(task_id)
                if result is not None:
                    self.store.record_result(result)
            self._clear_dirty()
        logger.debug("State saved")
        return True

    def _clear_dirty(self) -> None:
        self._dirty = False
        self._structure_dirty = False
        self._dirty_tasks.clear()
        self._dirty_results.clear()
        self._dropped_results.clear()
        self._dirty_approvals.clear()

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def _mark_dirty(self, task_id: Optional[str] = None) -> None:
        self._dirty = True
        if task_id is not None:
            self._dirty_tasks.add(task_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event_type: Optional[EventType], handler: Callable[[Event], None]) -> Callable[[], None]:
        return self.events.subscribe(event_type, handler)

    def off(self, event_type: Optional[EventType], handler: Callable[[Event], None]) -> None:
        self.events.unsubscribe(event_type, handler)

    def _emit(self, event_type: EventType, **data: Any) -> None:
        self.events.emit(event_type, **data)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def project(self) -> ProjectDocument:
        if self._document is None:
            raise StateError.not_loaded()
        return self._document

    @property
    def meta(self) -> ProjectMeta:
        return self.project.meta

    @property
    def phases(self) -> list[ImplementationPhase]:
        return self.project.implementation_phases

    def _locate(self, task_id: str) -> tuple[ImplementationPhase, Task]:
        for phase in self.project.implementation_phases:
            task = phase.get_task(task_id)
            if task is not None:
                return phase, task
        raise StateError.task_not_found(task_id)

    def get_task(self, task_id: str) -> Optional[Task]:
        try:
            return self._locate(task_id)[1]
        except LookupError:
            return None

    def require_task(self, task_id: str) -> Task:
        return self._locate(task_id)[1]

    def phase_of(self, task_id: str) -> ImplementationPhase:
        return self._locate(task_id)[0]

    def get_phase(self, phase_number: int) -> Optional[ImplementationPhase]:
        for phase in self.project.implementation_phases:
            if phase.phase_number == phase_number:
                return phase
        return None

    def require_phase(self, phase_number: int) -> ImplementationPhase:
        phase = self.get_phase(phase_number)
        if phase is None:
            raise StateError.phase_not_found(phase_number)
        return phase

    def get_task_result(self, task_id: str) -> Optional[TaskResult]:
        return self._results.get(task_id)

    def all_tasks(self) -> list[Task]:
        return [task for phase in self.project.implementation_phases for task in phase.tasks]

    def _tasks_with(self, status: TaskStatus) -> list[Task]:
        return [task for task in self.all_tasks() if task.status == status]

    def pending_tasks(self) -> list[Task]:
        return self._tasks_with(TaskStatus.PENDING)

    def completed_tasks(self) -> list[Task]:
        return self._tasks_with(TaskStatus.COMPLETE)

    def failed_tasks(self) -> list[Task]:
        return self._tasks_with(TaskStatus.FAILED)

    def in_progress_tasks(self) -> list[Task]:
        return self._tasks_with(TaskStatus.IN_PROGRESS)

    def is_task_satisfied(self, task_id: str) -> bool:
        task = self.get_task(task_id)
        return task is not None and task.status.satisfies_dependents

    def are_dependencies_satisfied(self, task_id: str) -> bool:
        phase, task = self._locate(task_id)
        resolver = DependencyResolver(phase.tasks)
        return not resolver.get_blocking_deps(task.id)

    def current_impl_phase(self) -> Optional[ImplementationPhase]:
        number = self.meta.current_phase_number
        if number is None:
            return None
        return self.get_phase(number)

    def next_task(self) -> Optional[Task]:
        """First runnable task of the current implementation phase, if any."""
        phase = self.current_impl_phase()
        if phase is None:
            return None
        return DependencyResolver(phase.tasks).get_next_runnable()

    def total_cost(self) -> tuple[int, float]:
        cost = self.meta.cost
        return cost.total_tokens, cost.total_cost_usd

    # ------------------------------------------------------------------
    # Task mutations
    # ------------------------------------------------------------------

    def start_task(self, task_id: str) -> Task:
        """Move a task from pending to in_progress.

        Raises:
            NotFoundError: If the task does not exist.
            StateError: If the task is not pending or a dependency is unsatisfied.
        """
        with self._lock:
            phase, task = self._locate(task_id)
            if task.status == TaskStatus.PENDING:
                blocking = DependencyResolver(phase.tasks).get_blocking_deps(task.id)
                if blocking:
                    raise StateError.dependencies_unsatisfied(task.id, blocking)
            fsm.start(task)
            self._mark_dirty(task.id)
        self._emit(EventType.TASK_STARTED, task_id=task.id, phase_number=phase.phase_number)
        logger.debug("Started task {}", task.id)
        return task

    def complete_task(self, task_id: str, result: TaskResult) -> Task:
        with self._lock:
            phase, task = self._locate(task_id)
            if result.task_id != task.id:
                raise StateError(
                    f"Result for {result.task_id} recorded against task {task.id}",
                    {"type": "result_mismatch", "task_id": task.id, "result_task_id": result.task_id},
                )
            fsm.complete(task, result)
            self._store_result(result)
            self._mark_dirty(task.id)
        self._emit(EventType.TASK_COMPLETED, task_id=task.id, result=result)
        logger.debug("Completed task {}", task.id)
        self.add_cost(result.tokens_used, result.cost_usd)
        self._check_phase_completed(phase)
        return task

    def fail_task(self, task_id: str, result: TaskResult) -> Task:
        with self._lock:
            _, task = self._locate(task_id)
            fsm.fail(task, result)
            self._store_result(result)
            self._mark_dirty(task.id)
        self._emit(EventType.TASK_FAILED, task_id=task.id, result=result)
        logger.debug("Failed task {}: {}", task.id, task.failure_reason)
        self.add_cost(result.tokens_used, result.cost_usd)
        return task

    def skip_task(self, task_id: str, reason: str) -> Task:
        with self._lock:
            phase, task = self._locate(task_id)
            fsm.skip(task, reason)
            self._mark_dirty(task.id)
        self._emit(EventType.TASK_SKIPPED, task_id=task.id, reason=reason)
        logger.debug("Skipped task {}: {}", task.id, reason)
        self._check_phase_completed(phase)
        return task

    def retry_task(self, task_id: str) -> Task:
        """Reset a failed task to pending and drop its recorded result."""
        with self._lock:
            _, task = self._locate(task_id)
            fsm.reset_for_retry(task)
            if self._results.pop(task.id, None) is not None:
                self._dropped_results.add(task.id)
            self._dirty_results.discard(task.id)
            self._mark_dirty(task.id)
        self._emit(EventType.TASK_RETRIED, task_id=task.id)
        logger.debug("Reset task {} for retry", task.id)
        return task

    def recover_interrupted(self) -> list[str]:
        """Return tasks left in_progress by a crashed run to pending.

        The move goes through the legal edges in_progress -> failed -> pending,
        so each recovered task emits a failure and a retry event.
        """
        recovered: list[str] = []
        for task in self.in_progress_tasks():
            result = TaskResult(
                task_id=task.id,
                status=TaskStatus.FAILED,
                task_description=task.description,
                started_at=task.started_at or _now_iso(),
                failure_reason=INTERRUPTED_REASON,
            )
            self.fail_task(task.id, result)
            self.retry_task(task.id)
            recovered.append(task.id)
        if recovered:
            logger.warning("Recovered {} interrupted task(s): {}", len(recovered), ", ".join(recovered))
        return recovered

    def _store_result(self, result: TaskResult) -> None:
        self._results[result.task_id] = result
        self._dirty_results.add(result.task_id)
        self._dropped_results.discard(result.task_id)

    def _check_phase_completed(self, phase: ImplementationPhase) -> None:
        current = self.current_impl_phase()
        if current is None or current.phase_number != phase.phase_number:
            return
        if all(task.status.satisfies_dependents for task in phase.tasks):
            self._emit(EventType.PHASE_COMPLETED, phase_number=phase.phase_number, phase_name=phase.name)

    # ------------------------------------------------------------------
    # Approvals and cost
    # ------------------------------------------------------------------

    def approve_phase(self, phase_key: str, notes: Optional[str] = None) -> Approval:
        """Record (or refresh) an approval and update the matching gate.

        ``phase-1``/``Phase 1`` through ``phase-3`` flip the ideation, spec and
        planning approval gates. Other keys such as ``impl-2`` only record the
        approval.
        """
        now = _now_iso()
        with self._lock:
            document = self.project
            approval = document.find_approval(phase_key)
            if approval is None:
                approval = Approval(phase=phase_key, status="approved", approved_at=now, notes=notes)
                document.approvals.append(approval)
            else:
                approval.status = "approved"
                approval.approved_at = now
                if notes:
                    approval.notes = notes
            stage = stage_for_approval_key(phase_key)
            if stage is not None and stage.gate_prefix:
                document.meta.gates.mark_approved(stage.gate_prefix, now)
            self._dirty_approvals.add(phase_key)
            self._mark_dirty()
        self._emit(EventType.APPROVAL_ADDED, phase=phase_key, notes=notes)
        logger.debug("Approved {}", phase_key)
        return approval

    def add_cost(self, tokens: int, cost_usd: float) -> None:
        if not tokens and not cost_usd:
            return
        with self._lock:
            cost = self.meta.cost
            cost.total_tokens += int(tokens)
            cost.total_cost_usd += float(cost_usd)
            self._mark_dirty()
        self._emit(EventType.COST_UPDATED, tokens=cost.total_tokens, cost=cost.total_cost_usd)

    # ------------------------------------------------------------------
    # Pipeline content
    # ------------------------------------------------------------------

    def set_ideation(self, content: IdeationContent) -> None:
        with self._lock:
            self.project.ideation = content
            self.meta.gates.mark_complete("ideation")
            self._structure_dirty = True
            self._mark_dirty()
        logger.debug("Set ideation content")

    def set_specification(self, content: SpecificationContent) -> None:
        with self._lock:
            self.project.specification = content
            self.meta.gates.mark_complete("spec")
            self._structure_dirty = True
            self._mark_dirty()
        logger.debug("Set specification content")

    def add_implementation_phases(self, phases: Iterable[ImplementationPhase]) -> None:
        """Append phases, mark planning complete and reset the phase pointer.

        Raises:
            StateError: If a phase number or task id is already in use.
        """
        with self._lock:
            document = self.project
            new_phases = list(phases)
            numbers = {p.phase_number for p in document.implementation_phases}
            task_ids = {t.id for t in self.all_tasks()}
            for phase in new_phases:
                if phase.phase_number in numbers:
                    raise StateError(
                        f"Duplicate phase number {phase.phase_number}",
                        {"type": "duplicate_phase", "phase": phase.phase_number},
                    )
                numbers.add(phase.phase_number)
                for task in phase.tasks:
                    if task.id in task_ids:
                        raise StateError(
                            f"Duplicate task id {task.id}", {"type": "duplicate_task", "task_id": task.id}
                        )
                    task_ids.add(task.id)
            document.implementation_phases.extend(new_phases)
            document.implementation_phases.sort(key=lambda p: p.phase_number)
            document.meta.gates.mark_complete("planning")
            first = document.implementation_phases[0] if document.implementation_phases else None
            document.meta.implementation = ImplementationProgress(
                total_phases=len(document.implementation_phases),
                completed_phases=0,
                current_impl_phase=first.phase_number if first else 1,
                current_impl_phase_name=first.name if first else "",
            )
            self._structure_dirty = True
            self._mark_dirty()
        logger.debug("Added {} implementation phase(s)", len(new_phases))

    def set_current_impl_phase(self, phase_number: int) -> None:
        """Point the implementation cursor at `phase_number`.

        Raises:
            NotFoundError: If no such phase exists.
        """
        with self._lock:
            phase = self.require_phase(phase_number)
            meta = self.meta
            if meta.implementation is None:
                meta.implementation = ImplementationProgress(total_phases=len(self.phases))
            meta.implementation.current_impl_phase = phase.phase_number
            meta.implementation.current_impl_phase_name = phase.name
            meta.implementation.completed_phases = sum(
                1 for p in self.phases if p.phase_number < phase.phase_number
            )
            self._mark_dirty()

    def finish_impl_phase(self, phase_number: int) -> Optional[int]:
        """Move the cursor past a finished phase.

        Returns:
            The next phase number, or None when `phase_number` was the last.
        """
        with self._lock:
            self.require_phase(phase_number)
            later = [p.phase_number for p in self.phases if p.phase_number > phase_number]
            if later:
                self.set_current_impl_phase(later[0])
                return later[0]
            meta = self.meta
            if meta.implementation is None:
                meta.implementation = ImplementationProgress(total_phases=len(self.phases))
            meta.implementation.completed_phases = len(self.phases)
            meta.stage_status = "complete"
            self._mark_dirty()
            return None

    def set_stage(self, stage: PipelineStage) -> None:
        with self._lock:
            self.meta.current_stage = stage
            self.meta.stage_status = "in_progress"
            self._mark_dirty()

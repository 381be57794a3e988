"""Shared fixtures: a project on disk and a scripted async task runner."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import pytest

from phasegate.document_store import init_project
from phasegate.models import ImplementationPhase, Task, TaskStatus
from phasegate.stages import PipelineStage
from phasegate.state_manager import StateManager
from phasegate.task_executor import ExecutionOutcome, RetryContext, TaskContext


def make_task(task_id: str, deps: Iterable[str] = (), status: TaskStatus = TaskStatus.PENDING) -> Task:
    return Task(id=task_id, description=f"Task {task_id}", status=status, depends_on=list(deps))


def make_phase(number: int, tasks: list[Task], name: Optional[str] = None) -> ImplementationPhase:
    return ImplementationPhase(phase_number=number, name=name or f"Phase {number}", tasks=tasks)


class ScriptedRunner:
    """Async runner whose per-task outcomes are scripted in advance.

    Each script entry is consumed per attempt: ``True``/``False`` for a plain
    success/failure, an `ExecutionOutcome` returned as-is, or an exception
    instance that is raised. Tasks without a script succeed.
    """

    def __init__(self, script: Optional[dict[str, list[Any]]] = None, delay: float = 0.0):
        self.script = {task_id: list(steps) for task_id, steps in (script or {}).items()}
        self.delay = delay
        self.calls: list[tuple[str, Optional[RetryContext]]] = []
        self.contexts: dict[str, TaskContext] = {}
        self.active = 0
        self.max_active = 0

    @property
    def order(self) -> list[str]:
        return [task_id for task_id, _ in self.calls]

    async def run(
        self,
        task: Task,
        context: TaskContext,
        retry: Optional[RetryContext] = None,
    ) -> ExecutionOutcome:
        self.calls.append((task.id, retry))
        self.contexts[task.id] = context
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            steps = self.script.get(task.id)
            step: Any = steps.pop(0) if steps else True
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, ExecutionOutcome):
                return step
            if step:
                return ExecutionOutcome(success=True, summary=f"did {task.id}", tokens_used=100, cost_usd=0.01)
            return ExecutionOutcome(
                success=False,
                summary=f"could not do {task.id}",
                failure_reason=f"{task.id} broke",
                output=f"traceback for {task.id}",
            )
        finally:
            self.active -= 1


class RecordingGit:
    """Git hooks stand-in noting each call and whether it ran on the main thread."""

    def __init__(self):
        self.calls: list[tuple[str, bool]] = []

    def _record(self, name: str) -> None:
        self.calls.append((name, threading.current_thread() is threading.main_thread()))

    def begin_phase(self, phase_number: int, phase_name: str) -> Optional[str]:
        self._record("begin_phase")
        return f"impl/phase-{phase_number}"

    def commit_task(self, task_id: str, summary: str) -> Optional[str]:
        self._record("commit_task")
        return f"sha-{task_id}"

    def commit_state_change(self, message: str) -> Optional[str]:
        self._record("commit_state_change")
        return None


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    init_project(tmp_path, "Demo")
    return tmp_path


@pytest.fixture
def make_state(project_dir: Path) -> Callable[..., StateManager]:
    """Build a saved, implementation-stage state holding the given phases."""

    def _make(*phases: ImplementationPhase) -> StateManager:
        state = StateManager.open(project_dir)
        if phases:
            state.add_implementation_phases(phases)
        state.set_stage(PipelineStage.IMPLEMENTATION)
        state.save()
        return state

    return _make

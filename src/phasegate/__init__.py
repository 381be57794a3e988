"""Provide the public `phasegate` package exports."""

from __future__ import annotations

from .config import OrchestratorConfig
from .dependency_resolver import DependencyResolver
from .document_store import FileDocumentStore, init_project
from .errors import OrchestratorError
from .events import Event, EventBus, EventType
from .models import ImplementationPhase, Task, TaskResult, TaskStatus
from .orchestrator import Orchestrator, OrchestratorResult
from .phase_executor import PhaseExecutionResult, PhaseExecutor
from .state_manager import StateManager
from .task_executor import ExecutionOutcome, TaskContext, TaskExecutor
from .workers import CommandTaskRunner

__all__ = [
    "CommandTaskRunner",
    "DependencyResolver",
    "Event",
    "EventBus",
    "EventType",
    "ExecutionOutcome",
    "FileDocumentStore",
    "ImplementationPhase",
    "Orchestrator",
    "OrchestratorConfig",
    "OrchestratorError",
    "OrchestratorResult",
    "PhaseExecutionResult",
    "PhaseExecutor",
    "StateManager",
    "Task",
    "TaskContext",
    "TaskExecutor",
    "TaskResult",
    "TaskStatus",
    "init_project",
]

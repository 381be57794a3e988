"""Define the error taxonomy raised by the orchestration engine.

Every error carries a stable ``code`` and a ``context`` mapping so callers
(CLI, logging) can render structured details without parsing messages.
"""

from __future__ import annotations

from typing import Any, Optional


class OrchestratorError(Exception):
    """Base class for all engine errors."""

    code = "ORCHESTRATOR_ERROR"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})

    @property
    def kind(self) -> Optional[str]:
        return self.context.get("type")

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": dict(self.context)}


class ConfigError(OrchestratorError):
    """Raised when runner configuration is invalid."""

    code = "CONFIG_ERROR"


class DocumentError(OrchestratorError):
    """Raised when the persisted project document cannot be read or written."""

    code = "DOC_ERROR"

    @classmethod
    def not_initialized(cls, path: str) -> "DocumentError":
        return cls(f"No project document found at {path}", {"type": "not_initialized", "path": path})

    @classmethod
    def already_exists(cls, path: str) -> "DocumentError":
        return cls(f"Project document already exists: {path}", {"type": "already_exists", "path": path})

    @classmethod
    def invalid_structure(cls, details: str) -> "DocumentError":
        return cls(f"Invalid document structure: {details}", {"type": "invalid_structure", "details": details})

    @classmethod
    def write_failed(cls, path: str, details: str) -> "DocumentError":
        return cls(f"Failed to write {path}: {details}", {"type": "write_failed", "path": path, "details": details})


class StateError(OrchestratorError):
    """Raised when an in-memory state operation is invalid."""

    code = "STATE_ERROR"

    @classmethod
    def not_loaded(cls) -> "StateError":
        return cls("State not loaded. Call load() first.", {"type": "not_loaded"})

    @classmethod
    def task_not_found(cls, task_id: str) -> "NotFoundError":
        return NotFoundError(f"Task not found: {task_id}", {"type": "task_not_found", "task_id": task_id})

    @classmethod
    def phase_not_found(cls, phase: Any) -> "NotFoundError":
        return NotFoundError(f"Phase not found: {phase}", {"type": "phase_not_found", "phase": str(phase)})

    @classmethod
    def invalid_transition(cls, task_id: str, from_status: str, to_status: str) -> "StateError":
        return cls(
            f'Invalid transition for task {task_id}: "{from_status}" -> "{to_status}"',
            {"type": "invalid_transition", "task_id": task_id, "from": from_status, "to": to_status},
        )

    @classmethod
    def task_not_failed(cls, task_id: str, current_status: str) -> "StateError":
        return cls(
            f"Task {task_id} is not in failed status (current: {current_status}). "
            "Only failed tasks can be retried.",
            {"type": "task_not_failed", "task_id": task_id, "current_status": current_status},
        )

    @classmethod
    def dependencies_unsatisfied(cls, task_id: str, blocking: list[str]) -> "StateError":
        return cls(
            f"Task {task_id} cannot start; waiting on {', '.join(blocking)}",
            {"type": "dependencies_unsatisfied", "task_id": task_id, "blocking": list(blocking)},
        )


class NotFoundError(StateError, LookupError):
    """Raised when an operation references an unknown task or phase."""


class StageTransitionError(StateError):
    """Raised when the pipeline stage pointer would move along an illegal edge."""

    @classmethod
    def illegal(cls, from_stage: str, to_stage: str) -> "StageTransitionError":
        return cls(
            f'Illegal stage transition from "{from_stage}" to "{to_stage}"',
            {"type": "illegal_stage_transition", "from": from_stage, "to": to_stage},
        )

    @classmethod
    def blocked(cls, reason: str) -> "StageTransitionError":
        return cls(f"Cannot proceed to next stage: {reason}", {"type": "stage_blocked", "reason": reason})


class DependencyError(OrchestratorError):
    """Raised when a task graph is structurally unusable (cycles)."""

    code = "DEPENDENCY_ERROR"

    @classmethod
    def cycles_detected(cls, cycles: list[list[str]]) -> "DependencyError":
        rendered = "; ".join(" -> ".join(cycle) for cycle in cycles)
        return cls(
            f"Cannot determine execution order: circular dependencies detected ({rendered})",
            {"type": "circular", "cycles": [list(c) for c in cycles]},
        )


class TaskExecutionError(OrchestratorError):
    """Raised by an execution collaborator when an attempt cannot produce a result."""

    code = "TASK_EXEC_ERROR"

    @classmethod
    def timeout(cls, task_id: str, timeout_seconds: float) -> "TaskExecutionError":
        return cls(
            f"Task {task_id} timed out after {timeout_seconds}s",
            {"type": "timeout", "task_id": task_id, "timeout_seconds": timeout_seconds},
        )

    @classmethod
    def execution_failed(cls, task_id: str, exit_code: int, stderr: str) -> "TaskExecutionError":
        return cls(
            f"Task {task_id} failed with exit code {exit_code}",
            {"type": "execution_failed", "task_id": task_id, "exit_code": exit_code, "stderr": stderr},
        )

    @classmethod
    def parse_error(cls, task_id: str, details: str) -> "TaskExecutionError":
        return cls(
            f"Failed to parse result for task {task_id}: {details}",
            {"type": "parse_error", "task_id": task_id, "details": details},
        )


class GitError(OrchestratorError):
    """Raised when a git operation fails."""

    code = "GIT_ERROR"

    @classmethod
    def not_repo(cls, path: str) -> "GitError":
        return cls(f"Not a git repository: {path}", {"type": "not_repo", "path": path})

    @classmethod
    def operation_failed(cls, operation: str, details: str) -> "GitError":
        return cls(
            f"Git {operation} failed: {details}",
            {"type": "operation_failed", "operation": operation, "details": details},
        )

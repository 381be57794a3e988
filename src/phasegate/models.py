"""Define the project document, task and result models used by the engine."""

from __future__ import annotations

import re
import sys
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from .constants import DOCUMENT_VERSION
from .stages import PipelineStage
from .utils import _now_iso


_TASK_ID_RE = re.compile(r"^\s*(\d+)(?:\.(\d+))?\s*$")


@dataclass(frozen=True, order=True)
class TaskId:
    """Two-part task identifier (``major.minor``) with numeric ordering.

    Ordering compares ``major`` then ``minor`` as integers, so ``2.1`` sorts
    before ``10.1`` regardless of string order.
    """

    major: int
    minor: int

    @classmethod
    def parse(cls, value: "str | TaskId") -> "TaskId":
        """Parse ``"2.3"`` (or ``"2"``) into a `TaskId`.

        Raises:
            ValueError: If the value is not a dotted pair of non-negative integers.
        """
        if isinstance(value, TaskId):
            return value
        match = _TASK_ID_RE.match(str(value))
        if not match:
            raise ValueError(f"Malformed task id: {value!r}")
        return cls(int(match.group(1)), int(match.group(2) or 0))

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


def task_sort_key(task_id: str) -> tuple[int, int, str]:
    """Total order for raw id strings; malformed ids sort last, by text."""
    try:
        parsed = TaskId.parse(task_id)
    except ValueError:
        return (sys.maxsize, sys.maxsize, str(task_id))
    return (parsed.major, parsed.minor, str(task_id))


class TaskStatus(str, Enum):
    """Execution status of a single task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def satisfies_dependents(self) -> bool:
        """Complete and skipped both unblock tasks that depend on this one."""
        return self in (TaskStatus.COMPLETE, TaskStatus.SKIPPED)


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        return default


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    out: list[str] = []
    for item in value:
        text = str(item).strip()
        if text and text not in out:
            out.append(text)
    return out


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass
class Task:
    """A schedulable unit of work inside an implementation phase."""

    id: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    cost_usd: Optional[float] = None
    commit_hash: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def key(self) -> tuple[int, int, str]:
        return task_sort_key(self.id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=str(data.get("id", "")).strip(),
            description=str(data.get("description") or ""),
            status=_coerce_enum(TaskStatus, data.get("status"), TaskStatus.PENDING),
            depends_on=_str_list(data.get("depends_on")),
            acceptance_criteria=_str_list(data.get("acceptance_criteria")),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            duration_seconds=_opt_float(data.get("duration_seconds")),
            cost_usd=_opt_float(data.get("cost_usd")),
            commit_hash=data.get("commit_hash"),
            failure_reason=data.get("failure_reason"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "depends_on": list(self.depends_on),
            "acceptance_criteria": list(self.acceptance_criteria),
        }
        optional = {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "cost_usd": self.cost_usd,
            "commit_hash": self.commit_hash,
            "failure_reason": self.failure_reason,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass
class ImplementationPhase:
    """An ordered, numbered group of tasks; its status is derived from the tasks."""

    phase_number: int
    name: str
    description: str = ""
    tasks: list[Task] = field(default_factory=list)

    @property
    def status(self) -> PhaseStatus:
        if self.tasks and all(t.status.satisfies_dependents for t in self.tasks):
            return PhaseStatus.COMPLETE
        if any(t.status != TaskStatus.PENDING for t in self.tasks):
            return PhaseStatus.IN_PROGRESS
        return PhaseStatus.PENDING

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImplementationPhase":
        number = int(data.get("phase_number") or 0)
        if number < 1:
            raise ValueError(f"phase_number must be a positive integer (got {data.get('phase_number')!r})")
        tasks = data.get("tasks") or []
        return cls(
            phase_number=number,
            name=str(data.get("name") or f"Phase {number}"),
            description=str(data.get("description") or ""),
            tasks=[Task.from_dict(t) for t in tasks if isinstance(t, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_number": self.phase_number,
            "name": self.name,
            "description": self.description,
            # Persisted for readers only; never read back as truth.
            "status": self.status.value,
            "tasks": [t.to_dict() for t in self.tasks],
        }


@dataclass(frozen=True)
class TaskResult:
    """Outcome of one execution attempt. Immutable once recorded."""

    task_id: str
    status: TaskStatus
    task_description: str = ""
    started_at: str = field(default_factory=_now_iso)
    completed_at: str = field(default_factory=_now_iso)
    duration_seconds: float = 0.0
    summary: str = ""
    files_created: tuple[str, ...] = ()
    files_modified: tuple[str, ...] = ()
    files_deleted: tuple[str, ...] = ()
    tests_added: int = 0
    tests_passing: Optional[bool] = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    attempts: int = 1
    raw_output: str = ""
    failure_reason: Optional[str] = None
    commit_hash: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETE

    def with_commit(self, commit_hash: Optional[str]) -> "TaskResult":
        return replace(self, commit_hash=commit_hash)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskResult":
        status = _coerce_enum(TaskStatus, data.get("status"), TaskStatus.FAILED)
        if status not in (TaskStatus.COMPLETE, TaskStatus.FAILED):
            raise ValueError(f"TaskResult status must be complete or failed (got {status.value})")
        tests_passing = data.get("tests_passing")
        return cls(
            task_id=str(data.get("task_id", "")),
            status=status,
            task_description=str(data.get("task_description") or ""),
            started_at=str(data.get("started_at") or _now_iso()),
            completed_at=str(data.get("completed_at") or _now_iso()),
            duration_seconds=float(data.get("duration_seconds") or 0.0),
            summary=str(data.get("summary") or ""),
            files_created=tuple(_str_list(data.get("files_created"))),
            files_modified=tuple(_str_list(data.get("files_modified"))),
            files_deleted=tuple(_str_list(data.get("files_deleted"))),
            tests_added=int(data.get("tests_added") or 0),
            tests_passing=None if tests_passing is None else bool(tests_passing),
            tokens_used=int(data.get("tokens_used") or 0),
            cost_usd=float(data.get("cost_usd") or 0.0),
            attempts=int(data.get("attempts") or 1),
            raw_output=str(data.get("raw_output") or ""),
            failure_reason=data.get("failure_reason"),
            commit_hash=data.get("commit_hash"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_description": self.task_description,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "summary": self.summary,
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
            "files_deleted": list(self.files_deleted),
            "tests_added": self.tests_added,
            "tests_passing": self.tests_passing,
            "tokens_used": self.tokens_used,
            "cost_usd": self.cost_usd,
            "attempts": self.attempts,
            "raw_output": self.raw_output,
            "failure_reason": self.failure_reason,
            "commit_hash": self.commit_hash,
        }


@dataclass
class PhaseGates:
    """Completion/approval flags for the stages that precede implementation."""

    ideation_complete: bool = False
    ideation_approved: bool = False
    ideation_approved_at: Optional[str] = None
    spec_complete: bool = False
    spec_approved: bool = False
    spec_approved_at: Optional[str] = None
    planning_complete: bool = False
    planning_approved: bool = False
    planning_approved_at: Optional[str] = None

    def is_complete(self, prefix: str) -> bool:
        return bool(getattr(self, f"{prefix}_complete"))

    def is_approved(self, prefix: str) -> bool:
        return bool(getattr(self, f"{prefix}_approved"))

    def mark_complete(self, prefix: str) -> None:
        setattr(self, f"{prefix}_complete", True)

    def mark_approved(self, prefix: str, at: str) -> None:
        setattr(self, f"{prefix}_approved", True)
        setattr(self, f"{prefix}_approved_at", at)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseGates":
        gates = cls()
        for name in gates.__dataclass_fields__:
            if name in data:
                value = data[name]
                setattr(gates, name, value if name.endswith("_at") else bool(value))
        return gates

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass
class CostTracking:
    total_tokens: int = 0
    total_cost_usd: float = 0.0


@dataclass
class ImplementationProgress:
    total_phases: int = 0
    completed_phases: int = 0
    current_impl_phase: int = 1
    current_impl_phase_name: str = ""


@dataclass
class ProjectMeta:
    """Pipeline pointer, gates, and running totals for one project."""

    project_name: str
    project_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    version: int = DOCUMENT_VERSION
    created: str = field(default_factory=_now_iso)
    updated: str = field(default_factory=_now_iso)
    current_stage: PipelineStage = PipelineStage.IDEATION
    stage_status: str = "pending"
    gates: PhaseGates = field(default_factory=PhaseGates)
    implementation: Optional[ImplementationProgress] = None
    cost: CostTracking = field(default_factory=CostTracking)

    @property
    def current_phase_number(self) -> Optional[int]:
        """Current implementation phase, or None outside the implementation stage."""
        if self.current_stage != PipelineStage.IMPLEMENTATION:
            return None
        if self.implementation is None:
            return 1
        return self.implementation.current_impl_phase

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectMeta":
        try:
            stage = PipelineStage.parse(data.get("current_stage", "ideation"))
        except ValueError:
            stage = PipelineStage.IDEATION
        impl_raw = data.get("implementation")
        impl = None
        if isinstance(impl_raw, dict):
            impl = ImplementationProgress(
                total_phases=int(impl_raw.get("total_phases") or 0),
                completed_phases=int(impl_raw.get("completed_phases") or 0),
                current_impl_phase=int(impl_raw.get("current_impl_phase") or 1),
                current_impl_phase_name=str(impl_raw.get("current_impl_phase_name") or ""),
            )
        cost_raw = data.get("cost") or {}
        return cls(
            project_name=str(data.get("project_name") or ""),
            project_id=str(data.get("project_id") or uuid.uuid4().hex[:12]),
            version=int(data.get("version") or DOCUMENT_VERSION),
            created=str(data.get("created") or _now_iso()),
            updated=str(data.get("updated") or _now_iso()),
            current_stage=stage,
            stage_status=str(data.get("stage_status") or "pending"),
            gates=PhaseGates.from_dict(data.get("gates") or {}),
            implementation=impl,
            cost=CostTracking(
                total_tokens=int(cost_raw.get("total_tokens") or 0),
                total_cost_usd=float(cost_raw.get("total_cost_usd") or 0.0),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "created": self.created,
            "updated": self.updated,
            "current_stage": self.current_stage.value,
            "current_stage_name": self.current_stage.display_name,
            "stage_status": self.stage_status,
            "gates": self.gates.to_dict(),
            "cost": {
                "total_tokens": self.cost.total_tokens,
                "total_cost_usd": round(self.cost.total_cost_usd, 6),
            },
        }
        if self.implementation is not None:
            data["implementation"] = {
                "total_phases": self.implementation.total_phases,
                "completed_phases": self.implementation.completed_phases,
                "current_impl_phase": self.implementation.current_impl_phase,
                "current_impl_phase_name": self.implementation.current_impl_phase_name,
            }
        return data


@dataclass
class Approval:
    phase: str
    status: str = "pending"
    approved_at: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Approval":
        return cls(
            phase=str(data.get("phase", "")),
            status=str(data.get("status") or "pending"),
            approved_at=data.get("approved_at"),
            notes=data.get("notes"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"phase": self.phase, "status": self.status}
        if self.approved_at:
            data["approved_at"] = self.approved_at
        if self.notes:
            data["notes"] = self.notes
        return data


@dataclass
class IdeationContent:
    problem_statement: str = ""
    target_users: str = ""
    use_cases: list[str] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)
    must_have: list[str] = field(default_factory=list)
    nice_to_have: list[str] = field(default_factory=list)
    out_of_scope: list[str] = field(default_factory=list)

    @property
    def has_constraints(self) -> bool:
        return bool(self.must_have or self.nice_to_have or self.out_of_scope)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IdeationContent":
        constraints = data.get("constraints") or {}
        return cls(
            problem_statement=str(data.get("problem_statement") or ""),
            target_users=str(data.get("target_users") or ""),
            use_cases=_str_list(data.get("use_cases")),
            success_criteria=_str_list(data.get("success_criteria")),
            must_have=_str_list(constraints.get("must_have")),
            nice_to_have=_str_list(constraints.get("nice_to_have")),
            out_of_scope=_str_list(constraints.get("out_of_scope")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "problem_statement": self.problem_statement,
            "target_users": self.target_users,
            "use_cases": list(self.use_cases),
            "success_criteria": list(self.success_criteria),
            "constraints": {
                "must_have": list(self.must_have),
                "nice_to_have": list(self.nice_to_have),
                "out_of_scope": list(self.out_of_scope),
            },
        }


@dataclass
class SpecificationContent:
    architecture: str = ""
    tech_stack: list[dict[str, str]] = field(default_factory=list)
    data_models: str = ""
    api_contracts: str = ""
    ui_requirements: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SpecificationContent":
        stack = [
            {str(k): str(v) for k, v in item.items()}
            for item in (data.get("tech_stack") or [])
            if isinstance(item, dict)
        ]
        return cls(
            architecture=str(data.get("architecture") or ""),
            tech_stack=stack,
            data_models=str(data.get("data_models") or ""),
            api_contracts=str(data.get("api_contracts") or ""),
            ui_requirements=str(data.get("ui_requirements") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "architecture": self.architecture,
            "tech_stack": [dict(item) for item in self.tech_stack],
            "data_models": self.data_models,
            "api_contracts": self.api_contracts,
            "ui_requirements": self.ui_requirements,
        }


@dataclass
class ProjectDocument:
    """Everything persisted for a project apart from per-task results."""

    meta: ProjectMeta
    ideation: Optional[IdeationContent] = None
    specification: Optional[SpecificationContent] = None
    implementation_phases: list[ImplementationPhase] = field(default_factory=list)
    approvals: list[Approval] = field(default_factory=list)

    def find_approval(self, phase: str) -> Optional[Approval]:
        for approval in self.approvals:
            if approval.phase == phase:
                return approval
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectDocument":
        if not isinstance(data, dict) or not isinstance(data.get("meta"), dict):
            raise ValueError("project document must be a mapping with a 'meta' section")
        ideation = data.get("ideation")
        spec = data.get("specification")
        phases = [
            ImplementationPhase.from_dict(p)
            for p in (data.get("implementation_phases") or [])
            if isinstance(p, dict)
        ]
        phases.sort(key=lambda p: p.phase_number)
        return cls(
            meta=ProjectMeta.from_dict(data["meta"]),
            ideation=IdeationContent.from_dict(ideation) if isinstance(ideation, dict) else None,
            specification=SpecificationContent.from_dict(spec) if isinstance(spec, dict) else None,
            implementation_phases=phases,
            approvals=[Approval.from_dict(a) for a in (data.get("approvals") or []) if isinstance(a, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "meta": self.meta.to_dict(),
            "ideation": self.ideation.to_dict() if self.ideation else None,
            "specification": self.specification.to_dict() if self.specification else None,
            "implementation_phases": [p.to_dict() for p in self.implementation_phases],
            "approvals": [a.to_dict() for a in self.approvals],
        }

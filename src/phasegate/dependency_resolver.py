"""Validate task dependency graphs and compute a deterministic execution order.

The resolver is built over a fixed list of tasks (normally one phase). It
keeps references to the live `Task` objects owned by the state manager, so
readiness queries always reflect current statuses.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from loguru import logger

from .errors import DependencyError
from .models import Task, TaskStatus, task_sort_key

ISSUE_MISSING = "missing"
ISSUE_SELF_REFERENCE = "self_reference"
ISSUE_CIRCULAR = "circular"
ISSUE_DUPLICATE = "duplicate"

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class DependencyIssue:
    """One structural problem found in a task graph."""

    kind: str
    task_id: str
    details: str
    dependency: Optional[str] = None
    cycle: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"type": self.kind, "task_id": self.task_id, "details": self.details}
        if self.dependency is not None:
            data["dependency"] = self.dependency
        if self.cycle:
            data["cycle"] = list(self.cycle)
        return data


@dataclass
class ValidationReport:
    valid: bool
    issues: list[DependencyIssue] = field(default_factory=list)

    def by_kind(self, kind: str) -> list[DependencyIssue]:
        return [issue for issue in self.issues if issue.kind == kind]

    def messages(self) -> list[str]:
        return [issue.details for issue in self.issues]


class DependencyResolver:
    """Resolve dependencies between the tasks of one scope."""

    def __init__(self, tasks: Iterable[Task]):
        self._tasks: list[Task] = sorted(tasks, key=lambda t: task_sort_key(t.id))
        self._task_map: dict[str, Task] = {}
        self._duplicates: list[str] = []
        for task in self._tasks:
            if task.id in self._task_map:
                self._duplicates.append(task.id)
                continue
            self._task_map[task.id] = task

    @property
    def tasks(self) -> list[Task]:
        return list(self._task_map.values())

    def get(self, task_id: str) -> Optional[Task]:
        return self._task_map.get(task_id)

    # ------------------------------------------------------------------
    # Structural validation
    # ------------------------------------------------------------------

    def validate(self) -> ValidationReport:
        """Report self-references, dangling dependencies and cycles.

        Never raises; callers decide whether to proceed.
        """
        issues: list[DependencyIssue] = []

        for task_id in self._duplicates:
            issues.append(
                DependencyIssue(
                    kind=ISSUE_DUPLICATE,
                    task_id=task_id,
                    details=f"Task id {task_id} is defined more than once",
                )
            )

        for task in self._task_map.values():
            if task.id in task.depends_on:
                issues.append(
                    DependencyIssue(
                        kind=ISSUE_SELF_REFERENCE,
                        task_id=task.id,
                        details=f"Task {task.id} depends on itself",
                        dependency=task.id,
                    )
                )
            for dep_id in task.depends_on:
                if dep_id not in self._task_map:
                    issues.append(
                        DependencyIssue(
                            kind=ISSUE_MISSING,
                            task_id=task.id,
                            details=f"Task {task.id} depends on non-existent task {dep_id}",
                            dependency=dep_id,
                        )
                    )

        for cycle in self.find_cycles():
            issues.append(
                DependencyIssue(
                    kind=ISSUE_CIRCULAR,
                    task_id=cycle[0],
                    details=f"Circular dependency: {' -> '.join(cycle)}",
                    cycle=tuple(cycle),
                )
            )

        if issues:
            logger.debug("Dependency validation found {} issue(s)", len(issues))
        return ValidationReport(valid=not issues, issues=issues)

    def find_cycles(self) -> list[list[str]]:
        """Find cycles with a white/gray/black depth-first search.

        Each cycle is reported from the first repeated node around and back
        to it, e.g. ``["2.1", "2.2", "2.1"]``.
        """
        color: dict[str, int] = {task_id: _WHITE for task_id in self._task_map}
        cycles: list[list[str]] = []
        path: list[str] = []

        def dfs(node: str) -> None:
            color[node] = _GRAY
            path.append(node)
            for dep_id in sorted(self._task_map[node].depends_on, key=task_sort_key):
                if dep_id not in self._task_map:
                    continue
                if color[dep_id] == _GRAY:
                    start = path.index(dep_id)
                    cycles.append(path[start:] + [dep_id])
                elif color[dep_id] == _WHITE:
                    dfs(dep_id)
            path.pop()
            color[node] = _BLACK

        for task_id in self._task_map:
            if color[task_id] == _WHITE:
                dfs(task_id)
        return cycles

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _graph(self) -> tuple[dict[str, int], dict[str, list[str]]]:
        in_degree: dict[str, int] = {task_id: 0 for task_id in self._task_map}
        dependents: dict[str, list[str]] = defaultdict(list)
        for task in self._task_map.values():
            # Dangling dependencies are reported by validate(); they add no edge.
            for dep_id in set(task.depends_on):
                if dep_id in self._task_map:
                    dependents[dep_id].append(task.id)
                    in_degree[task.id] += 1
        return in_degree, dependents

    def get_execution_order(self) -> list[Task]:
        """Return every task once, dependencies first (Kahn's algorithm).

        Ties among simultaneously ready tasks go to the lowest ``major.minor`` id.

        Raises:
            DependencyError: If the graph contains a cycle.
        """
        cycles = self.find_cycles()
        if cycles:
            raise DependencyError.cycles_detected(cycles)

        in_degree, dependents = self._graph()
        heap = [task_sort_key(task_id) for task_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)

        order: list[Task] = []
        while heap:
            _, _, task_id = heapq.heappop(heap)
            order.append(self._task_map[task_id])
            for dependent in dependents.get(task_id, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, task_sort_key(dependent))

        if len(order) != len(self._task_map):
            missing = sorted(set(self._task_map) - {t.id for t in order}, key=task_sort_key)
            raise DependencyError(f"Failed to order all tasks. Missing: {missing}", {"type": "unordered"})
        return order

    def get_execution_batches(self, max_parallel: Optional[int] = None) -> list[list[str]]:
        """Group task ids into dependency levels, optionally split by `max_parallel`.

        Each level holds tasks whose dependencies all sit in earlier levels,
        sorted by id. Used for dry-run planning output.

        Raises:
            DependencyError: If the graph contains a cycle.
        """
        order = self.get_execution_order()
        level: dict[str, int] = {}
        for task in order:
            deps = [d for d in task.depends_on if d in self._task_map]
            level[task.id] = 1 + max((level[d] for d in deps), default=-1)

        grouped: dict[int, list[str]] = defaultdict(list)
        for task in order:
            grouped[level[task.id]].append(task.id)

        batches: list[list[str]] = []
        for depth in sorted(grouped):
            ids = sorted(grouped[depth], key=task_sort_key)
            if max_parallel and max_parallel > 0:
                batches.extend(ids[i : i + max_parallel] for i in range(0, len(ids), max_parallel))
            else:
                batches.append(ids)
        return batches

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _dependency_satisfied(self, dep_id: str) -> bool:
        dep = self._task_map.get(dep_id)
        return dep is not None and dep.status.satisfies_dependents

    def can_run(self, task_id: str) -> bool:
        """True iff the task is pending and every dependency is complete or skipped."""
        task = self._task_map.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        return all(self._dependency_satisfied(dep_id) for dep_id in task.depends_on)

    def get_next_runnable(self) -> Optional[Task]:
        for task in self._task_map.values():
            if self.can_run(task.id):
                return task
        return None

    def get_runnable(self) -> list[Task]:
        return [task for task in self._task_map.values() if self.can_run(task.id)]

    def get_blocking_deps(self, task_id: str) -> list[str]:
        """Dependencies of `task_id` that are not yet complete or skipped.

        Dangling dependency ids are included since they can never be satisfied.
        """
        task = self._task_map.get(task_id)
        if task is None:
            return []
        return [dep_id for dep_id in task.depends_on if not self._dependency_satisfied(dep_id)]

    def get_skipped_deps(self, task_id: str) -> list[str]:
        task = self._task_map.get(task_id)
        if task is None:
            return []
        skipped: list[str] = []
        for dep_id in task.depends_on:
            dep = self._task_map.get(dep_id)
            if dep is not None and dep.status == TaskStatus.SKIPPED:
                skipped.append(dep_id)
        return skipped

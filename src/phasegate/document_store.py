"""Persist the project document and per-task results under `.phasegate/`.

Layout::

    .phasegate/
      project.yaml            meta, ideation, specification, phases, approvals
      results/task-<id>.json  one immutable TaskResult per task
      project.lock            serialises writers
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from .constants import LOCK_FILE, PROJECT_FILE, RESULTS_DIR_NAME, STATE_DIR_NAME
from .errors import DocumentError
from .io_utils import FileLock, dump_document, read_document
from .models import Approval, ProjectDocument, ProjectMeta, Task, TaskResult, task_sort_key
from .utils import _now_iso


class DocumentStore(Protocol):
    """Persistence collaborator used by the state manager."""

    def read_project(self) -> ProjectDocument: ...

    def update_meta(self, meta: ProjectMeta) -> None: ...

    def update_task(self, phase_number: int, task: Task) -> None: ...

    def update_approval(self, approval: Approval) -> None: ...

    def record_result(self, result: TaskResult) -> None: ...

    def delete_result(self, task_id: str) -> None: ...

    def read_all_results(self) -> list[TaskResult]: ...


def _result_filename(task_id: str) -> str:
    safe = "".join(ch if ch.isalnum() or ch in ".-_" else "_" for ch in task_id)
    return f"task-{safe}.json"


class FileDocumentStore:
    """YAML project document plus JSON result files, written atomically."""

    def __init__(self, project_dir: Path):
        self.project_dir = Path(project_dir).resolve()
        self.state_dir = self.project_dir / STATE_DIR_NAME
        self.project_path = self.state_dir / PROJECT_FILE
        self.results_dir = self.state_dir / RESULTS_DIR_NAME
        self.lock_path = self.state_dir / LOCK_FILE

    def exists(self) -> bool:
        return self.project_path.exists()

    # ------------------------------------------------------------------
    # Project document
    # ------------------------------------------------------------------

    def read_project(self) -> ProjectDocument:
        """Load and parse `project.yaml`.

        Raises:
            DocumentError: If the file is missing, unreadable or malformed.
        """
        data, err = read_document(self.project_path)
        if err:
            raise DocumentError.invalid_structure(err)
        if data is None:
            raise DocumentError.not_initialized(str(self.project_path))
        try:
            return ProjectDocument.from_dict(data)
        except (TypeError, ValueError) as exc:
            raise DocumentError.invalid_structure(str(exc)) from exc

    def write_project(self, document: ProjectDocument) -> None:
        with FileLock(self.lock_path):
            self._write(document)

    def _write(self, document: ProjectDocument) -> None:
        try:
            dump_document(self.project_path, document.to_dict())
        except OSError as exc:
            raise DocumentError.write_failed(str(self.project_path), str(exc)) from exc

    def _modify(self, mutate) -> None:
        with FileLock(self.lock_path):
            document = self.read_project()
            mutate(document)
            document.meta.updated = _now_iso()
            self._write(document)

    def update_meta(self, meta: ProjectMeta) -> None:
        def _apply(document: ProjectDocument) -> None:
            document.meta = meta

        self._modify(_apply)

    def update_task(self, phase_number: int, task: Task) -> None:
        """Replace one task inside its phase.

        Raises:
            DocumentError: If the phase or task is not in the stored document.
        """

        def _apply(document: ProjectDocument) -> None:
            for phase in document.implementation_phases:
                if phase.phase_number != phase_number:
                    continue
                for index, existing in enumerate(phase.tasks):
                    if existing.id == task.id:
                        phase.tasks[index] = Task.from_dict(task.to_dict())
                        return
            raise DocumentError.invalid_structure(f"task {task.id} not found in phase {phase_number}")

        self._modify(_apply)

    def update_approval(self, approval: Approval) -> None:
        def _apply(document: ProjectDocument) -> None:
            existing = document.find_approval(approval.phase)
            if existing is None:
                document.approvals.append(approval)
                return
            existing.status = approval.status
            existing.approved_at = approval.approved_at
            existing.notes = approval.notes

        self._modify(_apply)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def result_path(self, task_id: str) -> Path:
        return self.results_dir / _result_filename(task_id)

    def record_result(self, result: TaskResult) -> None:
        path = self.result_path(result.task_id)
        try:
            with FileLock(self.lock_path):
                dump_document(path, result.to_dict())
        except OSError as exc:
            raise DocumentError.write_failed(str(path), str(exc)) from exc

    def get_result(self, task_id: str) -> Optional[TaskResult]:
        path = self.result_path(task_id)
        data, err = read_document(path)
        if err:
            raise DocumentError.invalid_structure(err)
        if data is None:
            return None
        try:
            return TaskResult.from_dict(data)
        except (TypeError, ValueError) as exc:
            raise DocumentError.invalid_structure(f"{path.name}: {exc}") from exc

    def read_all_results(self) -> list[TaskResult]:
        """Load every stored result, ordered by task id.

        Unreadable result files are logged and skipped; a broken result must
        not prevent the project from loading.
        """
        if not self.results_dir.exists():
            return []
        results: list[TaskResult] = []
        for path in self.results_dir.glob("task-*.json"):
            data, err = read_document(path)
            if data is None:
                logger.warning("Skipping unreadable result {}: {}", path.name, err or "vanished")
                continue
            try:
                results.append(TaskResult.from_dict(data))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed result {}: {}", path.name, exc)
        results.sort(key=lambda r: task_sort_key(r.task_id))
        return results

    def delete_result(self, task_id: str) -> None:
        path = self.result_path(task_id)
        with FileLock(self.lock_path):
            try:
                path.unlink()
            except FileNotFoundError:
                return


def init_project(project_dir: Path, name: str, *, force: bool = False) -> ProjectDocument:
    """Create a fresh project document at the ideation stage.

    Args:
        project_dir: Repository root; `.phasegate/` is created inside it.
        name: Human-readable project name.
        force: Overwrite an existing document.

    Returns:
        The newly written document.

    Raises:
        DocumentError: If a document exists and `force` is not set.
    """
    store = FileDocumentStore(project_dir)
    if store.exists() and not force:
        raise DocumentError.already_exists(str(store.project_path))
    document = ProjectDocument(meta=ProjectMeta(project_name=name))
    store.write_project(document)
    logger.info("Initialized project {!r} in {}", name, store.state_dir)
    return document

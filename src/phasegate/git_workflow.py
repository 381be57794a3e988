"""Version-control hooks called by the executors.

Every hook returns None when git is disabled, when there is nothing to do,
or when the underlying command fails. Failures are logged and never turned
into task failures.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar

from loguru import logger

from .constants import COMMIT_SUBJECT_MAX_CHARS, DEFAULT_BRANCH_PREFIX
from .errors import GitError
from .git_utils import (
    _ensure_branch,
    _ensure_gitignore,
    _git_commit_all,
    _git_current_branch,
    _git_has_changes,
    _git_is_repo,
    get_git_coordinator,
)
from .utils import _slugify

T = TypeVar("T")


@dataclass
class GitConfig:
    enabled: bool = True
    auto_commit: bool = True
    branch_prefix: str = DEFAULT_BRANCH_PREFIX


class GitWorkflowManager:
    """Branch per implementation phase, commit per completed task."""

    def __init__(self, project_dir: Path, config: Optional[GitConfig] = None):
        self.project_dir = Path(project_dir).resolve()
        self.config = config or GitConfig()
        self._repo_checked: Optional[bool] = None

    @property
    def enabled(self) -> bool:
        if not self.config.enabled:
            return False
        if self._repo_checked is None:
            self._repo_checked = _git_is_repo(self.project_dir)
            if not self._repo_checked:
                logger.warning("Git integration disabled: {} is not a git repository", self.project_dir)
            else:
                _ensure_gitignore(self.project_dir)
        return self._repo_checked

    def format_branch_name(self, phase_number: int, phase_name: str) -> str:
        slug = _slugify(phase_name)
        base = f"{self.config.branch_prefix}/phase-{phase_number}"
        return f"{base}-{slug}" if slug else base

    @staticmethod
    def format_commit_message(kind: str, description: str) -> str:
        description = " ".join((description or "").split())
        if len(description) > COMMIT_SUBJECT_MAX_CHARS:
            description = description[: COMMIT_SUBJECT_MAX_CHARS - 3] + "..."
        return f"{kind}: {description}"

    def _safe_call(self, operation: Callable[[], T], name: str) -> Optional[T]:
        try:
            return get_git_coordinator().execute(operation, name)
        except (GitError, subprocess.SubprocessError, OSError) as exc:
            logger.warning("Git {} failed: {}", name, exc)
            return None

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def begin_phase(self, phase_number: int, phase_name: str) -> Optional[str]:
        """Check out (creating if needed) the phase branch.

        Returns:
            The branch name, or None if git is disabled or the checkout failed.
        """
        if not self.enabled:
            return None
        branch = self.format_branch_name(phase_number, phase_name)

        def _checkout() -> str:
            _ensure_branch(self.project_dir, branch)
            return branch

        result = self._safe_call(_checkout, "begin_phase")
        if result:
            logger.info("On branch {}", result)
        return result

    def _commit(self, message: str, name: str) -> Optional[str]:
        return self._safe_call(lambda: _git_commit_all(self.project_dir, message), name)

    def commit_task(self, task_id: str, summary: Optional[str]) -> Optional[str]:
        if not self.enabled or not self.config.auto_commit:
            return None
        message = self.format_commit_message(f"task-{task_id}", summary or "Task completed")
        sha = self._commit(message, "commit_task")
        if sha:
            logger.debug("Committed task {} as {}", task_id, sha[:8])
        return sha

    def commit_state_change(self, action: str) -> Optional[str]:
        if not self.enabled or not self.config.auto_commit:
            return None
        return self._commit(self.format_commit_message("orchestrator", action), "commit_state_change")

    def checkpoint(self, message: str) -> Optional[str]:
        if not self.enabled:
            return None
        return self._commit(f"checkpoint: {message}", "checkpoint")

    def current_branch(self) -> Optional[str]:
        if not self.enabled:
            return None
        return _git_current_branch(self.project_dir)

    def has_changes(self) -> bool:
        if not self.enabled:
            return False
        return _git_has_changes(self.project_dir)

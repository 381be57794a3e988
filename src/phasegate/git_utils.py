"""Provide small git helpers used by the workflow manager."""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar

from loguru import logger

from .constants import STATE_DIR_NAME
from .errors import GitError

T = TypeVar("T")


class GitCoordinator:
    """Serialise git commands issued by one process.

    Git is not safe for concurrent commands on one working tree, so every
    call made by the engine goes through a single re-entrant lock.
    """

    _instance: Optional["GitCoordinator"] = None
    _instance_lock = threading.Lock()

    def __new__(cls) -> "GitCoordinator":
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._git_lock = threading.RLock()
                    cls._instance = instance
        return cls._instance

    def execute(self, operation: Callable[[], T], operation_name: str = "git operation") -> T:
        """Run `operation` while holding the git lock.

        Raises:
            Any exception raised by the operation, after logging it.
        """
        with self._git_lock:
            logger.debug("Acquired git lock ({})", operation_name)
            try:
                return operation()
            except Exception as exc:
                logger.debug("Git operation failed ({}): {}", operation_name, exc)
                raise


def get_git_coordinator() -> GitCoordinator:
    return GitCoordinator()


def _run_git(project_dir: Path, *args: str, check: bool = False) -> subprocess.CompletedProcess:
    result = subprocess.run(
        ["git", *args],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    if check and result.returncode != 0:
        details = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
        raise GitError.operation_failed(args[0], details)
    return result


def _git_is_repo(project_dir: Path) -> bool:
    try:
        result = _run_git(project_dir, "rev-parse", "--is-inside-work-tree")
    except OSError:
        return False
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _git_head_sha(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    return _run_git(project_dir, "show-ref", "--verify", f"refs/heads/{branch}").returncode == 0


def _ensure_branch(project_dir: Path, branch: str) -> None:
    if _git_current_branch(project_dir) == branch:
        return
    if _git_branch_exists(project_dir, branch):
        _run_git(project_dir, "checkout", branch, check=True)
    else:
        _run_git(project_dir, "checkout", "-b", branch, check=True)


def _git_has_changes(project_dir: Path) -> bool:
    result = _run_git(project_dir, "status", "--porcelain")
    return result.returncode == 0 and bool(result.stdout.strip())


def _git_commit_all(project_dir: Path, message: str) -> Optional[str]:
    """Stage everything and commit. Returns the new HEAD sha, or None if clean."""
    if not _git_has_changes(project_dir):
        return None
    _run_git(project_dir, "add", "-A", check=True)
    _run_git(project_dir, "commit", "-m", message, check=True)
    return _git_head_sha(project_dir)


def _ensure_gitignore(project_dir: Path) -> None:
    """Keep the lock file and temp writes of `.phasegate/` out of commits."""
    entries = [f"{STATE_DIR_NAME}/*.lock", f"{STATE_DIR_NAME}/**/*.tmp"]
    path = project_dir / ".gitignore"
    try:
        contents = path.read_text() if path.exists() else ""
        existing = {line.strip() for line in contents.splitlines()}
        missing = [entry for entry in entries if entry not in existing]
        if not missing:
            return
        if contents and not contents.endswith("\n"):
            contents += "\n"
        path.write_text(contents + "\n".join(missing) + "\n")
    except OSError as exc:
        logger.warning("Unable to update .gitignore: {}", exc)

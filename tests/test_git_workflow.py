"""Tests for branch-per-phase and commit-per-task git hooks."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from phasegate import git_workflow
from phasegate.errors import GitError
from phasegate.git_utils import get_git_coordinator
from phasegate.git_workflow import GitConfig, GitWorkflowManager

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True).stdout.strip()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    _git(tmp_path, "init")
    _git(tmp_path, "config", "user.email", "dev@example.com")
    _git(tmp_path, "config", "user.name", "Dev")
    (tmp_path / "README.md").write_text("demo\n")
    _git(tmp_path, "add", "-A")
    _git(tmp_path, "commit", "-m", "initial")
    return tmp_path


def test_commit_message_is_capped() -> None:
    message = GitWorkflowManager.format_commit_message("task-1.1", "x" * 100)
    assert message.startswith("task-1.1: ")
    subject = message.split(": ", 1)[1]
    assert len(subject) == 72
    assert subject.endswith("...")
    assert GitWorkflowManager.format_commit_message("orchestrator", "approve  phase\n2") == (
        "orchestrator: approve phase 2"
    )


def test_branch_name_uses_prefix_and_slug(tmp_path: Path) -> None:
    manager = GitWorkflowManager(tmp_path, GitConfig(branch_prefix="work"))
    assert manager.format_branch_name(2, "Core API & CLI") == "work/phase-2-core-api-cli"
    assert manager.format_branch_name(3, "!!!") == "work/phase-3"


def test_coordinator_is_shared() -> None:
    assert get_git_coordinator() is get_git_coordinator()


@requires_git
def test_outside_a_repo_every_hook_is_a_noop(tmp_path: Path) -> None:
    manager = GitWorkflowManager(tmp_path)
    assert manager.enabled is False
    assert manager.begin_phase(1, "Core") is None
    assert manager.commit_task("1.1", "done") is None
    assert manager.has_changes() is False


@requires_git
def test_disabled_config_skips_git(repo: Path) -> None:
    manager = GitWorkflowManager(repo, GitConfig(enabled=False))
    assert manager.begin_phase(1, "Core") is None
    assert manager.current_branch() is None


@requires_git
def test_begin_phase_creates_and_reuses_branch(repo: Path) -> None:
    manager = GitWorkflowManager(repo)

    assert manager.begin_phase(1, "Core API") == "impl/phase-1-core-api"
    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "impl/phase-1-core-api"

    _git(repo, "checkout", "-b", "elsewhere")
    assert manager.begin_phase(1, "Core API") == "impl/phase-1-core-api"
    assert manager.current_branch() == "impl/phase-1-core-api"

    ignored = (repo / ".gitignore").read_text().splitlines()
    assert ".phasegate/*.lock" in ignored


@requires_git
def test_commit_task_commits_changes(repo: Path) -> None:
    manager = GitWorkflowManager(repo)
    (repo / "feature.py").write_text("print('hi')\n")

    sha = manager.commit_task("1.1", "Add feature module")

    assert sha == _git(repo, "rev-parse", "HEAD")
    assert _git(repo, "log", "-1", "--format=%s") == "task-1.1: Add feature module"
    assert manager.has_changes() is False
    assert manager.commit_task("1.2", "nothing changed") is None


@requires_git
def test_auto_commit_off_skips_task_commits(repo: Path) -> None:
    manager = GitWorkflowManager(repo, GitConfig(auto_commit=False))
    (repo / "feature.py").write_text("x = 1\n")
    assert manager.commit_task("1.1", "Add") is None
    assert manager.checkpoint("manual save") == _git(repo, "rev-parse", "HEAD")
    assert _git(repo, "log", "-1", "--format=%s") == "checkpoint: manual save"


@requires_git
def test_git_failures_are_swallowed(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(project_dir: Path, branch: str) -> None:
        raise GitError.operation_failed("checkout", "index.lock exists")

    monkeypatch.setattr(git_workflow, "_ensure_branch", _boom)
    manager = GitWorkflowManager(repo)

    assert manager.begin_phase(1, "Core") is None

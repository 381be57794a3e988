"""Tests for the phasegate command line."""

from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import pytest

from conftest import make_phase, make_task
from phasegate.models import TaskStatus
from phasegate.runner import main
from phasegate.stages import PipelineStage
from phasegate.state_manager import StateManager

AGENT_SCRIPT = """
import json
import sys

payload = json.load(sys.stdin)
print(json.dumps({"success": True, "summary": "did " + payload["task"]["id"]}))
"""


def _init(project_dir: Path) -> None:
    assert main(["init", "Demo", "--project-dir", str(project_dir)]) == 0


def _plan(project_dir: Path, *phases) -> StateManager:
    state = StateManager.open(project_dir)
    state.add_implementation_phases(phases)
    state.set_stage(PipelineStage.IMPLEMENTATION)
    state.save()
    return state


def _status(project_dir: Path, capsys: pytest.CaptureFixture[str]) -> dict:
    capsys.readouterr()
    assert main(["status", "--json", "--project-dir", str(project_dir)]) == 0
    return json.loads(capsys.readouterr().out)


def test_unknown_command_exits_with_usage(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["deploy"]) == 2
    assert "Unknown command: deploy" in capsys.readouterr().err


def test_init_twice_fails(tmp_path: Path) -> None:
    _init(tmp_path)
    assert main(["init", "Again", "--project-dir", str(tmp_path)]) == 2
    assert main(["init", "Again", "--force", "--project-dir", str(tmp_path)]) == 0


def test_commands_require_a_project(tmp_path: Path) -> None:
    assert main(["status", "--project-dir", str(tmp_path)]) == 2


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    _init(tmp_path)
    (tmp_path / ".phasegate" / "config.yaml").write_text("execution: [oops\n")
    assert main(["status", "--project-dir", str(tmp_path)]) == 2


def test_status_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _init(tmp_path)
    _plan(tmp_path, make_phase(1, [make_task("1.1"), make_task("1.2", ["1.1"])], name="Core"))

    payload = _status(tmp_path, capsys)

    assert payload["project_name"] == "Demo"
    assert payload["stage"] == "implementation"
    assert payload["current_impl_phase"] == 1
    assert payload["next_task"] == "1.1"
    assert [t["id"] for t in payload["phases"][0]["tasks"]] == ["1.1", "1.2"]


def test_status_table_renders(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _init(tmp_path)
    _plan(tmp_path, make_phase(1, [make_task("1.1")], name="Core"))
    assert main(["status", "--project-dir", str(tmp_path)]) == 0
    assert "Phase 1: Core" in capsys.readouterr().out


def test_validate_reports_cycles(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _init(tmp_path)
    _plan(tmp_path, make_phase(1, [make_task("1.1", ["1.2"]), make_task("1.2", ["1.1"])]))

    assert main(["validate", "--json", "--project-dir", str(tmp_path)]) == 1
    report = json.loads(capsys.readouterr().out)
    assert report["valid"] is False
    assert report["phases"]["1"][0]["type"] == "circular"


def test_approve_checks_readiness(tmp_path: Path) -> None:
    _init(tmp_path)

    assert main(["approve", "phase-1", "--project-dir", str(tmp_path)]) == 1
    assert main(["approve", "phase-1", "--force", "--notes", "ok", "--project-dir", str(tmp_path)]) == 0

    state = StateManager.open(tmp_path)
    assert state.meta.gates.ideation_approved is True
    assert state.project.find_approval("phase-1").notes == "ok"


def test_approve_impl_phase_moves_cursor(tmp_path: Path) -> None:
    _init(tmp_path)
    _plan(
        tmp_path,
        make_phase(1, [make_task("1.1", status=TaskStatus.COMPLETE)]),
        make_phase(2, [make_task("2.1")]),
    )

    assert main(["approve", "impl-1", "--project-dir", str(tmp_path)]) == 0

    assert StateManager.open(tmp_path).meta.current_phase_number == 2


def test_skip_and_retry(tmp_path: Path) -> None:
    _init(tmp_path)
    _plan(tmp_path, make_phase(1, [make_task("1.1", status=TaskStatus.FAILED), make_task("1.2")]))

    assert main(["retry", "1.1", "--project-dir", str(tmp_path)]) == 0
    assert main(["skip", "1.2", "--reason", "done by hand", "--project-dir", str(tmp_path)]) == 0
    assert main(["retry", "1.2", "--project-dir", str(tmp_path)]) == 2

    state = StateManager.open(tmp_path)
    assert state.require_task("1.1").status == TaskStatus.PENDING
    assert state.require_task("1.2").status == TaskStatus.SKIPPED
    assert state.require_task("1.2").failure_reason == "done by hand"


def test_run_dry_run_leaves_tasks_pending(tmp_path: Path) -> None:
    _init(tmp_path)
    _plan(tmp_path, make_phase(1, [make_task("1.1")]))

    assert main(["run", "--dry-run", "--project-dir", str(tmp_path)]) == 0

    assert StateManager.open(tmp_path).require_task("1.1").status == TaskStatus.PENDING


def test_run_executes_tasks_with_command(tmp_path: Path) -> None:
    _init(tmp_path)
    _plan(tmp_path, make_phase(1, [make_task("1.1"), make_task("1.2", ["1.1"])]))
    script = tmp_path / "agent.py"
    script.write_text(AGENT_SCRIPT)
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"

    code = main(["run", "--no-git", "--command", command, "--max-retries", "0", "--project-dir", str(tmp_path)])

    assert code == 0
    state = StateManager.open(tmp_path)
    assert [t.status for t in state.all_tasks()] == [TaskStatus.COMPLETE, TaskStatus.COMPLETE]
    assert state.get_task_result("1.2").summary == "did 1.2"
    assert state.project.find_approval("impl-1") is not None


def test_resume_after_failure(tmp_path: Path) -> None:
    _init(tmp_path)
    _plan(tmp_path, make_phase(1, [make_task("1.1")]))
    failing = f"{shlex.quote(sys.executable)} -c 'import sys; sys.exit(1)'"

    assert main(["run", "--no-git", "--command", failing, "--max-retries", "0", "--project-dir", str(tmp_path)]) == 1
    assert main(["retry", "1.1", "--project-dir", str(tmp_path)]) == 0

    script = tmp_path / "agent.py"
    script.write_text(AGENT_SCRIPT)
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    assert main(["resume", "--no-git", "--command", command, "--project-dir", str(tmp_path)]) == 0

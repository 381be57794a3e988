"""Tests for the shell-command task runner."""

from __future__ import annotations

import asyncio
import json
import shlex
import sys
from pathlib import Path

import pytest

from conftest import make_task
from phasegate.errors import TaskExecutionError
from phasegate.task_executor import RetryContext, TaskContext
from phasegate.workers import CommandTaskRunner, build_payload, parse_outcome

AGENT_SCRIPT = """
import json
import sys

payload = json.load(sys.stdin)
task_id = sys.argv[1]
print("working on", task_id)
retry = payload["retry"]
print(json.dumps({
    "success": True,
    "summary": "did " + payload["task"]["id"],
    "files_modified": ["app.py"],
    "tokens_used": 42,
    "failure_reason": None if retry is None else retry["previous_failure"],
}))
"""

FAILING_SCRIPT = """
import sys
sys.stdin.read()
print("partial work")
print("bad things happened", file=sys.stderr)
sys.exit(3)
"""

SLOW_SCRIPT = """
import sys
import time
sys.stdin.read()
time.sleep(5)
"""


def _command(tmp_path: Path, source: str, extra: str = "") -> str:
    script = tmp_path / "agent.py"
    script.write_text(source)
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {extra}".strip()


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


def test_trailing_json_line_is_the_outcome() -> None:
    stdout = 'log line\n{"success": false, "summary": "tests red", "tests_passing": false}\n'
    outcome = parse_outcome(stdout, 0)
    assert outcome.success is False
    assert outcome.summary == "tests red"
    assert outcome.tests_passing is False
    assert outcome.output == stdout


def test_json_without_success_uses_exit_code() -> None:
    outcome = parse_outcome('{"summary": "meh"}', 2)
    assert outcome.success is False
    assert outcome.failure_reason == "exit code 2"


def test_plain_output_uses_exit_code() -> None:
    ok = parse_outcome("all good\n", 0)
    assert ok.success is True
    assert ok.summary == "all good"

    failed = parse_outcome("", 1, "Traceback\nValueError: nope\n")
    assert failed.success is False
    assert failed.failure_reason == "exit code 1: ValueError: nope"


def test_broken_json_line_falls_back_to_exit_code() -> None:
    outcome = parse_outcome("{not json", 0)
    assert outcome.success is True
    assert outcome.summary == "{not json"


def test_payload_includes_retry() -> None:
    task = make_task("2.1", ["1.1"])
    payload = build_payload(task, TaskContext(phase_number=2), RetryContext(2, "flaky", "out"))
    assert payload["task"]["depends_on"] == ["1.1"]
    assert payload["context"]["phase_number"] == 2
    assert payload["retry"] == {"attempt": 2, "previous_failure": "flaky", "previous_output": "out"}
    assert json.dumps(payload)


# ---------------------------------------------------------------------------
# Subprocess execution
# ---------------------------------------------------------------------------


def test_runner_passes_payload_and_placeholders(tmp_path: Path) -> None:
    runner = CommandTaskRunner(_command(tmp_path, AGENT_SCRIPT, "{task_id}"), tmp_path, timeout_seconds=30)

    outcome = asyncio.run(
        runner.run(make_task("1.1"), TaskContext(project_name="Demo"), RetryContext(2, "flaky test"))
    )

    assert outcome.success is True
    assert outcome.summary == "did 1.1"
    assert outcome.files_modified == ["app.py"]
    assert outcome.tokens_used == 42
    assert outcome.failure_reason == "flaky test"
    assert outcome.duration_seconds is not None
    assert "working on 1.1" in outcome.output


def test_runner_reports_nonzero_exit(tmp_path: Path) -> None:
    runner = CommandTaskRunner(_command(tmp_path, FAILING_SCRIPT), tmp_path, timeout_seconds=30)

    outcome = asyncio.run(runner.run(make_task("1.1"), TaskContext()))

    assert outcome.success is False
    assert outcome.failure_reason == "exit code 3: bad things happened"
    assert "partial work" in outcome.output


def test_runner_times_out(tmp_path: Path) -> None:
    runner = CommandTaskRunner(_command(tmp_path, SLOW_SCRIPT), tmp_path, timeout_seconds=0.3)

    with pytest.raises(TaskExecutionError) as excinfo:
        asyncio.run(runner.run(make_task("1.1"), TaskContext()))
    assert excinfo.value.kind == "timeout"


def test_unknown_placeholder_is_rejected(tmp_path: Path) -> None:
    runner = CommandTaskRunner("agent {model}", tmp_path)
    with pytest.raises(ValueError):
        asyncio.run(runner.run(make_task("1.1"), TaskContext()))

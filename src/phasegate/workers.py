"""A task runner that shells out to an external agent command.

The command receives a JSON payload on stdin describing the task, its
context and any retry information. If the last non-empty stdout line is a
JSON object, it is read as the outcome; otherwise the exit code decides.
"""

from __future__ import annotations

import asyncio
import json
import shlex
import time
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import DEFAULT_TIMEOUT_SECONDS
from .errors import TaskExecutionError
from .models import Task
from .task_executor import ExecutionOutcome, RetryContext, TaskContext


def build_payload(task: Task, context: TaskContext, retry: Optional[RetryContext]) -> dict[str, Any]:
    return {
        "task": {
            "id": task.id,
            "description": task.description,
            "acceptance_criteria": list(task.acceptance_criteria),
            "depends_on": list(task.depends_on),
        },
        "context": context.to_dict(),
        "retry": retry.to_dict() if retry else None,
    }


def parse_outcome(stdout: str, exit_code: int, stderr: str = "") -> ExecutionOutcome:
    """Interpret runner output.

    A trailing JSON object line wins; `success` defaults to the exit status
    when the object omits it.
    """
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if lines and lines[-1].startswith("{"):
        try:
            data = json.loads(lines[-1])
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            data.setdefault("success", exit_code == 0)
            data.setdefault("output", stdout)
            outcome = ExecutionOutcome.from_dict(data)
            if not outcome.success and not outcome.failure_reason and exit_code != 0:
                outcome.failure_reason = f"exit code {exit_code}"
            return outcome

    success = exit_code == 0
    failure_reason = None
    if not success:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        failure_reason = f"exit code {exit_code}" + (f": {detail}" if detail else "")
    return ExecutionOutcome(
        success=success,
        summary=lines[-1] if lines else "",
        output=stdout if not stderr else f"{stdout}\n[stderr]\n{stderr}",
        failure_reason=failure_reason,
    )


class CommandTaskRunner:
    """Run a configurable shell command per task attempt.

    ``command`` may reference ``{project_dir}`` and ``{task_id}``.
    """

    def __init__(self, command: str, cwd: Path, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.command = command
        self.cwd = Path(cwd)
        self.timeout_seconds = timeout_seconds

    def _argv(self, task: Task) -> list[str]:
        try:
            formatted = self.command.format(project_dir=str(self.cwd), task_id=task.id)
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Unknown placeholder in task command: {exc}") from exc
        except ValueError as exc:
            raise ValueError(f"Malformed task command {self.command!r}: {exc}") from exc
        argv = shlex.split(formatted)
        if not argv:
            raise ValueError("Task command is empty")
        return argv

    async def run(
        self,
        task: Task,
        context: TaskContext,
        retry: Optional[RetryContext] = None,
    ) -> ExecutionOutcome:
        argv = self._argv(task)
        payload = json.dumps(build_payload(task, context, retry)).encode("utf-8")
        logger.debug("Running {} for task {} (timeout={}s)", argv[0], task.id, self.timeout_seconds)

        started = time.monotonic()
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(self.cwd),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TaskExecutionError.timeout(task.id, self.timeout_seconds)

        outcome = parse_outcome(
            stdout.decode("utf-8", errors="replace"),
            process.returncode if process.returncode is not None else -1,
            stderr.decode("utf-8", errors="replace"),
        )
        if outcome.duration_seconds is None:
            outcome.duration_seconds = time.monotonic() - started
        return outcome

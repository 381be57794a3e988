"""Command-line entry point for phasegate."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from .config import OrchestratorConfig, git_config_from, load_runner_config, log_level_from
from .dependency_resolver import DependencyResolver
from .document_store import init_project
from .errors import OrchestratorError
from .git_workflow import GitWorkflowManager
from .logging_utils import configure_logging, log_event
from .models import ImplementationPhase, TaskStatus
from .orchestrator import Orchestrator, OrchestratorResult
from .phase_manager import PhaseManager
from .stages import stage_for_approval_key
from .state_manager import StateManager
from .utils import _format_duration
from .workers import CommandTaskRunner

console = Console()

COMMANDS = ("init", "run", "resume", "status", "validate", "approve", "retry", "skip")

_STATUS_STYLES = {
    TaskStatus.PENDING: "dim",
    TaskStatus.IN_PROGRESS: "yellow",
    TaskStatus.COMPLETE: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.SKIPPED: "magenta",
}


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level: DEBUG, INFO, WARNING, ERROR (default: config or INFO)",
    )


def _add_execution_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--dry-run", action="store_true", help="Report intended work without running tasks")
    parser.add_argument("--confirm", action="store_true", help="Ask before starting each phase")
    parser.add_argument(
        "--parallel",
        default=None,
        action=argparse.BooleanOptionalAction,
        help="Run independent ready tasks concurrently (default: config or off)",
    )
    parser.add_argument("--max-parallel", type=int, default=None, help="Tasks per parallel batch (default: 2)")
    parser.add_argument("--max-retries", type=int, default=None, help="Retries per failed task (default: 2)")
    parser.add_argument(
        "--stop-on-failure",
        default=None,
        action=argparse.BooleanOptionalAction,
        help="Stop the phase at the first failed batch (default: True)",
    )
    parser.add_argument("--command", type=str, default=None, help="Task runner command")
    parser.add_argument("--timeout", type=int, default=None, help="Per-attempt timeout in seconds")
    parser.add_argument(
        "--git",
        default=None,
        action=argparse.BooleanOptionalAction,
        help="Branch per phase and commit per task (default: config or on)",
    )


def _build_init_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phasegate init", description="Create a new project document")
    _add_common_args(parser)
    parser.add_argument("name", help="Project name")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing project document")
    return parser


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phasegate run", description="Execute implementation phases")
    _add_common_args(parser)
    parser.add_argument("--start-phase", type=int, default=None, help="First phase number to run")
    parser.add_argument("--end-phase", type=int, default=None, help="Last phase number to run")
    _add_execution_args(parser)
    return parser


def _build_resume_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phasegate resume", description="Resume from the current phase")
    _add_common_args(parser)
    parser.add_argument("--end-phase", type=int, default=None, help="Last phase number to run")
    _add_execution_args(parser)
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phasegate status", description="Show project and task status")
    _add_common_args(parser)
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of a table")
    return parser


def _build_validate_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phasegate validate", description="Check task dependencies")
    _add_common_args(parser)
    parser.add_argument("--json", action="store_true", help="Emit JSON")
    return parser


def _build_approve_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phasegate approve", description="Approve a stage or phase")
    _add_common_args(parser)
    parser.add_argument("phase", help="Approval key, e.g. phase-1, phase-3 or impl-2")
    parser.add_argument("--notes", type=str, default=None, help="Approval notes")
    parser.add_argument("--force", action="store_true", help="Approve even if the readiness check fails")
    return parser


def _build_retry_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phasegate retry", description="Reset a failed task to pending")
    _add_common_args(parser)
    parser.add_argument("task_id", help="Task id, e.g. 2.3")
    return parser


def _build_skip_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phasegate skip", description="Skip a task administratively")
    _add_common_args(parser)
    parser.add_argument("task_id", help="Task id, e.g. 2.3")
    parser.add_argument("--reason", type=str, required=True, help="Why the task is skipped")
    return parser


def _setup(args: argparse.Namespace) -> tuple[Path, dict[str, Any]]:
    project_dir = args.project_dir.resolve()
    config, err = load_runner_config(project_dir)
    if err:
        configure_logging(args.log_level or "INFO")
        raise OrchestratorError(f"Invalid config: {err}", {"type": "config"})
    configure_logging(args.log_level or log_level_from(config))
    return project_dir, config


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def _init_command(args: argparse.Namespace) -> int:
    project_dir, _ = _setup(args)
    init_project(project_dir, args.name, force=bool(args.force))
    console.print(f"[green]Initialized[/green] {args.name} in {project_dir}")
    return 0


def _confirm_phase(phase: ImplementationPhase) -> bool:
    return Confirm.ask(f"Execute phase {phase.phase_number}: {phase.name}?", default=True, console=console)


def _print_run_summary(result: OrchestratorResult) -> None:
    if result.dry_run:
        for plan in result.plans:
            console.print(f"[bold cyan]Phase {plan.phase_number}:[/bold cyan] {plan.phase_name}")
            for issue in plan.issues:
                console.print(f"  [red]✗[/red] {issue.details}")
            for index, batch in enumerate(plan.batches, start=1):
                console.print(f"  Batch {index}: {', '.join(batch)}")
        return

    table = Table(title="Phase Results", show_header=True)
    table.add_column("Phase", style="cyan")
    table.add_column("Result", style="bold")
    table.add_column("Completed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Not reached", justify="right")
    table.add_column("Duration", justify="right")
    for phase_result in result.phase_results:
        outcome = "[green]success[/green]" if phase_result.success else "[red]failed[/red]"
        if phase_result.stalled:
            outcome = "[red]stalled[/red]"
        table.add_row(
            f"{phase_result.phase_number}. {phase_result.phase_name}",
            outcome,
            str(phase_result.tasks_completed),
            str(phase_result.tasks_failed),
            ", ".join(phase_result.unreached_task_ids) or "0",
            _format_duration(phase_result.total_duration),
        )
    console.print(table)


async def _run_with_abort(orchestrator: Orchestrator, resume: bool, start: Optional[int]) -> OrchestratorResult:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.abort)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        if resume:
            return await orchestrator.resume()
        return await orchestrator.execute(start_phase=start)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _run_command(args: argparse.Namespace, *, resume: bool = False) -> int:
    project_dir, config = _setup(args)
    orchestrator_config = OrchestratorConfig.from_config(
        config,
        max_retries=args.max_retries,
        parallel=args.parallel,
        max_parallel=args.max_parallel,
        stop_on_failure=args.stop_on_failure,
        dry_run=bool(args.dry_run) or None,
        confirm_before_phase=bool(args.confirm) or None,
        start_phase=None if resume else args.start_phase,
        end_phase=args.end_phase,
        timeout_seconds=args.timeout,
        command=args.command,
    )
    git_config = git_config_from(config)
    if args.git is not None:
        git_config.enabled = bool(args.git)

    state = StateManager.open(project_dir)
    state.on(None, log_event)
    runner = CommandTaskRunner(orchestrator_config.command, project_dir, orchestrator_config.timeout_seconds)
    git = None if orchestrator_config.dry_run else GitWorkflowManager(project_dir, git_config)
    orchestrator = Orchestrator(state, runner, orchestrator_config, git=git, confirm=_confirm_phase)
    orchestrator.events.subscribe_all(log_event)

    result = asyncio.run(_run_with_abort(orchestrator, resume, orchestrator_config.start_phase))
    _print_run_summary(result)
    return 0 if result.success else 1


def _status_payload(state: StateManager) -> dict[str, Any]:
    meta = state.meta
    tokens, cost = state.total_cost()
    phases = []
    for phase in state.phases:
        phases.append(
            {
                "phase_number": phase.phase_number,
                "name": phase.name,
                "status": phase.status.value,
                "tasks": [
                    {
                        "id": task.id,
                        "status": task.status.value,
                        "description": task.description,
                        "depends_on": list(task.depends_on),
                        "failure_reason": task.failure_reason,
                    }
                    for task in phase.tasks
                ],
            }
        )
    next_task = state.next_task()
    return {
        "project_name": meta.project_name,
        "stage": meta.current_stage.value,
        "stage_status": PhaseManager(state).stage_status(),
        "current_impl_phase": meta.current_phase_number,
        "next_task": next_task.id if next_task else None,
        "cost": {"total_tokens": tokens, "total_cost_usd": round(cost, 6)},
        "phases": phases,
    }


def _status_command(args: argparse.Namespace) -> int:
    project_dir, _ = _setup(args)
    state = StateManager.open(project_dir)
    payload = _status_payload(state)
    if args.json:
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
        return 0

    console.print(f"[bold]{payload['project_name']}[/bold]  stage: {payload['stage']} ({payload['stage_status']})")
    if payload["current_impl_phase"] is not None:
        console.print(f"Current phase: {payload['current_impl_phase']}  next task: {payload['next_task'] or '-'}")
    console.print(f"Cost: {payload['cost']['total_tokens']} tokens, ${payload['cost']['total_cost_usd']:.4f}")
    for phase in state.phases:
        title = f"Phase {phase.phase_number}: {escape(phase.name)} ({phase.status.value})"
        table = Table(title=title, show_header=True)
        table.add_column("Task", style="cyan")
        table.add_column("Status")
        table.add_column("Depends on")
        table.add_column("Description")
        for task in phase.tasks:
            style = _STATUS_STYLES.get(task.status, "")
            table.add_row(
                task.id,
                f"[{style}]{task.status.value}[/{style}]" if style else task.status.value,
                ", ".join(task.depends_on),
                escape((task.failure_reason or task.description)[:60]),
            )
        console.print(table)
    return 0


def _validate_command(args: argparse.Namespace) -> int:
    project_dir, _ = _setup(args)
    state = StateManager.open(project_dir)
    report: dict[str, list[dict[str, Any]]] = {}
    for phase in state.phases:
        issues = DependencyResolver(phase.tasks).validate().issues
        report[str(phase.phase_number)] = [issue.to_dict() for issue in issues]
    has_issues = any(report.values())
    if args.json:
        sys.stdout.write(json.dumps({"valid": not has_issues, "phases": report}, indent=2) + "\n")
        return 1 if has_issues else 0
    if not has_issues:
        console.print("[green]All phases have a valid dependency graph[/green]")
        return 0
    for number, issues in report.items():
        for issue in issues:
            console.print(f"[red]Phase {number}[/red] [{issue['type']}] {issue['details']}")
    return 1


def _approve_command(args: argparse.Namespace) -> int:
    project_dir, _ = _setup(args)
    state = StateManager.open(project_dir)
    manager = PhaseManager(state)
    readiness = manager.readiness(args.phase)
    if not readiness.ready and not args.force:
        console.print(f"[red]{args.phase} is not ready for approval:[/red]")
        for blocker in readiness.blockers:
            console.print(f"  - {blocker}")
        return 1

    key = args.phase.strip()
    state.approve_phase(key, args.notes)
    if key.lower().startswith("impl-"):
        try:
            state.finish_impl_phase(int(key.split("-", 1)[1]))
        except ValueError:
            logger.warning("Approval key {} does not name a phase number", key)
    elif stage_for_approval_key(key) is None:
        logger.warning("Approval key {} does not match a pipeline gate; recorded only", key)
    state.save()
    console.print(f"[green]Approved[/green] {key}")
    return 0


def _retry_command(args: argparse.Namespace) -> int:
    project_dir, _ = _setup(args)
    state = StateManager.open(project_dir)
    state.retry_task(args.task_id)
    state.save()
    console.print(f"Task {args.task_id} reset to pending")
    return 0


def _skip_command(args: argparse.Namespace) -> int:
    project_dir, _ = _setup(args)
    state = StateManager.open(project_dir)
    state.skip_task(args.task_id, args.reason)
    state.save()
    console.print(f"Task {args.task_id} skipped: {args.reason}")
    return 0


def _usage() -> str:
    return "usage: phasegate {" + ",".join(COMMANDS) + "} [options]\n"


def main(argv: Optional[list[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] in {"-h", "--help"}:
        sys.stdout.write(_usage())
        return 0 if argv else 2
    command, rest = argv[0], argv[1:]
    handlers = {
        "init": (_build_init_parser, _init_command),
        "run": (_build_run_parser, _run_command),
        "resume": (_build_resume_parser, lambda a: _run_command(a, resume=True)),
        "status": (_build_status_parser, _status_command),
        "validate": (_build_validate_parser, _validate_command),
        "approve": (_build_approve_parser, _approve_command),
        "retry": (_build_retry_parser, _retry_command),
        "skip": (_build_skip_parser, _skip_command),
    }
    if command not in handlers:
        sys.stderr.write(f"Unknown command: {command}\n" + _usage())
        return 2
    build_parser, handler = handlers[command]
    args = build_parser().parse_args(rest)
    try:
        return handler(args)
    except OrchestratorError as exc:
        logger.error("{}", exc.message)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())

"""Tests for multi-phase orchestration, dry runs and resume."""

from __future__ import annotations

import asyncio
from pathlib import Path

from conftest import RecordingGit, ScriptedRunner, make_phase, make_task
from phasegate.config import OrchestratorConfig
from phasegate.events import Event, EventType
from phasegate.models import ImplementationPhase, TaskStatus
from phasegate.orchestrator import Orchestrator
from phasegate.state_manager import StateManager


def _two_phases() -> tuple[ImplementationPhase, ImplementationPhase]:
    return (
        make_phase(1, [make_task("1.1"), make_task("1.2", ["1.1"])], name="Foundations"),
        make_phase(2, [make_task("2.1"), make_task("2.2", ["2.1"])], name="Features"),
    )


def _config(**overrides) -> OrchestratorConfig:
    values = {"max_retries": 0}
    values.update(overrides)
    return OrchestratorConfig(**values)


def test_runs_all_phases_and_approves_them(make_state, project_dir: Path) -> None:
    state = make_state(*_two_phases())
    runner = ScriptedRunner()
    orchestrator = Orchestrator(state, runner, _config())
    events: list[Event] = []
    orchestrator.events.subscribe_all(events.append)

    result = asyncio.run(orchestrator.execute())

    assert result.success is True
    assert result.phases_completed == 2
    assert result.tasks_completed == 4
    assert result.total_tasks == 4
    assert runner.order == ["1.1", "1.2", "2.1", "2.2"]
    assert events[0].type == EventType.ORCHESTRATION_START
    assert events[-1].type == EventType.ORCHESTRATION_COMPLETE
    assert events[-1]["progress"]["phases_completed"] == 2
    inner = [e["phase_event"].type for e in events if e.type == EventType.PHASE_EVENT]
    assert inner.count(EventType.PHASE_COMPLETE) == 2

    reloaded = StateManager.open(project_dir)
    assert reloaded.project.find_approval("impl-1").status == "approved"
    assert reloaded.project.find_approval("impl-2").status == "approved"
    assert reloaded.meta.implementation.completed_phases == 2
    assert reloaded.meta.stage_status == "complete"


def test_phase_range_limits_execution(make_state) -> None:
    state = make_state(*_two_phases())
    runner = ScriptedRunner()

    result = asyncio.run(Orchestrator(state, runner, _config()).execute(start_phase=2, end_phase=2))

    assert runner.order == ["2.1", "2.2"]
    assert result.phases_completed == 1


def test_failed_phase_stops_later_phases(make_state) -> None:
    state = make_state(*_two_phases())
    runner = ScriptedRunner({"1.2": [False]})
    orchestrator = Orchestrator(state, runner, _config(stop_on_failure=True))
    events: list[EventType] = []
    orchestrator.events.subscribe_all(lambda e: events.append(e.type))

    result = asyncio.run(orchestrator.execute())

    assert result.success is False
    assert result.phases_failed == 1
    assert result.phases_completed == 0
    assert "2.1" not in runner.order
    assert events[-1] == EventType.ORCHESTRATION_FAIL
    assert state.project.find_approval("impl-1") is None


def test_resume_continues_from_failed_phase(make_state, project_dir: Path) -> None:
    state = make_state(*_two_phases())
    asyncio.run(Orchestrator(state, ScriptedRunner({"2.1": [False]}), _config()).execute())
    assert state.meta.implementation.current_impl_phase == 2

    reloaded = StateManager.open(project_dir)
    reloaded.retry_task("2.1")
    reloaded.save()
    runner = ScriptedRunner()
    result = asyncio.run(Orchestrator(reloaded, runner, _config()).resume())

    assert result.success is True
    assert runner.order == ["2.1", "2.2"]
    assert reloaded.require_task("1.1").status == TaskStatus.COMPLETE


def test_rerun_skips_approved_phases(make_state) -> None:
    state = make_state(*_two_phases())
    asyncio.run(Orchestrator(state, ScriptedRunner(), _config()).execute())

    runner = ScriptedRunner()
    result = asyncio.run(Orchestrator(state, runner, _config()).execute())

    assert runner.calls == []
    assert result.success is True
    assert result.phases_completed == 0


def test_interrupted_tasks_are_recovered_and_rerun(make_state, project_dir: Path) -> None:
    state = make_state(make_phase(1, [make_task("1.1"), make_task("1.2", ["1.1"])]))
    state.start_task("1.1")
    state.save()

    reloaded = StateManager.open(project_dir)
    runner = ScriptedRunner()
    result = asyncio.run(Orchestrator(reloaded, runner, _config()).execute())

    assert result.recovered_task_ids == ["1.1"]
    assert runner.order == ["1.1", "1.2"]
    assert result.success is True


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------


def test_dry_run_plans_without_running(make_state, project_dir: Path) -> None:
    state = make_state(*_two_phases())
    runner = ScriptedRunner()

    result = asyncio.run(Orchestrator(state, runner, _config(dry_run=True, parallel=True)).execute())

    assert result.dry_run is True
    assert result.success is True
    assert runner.calls == []
    assert [plan.batches for plan in result.plans] == [[["1.1"], ["1.2"]], [["2.1"], ["2.2"]]]
    assert all(t.status == TaskStatus.PENDING for t in state.all_tasks())
    assert StateManager.open(project_dir).project.approvals == []


def test_dry_run_reports_invalid_phase(make_state) -> None:
    state = make_state(make_phase(1, [make_task("1.1", ["1.2"]), make_task("1.2", ["1.1"])]))

    result = asyncio.run(Orchestrator(state, ScriptedRunner(), _config(dry_run=True)).execute())

    assert result.success is False
    assert result.phases_failed == 1
    assert result.plans[0].valid is False


# ---------------------------------------------------------------------------
# Confirmation and abort
# ---------------------------------------------------------------------------


def test_declined_phase_is_skipped_not_failed(make_state) -> None:
    state = make_state(*_two_phases())
    runner = ScriptedRunner()
    asked: list[int] = []

    def _confirm(phase: ImplementationPhase) -> bool:
        asked.append(phase.phase_number)
        return phase.phase_number != 1

    config = _config(confirm_before_phase=True, stop_on_failure=False)
    asyncio.run(Orchestrator(state, runner, config, confirm=_confirm).execute(start_phase=2))

    assert asked == [2]
    assert runner.order == ["2.1", "2.2"]

    second_runner = ScriptedRunner()
    result = asyncio.run(Orchestrator(state, second_runner, config, confirm=_confirm).execute(end_phase=1))
    assert result.phases_declined == 1
    assert result.phases_failed == 0
    assert result.success is True
    assert second_runner.calls == []


def test_async_confirm_callback(make_state) -> None:
    state = make_state(*_two_phases())
    runner = ScriptedRunner()

    async def _confirm(phase: ImplementationPhase) -> bool:
        await asyncio.sleep(0)
        return phase.phase_number == 2

    result = asyncio.run(Orchestrator(state, runner, _config(confirm_before_phase=True), confirm=_confirm).execute())

    assert result.phases_declined == 1
    assert runner.order == ["2.1", "2.2"]


def test_confirm_ignored_unless_enabled(make_state) -> None:
    state = make_state(*_two_phases())
    runner = ScriptedRunner()
    result = asyncio.run(Orchestrator(state, runner, _config(), confirm=lambda phase: False).execute())
    assert result.phases_completed == 2


def test_abort_stops_scheduling(make_state) -> None:
    state = make_state(*_two_phases())
    runner = ScriptedRunner()
    orchestrator = Orchestrator(state, runner, _config())
    state.on(EventType.TASK_STARTED, lambda e: orchestrator.abort())

    result = asyncio.run(orchestrator.execute())

    assert runner.order == ["1.1"]
    assert result.aborted is True
    assert result.success is False
    assert orchestrator.aborted is True


def test_abort_during_confirmation_runs_nothing(make_state) -> None:
    state = make_state(make_phase(1, [make_task("1.1"), make_task("1.2"), make_task("1.3")]))
    runner = ScriptedRunner()

    async def _confirm_then_abort(phase: ImplementationPhase) -> bool:
        orchestrator.abort()
        return True

    orchestrator = Orchestrator(state, runner, _config(confirm_before_phase=True), confirm=_confirm_then_abort)
    result = asyncio.run(orchestrator.execute())

    assert runner.order == []
    assert result.aborted is True
    assert result.success is False
    assert [t.status for t in state.all_tasks()] == [TaskStatus.PENDING] * 3


def test_new_run_clears_earlier_abort(make_state) -> None:
    state = make_state(*_two_phases())
    runner = ScriptedRunner()
    orchestrator = Orchestrator(state, runner, _config())
    orchestrator.abort()

    result = asyncio.run(orchestrator.execute())

    assert result.aborted is False
    assert runner.order == ["1.1", "1.2", "2.1", "2.2"]


def test_git_hooks_run_off_the_event_loop(make_state) -> None:
    state = make_state(make_phase(1, [make_task("1.1"), make_task("1.2")]))
    git = RecordingGit()
    config = _config(parallel=True, max_parallel=2)

    result = asyncio.run(Orchestrator(state, ScriptedRunner(delay=0.01), config, git=git).execute())

    assert result.success is True
    assert sorted(name for name, _ in git.calls) == [
        "begin_phase",
        "commit_state_change",
        "commit_task",
        "commit_task",
    ]
    assert not any(on_main for _, on_main in git.calls)
    assert state.get_task_result("1.2").commit_hash == "sha-1.2"


def test_no_phases_is_a_successful_noop(make_state) -> None:
    state = make_state()
    result = asyncio.run(Orchestrator(state, ScriptedRunner(), _config()).execute())
    assert result.success is True
    assert result.phase_results == []

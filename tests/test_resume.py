from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from spec_forge.backend.scripted import ScriptedTaskRunner
from spec_forge.workflow.dag import DependencyGraph
from spec_forge.workflow.errors import ResumeAbortedError
from spec_forge.workflow.models import Task, TaskStatus, WaveStatus
from spec_forge.workflow.parallel_state import ParallelExecutionState, ParallelStateStore
from spec_forge.workflow.resume import (
    ResumeController,
    ResumeOption,
    describe_state,
    parse_resume_option,
)
from spec_forge.workflow.scheduler import ParallelTaskScheduler

pytestmark = [
    allure.epic("Parallel Implementation"),
    allure.feature("Resume Interrupted Run"),
]


def _interrupted_state() -> ParallelExecutionState:
    state = ParallelExecutionState(spec_name="001-auth", total_waves=3)
    state.start_wave(1, ["T1"])
    state.update_task_status("T1", TaskStatus.COMPLETED)
    state.complete_wave(1, completed=1, failed=0, skipped=0)
    state.start_wave(2, ["T2", "T3"])
    state.update_task_status("T2", TaskStatus.COMPLETED)
    state.update_task_status("T3", TaskStatus.RUNNING)
    state.mark_interrupted()
    return state


def _controller(tmp_path, answers: list[str]) -> tuple[ResumeController, list[str]]:
    echoed: list[str] = []
    controller = ResumeController(
        ParallelStateStore(tmp_path),
        prompt=lambda *_args, **_kwargs: answers.pop(0),
        echo=echoed.append,
    )
    return controller, echoed


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("", ResumeOption.RETRY),
        ("r", ResumeOption.RETRY),
        (" w ", ResumeOption.SKIP_WAVE),
        ("skip", ResumeOption.SKIP_WAVE),
        ("S", ResumeOption.RESET),
        ("fresh", ResumeOption.RESET),
        ("q", ResumeOption.ABORT),
        ("exit", ResumeOption.ABORT),
    ],
)
def test_parse_resume_option(value: str, expected: ResumeOption) -> None:
    assert parse_resume_option(value) is expected


def test_parse_resume_option_rejects_unknown_input() -> None:
    with pytest.raises(ValueError, match="Unknown resume option"):
        parse_resume_option("maybe")


def test_should_prompt_only_for_started_incomplete_runs() -> None:
    assert not ResumeController.should_prompt(None)
    assert not ResumeController.should_prompt(
        ParallelExecutionState(spec_name="001-auth", total_waves=2),
    )
    finished = _interrupted_state()
    finished.mark_completed()
    assert not ResumeController.should_prompt(finished)
    assert ResumeController.should_prompt(_interrupted_state())


def test_describe_state_summarizes_progress() -> None:
    lines = describe_state(_interrupted_state())

    assert "  Progress: Wave 2/3" in lines
    assert "  Tasks: 2 completed, 0 failed, 0 skipped, 1 pending" in lines


def test_retry_resumes_from_interrupted_wave(tmp_path) -> None:
    controller, _ = _controller(tmp_path, [])

    assert controller.apply(ResumeOption.RETRY, _interrupted_state()) == 2


def test_skip_wave_marks_unfinished_tasks_and_advances(tmp_path) -> None:
    controller, _ = _controller(tmp_path, [])
    state = _interrupted_state()

    start = controller.apply(ResumeOption.SKIP_WAVE, state)

    assert start == 3
    assert state.skipped_tasks == {"T3": "skipped wave 2"}
    assert state.task_statuses["T2"] == TaskStatus.COMPLETED.value
    info = state.wave_results[2]
    assert info.status == WaveStatus.COMPLETED.value
    assert (info.completed, info.failed, info.skipped) == (1, 0, 1)
    saved = controller.store.load("001-auth")
    assert saved is not None
    assert saved.skipped_tasks == {"T3": "skipped wave 2"}
    assert saved.resume_wave() == 3


def test_reset_deletes_state(tmp_path) -> None:
    controller, _ = _controller(tmp_path, [])
    state = _interrupted_state()
    controller.store.save(state)

    assert controller.apply(ResumeOption.RESET, state) == 1
    assert controller.store.load("001-auth") is None


def test_abort_keeps_state(tmp_path) -> None:
    controller, _ = _controller(tmp_path, [])
    state = _interrupted_state()
    controller.store.save(state)

    with pytest.raises(ResumeAbortedError):
        controller.apply(ResumeOption.ABORT, state)
    assert controller.store.load("001-auth") is not None


def test_prepare_without_state_starts_fresh(tmp_path) -> None:
    controller, echoed = _controller(tmp_path, [])

    plan = controller.prepare("001-auth", total_waves=3)

    assert plan.state is None
    assert plan.start_wave == 1
    assert echoed == []


def test_prepare_prompts_and_applies_choice(tmp_path) -> None:
    controller, echoed = _controller(tmp_path, ["w"])
    controller.store.save(_interrupted_state())

    plan = controller.prepare("001-auth", total_waves=3)

    assert plan.start_wave == 3
    assert plan.state is not None
    assert "Previous parallel execution was interrupted:" in echoed


def test_prepare_unknown_answer_defaults_to_retry(tmp_path) -> None:
    controller, echoed = _controller(tmp_path, ["later"])
    controller.store.save(_interrupted_state())

    plan = controller.prepare("001-auth", total_waves=3)

    assert plan.start_wave == 2
    assert "Unknown option 'later', defaulting to Retry" in echoed


def test_prepare_reset_returns_fresh_plan(tmp_path) -> None:
    controller, _ = _controller(tmp_path, ["s"])
    controller.store.save(_interrupted_state())

    plan = controller.prepare("001-auth", total_waves=3)

    assert plan.state is None
    assert plan.start_wave == 1


def test_run_after_skip_wave_cascades_and_keeps_completed_tasks(tmp_path) -> None:
    controller, _ = _controller(tmp_path, [])
    state = _interrupted_state()
    start = controller.apply(ResumeOption.SKIP_WAVE, state)
    graph = DependencyGraph.build(
        [
            Task(id="T1"),
            Task(id="T2", dependencies=frozenset({"T1"})),
            Task(id="T3", dependencies=frozenset({"T1"})),
            Task(id="T4", dependencies=frozenset({"T3"})),
            Task(id="T5", dependencies=frozenset({"T2"})),
        ],
    )
    runner = ScriptedTaskRunner()
    scheduler = ParallelTaskScheduler(graph, runner, state_store=controller.store)

    results = scheduler.execute_waves(
        threading.Event(),
        "001-auth",
        Path("specs/001-auth/tasks.yaml"),
        state=state,
        start_wave=start,
    )

    assert runner.invoked == ["T5"]
    assert [result.wave_number for result in results] == [3]
    assert results[0].results["T4"].skipped
    assert results[0].results["T4"].skip_reason == "Skipped: dependency T3 was skipped"
    assert results[0].results["T5"].success
    saved = controller.store.load("001-auth")
    assert saved is not None
    assert saved.is_complete()
    assert saved.completed_tasks() == ["T1", "T2", "T5"]
    assert saved.skipped_tasks == {
        "T3": "skipped wave 2",
        "T4": "Skipped: dependency T3 was skipped",
    }

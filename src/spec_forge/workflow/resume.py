"""Resume strategies for an interrupted parallel run."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import rich_click as click

from spec_forge.workflow.errors import ResumeAbortedError
from spec_forge.workflow.models import TaskStatus, WaveStatus
from spec_forge.workflow.parallel_state import (
    ParallelExecutionState,
    ParallelStateStore,
    WaveStateInfo,
)
from spec_forge.workflow.storage import utc_now

logger = logging.getLogger(__name__)


class ResumeOption(str, Enum):
    RETRY = "retry"
    SKIP_WAVE = "skip_wave"
    RESET = "reset"
    ABORT = "abort"


_ALIASES: dict[str, ResumeOption] = {
    "R": ResumeOption.RETRY,
    "RETRY": ResumeOption.RETRY,
    "W": ResumeOption.SKIP_WAVE,
    "WAVE": ResumeOption.SKIP_WAVE,
    "SKIP": ResumeOption.SKIP_WAVE,
    "S": ResumeOption.RESET,
    "START": ResumeOption.RESET,
    "FRESH": ResumeOption.RESET,
    "RESET": ResumeOption.RESET,
    "A": ResumeOption.ABORT,
    "ABORT": ResumeOption.ABORT,
    "Q": ResumeOption.ABORT,
    "QUIT": ResumeOption.ABORT,
    "EXIT": ResumeOption.ABORT,
}

PromptFn = Callable[..., str]


def parse_resume_option(value: str) -> ResumeOption:
    """Map user input to an option; empty input means Retry."""

    normalized = value.strip().upper() or "R"
    try:
        return _ALIASES[normalized]
    except KeyError as error:
        raise ValueError(f"Unknown resume option: {value!r}") from error


def describe_state(state: ParallelExecutionState) -> list[str]:
    return [
        "Previous parallel execution was interrupted:",
        f"  Spec: {state.spec_name}",
        f"  Started: {state.started_at:%Y-%m-%d %H:%M:%S}",
        f"  Progress: Wave {state.current_wave}/{state.total_waves}",
        (
            f"  Tasks: {len(state.completed_tasks())} completed, "
            f"{len(state.failed_tasks)} failed, "
            f"{len(state.skipped_tasks)} skipped, "
            f"{len(state.pending_tasks())} pending"
        ),
        "",
        "How would you like to proceed?",
        "  [R] Retry - Retry failed tasks and continue from where it left off",
        "  [W] Skip Wave - Skip current wave and continue to the next",
        "  [S] Start Fresh - Clear state and start from the beginning",
        "  [A] Abort - Cancel and exit",
    ]


@dataclass(slots=True)
class ResumePlan:
    """Where to start a parallel run and with which prior state."""

    state: ParallelExecutionState | None
    start_wave: int = 1


class ResumeController:
    """Decide how to continue after finding a persisted parallel state."""

    def __init__(
        self,
        store: ParallelStateStore,
        *,
        prompt: PromptFn | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.store = store
        self.prompt = prompt or click.prompt
        self.echo = echo or click.echo

    @staticmethod
    def should_prompt(state: ParallelExecutionState | None) -> bool:
        if state is None:
            return False
        if state.is_complete():
            return False
        return state.current_wave != 0

    def choose(self, state: ParallelExecutionState) -> ResumeOption:
        for line in describe_state(state):
            self.echo(line)
        answer = self.prompt("Choice [R/W/S/A]", default="R", show_default=True)
        try:
            return parse_resume_option(answer)
        except ValueError:
            self.echo(f"Unknown option '{answer}', defaulting to Retry")
            return ResumeOption.RETRY

    def apply(self, option: ResumeOption, state: ParallelExecutionState) -> int:
        """Apply ``option`` and return the wave number to start from."""

        if option is ResumeOption.RETRY:
            return state.resume_wave()

        if option is ResumeOption.SKIP_WAVE:
            wave_number = state.current_wave
            if 0 < wave_number <= state.total_waves:
                self._skip_wave(state, wave_number)
                self.store.save(state)
            return wave_number + 1

        if option is ResumeOption.RESET:
            self.store.delete(state.spec_name)
            return 1

        raise ResumeAbortedError(f"aborted by user; state kept for {state.spec_name}")

    def prepare(self, spec_name: str, total_waves: int) -> ResumePlan:
        state = self.store.load(spec_name)
        if state is None or not self.should_prompt(state):
            # A finished or never-started run starts over.
            return ResumePlan(state=None, start_wave=1)
        if state.total_waves != total_waves:
            logger.warning(
                "Task plan for %s changed (%d waves recorded, %d now)",
                spec_name,
                state.total_waves,
                total_waves,
            )

        option = self.choose(state)
        start_wave = self.apply(option, state)
        if option is ResumeOption.RESET:
            return ResumePlan(state=None, start_wave=1)
        logger.info("Resuming %s from wave %d (%s)", spec_name, start_wave, option.value)
        return ResumePlan(state=state, start_wave=start_wave)

    @staticmethod
    def _skip_wave(state: ParallelExecutionState, wave_number: int) -> None:
        info = state.wave_results.get(wave_number)
        if info is None:
            info = WaveStateInfo(number=wave_number, started_at=utc_now())
            state.wave_results[wave_number] = info
        task_ids = info.task_ids or state.pending_tasks()
        reason = f"skipped wave {wave_number}"
        for task_id in task_ids:
            status = state.task_statuses.get(task_id, TaskStatus.PENDING.value)
            if status in {TaskStatus.RUNNING.value, TaskStatus.PENDING.value}:
                state.record_task_skipped(task_id, reason)

        counts = {TaskStatus.COMPLETED.value: 0, TaskStatus.FAILED.value: 0}
        skipped = 0
        for task_id in task_ids:
            status = state.task_statuses.get(task_id)
            if status == TaskStatus.SKIPPED.value:
                skipped += 1
            elif status in counts:
                counts[status] += 1
        info.completed = counts[TaskStatus.COMPLETED.value]
        info.failed = counts[TaskStatus.FAILED.value]
        info.skipped = skipped
        info.completed_at = utc_now()
        # Skipping resolves the wave; earlier failures no longer force a retry here.
        info.status = WaveStatus.COMPLETED.value

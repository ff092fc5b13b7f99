"""Controllers for spec-forge CLI commands."""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import rich_click as click

from spec_forge.backend.cli_backend import AgentTaskRunner, CliAgentInvoker
from spec_forge.backend.worktree import GitWorktreeManager
from spec_forge.config import Settings
from spec_forge.workflow.dag import DependencyGraph
from spec_forge.workflow.errors import (
    ArtifactValidationError,
    ResumeAbortedError,
    RunCancelledError,
    WorkflowError,
)
from spec_forge.workflow.models import (
    Stage,
    StageResult,
    StageSelection,
    TaskStatus,
    WaveResult,
    WaveStatus,
)
from spec_forge.workflow.parallel_state import ParallelStateStore
from spec_forge.workflow.resume import (
    ResumeController,
    ResumeOption,
    ResumePlan,
    parse_resume_option,
)
from spec_forge.workflow.retry_store import RetryStateStore
from spec_forge.workflow.scheduler import ParallelTaskScheduler
from spec_forge.workflow.stage_executor import StageExecutionEngine, WorkflowRunner
from spec_forge.workflow.tasks_file import TASKS_FILE_NAME, count_tasks, load_tasks
from spec_forge.workflow.validator import validator_for

logger = logging.getLogger(__name__)


class CommandFailedError(click.ClickException):
    """CLI failure carrying the process exit code of the underlying error."""

    def __init__(self, message: str, *, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code

    @classmethod
    def from_error(cls, error: WorkflowError) -> CommandFailedError:
        return cls(str(error), exit_code=error.exit_code)


@dataclass(slots=True)
class StageCommand:
    """CLI input for a single stage run."""

    spec_name: str
    stage: str
    prompt: str = ""
    specs_dir: Path | None = None
    state_dir: Path | None = None


@dataclass(slots=True)
class RunCommand:
    """CLI input for a multi-stage workflow run."""

    spec_name: str
    stages: tuple[str, ...] = ()
    prompt: str = ""
    specs_dir: Path | None = None
    state_dir: Path | None = None


@dataclass(slots=True)
class ImplementCommand:
    """CLI input for parallel task implementation."""

    spec_name: str
    max_parallel: int | None = None
    use_worktrees: bool | None = None
    dry_run: bool = False
    resume_option: str | None = None
    specs_dir: Path | None = None
    state_dir: Path | None = None
    on_progress: Callable[[str], None] | None = None


@dataclass(slots=True)
class WavesCommand:
    """CLI input for the wave plan preview."""

    spec_name: str
    compact: bool = False
    specs_dir: Path | None = None


@dataclass(slots=True)
class RetryStatusCommand:
    """CLI input for retry counter inspection."""

    spec_name: str
    state_dir: Path | None = None


@dataclass(slots=True)
class RetryResetCommand:
    """CLI input for retry counter reset."""

    spec_name: str
    stages: tuple[str, ...] = ()
    state_dir: Path | None = None


@dataclass(slots=True)
class ParallelStatusCommand:
    """CLI input for parallel checkpoint inspection."""

    spec_name: str
    output_format: str = "table"
    state_dir: Path | None = None


@dataclass(slots=True)
class CommandReport:
    """Lines to print plus the exit status of a long-running command."""

    lines: list[str] = field(default_factory=list)
    success: bool = True
    message: str = ""
    exit_code: int = 0


class ForgeCliController:
    """Coordinates stage, workflow, parallel implementation and inspection commands."""

    def stage(self, command: StageCommand) -> CommandReport:
        settings = _settings(command.specs_dir, command.state_dir)
        stage = _parse_stage(command.stage)
        engine = _stage_engine(settings, command.spec_name)
        result = engine.execute_stage(
            command.spec_name,
            stage,
            stage.command(command.prompt),
            validator_for(stage),
        )
        return _stage_report(command.spec_name, [result])

    def run(self, command: RunCommand) -> CommandReport:
        settings = _settings(command.specs_dir, command.state_dir)
        if command.stages:
            selection = StageSelection.of(_parse_stage(value) for value in command.stages)
        else:
            selection = StageSelection.core()
        # The implement stage belongs to the parallel scheduler.
        selection = StageSelection.of(
            stage for stage in selection.stages if stage is not Stage.IMPLEMENT
        )
        if not len(selection):
            raise CommandFailedError("No sequential stages selected; use `implement` instead.")

        engine = _stage_engine(settings, command.spec_name)
        runner = WorkflowRunner(engine, validator_for=validator_for)
        prompts = {stage: command.prompt for stage in selection.stages} if command.prompt else None
        try:
            results = runner.run(command.spec_name, selection, prompts)
        except ArtifactValidationError as error:
            raise CommandFailedError.from_error(error) from error
        return _stage_report(command.spec_name, results)

    def waves(self, command: WavesCommand) -> list[str]:
        settings = _settings(command.specs_dir, None)
        tasks_path = settings.specs_dir / command.spec_name / TASKS_FILE_NAME
        graph = _load_graph(tasks_path)
        if command.compact:
            return [graph.render_compact()]
        counts = count_tasks(list(graph.tasks.values()))
        lines = graph.render_ascii().rstrip("\n").splitlines()
        lines.append(
            f"  Completed: {counts.completed}/{counts.total} ({counts.percent:.0f}%)",
        )
        return lines

    def implement(self, command: ImplementCommand) -> CommandReport:
        settings = _settings(command.specs_dir, command.state_dir)
        tasks_path = settings.specs_dir / command.spec_name / TASKS_FILE_NAME
        graph = _load_graph(tasks_path)
        if command.dry_run:
            lines = [f"Dry run for {command.spec_name}: nothing will be executed."]
            lines.extend(graph.render_ascii().rstrip("\n").splitlines())
            return CommandReport(lines=lines)

        max_parallel = command.max_parallel or settings.execution.max_parallel
        use_worktrees = (
            settings.execution.use_worktrees
            if command.use_worktrees is None
            else command.use_worktrees
        )
        store = ParallelStateStore(settings.state_dir)
        resume = ResumeController(store)
        try:
            plan = _resume_plan(resume, command, len(graph.compute_waves()))
        except ResumeAbortedError as error:
            raise CommandFailedError.from_error(error) from error
        except ValueError as error:
            raise CommandFailedError(str(error)) from error

        worktrees = (
            GitWorktreeManager(Path.cwd(), settings.execution.worktree_dir)
            if use_worktrees
            else None
        )
        scheduler = _build_scheduler(
            graph,
            settings=settings,
            max_parallel=max_parallel,
            store=store,
            worktrees=worktrees,
            on_progress=command.on_progress,
        )

        cancel = threading.Event()
        try:
            with _cancel_on_signal(cancel):
                results = scheduler.execute_waves(
                    cancel,
                    command.spec_name,
                    tasks_path,
                    state=plan.state,
                    start_wave=plan.start_wave,
                )
        except RunCancelledError as error:
            lines = _wave_lines(error.wave_results)
            lines.append(f"Interrupted; state saved to {store.path_for(command.spec_name)}")
            return CommandReport(
                lines=lines,
                success=False,
                message=str(error),
                exit_code=error.exit_code,
            )

        lines = _wave_lines(results)
        failed = scheduler.failed_tasks()
        skipped = scheduler.skipped_tasks()
        for task_id, message in sorted(failed.items()):
            lines.append(f"  failed {task_id}: {message}")
        for task_id, reason in sorted(skipped.items()):
            lines.append(f"  skipped {task_id}: {reason}")
        total = len(graph)
        lines.append(
            f"Implementation summary: total={total} "
            f"completed={total - len(failed) - len(skipped)} "
            f"failed={len(failed)} skipped={len(skipped)}",
        )
        if failed:
            return CommandReport(
                lines=lines,
                success=False,
                message=f"{len(failed)} task(s) failed for {command.spec_name}",
            )
        return CommandReport(lines=lines)

    def retry_status(self, command: RetryStatusCommand) -> list[str]:
        settings = _settings(None, command.state_dir)
        store = RetryStateStore(settings.state_dir, max_retries=settings.execution.max_retries)
        states = store.list_states(command.spec_name)
        if not states:
            return [f"No retry state recorded for {command.spec_name}."]
        lines = [f"Retry state for {command.spec_name}:"]
        for state in states:
            last = (
                state.last_attempt.strftime("%Y-%m-%d %H:%M:%S")
                if state.last_attempt is not None
                else "-"
            )
            exhausted = "" if state.can_retry() else " exhausted"
            lines.append(
                f"  {state.stage}: retries={state.count}/{state.max_retries} "
                f"last_attempt={last}{exhausted}",
            )
        return lines

    def retry_reset(self, command: RetryResetCommand) -> list[str]:
        settings = _settings(None, command.state_dir)
        store = RetryStateStore(settings.state_dir, max_retries=settings.execution.max_retries)
        if command.stages:
            stages = [_parse_stage(value).value for value in command.stages]
        else:
            stages = [state.stage for state in store.list_states(command.spec_name)]
        for stage in stages:
            store.reset(command.spec_name, stage)
        if not stages:
            return [f"No retry state recorded for {command.spec_name}."]
        return [f"Retry counters reset for {command.spec_name}: {', '.join(stages)}"]

    def parallel_status(self, command: ParallelStatusCommand) -> list[str]:
        settings = _settings(None, command.state_dir)
        store = ParallelStateStore(settings.state_dir)
        state = store.load(command.spec_name)
        if state is None:
            return [f"No parallel execution state for {command.spec_name}."]
        if command.output_format == "json":
            return [json.dumps(state.to_dict(), indent=2, sort_keys=True, ensure_ascii=False)]

        if state.is_complete():
            status = "completed"
        elif state.interrupted:
            status = "interrupted"
        else:
            status = "running"
        lines = [
            f"Parallel execution state for {state.spec_name}: {status}",
            f"  wave={state.current_wave}/{state.total_waves} "
            f"max_parallel={state.max_parallel} worktrees={'yes' if state.use_worktrees else 'no'}",
            f"  completed={len(state.completed_tasks())} failed={len(state.failed_tasks)} "
            f"skipped={len(state.skipped_tasks)} pending={len(state.pending_tasks())}",
        ]
        for number in sorted(state.wave_results):
            info = state.wave_results[number]
            lines.append(
                f"  Wave {number}: {info.status} tasks={info.task_count} "
                f"completed={info.completed} failed={info.failed} skipped={info.skipped}",
            )
        for task_id, message in sorted(state.failed_tasks.items()):
            lines.append(f"  failed {task_id}: {message}")
        for task_id, reason in sorted(state.skipped_tasks.items()):
            lines.append(f"  skipped {task_id}: {reason}")
        return lines


def _build_scheduler(  # noqa: PLR0913
    graph: DependencyGraph,
    *,
    settings: Settings,
    max_parallel: int,
    store: ParallelStateStore,
    worktrees: GitWorktreeManager | None,
    on_progress: Callable[[str], None] | None,
) -> ParallelTaskScheduler:
    def report(_wave: int, task_id: str, status: TaskStatus, progress: str) -> None:
        logger.info("Task %s is %s", task_id, status.value)
        if on_progress is not None:
            on_progress(progress)

    scheduler = ParallelTaskScheduler(
        graph,
        max_parallel=max_parallel,
        state_store=store,
        worktree_manager=worktrees,
        progress_callback=report,
    )
    scheduler.task_runner = AgentTaskRunner(
        command_template=settings.agent.command_template,
        model=settings.agent.model,
        timeout_seconds=settings.agent.timeout_seconds,
        log_dir=settings.agent.log_dir,
        workdir_for=lambda task_id: scheduler.worktree_paths().get(task_id),
    )
    return scheduler


def _settings(specs_dir: Path | None, state_dir: Path | None) -> Settings:
    try:
        settings = Settings.from_env(specs_dir=specs_dir, state_dir=state_dir)
        settings.validate()
    except ValueError as error:
        raise CommandFailedError(f"Invalid configuration: {error}") from error
    return settings


def _parse_stage(value: str) -> Stage:
    try:
        return Stage.parse(value)
    except ValueError as error:
        raise CommandFailedError(str(error)) from error


def _stage_engine(settings: Settings, spec_name: str) -> StageExecutionEngine:
    log_dir = settings.agent.log_dir / spec_name if settings.agent.log_dir is not None else None
    invoker = CliAgentInvoker(
        command_template=settings.agent.command_template,
        model=settings.agent.model,
        timeout_seconds=settings.agent.timeout_seconds,
        log_dir=log_dir,
    )
    store = RetryStateStore(settings.state_dir, max_retries=settings.execution.max_retries)
    return StageExecutionEngine(invoker=invoker, store=store, specs_dir=settings.specs_dir)


def _load_graph(tasks_path: Path) -> DependencyGraph:
    try:
        return DependencyGraph.build(load_tasks(tasks_path))
    except WorkflowError as error:
        raise CommandFailedError.from_error(error) from error


def _resume_plan(
    resume: ResumeController,
    command: ImplementCommand,
    total_waves: int,
) -> ResumePlan:
    if command.resume_option is None:
        return resume.prepare(command.spec_name, total_waves)

    option = parse_resume_option(command.resume_option)
    state = resume.store.load(command.spec_name)
    if state is None or not resume.should_prompt(state):
        return ResumePlan(state=None, start_wave=1)
    start_wave = resume.apply(option, state)
    if option is ResumeOption.RESET:
        return ResumePlan(state=None, start_wave=1)
    return ResumePlan(state=state, start_wave=start_wave)


def _stage_report(spec_name: str, results: list[StageResult]) -> CommandReport:
    lines: list[str] = []
    for result in results:
        retries = f" retries={result.retry_count}" if result.retry_count else ""
        lines.append(
            f"Stage {result.stage.value}: {result.outcome.value} "
            f"attempts={result.attempts}{retries}",
        )
        lines.extend(f"  - {error}" for error in result.validation_errors if not result.success)

    failed = next((result for result in results if not result.success), None)
    if failed is None:
        return CommandReport(lines=lines)
    error = failed.error
    if error is None:
        message = f"stage {failed.stage.value} failed for {spec_name}"
    else:
        message = str(error)
    return CommandReport(
        lines=lines,
        success=False,
        message=message,
        exit_code=error.exit_code if isinstance(error, WorkflowError) else 1,
    )


def _wave_lines(results: list[WaveResult]) -> list[str]:
    lines: list[str] = []
    for result in results:
        completed, failed, skipped = result.count()
        marker = "ok" if result.status is WaveStatus.COMPLETED else result.status.value
        lines.append(
            f"Wave {result.wave_number}: {marker} completed={completed} failed={failed} "
            f"skipped={skipped} duration={result.duration_seconds:.1f}s",
        )
    return lines


@contextmanager
def _cancel_on_signal(cancel: threading.Event) -> Iterator[None]:
    def _handler(signum: int, _: object | None) -> None:
        logger.warning("Received %s; cancelling running tasks", signal.Signals(signum).name)
        cancel.set()

    try:
        original_sigint = signal.signal(signal.SIGINT, _handler)
        original_sigterm = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)

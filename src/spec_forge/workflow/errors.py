"""Error taxonomy shared by the stage engine and the parallel scheduler."""

from __future__ import annotations

from collections.abc import Sequence

from spec_forge.workflow.models import WaveResult


class WorkflowError(RuntimeError):
    """Base class for all orchestration errors."""

    exit_code = 1


class ExecutionError(WorkflowError):
    """The agent process failed to run or exited unsuccessfully.

    Surfaced immediately by the stage engine, never retried in-loop.
    """

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.process_exit_code = exit_code


class AgentTimeoutError(ExecutionError):
    """Agent invocation exceeded the configured duration.

    The original ``TimeoutError`` deadline sentinel is chained as ``__cause__``.
    """

    exit_code = 5

    def __init__(self, timeout_seconds: float, command: str) -> None:
        super().__init__(
            f"agent command timed out after {timeout_seconds:g}s: {command}",
            exit_code=124,
        )
        self.timeout_seconds = timeout_seconds
        self.command = command


class ExecutionCancelledError(ExecutionError):
    """Cancellation was observed before or during an agent invocation."""

    def __init__(self, message: str = "execution cancelled") -> None:
        super().__init__(message)


class ArtifactValidationError(WorkflowError):
    """Artifact failed validation.

    The message may contain ``"- "`` bullet lines, one per schema error.
    """

    def __init__(self, message: str, errors: Sequence[str] = ()) -> None:
        if errors:
            message = message.rstrip() + "\n" + "\n".join(f"- {item}" for item in errors)
        super().__init__(message)


class RetryExhaustedError(WorkflowError):
    """Retry bound reached for a (spec, stage) pair."""

    exit_code = 2

    def __init__(
        self,
        *,
        spec_name: str,
        stage: str,
        count: int,
        max_retries: int,
        last_error: Exception | None,
    ) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(
            f"retry limit exhausted for {spec_name}:{stage} "
            f"({count}/{max_retries} retries){detail}",
        )
        self.spec_name = spec_name
        self.stage = stage
        self.count = count
        self.max_retries = max_retries
        self.last_error = last_error


class DependencyGraphError(WorkflowError):
    """Task graph cannot be built (duplicate ids, unknown dependencies)."""

    exit_code = 3


class GraphCycleError(DependencyGraphError):
    """Circular dependency detected while building the graph."""

    def __init__(self, cycle: Sequence[str]) -> None:
        super().__init__(f"circular dependency detected: {' -> '.join(cycle)}")
        self.cycle = tuple(cycle)


class SchedulerConfigError(WorkflowError):
    """Scheduler is missing a collaborator. Reported per task."""


class RunCancelledError(WorkflowError):
    """Parallel run aborted because the shared cancel signal was set."""

    exit_code = 130

    def __init__(self, wave_results: Sequence[WaveResult] = ()) -> None:
        super().__init__("parallel execution cancelled")
        self.wave_results = list(wave_results)


class ResumeAbortedError(WorkflowError):
    """User chose to abort an interrupted parallel run."""


class TasksFileError(WorkflowError):
    """tasks.yaml is missing or malformed."""

    exit_code = 3

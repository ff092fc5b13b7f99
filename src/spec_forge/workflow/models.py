"""Domain models for stage execution and parallel task scheduling."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

COMMAND_PREFIX = "/forge"


class Stage(str, Enum):
    """Workflow stages in canonical execution order."""

    CONSTITUTION = "constitution"
    SPECIFY = "specify"
    CLARIFY = "clarify"
    PLAN = "plan"
    TASKS = "tasks"
    CHECKLIST = "checklist"
    ANALYZE = "analyze"
    IMPLEMENT = "implement"

    @property
    def number(self) -> int:
        """1-based position in the canonical order."""

        return CANONICAL_ORDER.index(self) + 1

    @property
    def requires(self) -> tuple[str, ...]:
        return _ARTIFACTS[self][0]

    @property
    def produces(self) -> tuple[str, ...]:
        return _ARTIFACTS[self][1]

    def command(self, prompt: str = "") -> str:
        """Slash command asking the agent to run this stage, e.g. ``/forge.plan``."""

        base = f"{COMMAND_PREFIX}.{self.value}"
        if prompt:
            return f'{base} "{prompt}"'
        return base

    @classmethod
    def parse(cls, value: str) -> Stage:
        normalized = value.strip().lower()
        try:
            return cls(normalized)
        except ValueError as error:
            supported = ", ".join(stage.value for stage in cls)
            raise ValueError(f"Unknown stage {value!r}; expected one of: {supported}") from error


CANONICAL_ORDER: tuple[Stage, ...] = (
    Stage.CONSTITUTION,
    Stage.SPECIFY,
    Stage.CLARIFY,
    Stage.PLAN,
    Stage.TASKS,
    Stage.CHECKLIST,
    Stage.ANALYZE,
    Stage.IMPLEMENT,
)

# stage -> (required artifacts, produced artifacts)
_ARTIFACTS: dict[Stage, tuple[tuple[str, ...], tuple[str, ...]]] = {
    Stage.CONSTITUTION: ((), ()),
    Stage.SPECIFY: ((), ("spec.yaml",)),
    Stage.CLARIFY: (("spec.yaml",), ()),
    Stage.PLAN: (("spec.yaml",), ("plan.yaml",)),
    Stage.TASKS: (("plan.yaml",), ("tasks.yaml",)),
    Stage.CHECKLIST: (("spec.yaml",), ()),
    Stage.ANALYZE: (("spec.yaml", "plan.yaml", "tasks.yaml"), ()),
    Stage.IMPLEMENT: (("tasks.yaml",), ()),
}

CORE_STAGES: frozenset[Stage] = frozenset(
    {Stage.SPECIFY, Stage.PLAN, Stage.TASKS, Stage.IMPLEMENT},
)


@dataclass(slots=True, frozen=True)
class StageSelection:
    """Set of stages chosen for one run, always iterated in canonical order."""

    stages: frozenset[Stage]

    @classmethod
    def of(cls, stages: Iterable[Stage]) -> StageSelection:
        return cls(stages=frozenset(stages))

    @classmethod
    def core(cls) -> StageSelection:
        return cls(stages=CORE_STAGES)

    def ordered(self) -> list[Stage]:
        return [stage for stage in CANONICAL_ORDER if stage in self.stages]

    def required_artifacts(self) -> list[str]:
        """Artifacts that must exist before the run starts.

        An artifact produced by an earlier selected stage is not required.
        """

        required: list[str] = []
        produced: set[str] = set()
        for stage in self.ordered():
            for artifact in stage.requires:
                if artifact not in produced and artifact not in required:
                    required.append(artifact)
            produced.update(stage.produces)
        return required

    def __len__(self) -> int:
        return len(self.stages)


class TaskStatus(str, Enum):
    """Execution status of one task node."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class WaveStatus(str, Enum):
    """Execution status of one wave."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL_FAILED = "partial_failed"


@dataclass(slots=True)
class Task:
    """One implementation task. ``id`` and ``dependencies`` never change."""

    id: str
    title: str = ""
    dependencies: frozenset[str] = frozenset()
    status: TaskStatus = TaskStatus.PENDING


@dataclass(slots=True, frozen=True)
class ExecutionWave:
    """Group of tasks whose dependencies are all satisfied by earlier waves."""

    number: int
    task_ids: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.task_ids)


@dataclass(slots=True, frozen=True)
class WaveStats:
    """Summary statistics about computed waves."""

    total_waves: int = 0
    total_tasks: int = 0
    max_wave_size: int = 0
    min_wave_size: int = 0


@dataclass(slots=True)
class TaskResult:
    """Outcome of one task within a wave."""

    task_id: str
    success: bool
    error: Exception | None = None
    skipped: bool = False
    skip_reason: str | None = None
    duration_seconds: float = 0.0
    worktree_path: str | None = None

    @property
    def failed(self) -> bool:
        return not self.success and not self.skipped


@dataclass(slots=True)
class WaveResult:
    """Outcome of executing one wave."""

    wave_number: int
    status: WaveStatus
    results: dict[str, TaskResult] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def count(self) -> tuple[int, int, int]:
        """Return ``(completed, failed, skipped)`` counters."""

        completed = sum(1 for result in self.results.values() if result.success)
        failed = sum(1 for result in self.results.values() if result.failed)
        skipped = sum(1 for result in self.results.values() if result.skipped)
        return completed, failed, skipped


@dataclass(slots=True)
class RetryState:
    """Retry bookkeeping for one (spec, stage) pair."""

    spec_name: str
    stage: str
    count: int = 0
    max_retries: int = 0
    last_attempt: datetime | None = None

    def can_retry(self) -> bool:
        return self.count < self.max_retries

    def increment(self, now: datetime) -> None:
        self.count += 1
        self.last_attempt = now

    def reset(self) -> None:
        self.count = 0
        self.last_attempt = None


class StageOutcome(str, Enum):
    """Tagged outcome of one stage execution."""

    OK = "ok"
    VALIDATION_FAILED = "validation_failed"
    EXHAUSTED = "exhausted"
    EXECUTION_FAILED = "execution_failed"


@dataclass(slots=True)
class StageResult:
    """Result of running a stage to success or exhaustion."""

    stage: Stage
    outcome: StageOutcome
    retry_count: int = 0
    attempts: int = 0
    exhausted: bool = False
    validation_errors: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.outcome is StageOutcome.OK

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error
